"""
Runner Registry for choosing where a transform executes.

Runner choice is deployment policy, separate from registry content:
1. The transform rule's explicit `runner` name, if any
2. The route registered for the operation
3. The default runner
"""

from typing import Optional, TYPE_CHECKING

from rendition.runners.base import Runner
from rendition.runners.inprocess import InProcessRunner

if TYPE_CHECKING:
    from rendition.config import RenditionConfig


class RunnerRegistry:
    """
    Registry of named runners and operation routes.

    Usage:
        registry = RunnerRegistry()
        registry.register("inprocess", InProcessRunner())
        registry.register("sidecar", SidecarRunner("http://localhost:8900"))
        registry.route("image.rasterize", "sidecar")

        runner = registry.runner_for("image.rasterize")

        # Or use factory with defaults
        registry = RunnerRegistry.create_default(config)
    """

    def __init__(self, default: Optional[str] = None) -> None:
        self._runners: dict[str, Runner] = {}
        self._routes: dict[str, str] = {}
        self._default = default

    def register(self, name: str, runner: Runner, default: bool = False) -> None:
        """
        Register a runner by name.

        Args:
            name: Runner name referenced by rules and routes
            runner: Runner instance
            default: Make this the default runner
        """
        self._runners[name] = runner
        if default or self._default is None:
            self._default = name

    def route(self, operation: str, runner_name: str) -> None:
        """Route an operation to a named runner."""
        if runner_name not in self._runners:
            raise KeyError(f"No runner registered with name: {runner_name}")
        self._routes[operation] = runner_name

    def get(self, name: str) -> Runner:
        """
        Get a runner by name.

        Raises:
            KeyError: If no runner is registered under this name
        """
        if name not in self._runners:
            registered = list(self._runners.keys())
            raise KeyError(f"No runner registered with name: {name}. Registered: {registered}")
        return self._runners[name]

    def has(self, name: str) -> bool:
        return name in self._runners

    def list_runners(self) -> list[str]:
        return list(self._runners.keys())

    @property
    def default_name(self) -> Optional[str]:
        return self._default

    def runner_for(self, operation: str, preferred: Optional[str] = None) -> Runner:
        """
        Choose the runner for an operation.

        Args:
            operation: Operation name
            preferred: Runner name from the transform rule, if any

        Raises:
            KeyError: If the chosen runner is not registered, or there is no default
        """
        if preferred:
            return self.get(preferred)
        if operation in self._routes:
            return self.get(self._routes[operation])
        if self._default is None:
            raise KeyError(f"No runner for operation {operation} and no default runner")
        return self.get(self._default)

    def known_operations(self) -> Optional[set[str]]:
        """
        Union of operations the registered runners implement.

        Returns None when any runner accepts arbitrary operations, which
        disables operation validation in the composer.
        """
        operations: set[str] = set(self._routes)
        for runner in self._runners.values():
            supported = runner.supported_operations()
            if supported is None:
                return None
            operations.update(supported)
        return operations

    def close(self) -> None:
        """Close every registered runner."""
        for runner in self._runners.values():
            runner.close()

    @classmethod
    def create_default(cls, config: "RenditionConfig | None" = None) -> "RunnerRegistry":
        """
        Create a registry from configuration.

        Always registers an InProcessRunner; adds a SidecarRunner when a
        sidecar URL is configured. The configured default runner wins when
        it is registered.

        Args:
            config: RenditionConfig (None uses in-process only)

        Returns:
            Configured RunnerRegistry
        """
        registry = cls()
        registry.register("inprocess", InProcessRunner())

        if config is not None and config.runners.sidecar_url:
            from rendition.runners.sidecar import SidecarRunner
            registry.register("sidecar", SidecarRunner(config.runners.sidecar_url))

        if config is not None and registry.has(config.runners.default_runner):
            registry._default = config.runners.default_runner

        return registry
