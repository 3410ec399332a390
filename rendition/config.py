"""
Configuration management for rendition.

Loads config.yaml from the rendition home directory:

    $RENDITION_HOME/config.yaml     (default: ~/.rendition/config.yaml)
    $RENDITION_HOME/.env            (optional, loaded with python-dotenv)

Precedence, highest first: RENDITION_* environment variables, config.yaml,
built-in defaults. Relative paths in config.yaml resolve against the home
directory.

Example config.yaml:

    registry:
      compose: registry/compose.yaml
      schema_root: schemas
      snapshot: snapshots/current.json
    job_store: jobs
    scheduler:
      max_attempts: 3
      backoff_seconds: 1.0
      default_timeout_seconds: 30
      max_workers: 4
    runners:
      default_runner: inprocess
      container_runtime: docker
      sidecar_url: http://localhost:8900
    logging:
      level: INFO
      format: pretty
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from rendition.errors import ConfigError


ENV_PREFIX = "RENDITION_"

DEFAULT_HOME = Path("~/.rendition")


def get_rendition_home() -> Path:
    """Return the rendition home directory ($RENDITION_HOME or ~/.rendition)."""
    return Path(os.environ.get("RENDITION_HOME", str(DEFAULT_HOME))).expanduser()


@dataclass
class SchedulerConfig:
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: Optional[float] = 30.0
    default_timeout_seconds: float = 30.0
    max_workers: int = 4
    max_output_bytes: Optional[int] = 64 * 1024 * 1024
    max_memory_mb: Optional[int] = None
    max_cpus: Optional[float] = None

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ConfigError("scheduler.max_attempts must be >= 1")
        if self.max_workers < 1:
            raise ConfigError("scheduler.max_workers must be >= 1")
        if self.backoff_seconds < 0:
            raise ConfigError("scheduler.backoff_seconds must be >= 0")
        if self.backoff_multiplier < 1:
            raise ConfigError("scheduler.backoff_multiplier must be >= 1")
        if self.default_timeout_seconds <= 0:
            raise ConfigError("scheduler.default_timeout_seconds must be > 0")


@dataclass
class RunnerConfig:
    default_runner: str = "inprocess"
    container_runtime: str = "docker"
    sidecar_url: Optional[str] = None

    def validate(self) -> None:
        if self.container_runtime not in ("docker", "podman"):
            raise ConfigError(
                f"runners.container_runtime must be docker or podman, got {self.container_runtime!r}"
            )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "pretty"
    file: Optional[Path] = None
    console: bool = True

    def validate(self) -> None:
        if self.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"logging.level is not a valid level: {self.level}")
        if self.format not in ("structured", "pretty"):
            raise ConfigError(f"logging.format must be structured or pretty, got {self.format!r}")


@dataclass
class RenditionConfig:
    """
    Complete rendition configuration.

    Attributes:
        home: Home directory the config was loaded from
        compose_document: Registry compose document
        schema_root: Directory that schemaRefs resolve against
        snapshot_path: Where `rendition compose` writes the snapshot artifact
        job_store_path: Directory of the file job store (None keeps jobs in memory)
    """
    home: Path
    compose_document: Optional[Path] = None
    schema_root: Optional[Path] = None
    snapshot_path: Optional[Path] = None
    job_store_path: Optional[Path] = None
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    runners: RunnerConfig = field(default_factory=RunnerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> None:
        self.scheduler.validate()
        self.runners.validate()
        self.logging.validate()

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the config.yaml layout."""
        def path_str(p: Optional[Path]) -> Optional[str]:
            return str(p) if p is not None else None

        logging_cfg = asdict(self.logging)
        logging_cfg["file"] = path_str(self.logging.file)
        return {
            "registry": {
                "compose": path_str(self.compose_document),
                "schema_root": path_str(self.schema_root),
                "snapshot": path_str(self.snapshot_path),
            },
            "job_store": path_str(self.job_store_path),
            "scheduler": asdict(self.scheduler),
            "runners": asdict(self.runners),
            "logging": logging_cfg,
        }


def default_config_dict(home: Path) -> dict[str, Any]:
    """Config written by `rendition init`."""
    config = RenditionConfig(
        home=home,
        compose_document=Path("registry/compose.yaml"),
        schema_root=Path("schemas"),
        snapshot_path=Path("snapshots/current.json"),
        job_store_path=Path("jobs"),
    )
    return config.to_dict()


def _section(cls, data: Optional[dict[str, Any]], name: str):
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown keys in '{name}': {', '.join(sorted(unknown))}")
    return cls(**data)


def _resolve_path(home: Path, value: Optional[str]) -> Optional[Path]:
    if value in (None, ""):
        return None
    path = Path(value).expanduser()
    return path if path.is_absolute() else home / path


def _coerce_env(value: str, current: Any) -> Any:
    if isinstance(current, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


# Environment variable -> (section, field)
ENV_OVERRIDES = {
    "COMPOSE": (None, "compose_document"),
    "SCHEMA_ROOT": (None, "schema_root"),
    "SNAPSHOT": (None, "snapshot_path"),
    "JOB_STORE": (None, "job_store_path"),
    "MAX_ATTEMPTS": ("scheduler", "max_attempts"),
    "BACKOFF_SECONDS": ("scheduler", "backoff_seconds"),
    "DEFAULT_TIMEOUT": ("scheduler", "default_timeout_seconds"),
    "MAX_WORKERS": ("scheduler", "max_workers"),
    "DEFAULT_RUNNER": ("runners", "default_runner"),
    "CONTAINER_RUNTIME": ("runners", "container_runtime"),
    "SIDECAR_URL": ("runners", "sidecar_url"),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_FORMAT": ("logging", "format"),
}


def _apply_env(config: RenditionConfig) -> None:
    for suffix, (section, name) in ENV_OVERRIDES.items():
        value = os.environ.get(f"{ENV_PREFIX}{suffix}")
        if value is None:
            continue
        if section is None:
            setattr(config, name, _resolve_path(config.home, value))
            continue
        target = getattr(config, section)
        try:
            setattr(target, name, _coerce_env(value, getattr(target, name)))
        except ValueError as e:
            raise ConfigError(f"Invalid value for {ENV_PREFIX}{suffix}: {value!r}") from e


def load_config(config_path: Optional[Path] = None) -> RenditionConfig:
    """
    Load rendition configuration.

    Args:
        config_path: Path to config file. Defaults to $RENDITION_HOME/config.yaml.
            A missing default file yields the built-in defaults; a missing
            explicit file is an error.

    Returns:
        Validated RenditionConfig

    Raises:
        ConfigError: If config is invalid or an explicit file is missing
    """
    explicit = config_path is not None
    home = get_rendition_home() if config_path is None else Path(config_path).parent
    config_path = Path(config_path) if explicit else home / "config.yaml"

    env_file = home / ".env"
    if env_file.exists():
        load_dotenv(env_file, override=False)

    raw: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"Configuration must be a mapping: {config_path}")
    elif explicit:
        raise ConfigError(f"Configuration file not found: {config_path}")

    registry = raw.get("registry") or {}
    if not isinstance(registry, dict):
        raise ConfigError("'registry' must be a mapping")

    logging_cfg = _section(LoggingConfig, raw.get("logging"), "logging")
    if isinstance(logging_cfg.file, str):
        logging_cfg.file = _resolve_path(home, logging_cfg.file)

    try:
        config = RenditionConfig(
            home=home,
            compose_document=_resolve_path(home, registry.get("compose")),
            schema_root=_resolve_path(home, registry.get("schema_root")),
            snapshot_path=_resolve_path(home, registry.get("snapshot")),
            job_store_path=_resolve_path(home, raw.get("job_store")),
            scheduler=_section(SchedulerConfig, raw.get("scheduler"), "scheduler"),
            runners=_section(RunnerConfig, raw.get("runners"), "runners"),
            logging=logging_cfg,
        )
    except TypeError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e

    _apply_env(config)
    config.validate()
    return config
