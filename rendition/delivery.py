"""
Delivery facade - negotiate, transform when needed, return one representation.

    deliver(kind_id, available, capabilities)
        -> resolver: Selected        -> that representation
                     NeedsTransform  -> scheduler.submit + wait -> generated representation
                     Unsatisfiable   -> DeliveryError

Generated representations are recorded per block in a RepresentationIndex
(fed by the scheduler's on_result callback), so later requests for the same
block select them directly instead of transforming again.
"""

import logging
import threading
from typing import Optional, Sequence

from rendition.errors import DeliveryError, TransformError
from rendition.resolver import NeedsTransform, Resolution, Selected, Unsatisfiable, VariantResolver
from rendition.scheduler import TransformScheduler
from rendition.schemas import Block, BlockRef, CapabilityStatement, Representation, TransformRequest

logger = logging.getLogger(__name__)


class RepresentationIndex:
    """Generated representations per block."""

    def __init__(self):
        self._generated: dict[BlockRef, list[Representation]] = {}
        self._lock = threading.Lock()

    def add(self, block: BlockRef, representation: Representation) -> None:
        with self._lock:
            existing = self._generated.setdefault(block, [])
            if any(r.identity_hash() == representation.identity_hash() and r.media_type == representation.media_type
                   for r in existing):
                return
            existing.append(representation)

    def add_result(self, request: TransformRequest, representation: Representation) -> None:
        """Scheduler on_result callback."""
        if request.block is not None:
            self.add(request.block, representation)

    def generated(self, block: BlockRef) -> tuple[Representation, ...]:
        with self._lock:
            return tuple(self._generated.get(block, ()))

    def available(self, block: Optional[BlockRef], base: Sequence[Representation]) -> tuple[Representation, ...]:
        """The block's own representations followed by those generated for it."""
        if block is None:
            return tuple(base)
        return tuple(base) + self.generated(block)


class DeliveryService:
    """
    Usage:
        service = DeliveryService(VariantResolver(store), scheduler)
        representation = service.deliver("core:image", reps, caps, block=BlockRef("m1", "b1"))
    """

    def __init__(
        self,
        resolver: VariantResolver,
        scheduler: TransformScheduler,
        index: Optional[RepresentationIndex] = None,
        default_timeout: Optional[float] = None,
    ):
        self._resolver = resolver
        self._scheduler = scheduler
        self._index = index or RepresentationIndex()
        self._default_timeout = default_timeout
        scheduler.on_result(self._index.add_result)

    @property
    def index(self) -> RepresentationIndex:
        return self._index

    def negotiate(
        self,
        kind_id: str,
        available: Sequence[Representation],
        capabilities: CapabilityStatement,
        block: Optional[BlockRef] = None,
    ) -> Resolution:
        """Resolve against the block's representations plus those generated for it."""
        return self._resolver.resolve(kind_id, self._index.available(block, available), capabilities, block=block)

    def deliver(
        self,
        kind_id: str,
        available: Sequence[Representation],
        capabilities: CapabilityStatement,
        block: Optional[BlockRef] = None,
        timeout: Optional[float] = None,
    ) -> Representation:
        """
        Deliver the best representation, transforming if needed.

        Raises:
            UnknownKindError: If kind_id is not registered
            DeliveryError: On Unsatisfiable, or when the transform fails or
                does not finish within timeout
        """
        resolution = self.negotiate(kind_id, available, capabilities, block)

        if isinstance(resolution, Selected):
            return resolution.representation

        if isinstance(resolution, NeedsTransform):
            handle = self._scheduler.submit(resolution.request)
            wait = timeout if timeout is not None else self._default_timeout
            try:
                return self._scheduler.wait(handle, wait)
            except TransformError as e:
                logger.warning(f"Delivery of {kind_id} failed: {e}", extra={"kind_id": kind_id})
                raise DeliveryError(kind_id, str(e), cause=e) from e

        if isinstance(resolution, Unsatisfiable):
            raise DeliveryError(kind_id, resolution.reason)

        raise TypeError(f"Unknown resolution: {resolution!r}")

    def deliver_block(
        self,
        manifest_id: str,
        block: Block,
        capabilities: CapabilityStatement,
        timeout: Optional[float] = None,
    ) -> Representation:
        return self.deliver(
            block.kind,
            block.representations(),
            capabilities,
            block=BlockRef(manifest_id, block.block_id),
            timeout=timeout,
        )
