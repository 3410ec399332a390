"""
Content loading - turn a representation's payload into usable data.

ContentLoader delegates to a LoadingStrategy:
- EagerLoadingStrategy: inline payloads are decoded directly, external
  payloads are fetched over HTTP (httpx) when load() is called
- LazyLoadingStrategy: returns a LazyContentHandle that fetches on first get()

Normalization:
- text/* media types decode to str, everything else is bytes
- metadata carries width and height when the representation declares them
- a declared sha256 contentHash must match the loaded bytes
"""

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

import httpx

from rendition.errors import ContentResolutionError, ContentResolutionErrorType, RunnerError
from rendition.runners.base import read_locator
from rendition.schemas import BlockContent, Representation

logger = logging.getLogger(__name__)


DEFAULT_FETCH_TIMEOUT = 30.0


@dataclass(frozen=True)
class NormalizedContent:
    content_type: str
    data: Union[str, bytes]
    metadata: dict[str, Any] = field(default_factory=dict)


def _metadata(representation: Representation) -> dict[str, Any]:
    return {"width": representation.width, "height": representation.height}


def _normalize(representation: Representation, raw: bytes) -> NormalizedContent:
    expected = representation.content_hash
    if expected and expected.startswith("sha256:"):
        actual = f"sha256:{hashlib.sha256(raw).hexdigest()}"
        if actual != expected:
            raise ContentResolutionError(
                ContentResolutionErrorType.INVALID_CONTENT,
                f"Content hash mismatch: expected {expected}, got {actual}",
            )

    media_type = representation.media_type
    data: Union[str, bytes] = raw
    if media_type.type == "text":
        charset = media_type.param("charset") or "utf-8"
        try:
            data = raw.decode(charset)
        except (UnicodeDecodeError, LookupError) as e:
            raise ContentResolutionError(
                ContentResolutionErrorType.INVALID_CONTENT,
                f"Text content is not valid {charset}",
                e,
            ) from e
    return NormalizedContent(content_type=str(media_type), data=data, metadata=_metadata(representation))


class LoadingStrategy(ABC):
    """How a representation's payload is loaded."""

    @abstractmethod
    def resolve(self, representation: Representation) -> "NormalizedContent | LazyContentHandle":
        pass

    def close(self) -> None:
        return None

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class EagerLoadingStrategy(LoadingStrategy):
    """
    Load payloads immediately.

    A client passed in stays owned by the caller; close() only closes the
    client this strategy created.

    Usage:
        with EagerLoadingStrategy() as strategy:
            content = strategy.load(representation)

        strategy = EagerLoadingStrategy(client=httpx.Client(transport=mock))
    """

    def __init__(self, client: Optional[httpx.Client] = None, timeout: float = DEFAULT_FETCH_TIMEOUT):
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(follow_redirects=True)
        self._timeout = timeout

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def fetch(self, uri: str) -> bytes:
        """Fetch an external payload. data: and file: locators are read locally."""
        if not uri.startswith(("http://", "https://")):
            try:
                return read_locator(uri)
            except RunnerError as e:
                raise ContentResolutionError(ContentResolutionErrorType.UNSUPPORTED_TYPE, e.message, e) from e

        try:
            response = self._client.get(uri, timeout=self._timeout)
        except httpx.TimeoutException as e:
            raise ContentResolutionError(
                ContentResolutionErrorType.TIMEOUT,
                f"Timed out fetching external content: {uri}",
                e,
            ) from e
        except httpx.HTTPError as e:
            raise ContentResolutionError(
                ContentResolutionErrorType.NETWORK_ERROR,
                "Failed to fetch external content",
                e,
            ) from e

        if not response.is_success:
            raise ContentResolutionError(
                ContentResolutionErrorType.NETWORK_ERROR,
                f"HTTP error: {response.status_code} {response.reason_phrase}",
            )
        return response.content

    def load(self, representation: Representation) -> NormalizedContent:
        payload = representation.payload
        try:
            if payload.type == "inline":
                raw = payload.raw_bytes()
            elif payload.type == "external":
                raw = self.fetch(payload.uri)
            else:
                raise ContentResolutionError(
                    ContentResolutionErrorType.UNSUPPORTED_TYPE,
                    f"Unknown payload type: {payload.type!r}",
                )
            return _normalize(representation, raw)
        except ContentResolutionError:
            raise
        except (ValueError, TypeError) as e:
            raise ContentResolutionError(
                ContentResolutionErrorType.INVALID_CONTENT,
                "Failed to resolve content",
                e,
            ) from e

    def resolve(self, representation: Representation) -> NormalizedContent:
        return self.load(representation)


class LazyContentHandle:
    """
    Deferred load of one representation.

    status: pending -> loading -> loaded | error, or cancelled.

    The first get() loads outside the lock; concurrent callers wait for it.
    A cancel while loading discards the loaded content.
    """

    def __init__(self, strategy: EagerLoadingStrategy, representation: Representation):
        self._strategy = strategy
        self._representation = representation
        self._lock = threading.Lock()
        self._settled = threading.Event()
        self._content: Optional[NormalizedContent] = None
        self._error: Optional[ContentResolutionError] = None
        self.status: Literal["pending", "loading", "loaded", "error", "cancelled"] = "pending"

    def get(self) -> NormalizedContent:
        """Load on first call; later calls return the same content or raise the same error."""
        with self._lock:
            if self.status == "cancelled":
                raise ContentResolutionError(ContentResolutionErrorType.NETWORK_ERROR, "Content load was cancelled")
            if self.status == "loaded":
                return self._content
            if self.status == "error":
                raise self._error
            loading = self.status == "loading"
            self.status = "loading"

        if loading:
            self._settled.wait()
            return self.get()

        try:
            content = self._strategy.load(self._representation)
        except ContentResolutionError as e:
            self._settle("error", error=e)
        else:
            self._settle("loaded", content=content)
        return self.get()

    def _settle(
        self,
        status: Literal["loaded", "error"],
        content: Optional[NormalizedContent] = None,
        error: Optional[ContentResolutionError] = None,
    ) -> None:
        with self._lock:
            if self.status == "loading":
                self._content = content
                self._error = error
                self.status = status
        self._settled.set()

    def cancel(self) -> None:
        with self._lock:
            if self.status in ("pending", "loading"):
                self.status = "cancelled"
        self._settled.set()


class LazyLoadingStrategy(LoadingStrategy):
    def __init__(self, eager: Optional[EagerLoadingStrategy] = None):
        self._owns_eager = eager is None
        self._eager = eager if eager is not None else EagerLoadingStrategy()

    def close(self) -> None:
        if self._owns_eager:
            self._eager.close()

    def resolve(self, representation: Representation) -> LazyContentHandle:
        return LazyContentHandle(self._eager, representation)

    def cancel(self, handle: LazyContentHandle) -> None:
        handle.cancel()


class ContentLoader:
    """
    Loads representation payloads with a swappable strategy.

    Usage:
        loader = ContentLoader()
        content = loader.load(representation)          # NormalizedContent
        content = loader.load_block(block.content)     # primary representation
    """

    def __init__(self, strategy: Optional[LoadingStrategy] = None):
        self._strategy = strategy or EagerLoadingStrategy()

    @property
    def strategy(self) -> LoadingStrategy:
        return self._strategy

    def set_strategy(self, strategy: LoadingStrategy) -> None:
        self._strategy = strategy

    def load(self, representation: Representation) -> "NormalizedContent | LazyContentHandle":
        return self._strategy.resolve(representation)

    def load_block(self, content: BlockContent) -> "NormalizedContent | LazyContentHandle":
        return self.load(content.primary)

    def close(self) -> None:
        self._strategy.close()
