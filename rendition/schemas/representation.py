"""
Representation schema - one concrete renderable form of a block.

A Representation pairs a media type with a payload. The payload is a tagged
union discriminated by its `type` field:

    InlinePayload   {"type": "inline", "data": ..., "encoding": "utf-8" | "base64"}
    ExternalPayload {"type": "external", "uri": ...}

Consumers branch on `payload.type` and must handle both variants; there is
no Representation subclass per payload kind.

Representations are immutable. Producing a new variant (e.g. by a
transform) creates a new Representation; it never edits an existing one.
"""

import base64
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional, Union

from rendition.mediatypes import MediaType, coerce
from rendition.utils import sha256_prefixed


PayloadType = Literal["inline", "external"]


@dataclass(frozen=True)
class InlinePayload:
    """Content carried inside the representation itself."""
    data: str
    encoding: Literal["utf-8", "base64"] = "utf-8"
    type: Literal["inline"] = field(default="inline", init=False)

    def __post_init__(self):
        if self.encoding not in ("utf-8", "base64"):
            raise ValueError(f"Unsupported inline encoding: {self.encoding}")

    def raw_bytes(self) -> bytes:
        if self.encoding == "base64":
            return base64.b64decode(self.data)
        return self.data.encode("utf-8")

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data, "encoding": self.encoding}


@dataclass(frozen=True)
class ExternalPayload:
    """Content stored elsewhere and addressed by URI."""
    uri: str
    type: Literal["external"] = field(default="external", init=False)

    def __post_init__(self):
        if not self.uri:
            raise ValueError("External payload requires a uri")

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "uri": self.uri}


Payload = Union[InlinePayload, ExternalPayload]


def payload_from_dict(data: dict[str, Any]) -> Payload:
    """Deserialize a payload by its discriminator."""
    kind = data.get("type")
    if kind == "inline":
        return InlinePayload(data=data["data"], encoding=data.get("encoding", "utf-8"))
    elif kind == "external":
        return ExternalPayload(uri=data["uri"])
    raise ValueError(f"Unknown payload type: {kind!r}")


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class Representation:
    """
    One concrete form of a block's content.

    Attributes:
        media_type: Concrete media type with parameters (profile, role, dpi, page, width)
        payload: InlinePayload or ExternalPayload
        width, height: Pixel dimensions for visual content
        duration: Seconds, for time-based media
        bytes: Payload size in bytes
        content_hash: "sha256:<hex>" of the payload bytes
        generated_by: Tool (or person) that produced this representation
        tool_version: Version of the producing tool
        created_at: When this representation was produced
        transform_key: TransformKey of the job that produced it, if any
    """
    media_type: MediaType
    payload: Payload
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    bytes: Optional[int] = None
    content_hash: Optional[str] = None
    generated_by: Optional[str] = None
    tool_version: Optional[str] = None
    created_at: Optional[datetime] = None
    transform_key: Optional[str] = None

    @property
    def is_inline(self) -> bool:
        return self.payload.type == "inline"

    @property
    def effective_width(self) -> Optional[int]:
        """Width from the explicit field, else from the width= parameter."""
        if self.width is not None:
            return self.width
        return self.media_type.int_param("width")

    @property
    def dpi(self) -> Optional[int]:
        return self.media_type.int_param("dpi")

    @property
    def has_provenance(self) -> bool:
        """True when the mandatory provenance fields of a generated output are present."""
        return bool(self.content_hash) and bool(self.tool_version)

    def identity_hash(self) -> str:
        """
        Hash identifying this representation's content for transform keys.

        Uses the declared content hash; inline payloads without one are
        hashed directly, external payloads without one fall back to their URI.
        """
        if self.content_hash:
            return self.content_hash
        payload = self.payload
        if payload.type == "inline":
            return sha256_prefixed(payload.raw_bytes())
        elif payload.type == "external":
            return sha256_prefixed(f"uri:{payload.uri}")
        raise ValueError(f"Unknown payload type: {payload.type!r}")

    def locator(self) -> str:
        """
        Locator handed to runners.

        External payloads use their URI; inline payloads become a data: URI.
        """
        payload = self.payload
        if payload.type == "external":
            return payload.uri
        elif payload.type == "inline":
            encoded = base64.b64encode(payload.raw_bytes()).decode("ascii")
            return f"data:{self.media_type};base64,{encoded}"
        raise ValueError(f"Unknown payload type: {payload.type!r}")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "mediaType": str(self.media_type),
            "payload": self.payload.to_dict(),
        }
        optional = {
            "width": self.width,
            "height": self.height,
            "duration": self.duration,
            "bytes": self.bytes,
            "contentHash": self.content_hash,
            "generatedBy": self.generated_by,
            "toolVersion": self.tool_version,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "transformKey": self.transform_key,
        }
        result.update({k: v for k, v in optional.items() if v is not None})
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Representation":
        """
        Deserialize from dictionary.

        Accepts the nested form produced by to_dict() as well as the flat
        payload-source form {"type", "mediaType", "source" | "uri", ...}.
        """
        if "payload" in data:
            payload = payload_from_dict(data["payload"])
        elif data.get("type") == "inline":
            if data.get("source") is None:
                raise ValueError("Inline content source is missing")
            payload = InlinePayload(data=data["source"], encoding=data.get("encoding", "utf-8"))
        elif data.get("type") == "external":
            if not data.get("uri"):
                raise ValueError("External content URI is missing")
            payload = ExternalPayload(uri=data["uri"])
        else:
            raise ValueError(f"Representation has no payload: {data}")

        return cls(
            media_type=coerce(data["mediaType"]),
            payload=payload,
            width=data.get("width"),
            height=data.get("height"),
            duration=data.get("duration"),
            bytes=data.get("bytes"),
            content_hash=data.get("contentHash"),
            generated_by=data.get("generatedBy"),
            tool_version=data.get("toolVersion"),
            created_at=parse_datetime(data.get("createdAt")),
            transform_key=data.get("transformKey"),
        )

    @classmethod
    def inline(cls, media_type: "MediaType | str", data: str, **kwargs: Any) -> "Representation":
        """Shorthand for a UTF-8 inline representation."""
        return cls(media_type=coerce(media_type), payload=InlinePayload(data=data), **kwargs)

    @classmethod
    def external(cls, media_type: "MediaType | str", uri: str, **kwargs: Any) -> "Representation":
        """Shorthand for an externally stored representation."""
        return cls(media_type=coerce(media_type), payload=ExternalPayload(uri=uri), **kwargs)
