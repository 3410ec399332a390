"""
Content addressing for delivered variants.

    /content/{manifestId}/blocks/{blockId}/variants/{encodedMediaType}/{contentHash}

The media type is percent-encoded as a single path segment (slashes,
semicolons and equals signs included). The content hash makes the path
immutable: a new rendition of the same block and media type gets a new path.
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, unquote

from rendition.mediatypes import MediaType, coerce, parse_media_type
from rendition.schemas import Representation


CONTENT_PREFIX = "/content"


@dataclass(frozen=True)
class VariantAddress:
    manifest_id: str
    block_id: str
    media_type: MediaType
    content_hash: str

    @property
    def path(self) -> str:
        return variant_path(self.manifest_id, self.block_id, self.media_type, self.content_hash)


def _segment(value: str, name: str) -> str:
    if not value:
        raise ValueError(f"{name} must not be empty")
    return quote(value, safe="")


def variant_path(
    manifest_id: str,
    block_id: str,
    media_type: "MediaType | str",
    content_hash: str,
) -> str:
    """
    Build the immutable content path of a variant.

    Example:
        >>> variant_path("m1", "b7", "image/png;width=640", "sha256:ab12")
        '/content/m1/blocks/b7/variants/image%2Fpng%3Bwidth%3D640/sha256%3Aab12'
    """
    mt = coerce(media_type)
    return "/".join([
        CONTENT_PREFIX,
        _segment(manifest_id, "manifest_id"),
        "blocks",
        _segment(block_id, "block_id"),
        "variants",
        _segment(str(mt), "media_type"),
        _segment(content_hash, "content_hash"),
    ])


def representation_path(manifest_id: str, block_id: str, representation: Representation) -> str:
    """Content path of a representation (by its content hash, or identity hash when undeclared)."""
    return variant_path(manifest_id, block_id, representation.media_type, representation.identity_hash())


def parse_variant_path(path: str) -> VariantAddress:
    """
    Parse a path built by variant_path().

    Raises:
        ValueError: If the path does not have the variant layout
        InvalidMediaTypeError: If the media type segment is not a media type
    """
    parts = path.strip("/").split("/")
    if (
        len(parts) != 7
        or "/" + parts[0] != CONTENT_PREFIX
        or parts[2] != "blocks"
        or parts[4] != "variants"
        or not all(parts)
    ):
        raise ValueError(f"Not a variant path: {path}")
    return VariantAddress(
        manifest_id=unquote(parts[1]),
        block_id=unquote(parts[3]),
        media_type=parse_media_type(unquote(parts[5])),
        content_hash=unquote(parts[6]),
    )


def try_parse_variant_path(path: str) -> Optional[VariantAddress]:
    try:
        return parse_variant_path(path)
    except ValueError:
        return None
