"""Tests for rendition.addressing."""

import pytest

from rendition.addressing import (
    VariantAddress,
    parse_variant_path,
    representation_path,
    try_parse_variant_path,
    variant_path,
)
from rendition.errors import InvalidMediaTypeError
from rendition.mediatypes import parse_media_type
from rendition.schemas import Representation


class TestVariantPath:

    def test_layout(self):
        path = variant_path("m1", "b7", "image/png;width=640", "sha256:ab12")
        assert path == "/content/m1/blocks/b7/variants/image%2Fpng%3Bwidth%3D640/sha256%3Aab12"

    def test_media_type_canonicalized(self):
        a = variant_path("m1", "b1", "image/png; width=640; dpi=96", "sha256:x")
        b = variant_path("m1", "b1", "image/png;dpi=96;width=640", "sha256:x")
        assert a == b

    def test_identifiers_encoded(self):
        path = variant_path("manifest/one", "block 2", "text/html", "sha256:x")
        assert "/content/manifest%2Fone/blocks/block%202/" in path

    @pytest.mark.parametrize("args", [
        ("", "b", "text/html", "sha256:x"),
        ("m", "", "text/html", "sha256:x"),
        ("m", "b", "text/html", ""),
    ])
    def test_empty_segment(self, args):
        with pytest.raises(ValueError):
            variant_path(*args)

    def test_representation_path_uses_content_hash(self, png_rep):
        assert representation_path("m1", "b1", png_rep).endswith("/sha256%3A" + "a" * 64)

    def test_representation_path_without_declared_hash(self):
        rep = Representation.inline("text/plain", "hi")
        assert representation_path("m1", "b1", rep).endswith(rep.identity_hash().replace(":", "%3A"))


class TestParseVariantPath:

    def test_parse(self):
        address = parse_variant_path("/content/m1/blocks/b7/variants/image%2Fpng%3Bwidth%3D640/sha256%3Aab12")
        assert address == VariantAddress(
            manifest_id="m1",
            block_id="b7",
            media_type=parse_media_type("image/png;width=640"),
            content_hash="sha256:ab12",
        )

    def test_address_path_inverts_parse(self):
        path = variant_path("manifest/one", "block 2", "text/html", "sha256:x")
        assert parse_variant_path(path).path == path

    @pytest.mark.parametrize("path", [
        "/content/m1/blocks/b7/variants/text%2Fhtml",
        "/files/m1/blocks/b7/variants/text%2Fhtml/sha256%3Ax",
        "/content/m1/block/b7/variants/text%2Fhtml/sha256%3Ax",
        "/content/m1/blocks/b7/variant/text%2Fhtml/sha256%3Ax",
        "/content//blocks/b7/variants/text%2Fhtml/sha256%3Ax",
    ])
    def test_not_a_variant_path(self, path):
        with pytest.raises(ValueError, match="Not a variant path"):
            parse_variant_path(path)
        assert try_parse_variant_path(path) is None

    def test_bad_media_type(self):
        with pytest.raises(InvalidMediaTypeError):
            parse_variant_path("/content/m1/blocks/b7/variants/nonsense/sha256%3Ax")
