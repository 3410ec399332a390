"""Tests for rendition.mediatypes.

Tests parsing, canonical form, pattern matching and accept weights.
"""

import pytest

from rendition.errors import InvalidMediaTypeError
from rendition.mediatypes import (
    MediaType,
    coerce,
    is_valid_pattern,
    parse_accept_item,
    parse_media_type,
    parse_pattern,
)


class TestParsing:
    """Tests for media type grammar."""

    def test_parse_simple(self):
        mt = parse_media_type("text/html")
        assert mt.type == "text"
        assert mt.subtype == "html"
        assert mt.params == ()

    def test_case_and_whitespace_normalized(self):
        mt = parse_media_type("Image/PNG ; DPI=96")
        assert mt.essence == "image/png"
        assert mt.param("dpi") == "96"
        assert str(mt) == "image/png;dpi=96"

    def test_parameter_order_is_canonical(self):
        a = parse_media_type("image/png;width=640;dpi=96")
        b = parse_media_type("image/png; dpi=96; width=640")
        assert a == b
        assert hash(a) == hash(b)
        assert str(a) == "image/png;dpi=96;width=640"

    def test_quoted_parameter_value(self):
        mt = parse_media_type('text/plain;profile="a;b"')
        assert mt.param("profile") == "a;b"
        assert str(mt) == 'text/plain;profile="a;b"'

    @pytest.mark.parametrize("text", ["", "   ", "text", "text/html/extra", "text/html;dpi", "te xt/html"])
    def test_malformed_rejected(self, text):
        with pytest.raises(InvalidMediaTypeError):
            parse_media_type(text)

    def test_concrete_rejects_wildcards(self):
        with pytest.raises(InvalidMediaTypeError):
            parse_media_type("image/*")

    def test_type_wildcard_requires_subtype_wildcard(self):
        with pytest.raises(InvalidMediaTypeError):
            parse_pattern("*/png")

    def test_duplicate_parameter_rejected(self):
        with pytest.raises(InvalidMediaTypeError):
            parse_media_type("image/png;dpi=96;dpi=192")

    def test_invalid_media_type_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_media_type("nonsense")


class TestStrictPatterns:
    """Registry patterns only allow recognized parameters."""

    def test_recognized_parameters_allowed(self):
        pattern = parse_pattern("image/png;dpi=96;width=640;page=1;role=thumbnail;profile=x")
        assert pattern.significant_params() == {
            "dpi": "96",
            "page": "1",
            "profile": "x",
            "role": "thumbnail",
            "width": "640",
        }

    def test_unrecognized_parameter_rejected(self):
        with pytest.raises(InvalidMediaTypeError):
            parse_pattern("text/html;charset=utf-8")

    def test_lenient_keeps_unrecognized_parameter(self):
        pattern = parse_pattern("text/html;charset=utf-8", strict=False)
        assert pattern.param("charset") == "utf-8"
        assert pattern.significant_params() == {}

    def test_weight_not_allowed_in_registry_pattern(self):
        with pytest.raises(InvalidMediaTypeError):
            parse_pattern("image/png;q=0.5")

    def test_is_valid_pattern(self):
        assert is_valid_pattern("image/*")
        assert is_valid_pattern("*/*")
        assert not is_valid_pattern("image")
        assert not is_valid_pattern("image/png;foo=bar")


class TestMatching:
    """Pattern to concrete media type matching."""

    def test_exact_match(self):
        assert parse_pattern("image/png").matches(parse_media_type("image/png"))

    def test_subtype_wildcard(self):
        assert parse_pattern("image/*").matches(parse_media_type("image/webp"))
        assert not parse_pattern("image/*").matches(parse_media_type("text/html"))

    def test_full_wildcard(self):
        assert parse_pattern("*/*").matches(parse_media_type("application/pdf"))

    def test_conflicting_parameter(self):
        assert not parse_pattern("image/png;dpi=96").matches(parse_media_type("image/png;dpi=192"))

    def test_pattern_without_parameter_matches_any_value(self):
        assert parse_pattern("image/png").matches(parse_media_type("image/png;dpi=192"))

    def test_candidate_without_parameter_matches(self):
        """A parameter the candidate leaves unspecified is a wildcard."""
        assert parse_pattern("image/png;dpi=96").matches(parse_media_type("image/png"))

    def test_unrecognized_parameters_ignored(self):
        pattern = parse_pattern("text/html;charset=utf-8", strict=False)
        assert pattern.matches(parse_media_type("text/html;charset=latin1"))

    def test_overlaps_is_symmetric(self):
        a = parse_pattern("image/*")
        b = parse_pattern("image/png;dpi=96")
        assert a.overlaps(b)
        assert b.overlaps(a)
        assert not parse_pattern("text/*").overlaps(b)


class TestAcceptItems:
    """Client accept list items with weights."""

    def test_no_weight(self):
        pattern, weight = parse_accept_item("image/png")
        assert pattern == parse_media_type("image/png")
        assert weight is None

    def test_weight_parsed_and_removed(self):
        pattern, weight = parse_accept_item("image/png;q=0.5;dpi=96")
        assert weight == 0.5
        assert pattern.param("q") is None
        assert pattern.param("dpi") == "96"

    @pytest.mark.parametrize("text", ["image/png;q=1.5", "image/png;q=-0.1", "image/png;q=abc"])
    def test_invalid_weight(self, text):
        with pytest.raises(InvalidMediaTypeError):
            parse_accept_item(text)


class TestCoerce:

    def test_passthrough(self):
        mt = MediaType("text", "html")
        assert coerce(mt) is mt

    def test_string(self):
        assert coerce("text/html") == MediaType("text", "html")

    def test_pattern_mode_allows_wildcards(self):
        assert coerce("image/*", pattern=True).is_wildcard
