"""
Media types and media-type patterns.

Grammar (RFC 6838 names, RFC 9110 parameters):

    type "/" subtype *( ";" name "=" ( token / quoted-string ) )

Only a small set of parameters is significant to matching:
profile, role, dpi, page, width. Registry patterns are parsed strictly
(unrecognized parameters are rejected); client accept lists and
representation media types are parsed leniently (unrecognized parameters
are kept for display but ignored when matching).

Patterns may use a wildcard subtype (image/*) or a full wildcard (*/*).
Concrete media types (representations, transform outputs) may not.

Matching rule: base type/subtype must be equal (or wildcarded on the
pattern side) and every recognized parameter the pattern specifies must be
compatible with the candidate. A parameter that either side leaves
unspecified is a wildcard.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from rendition.errors import InvalidMediaTypeError


RECOGNIZED_PARAMETERS = ("profile", "role", "dpi", "page", "width")

# Accept weight, only meaningful in capability statements
WEIGHT_PARAMETER = "q"

WILDCARD = "*"

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9!#$&^_.+-]{0,126}$")
_TOKEN_RE = re.compile(r"^[A-Za-z0-9!#$%&'*+.^_`|~-]+$")


@dataclass(frozen=True)
class MediaType:
    """
    A parsed media type or media-type pattern.

    Parameters are stored sorted by name so that two spellings of the same
    media type compare (and hash) equal.
    """
    type: str
    subtype: str
    params: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    @property
    def essence(self) -> str:
        """type/subtype without parameters."""
        return f"{self.type}/{self.subtype}"

    @property
    def is_wildcard(self) -> bool:
        return self.type == WILDCARD or self.subtype == WILDCARD

    @property
    def is_concrete(self) -> bool:
        return not self.is_wildcard

    def param(self, name: str) -> Optional[str]:
        """Get a parameter value by (case-insensitive) name."""
        name = name.lower()
        for key, value in self.params:
            if key == name:
                return value
        return None

    def int_param(self, name: str) -> Optional[int]:
        """Get a numeric parameter, or None when absent or not an integer."""
        value = self.param(name)
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    def significant_params(self) -> dict[str, str]:
        """Parameters that participate in matching."""
        return {k: v for k, v in self.params if k in RECOGNIZED_PARAMETERS}

    def with_params(self, **params: str) -> "MediaType":
        merged = dict(self.params)
        merged.update({k.lower(): str(v) for k, v in params.items()})
        return MediaType(self.type, self.subtype, tuple(sorted(merged.items())))

    def without_params(self) -> "MediaType":
        return MediaType(self.type, self.subtype)

    def matches(self, candidate: "MediaType") -> bool:
        """
        Check whether this pattern accepts a concrete candidate media type.

        Args:
            candidate: The media type of a representation (or a rule output)

        Returns:
            True if base types are equal (or wildcarded here) and every
            recognized parameter specified by this pattern is compatible.
        """
        if self.type != WILDCARD and self.type != candidate.type:
            return False
        if self.subtype != WILDCARD and self.subtype != candidate.subtype:
            return False
        return _params_compatible(self.significant_params(), candidate.significant_params())

    def overlaps(self, other: "MediaType") -> bool:
        """
        Symmetric pattern-to-pattern compatibility.

        Used to decide whether a transform rule's output can satisfy an
        accept pattern when either side may carry wildcards.
        """
        if WILDCARD not in (self.type, other.type) and self.type != other.type:
            return False
        if WILDCARD not in (self.subtype, other.subtype) and self.subtype != other.subtype:
            return False
        return _params_compatible(self.significant_params(), other.significant_params())

    def __str__(self) -> str:
        parts = [self.essence]
        for key, value in self.params:
            parts.append(f"{key}={_quote(value)}")
        return ";".join(parts)


def _params_compatible(left: dict[str, str], right: dict[str, str]) -> bool:
    for name, value in left.items():
        other = right.get(name)
        if other is not None and other != value:
            return False
    return True


def _quote(value: str) -> str:
    if _TOKEN_RE.match(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _split_params(text: str) -> list[str]:
    """Split on ';' outside of quoted strings."""
    parts: list[str] = []
    current: list[str] = []
    in_quotes = False
    escaped = False
    for ch in text:
        if escaped:
            current.append(ch)
            escaped = False
        elif ch == "\\" and in_quotes:
            current.append(ch)
            escaped = True
        elif ch == '"':
            current.append(ch)
            in_quotes = not in_quotes
        elif ch == ";" and not in_quotes:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    if in_quotes:
        raise InvalidMediaTypeError(f"Unterminated quoted string in media type: {text!r}")
    parts.append("".join(current))
    return parts


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        inner = value[1:-1]
        return re.sub(r"\\(.)", r"\1", inner)
    return value


def _parse(
    text: str,
    *,
    allow_wildcards: bool,
    strict: bool,
    allow_weight: bool,
) -> tuple[MediaType, Optional[float]]:
    if not isinstance(text, str) or not text.strip():
        raise InvalidMediaTypeError(f"Empty media type: {text!r}")

    segments = _split_params(text.strip())
    essence = segments[0].strip().lower()
    if essence.count("/") != 1:
        raise InvalidMediaTypeError(f"Media type must be type/subtype: {text!r}")
    type_, subtype = essence.split("/")

    if type_ == WILDCARD or subtype == WILDCARD:
        if not allow_wildcards:
            raise InvalidMediaTypeError(f"Wildcards not allowed here: {text!r}")
        if type_ == WILDCARD and subtype != WILDCARD:
            raise InvalidMediaTypeError(f"Invalid wildcard form: {text!r}")
    for part in (type_, subtype):
        if part != WILDCARD and not _NAME_RE.match(part):
            raise InvalidMediaTypeError(f"Invalid media type name {part!r} in {text!r}")

    params: dict[str, str] = {}
    weight: Optional[float] = None
    for raw in segments[1:]:
        raw = raw.strip()
        if not raw:
            continue
        if "=" not in raw:
            raise InvalidMediaTypeError(f"Parameter without value {raw!r} in {text!r}")
        name, value = raw.split("=", 1)
        name = name.strip().lower()
        value = _unquote(value.strip())
        if not _NAME_RE.match(name):
            raise InvalidMediaTypeError(f"Invalid parameter name {name!r} in {text!r}")

        if name == WEIGHT_PARAMETER and allow_weight:
            try:
                weight = float(value)
            except ValueError:
                raise InvalidMediaTypeError(f"Invalid weight {value!r} in {text!r}")
            if not 0.0 <= weight <= 1.0:
                raise InvalidMediaTypeError(f"Weight out of range [0, 1] in {text!r}")
            continue

        if strict and name not in RECOGNIZED_PARAMETERS:
            raise InvalidMediaTypeError(
                f"Unrecognized parameter {name!r} in {text!r}. "
                f"Recognized: {', '.join(RECOGNIZED_PARAMETERS)}"
            )
        if name in params:
            raise InvalidMediaTypeError(f"Duplicate parameter {name!r} in {text!r}")
        params[name] = value

    return MediaType(type_, subtype, tuple(sorted(params.items()))), weight


def parse_media_type(text: str, strict: bool = False) -> MediaType:
    """
    Parse a concrete media type (no wildcards).

    Args:
        text: e.g. "image/png; dpi=96"
        strict: Reject parameters outside RECOGNIZED_PARAMETERS

    Raises:
        InvalidMediaTypeError: On any grammar violation
    """
    media_type, _ = _parse(text, allow_wildcards=False, strict=strict, allow_weight=False)
    return media_type


def parse_pattern(text: str, strict: bool = True) -> MediaType:
    """
    Parse a media-type pattern as used in registry documents.

    Wildcards are allowed; weights are not.
    """
    pattern, _ = _parse(text, allow_wildcards=True, strict=strict, allow_weight=False)
    return pattern


def parse_accept_item(text: str) -> tuple[MediaType, Optional[float]]:
    """
    Parse one item of a client accept list.

    Returns:
        (pattern, weight) where weight is None when no q parameter is given
    """
    return _parse(text, allow_wildcards=True, strict=False, allow_weight=True)


def coerce(value: "MediaType | str", *, pattern: bool = False) -> MediaType:
    """Accept either a MediaType or its string form."""
    if isinstance(value, MediaType):
        return value
    if pattern:
        return parse_pattern(value, strict=False)
    return parse_media_type(value)


def is_valid_pattern(text: str) -> bool:
    """Check registry pattern syntax without raising."""
    try:
        parse_pattern(text, strict=True)
    except InvalidMediaTypeError:
        return False
    return True
