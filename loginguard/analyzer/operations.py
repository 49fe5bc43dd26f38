"""Primitive expression nodes used by code-driven rules.

Each primitive is a frozen dataclass tagged with an ``OperationType``. Nodes
are hashable, so a node is its own memoization key during evaluation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Mapping, Optional


class OperationType(str, Enum):
    SUBSTRING_PRESENT = "substring_present"
    ALL_SUBSTRINGS_PRESENT = "all_substrings_present"
    SUBSTRING_PROXIMITY = "substring_proximity"
    SUBSTRING_COUNT = "substring_count"
    HAS_BUT_NOT = "has_but_not"
    PATTERN_COUNT = "pattern_count"
    WORD_DENSITY = "word_density"
    SUBSTRING_BEFORE = "substring_before"
    SUBSTRING_IN_RANGE = "substring_in_range"
    ALL_OF = "all_of"
    ANY_OF = "any_of"
    RESOURCE_PATTERN = "resource_pattern"
    RESOURCE_FROM_DOMAIN = "resource_from_domain"
    MULTI_PROXIMITY = "multi_proximity"
    FORM_ACTION_CHECK = "form_action_check"
    OBFUSCATION_CHECK = "obfuscation_check"
    NOT_IF_CONTAINS = "not_if_contains"


class OperationError(ValueError):
    """Raised when an operation definition is malformed."""


@dataclass(frozen=True)
class Operation:
    """Base node. ``invert`` flips the primitive's result."""

    kind: ClassVar[OperationType]
    invert: bool = field(default=False, kw_only=True)


@dataclass(frozen=True)
class SubstringPresent(Operation):
    kind: ClassVar[OperationType] = OperationType.SUBSTRING_PRESENT
    values: tuple[str, ...]


@dataclass(frozen=True)
class AllSubstringsPresent(Operation):
    kind: ClassVar[OperationType] = OperationType.ALL_SUBSTRINGS_PRESENT
    values: tuple[str, ...]


@dataclass(frozen=True)
class SubstringProximity(Operation):
    kind: ClassVar[OperationType] = OperationType.SUBSTRING_PROXIMITY
    word1: str
    word2: str
    max_distance: int


@dataclass(frozen=True)
class SubstringCount(Operation):
    kind: ClassVar[OperationType] = OperationType.SUBSTRING_COUNT
    substrings: tuple[str, ...]
    min_count: int = 1
    max_count: Optional[int] = None


@dataclass(frozen=True)
class HasButNot(Operation):
    kind: ClassVar[OperationType] = OperationType.HAS_BUT_NOT
    required: tuple[str, ...]
    prohibited: tuple[str, ...] = ()
    url_only: bool = False


@dataclass(frozen=True)
class PatternCount(Operation):
    kind: ClassVar[OperationType] = OperationType.PATTERN_COUNT
    patterns: tuple[str, ...]
    min_count: int = 1
    max_count: Optional[int] = None
    flags: str = "gi"


@dataclass(frozen=True)
class WordDensity(Operation):
    kind: ClassVar[OperationType] = OperationType.WORD_DENSITY
    words: tuple[str, ...]
    min_density: float


@dataclass(frozen=True)
class SubstringBefore(Operation):
    kind: ClassVar[OperationType] = OperationType.SUBSTRING_BEFORE
    first: str
    second: str


@dataclass(frozen=True)
class SubstringInRange(Operation):
    kind: ClassVar[OperationType] = OperationType.SUBSTRING_IN_RANGE
    substring: str
    min_position: int = 0
    max_position: Optional[int] = None


@dataclass(frozen=True)
class AllOf(Operation):
    kind: ClassVar[OperationType] = OperationType.ALL_OF
    operations: tuple[Operation, ...]


@dataclass(frozen=True)
class AnyOf(Operation):
    kind: ClassVar[OperationType] = OperationType.ANY_OF
    operations: tuple[Operation, ...]


@dataclass(frozen=True)
class ResourcePattern(Operation):
    kind: ClassVar[OperationType] = OperationType.RESOURCE_PATTERN
    pattern: str
    min_count: int = 1
    max_count: Optional[int] = None
    flags: str = "i"


@dataclass(frozen=True)
class ResourceFromDomain(Operation):
    kind: ClassVar[OperationType] = OperationType.RESOURCE_FROM_DOMAIN
    resource_type: str
    allowed_domains: tuple[str, ...]


@dataclass(frozen=True)
class ProximityPair:
    words: tuple[str, str]
    max_distance: int


@dataclass(frozen=True)
class MultiProximity(Operation):
    kind: ClassVar[OperationType] = OperationType.MULTI_PROXIMITY
    pairs: tuple[ProximityPair, ...]


@dataclass(frozen=True)
class FormActionCheck(Operation):
    kind: ClassVar[OperationType] = OperationType.FORM_ACTION_CHECK
    required_domains: tuple[str, ...]


@dataclass(frozen=True)
class ObfuscationCheck(Operation):
    kind: ClassVar[OperationType] = OperationType.OBFUSCATION_CHECK
    indicators: tuple[str, ...]
    min_matches: int = 1


@dataclass(frozen=True)
class NotIfContains(Operation):
    kind: ClassVar[OperationType] = OperationType.NOT_IF_CONTAINS
    prohibited: tuple[str, ...]


# --- Parsing ----------------------------------------------------------------


def _strings(data: Mapping[str, Any], key: str, required: bool = True) -> tuple[str, ...]:
    raw = data.get(key)
    if raw is None:
        if required:
            raise OperationError(f"missing '{key}'")
        return ()
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        raise OperationError(f"'{key}' must be a list of strings")
    values = tuple(str(item) for item in raw if item is not None and str(item) != "")
    if required and not values:
        raise OperationError(f"'{key}' must not be empty")
    return values


def _text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise OperationError(f"missing '{key}'")
    return value


def _int(data: Mapping[str, Any], key: str, default: Optional[int] = None, required: bool = False) -> Optional[int]:
    value = data.get(key)
    if value is None:
        if required:
            raise OperationError(f"missing '{key}'")
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise OperationError(f"'{key}' must be an integer") from exc


def _float(data: Mapping[str, Any], key: str) -> float:
    try:
        return float(data[key])
    except KeyError as exc:
        raise OperationError(f"missing '{key}'") from exc
    except (TypeError, ValueError) as exc:
        raise OperationError(f"'{key}' must be a number") from exc


def _children(data: Mapping[str, Any]) -> tuple[Operation, ...]:
    raw = data.get("operations")
    if not isinstance(raw, (list, tuple)) or not raw:
        raise OperationError("'operations' must be a non-empty list")
    return tuple(parse_operation(child) for child in raw)


def _pairs(data: Mapping[str, Any]) -> tuple[ProximityPair, ...]:
    raw = data.get("pairs")
    if not isinstance(raw, (list, tuple)) or not raw:
        raise OperationError("'pairs' must be a non-empty list")
    pairs = []
    for item in raw:
        if not isinstance(item, Mapping):
            raise OperationError("proximity pair must be a mapping")
        words = _strings(item, "words")
        if len(words) < 2:
            raise OperationError("proximity pair needs two words")
        pairs.append(ProximityPair(words=(words[0], words[1]), max_distance=_int(item, "max_distance", required=True)))
    return tuple(pairs)


def _build(kind: OperationType, data: Mapping[str, Any], invert: bool) -> Operation:
    if kind is OperationType.SUBSTRING_PRESENT:
        return SubstringPresent(values=_strings(data, "values"), invert=invert)
    if kind is OperationType.ALL_SUBSTRINGS_PRESENT:
        return AllSubstringsPresent(values=_strings(data, "values"), invert=invert)
    if kind is OperationType.SUBSTRING_PROXIMITY:
        return SubstringProximity(
            word1=_text(data, "word1"),
            word2=_text(data, "word2"),
            max_distance=_int(data, "max_distance", required=True),
            invert=invert,
        )
    if kind is OperationType.SUBSTRING_COUNT:
        return SubstringCount(
            substrings=_strings(data, "substrings"),
            min_count=_int(data, "min_count", 1),
            max_count=_int(data, "max_count"),
            invert=invert,
        )
    if kind is OperationType.HAS_BUT_NOT:
        return HasButNot(
            required=_strings(data, "required"),
            prohibited=_strings(data, "prohibited", required=False),
            url_only=bool(data.get("check_url_only") or data.get("url_only")),
            invert=invert,
        )
    if kind is OperationType.PATTERN_COUNT:
        return PatternCount(
            patterns=_strings(data, "patterns"),
            min_count=_int(data, "min_count", 1),
            max_count=_int(data, "max_count"),
            flags=str(data.get("flags") or "gi"),
            invert=invert,
        )
    if kind is OperationType.WORD_DENSITY:
        return WordDensity(words=_strings(data, "words"), min_density=_float(data, "min_density"), invert=invert)
    if kind is OperationType.SUBSTRING_BEFORE:
        return SubstringBefore(first=_text(data, "first"), second=_text(data, "second"), invert=invert)
    if kind is OperationType.SUBSTRING_IN_RANGE:
        return SubstringInRange(
            substring=_text(data, "substring"),
            min_position=_int(data, "min_position", 0),
            max_position=_int(data, "max_position"),
            invert=invert,
        )
    if kind is OperationType.ALL_OF:
        return AllOf(operations=_children(data), invert=invert)
    if kind is OperationType.ANY_OF:
        return AnyOf(operations=_children(data), invert=invert)
    if kind is OperationType.RESOURCE_PATTERN:
        return ResourcePattern(
            pattern=_text(data, "pattern"),
            min_count=_int(data, "min_count", 1),
            max_count=_int(data, "max_count"),
            flags=str(data.get("flags") or "i"),
            invert=invert,
        )
    if kind is OperationType.RESOURCE_FROM_DOMAIN:
        return ResourceFromDomain(
            resource_type=_text(data, "resource_type"),
            allowed_domains=_strings(data, "allowed_domains"),
            invert=invert,
        )
    if kind is OperationType.MULTI_PROXIMITY:
        return MultiProximity(pairs=_pairs(data), invert=invert)
    if kind is OperationType.FORM_ACTION_CHECK:
        return FormActionCheck(required_domains=_strings(data, "required_domains"), invert=invert)
    if kind is OperationType.OBFUSCATION_CHECK:
        return ObfuscationCheck(
            indicators=_strings(data, "indicators"),
            min_matches=_int(data, "min_matches", 1),
            invert=invert,
        )
    if kind is OperationType.NOT_IF_CONTAINS:
        return NotIfContains(prohibited=_strings(data, "prohibited"), invert=invert)
    raise OperationError(f"unsupported operation type: {kind.value}")


def parse_operation(data: Any, flags: str | None = None) -> Operation:
    """Build an Operation tree from a rule-feed ``code_logic`` mapping.

    Older feeds use a handful of ad-hoc ``code_logic`` types; those are
    rewritten into equivalent primitive trees before parsing. ``flags`` is
    the owning indicator's regex flags, used by the legacy regex forms.
    """
    if not isinstance(data, Mapping):
        raise OperationError("operation must be a mapping")
    type_name = str(data.get("type") or "").strip()
    if type_name in LEGACY_TYPES:
        data = lower_legacy(data, flags)
        type_name = data["type"]
    try:
        kind = OperationType(type_name)
    except ValueError as exc:
        raise OperationError(f"unknown operation type: {type_name or '<missing>'}") from exc
    return _build(kind, data, bool(data.get("invert", False)))


# --- Legacy code_logic forms ---------------------------------------------------

LEGACY_TYPES = frozenset(
    {
        "substring",
        "substring_not",
        "allowlist",
        "substring_not_allowlist",
        "substring_or_regex",
        "substring_with_exclusions",
    }
)


def _literal_all(values: list[str], invert: bool = False) -> dict:
    """Case-sensitive 'every value present' via obfuscation_check."""
    return {
        "type": "obfuscation_check",
        "indicators": values,
        "min_matches": len(values) if not invert else 1,
        "invert": invert,
    }


def lower_legacy(data: Mapping[str, Any], flags: str | None = None) -> dict:
    """Rewrite a legacy ``code_logic`` mapping as a primitive-tree mapping."""
    kind = data.get("type")
    regex_flags = str(data.get("flags") or flags or "i")

    if kind == "substring":
        return _literal_all(list(data.get("substrings") or []))

    if kind == "substring_not":
        ops = [_literal_all(list(data.get("substrings") or []))]
        not_substrings = list(data.get("not_substrings") or [])
        if not_substrings:
            ops.append(_literal_all(not_substrings, invert=True))
        return {"type": "all_of", "operations": ops}

    if kind == "allowlist":
        ops = []
        if data.get("allowlist"):
            ops.append({"type": "not_if_contains", "prohibited": list(data["allowlist"])})
        ops.append({"type": "pattern_count", "patterns": [data.get("optimized_pattern")], "min_count": 1, "flags": regex_flags})
        return {"type": "all_of", "operations": ops}

    if kind == "substring_not_allowlist":
        ops = [_literal_all([data.get("substring")])]
        if data.get("allowlist"):
            ops.append({"type": "not_if_contains", "prohibited": list(data["allowlist"])})
        return {"type": "all_of", "operations": ops}

    if kind == "substring_or_regex":
        ops = []
        if data.get("substrings"):
            ops.append({"type": "substring_present", "values": list(data["substrings"])})
        if data.get("regex"):
            ops.append({"type": "pattern_count", "patterns": [data["regex"]], "min_count": 1, "flags": regex_flags})
        return {"type": "any_of", "operations": ops}

    if kind == "substring_with_exclusions":
        ops = []
        if data.get("exclude_if_contains"):
            ops.append({"type": "not_if_contains", "prohibited": list(data["exclude_if_contains"])})
        if data.get("match_any"):
            ops.append({"type": "substring_present", "values": list(data["match_any"])})
        elif data.get("match_pattern_parts"):
            ops.append(
                {
                    "type": "all_of",
                    "operations": [
                        {"type": "substring_present", "values": list(group)}
                        for group in data["match_pattern_parts"]
                    ],
                }
            )
        else:
            raise OperationError("substring_with_exclusions needs match_any or match_pattern_parts")
        return {"type": "all_of", "operations": ops}

    raise OperationError(f"not a legacy operation type: {kind}")
