"""Evaluator for primitive expression trees.

All primitives read the page source unless noted; substring checks are
case-insensitive. A failing primitive evaluates to False and never raises.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Callable, Optional

from . import html_extract
from .operations import (
    AllOf,
    AllSubstringsPresent,
    AnyOf,
    FormActionCheck,
    HasButNot,
    MultiProximity,
    NotIfContains,
    ObfuscationCheck,
    Operation,
    OperationType,
    PatternCount,
    ResourceFromDomain,
    ResourcePattern,
    SubstringBefore,
    SubstringCount,
    SubstringInRange,
    SubstringPresent,
    SubstringProximity,
    WordDensity,
)
from .patterns import PatternCache, patterns as shared_patterns
from .rule_models import ScanInput

logger = logging.getLogger(__name__)


class EvaluationContext:
    """Per-scan state: the corpus and the memo of already evaluated nodes."""

    def __init__(self, corpus: ScanInput):
        self.corpus = corpus
        self.cache: dict[Operation, bool] = {}
        self.hits = 0
        self.misses = 0


def _window_contains(lower: str, index: int, word_len: int, distance: int, needle: str) -> bool:
    start = max(0, index - distance)
    end = min(len(lower), index + word_len + distance)
    return needle in lower[start:end]


def _within(count: float, minimum: float, maximum: Optional[float]) -> bool:
    upper = math.inf if maximum is None else maximum
    return minimum <= count <= upper


class PrimitiveEvaluator:
    """Evaluates Operation trees against a ScanInput."""

    def __init__(self, pattern_cache: Optional[PatternCache] = None):
        self.patterns = pattern_cache or shared_patterns
        self._dispatch: dict[OperationType, Callable[[Operation, EvaluationContext], bool]] = {
            OperationType.SUBSTRING_PRESENT: self._substring_present,
            OperationType.ALL_SUBSTRINGS_PRESENT: self._all_substrings_present,
            OperationType.SUBSTRING_PROXIMITY: self._substring_proximity,
            OperationType.SUBSTRING_COUNT: self._substring_count,
            OperationType.HAS_BUT_NOT: self._has_but_not,
            OperationType.PATTERN_COUNT: self._pattern_count,
            OperationType.WORD_DENSITY: self._word_density,
            OperationType.SUBSTRING_BEFORE: self._substring_before,
            OperationType.SUBSTRING_IN_RANGE: self._substring_in_range,
            OperationType.ALL_OF: self._all_of,
            OperationType.ANY_OF: self._any_of,
            OperationType.RESOURCE_PATTERN: self._resource_pattern,
            OperationType.RESOURCE_FROM_DOMAIN: self._resource_from_domain,
            OperationType.MULTI_PROXIMITY: self._multi_proximity,
            OperationType.FORM_ACTION_CHECK: self._form_action_check,
            OperationType.OBFUSCATION_CHECK: self._obfuscation_check,
            OperationType.NOT_IF_CONTAINS: self._not_if_contains,
        }

    def evaluate(self, op: Operation, corpus: ScanInput | EvaluationContext) -> bool:
        """Evaluate ``op``; pass an EvaluationContext to share the memo across calls."""
        context = corpus if isinstance(corpus, EvaluationContext) else EvaluationContext(corpus)
        return self._evaluate(op, context)

    def _evaluate(self, op: Operation, context: EvaluationContext) -> bool:
        try:
            cached = context.cache[op]
        except KeyError:
            pass
        except TypeError:
            # Unhashable node (built outside the parser); evaluate without memo
            return self._apply(op, context)
        else:
            context.hits += 1
            return cached

        context.misses += 1
        result = self._apply(op, context)
        context.cache[op] = result
        return result

    def _apply(self, op: Operation, context: EvaluationContext) -> bool:
        handler = self._dispatch.get(getattr(op, "kind", None))
        if handler is None:
            logger.warning("Unknown primitive type: %r", getattr(op, "kind", op))
            return False
        try:
            result = bool(handler(op, context))
        except Exception as exc:
            logger.warning("Primitive %s failed: %s", op.kind.value, exc)
            return False
        return not result if op.invert else result

    # -- substring family ---------------------------------------------------

    def _substring_present(self, op: SubstringPresent, context: EvaluationContext) -> bool:
        lower = context.corpus.source_lower
        return any(value.lower() in lower for value in op.values)

    def _all_substrings_present(self, op: AllSubstringsPresent, context: EvaluationContext) -> bool:
        lower = context.corpus.source_lower
        return all(value.lower() in lower for value in op.values)

    def _substring_proximity(self, op: SubstringProximity, context: EvaluationContext) -> bool:
        lower = context.corpus.source_lower
        word1 = op.word1.lower()
        index = lower.find(word1)
        if index == -1:
            return False
        return _window_contains(lower, index, len(word1), op.max_distance, op.word2.lower())

    def _substring_count(self, op: SubstringCount, context: EvaluationContext) -> bool:
        lower = context.corpus.source_lower
        count = sum(1 for sub in op.substrings if sub.lower() in lower)
        return _within(count, op.min_count, op.max_count)

    def _has_but_not(self, op: HasButNot, context: EvaluationContext) -> bool:
        haystack = context.corpus.url_lower if op.url_only else context.corpus.source_lower
        if not any(value.lower() in haystack for value in op.required):
            return False
        return not any(value.lower() in haystack for value in op.prohibited)

    def _substring_before(self, op: SubstringBefore, context: EvaluationContext) -> bool:
        lower = context.corpus.source_lower
        first = lower.find(op.first.lower())
        second = lower.find(op.second.lower())
        return first != -1 and second != -1 and first < second

    def _substring_in_range(self, op: SubstringInRange, context: EvaluationContext) -> bool:
        index = context.corpus.source_lower.find(op.substring.lower())
        if index == -1:
            return False
        return _within(index, op.min_position, op.max_position)

    def _multi_proximity(self, op: MultiProximity, context: EvaluationContext) -> bool:
        lower = context.corpus.source_lower
        for pair in op.pairs:
            word1, word2 = pair.words[0].lower(), pair.words[1].lower()
            if not word1:
                continue
            index = lower.find(word1)
            while index != -1:
                if _window_contains(lower, index, len(word1), pair.max_distance, word2):
                    return True
                index = lower.find(word1, index + 1)
        return False

    def _obfuscation_check(self, op: ObfuscationCheck, context: EvaluationContext) -> bool:
        source = context.corpus.source
        matches = sum(1 for indicator in op.indicators if indicator in source)
        return matches >= op.min_matches

    def _not_if_contains(self, op: NotIfContains, context: EvaluationContext) -> bool:
        lower = context.corpus.source_lower
        return not any(value.lower() in lower for value in op.prohibited)

    # -- regex family -------------------------------------------------------

    def _pattern_count(self, op: PatternCount, context: EvaluationContext) -> bool:
        total = 0
        for pattern in op.patterns:
            compiled = self.patterns.compile(pattern, op.flags)
            total += sum(1 for _ in compiled.finditer(context.corpus.source))
        return _within(total, op.min_count, op.max_count)

    def _word_density(self, op: WordDensity, context: EvaluationContext) -> bool:
        source = context.corpus.source_lower
        if not source:
            return False
        total = 0
        for word in op.words:
            compiled = self.patterns.compile(rf"\b{re.escape(word.lower())}\b", "")
            total += sum(1 for _ in compiled.finditer(source))
        density = total / (len(source) / 1000)
        return density >= op.min_density

    # -- composites ---------------------------------------------------------

    def _all_of(self, op: AllOf, context: EvaluationContext) -> bool:
        return all(self._evaluate(child, context) for child in op.operations)

    def _any_of(self, op: AnyOf, context: EvaluationContext) -> bool:
        return any(self._evaluate(child, context) for child in op.operations)

    # -- markup structure ---------------------------------------------------

    def _resource_pattern(self, op: ResourcePattern, context: EvaluationContext) -> bool:
        compiled = self.patterns.compile(op.pattern, op.flags)
        urls = html_extract.extract_attribute_urls(context.corpus.document)
        count = sum(1 for url in urls if compiled.search(url))
        return _within(count, op.min_count, op.max_count)

    def _resource_from_domain(self, op: ResourceFromDomain, context: EvaluationContext) -> bool:
        needle = op.resource_type.lower()
        resources = [
            url
            for url in html_extract.extract_attribute_urls(context.corpus.document, ("src", "href"))
            if needle in url.lower()
        ]
        if not resources:
            return False
        return all(any(domain in resource for domain in op.allowed_domains) for resource in resources)

    def _form_action_check(self, op: FormActionCheck, context: EvaluationContext) -> bool:
        actions = html_extract.extract_form_actions(context.corpus.document)
        if not actions:
            return False
        return any(
            not any(domain in action for domain in op.required_domains)
            for action in actions
        )
