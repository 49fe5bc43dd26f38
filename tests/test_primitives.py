"""Tests for the primitive expression evaluator."""

import pytest

from loginguard.analyzer.operations import (
    AllOf,
    AnyOf,
    FormActionCheck,
    HasButNot,
    MultiProximity,
    NotIfContains,
    ObfuscationCheck,
    PatternCount,
    ProximityPair,
    ResourceFromDomain,
    ResourcePattern,
    SubstringBefore,
    SubstringCount,
    SubstringInRange,
    SubstringPresent,
    AllSubstringsPresent,
    SubstringProximity,
    WordDensity,
)
from loginguard.analyzer.primitives import EvaluationContext, PrimitiveEvaluator
from loginguard.analyzer.rule_models import ScanInput


@pytest.fixture
def evaluator():
    return PrimitiveEvaluator()


def page(source: str, url: str = "https://evil.example/") -> ScanInput:
    return ScanInput(source=source, url=url)


class TestSubstringPrimitives:
    """Substring checks are case-insensitive over the page source."""

    def test_substring_present_ignores_case(self, evaluator):
        op = SubstringPresent(values=("Verify Your Account",))
        assert evaluator.evaluate(op, page("<p>please VERIFY your account</p>"))
        assert not evaluator.evaluate(op, page("<p>welcome back</p>"))

    def test_all_substrings_present_needs_every_value(self, evaluator):
        op = AllSubstringsPresent(values=("password", "telegram"))
        assert evaluator.evaluate(op, page("password sent to Telegram"))
        assert not evaluator.evaluate(op, page("password only"))

    def test_proximity_window_must_contain_second_word(self, evaluator):
        scan = page("please verify your account")
        assert evaluator.evaluate(SubstringProximity(word1="verify", word2="account", max_distance=15), scan)
        assert not evaluator.evaluate(SubstringProximity(word1="verify", word2="account", max_distance=2), scan)

    def test_proximity_is_symmetric_for_single_occurrences(self, evaluator):
        scan = page("please verify your account")
        forward = SubstringProximity(word1="verify", word2="account", max_distance=15)
        backward = SubstringProximity(word1="account", word2="verify", max_distance=15)
        assert evaluator.evaluate(forward, scan) == evaluator.evaluate(backward, scan)

    def test_proximity_missing_first_word(self, evaluator):
        op = SubstringProximity(word1="suspended", word2="account", max_distance=50)
        assert not evaluator.evaluate(op, page("your account"))

    def test_substring_count_bounds(self, evaluator):
        scan = page("bot token chat_id sendMessage")
        assert evaluator.evaluate(SubstringCount(substrings=("bot", "chat_id", "nothing"), min_count=2), scan)
        assert not evaluator.evaluate(
            SubstringCount(substrings=("bot", "chat_id", "sendmessage"), min_count=1, max_count=2), scan
        )

    def test_has_but_not(self, evaluator):
        op = HasButNot(required=("login",), prohibited=("microsoftonline",))
        assert evaluator.evaluate(op, page("login form"))
        assert not evaluator.evaluate(op, page("login via microsoftonline"))
        assert not evaluator.evaluate(op, page("nothing relevant"))

    def test_has_but_not_url_only(self, evaluator):
        op = HasButNot(required=("office",), prohibited=("office.com",), url_only=True)
        assert evaluator.evaluate(op, page("irrelevant", url="https://office-login.example/"))
        assert not evaluator.evaluate(op, page("office", url="https://www.office.com/"))

    def test_substring_before(self, evaluator):
        op = SubstringBefore(first="<form", second="password")
        assert evaluator.evaluate(op, page('<form><input type="password"></form>'))
        assert not evaluator.evaluate(op, page("password hint <form></form>"))
        assert not evaluator.evaluate(op, page("<form></form>"))

    def test_substring_in_range(self, evaluator):
        scan = page("0123456789needle")
        assert evaluator.evaluate(SubstringInRange(substring="needle", min_position=5, max_position=20), scan)
        assert not evaluator.evaluate(SubstringInRange(substring="needle", min_position=0, max_position=5), scan)
        assert evaluator.evaluate(SubstringInRange(substring="needle", min_position=10), scan)

    def test_multi_proximity_any_pair(self, evaluator):
        op = MultiProximity(
            pairs=(
                ProximityPair(words=("wallet", "seed"), max_distance=5),
                ProximityPair(words=("session", "expired"), max_distance=15),
            )
        )
        assert evaluator.evaluate(op, page("your session has expired"))
        assert not evaluator.evaluate(op, page("wallet ............... seed"))

    def test_multi_proximity_checks_later_occurrences(self, evaluator):
        op = MultiProximity(pairs=(ProximityPair(words=("code", "verify"), max_distance=12),))
        assert evaluator.evaluate(op, page("code ...................... code to verify"))

    def test_obfuscation_check_is_case_sensitive(self, evaluator):
        op = ObfuscationCheck(indicators=("atob(", "fromCharCode"), min_matches=2)
        assert evaluator.evaluate(op, page("x=atob(y); String.fromCharCode(1)"))
        assert not evaluator.evaluate(op, page("x=ATOB(y); String.fromcharcode(1)"))

    def test_not_if_contains_negates_substring_present(self, evaluator):
        values = ("copyright microsoft",)
        for source in ("© Copyright Microsoft Corporation", "plain page"):
            scan = page(source)
            assert evaluator.evaluate(NotIfContains(prohibited=values), scan) == (
                not evaluator.evaluate(SubstringPresent(values=values), scan)
            )


class TestRegexPrimitives:
    """Regex-backed primitives compile through the shared pattern cache."""

    def test_pattern_count_range(self, evaluator):
        scan = page("a1 a2 a3")
        assert evaluator.evaluate(PatternCount(patterns=(r"a\d",), min_count=3), scan)
        assert not evaluator.evaluate(PatternCount(patterns=(r"a\d",), min_count=1, max_count=2), scan)

    def test_pattern_count_sums_patterns(self, evaluator):
        scan = page("telegram bot, discord webhook")
        op = PatternCount(patterns=("telegram", "discord"), min_count=2)
        assert evaluator.evaluate(op, scan)

    def test_pattern_count_default_flags_ignore_case(self, evaluator):
        assert evaluator.evaluate(PatternCount(patterns=("TELEGRAM",)), page("telegram"))

    def test_invalid_regex_is_false(self, evaluator):
        assert not evaluator.evaluate(PatternCount(patterns=("(unclosed",)), page("(unclosed"))

    def test_word_density(self, evaluator):
        scan = page("login " * 10)
        assert evaluator.evaluate(WordDensity(words=("login",), min_density=50), scan)
        assert not evaluator.evaluate(WordDensity(words=("login",), min_density=500), scan)

    def test_word_density_whole_words_only(self, evaluator):
        assert not evaluator.evaluate(WordDensity(words=("log",), min_density=1), page("login login"))

    def test_word_density_empty_source(self, evaluator):
        assert not evaluator.evaluate(WordDensity(words=("login",), min_density=0), page(""))

    def test_resource_pattern(self, evaluator):
        scan = page('<script src="https://cdn.evil.example/kit.js"></script><img src="/logo.png">')
        assert evaluator.evaluate(ResourcePattern(pattern=r"kit\.js"), scan)
        assert not evaluator.evaluate(ResourcePattern(pattern=r"kit\.js", min_count=2), scan)


class TestStructurePrimitives:
    """Primitives that look at form actions and linked resources."""

    def test_resource_from_domain_all_allowed(self, evaluator):
        op = ResourceFromDomain(resource_type="customcss", allowed_domains=("aadcdn.msftauthimages.net",))
        good = '<link href="https://aadcdn.msftauthimages.net/t/customcss/a.css">'
        bad = '<link href="https://evil.example/customcss/a.css">'
        assert evaluator.evaluate(op, page(good))
        assert not evaluator.evaluate(op, page(good + bad))

    def test_resource_from_domain_without_resources(self, evaluator):
        op = ResourceFromDomain(resource_type="customcss", allowed_domains=("aadcdn.msftauthimages.net",))
        assert not evaluator.evaluate(op, page("<p>no stylesheets</p>"))

    def test_form_action_check(self, evaluator):
        op = FormActionCheck(required_domains=("login.microsoftonline.com",))
        assert evaluator.evaluate(op, page('<form action="https://evil.example/post.php"></form>'))
        assert not evaluator.evaluate(
            op, page('<form action="https://login.microsoftonline.com/common/login"></form>')
        )

    def test_form_action_check_ignores_forms_without_action(self, evaluator):
        op = FormActionCheck(required_domains=("login.microsoftonline.com",))
        assert not evaluator.evaluate(op, page('<form method="post"><input></form>'))


class TestComposition:
    """Composites, inversion and memoization."""

    def test_all_of_and_any_of(self, evaluator):
        a = SubstringPresent(values=("alpha",))
        b = SubstringPresent(values=("beta",))
        scan = page("alpha only")
        assert not evaluator.evaluate(AllOf(operations=(a, b)), scan)
        assert evaluator.evaluate(AnyOf(operations=(a, b)), scan)

    def test_invert_flips_result(self, evaluator):
        scan = page("alpha")
        assert not evaluator.evaluate(SubstringPresent(values=("alpha",), invert=True), scan)
        assert evaluator.evaluate(SubstringPresent(values=("beta",), invert=True), scan)

    def test_inverted_composite(self, evaluator):
        op = AnyOf(operations=(SubstringPresent(values=("alpha",)),), invert=True)
        assert evaluator.evaluate(op, page("beta"))

    def test_shared_context_memoizes_repeated_nodes(self, evaluator):
        leaf = SubstringPresent(values=("alpha",))
        context = EvaluationContext(page("alpha"))
        assert evaluator.evaluate(AllOf(operations=(leaf, leaf)), context)
        assert evaluator.evaluate(leaf, context)
        assert context.hits >= 2
        assert context.cache[leaf] is True

    def test_equal_nodes_share_memo_entries(self, evaluator):
        context = EvaluationContext(page("alpha"))
        evaluator.evaluate(SubstringPresent(values=("alpha",)), context)
        misses = context.misses
        evaluator.evaluate(SubstringPresent(values=("alpha",)), context)
        assert context.misses == misses

    def test_unhashable_node_is_still_evaluated(self, evaluator):
        op = SubstringPresent(values=["alpha"])
        context = EvaluationContext(page("alpha"))
        assert evaluator.evaluate(op, context)
        assert not context.cache

    def test_unknown_node_is_false(self, evaluator):
        class Bogus:
            kind = None
            invert = False

        assert not evaluator.evaluate(Bogus(), page("anything"))

    def test_deterministic_across_contexts(self, evaluator):
        op = AllOf(
            operations=(
                SubstringProximity(word1="verify", word2="account", max_distance=20),
                NotIfContains(prohibited=("copyright microsoft",)),
            )
        )
        scan = page("verify your account now")
        results = {evaluator.evaluate(op, scan) for _ in range(3)}
        assert results == {True}
