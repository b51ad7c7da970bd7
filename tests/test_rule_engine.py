import json
import logging

from models import Rule
from rule_engine import (
    MatchResult,
    RuleEngine,
    evaluate_conditions,
    pattern_matches,
    search_pattern,
)
from rule_definitions import parse_conditions


def make_rule(
    rule_id: int,
    priority: int,
    conditions,
    category_id: int,
    *,
    enabled: bool = True,
    user_id: int = 1,
) -> Rule:
    return Rule(
        id=rule_id,
        user_id=user_id,
        name=f"Rule {rule_id}",
        conditions_json=conditions if isinstance(conditions, str) else json.dumps(conditions),
        actions_json=json.dumps({"targetCategoryId": category_id}),
        priority=priority,
        enabled=enabled,
    )


class ListRuleStore:
    def __init__(self, rules: list[Rule], *, filter_enabled: bool = True) -> None:
        self.rules = rules
        self.filter_enabled = filter_enabled
        self.calls = 0

    def list_enabled_rules(self, user_id: int) -> list[Rule]:
        self.calls += 1
        return [
            r
            for r in self.rules
            if r.user_id == user_id and (r.enabled or not self.filter_enabled)
        ]


def test_pattern_matcher_is_case_insensitive_search() -> None:
    assert pattern_matches("STARBUCKS #123", ".*starbucks.*")
    assert pattern_matches("Morning coffee run", "coffee")
    assert not pattern_matches("Tea house", "coffee")
    assert search_pattern("Paid at STARBUCKS #123", "starbucks") == "STARBUCKS"


def test_pattern_matcher_absent_inputs_never_match() -> None:
    assert not pattern_matches(None, ".*")
    assert not pattern_matches("anything", None)
    assert not pattern_matches(None, None)


def test_pattern_matcher_swallows_bad_pattern(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="rule_engine"):
        assert not pattern_matches("abc", "([a-z")
    assert "pattern_compile_failed" in caplog.text


def test_pattern_matcher_treats_oversized_repeat_as_no_match(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="rule_engine"):
        assert not pattern_matches("aaa", "a{4294967296}")
        assert search_pattern("aaa", "a{4294967296}") is None
    assert "pattern_compile_failed" in caplog.text


def test_stored_oversized_repeat_skips_to_next_rule(caplog) -> None:
    store = ListRuleStore(
        [
            make_rule(1, 0, {"merchantPattern": "a{4294967296}"}, category_id=1),
            make_rule(2, 1, {"merchantPattern": "a+"}, category_id=2),
        ]
    )
    with caplog.at_level(logging.WARNING, logger="rule_engine"):
        assert RuleEngine(store).match(1, "aaa", None).rule_id == 2
    assert "rule_evaluation_failed" not in caplog.text


def test_absent_predicate_contributes_false() -> None:
    merchant_only_and = parse_conditions(
        {"merchantPattern": ".*", "logic": "AND"}
    )
    assert not evaluate_conditions(merchant_only_and, "Starbucks", "coffee")

    description_only_and = parse_conditions(
        {"descriptionPattern": ".*", "logic": "AND"}
    )
    assert not evaluate_conditions(description_only_and, "Starbucks", "coffee")

    for logic in ("AND", "OR"):
        empty = parse_conditions({"logic": logic})
        assert not evaluate_conditions(empty, "Starbucks", "coffee")


def test_or_logic_needs_either_side() -> None:
    conditions = parse_conditions(
        {
            "merchantPattern": ".*starbucks.*",
            "descriptionPattern": ".*coffee.*",
            "logic": "OR",
        }
    )
    assert evaluate_conditions(conditions, "Starbucks Coffee", "Morning coffee")
    assert evaluate_conditions(conditions, "Starbucks Coffee", "Sandwich")
    assert evaluate_conditions(conditions, "Local Cafe", "Morning coffee")
    assert not evaluate_conditions(conditions, "McDonald's", "Burger")


def test_unrecognized_logic_behaves_as_or() -> None:
    for logic in ("XOR", "and", "", None):
        conditions = parse_conditions(
            {
                "merchantPattern": "starbucks",
                "descriptionPattern": "coffee",
                "logic": logic,
            }
        )
        assert evaluate_conditions(conditions, "Starbucks", "Sandwich")


def test_lower_priority_value_wins() -> None:
    store = ListRuleStore(
        [
            make_rule(1, 10, {"merchantPattern": ".*coffee.*"}, category_id=100),
            make_rule(2, 1, {"merchantPattern": ".*starbucks.*"}, category_id=200),
        ]
    )
    result = RuleEngine(store).match(1, "Starbucks Coffee", None)

    assert result == MatchResult(
        matched=True, rule_id=2, rule_name="Rule 2", target_category_id=200
    )


def test_equal_priorities_keep_store_order() -> None:
    store = ListRuleStore(
        [
            make_rule(7, 5, {"merchantPattern": "shop"}, category_id=70),
            make_rule(3, 5, {"merchantPattern": "shop"}, category_id=30),
        ]
    )
    assert RuleEngine(store).match(1, "Corner Shop", None).rule_id == 7


def test_disabled_rules_are_ignored_even_if_store_returns_them() -> None:
    store = ListRuleStore(
        [make_rule(1, 1, {"descriptionPattern": ".*pizza.*"}, 5, enabled=False)],
        filter_enabled=False,
    )
    result = RuleEngine(store).match(1, "Pizza Palace", "pizza night")
    assert result == MatchResult.no_match()


def test_and_rule_requires_both_sides() -> None:
    store = ListRuleStore(
        [
            make_rule(
                1,
                0,
                {
                    "merchantPattern": ".*starbucks.*",
                    "descriptionPattern": ".*coffee.*",
                    "logic": "AND",
                },
                category_id=9,
            )
        ]
    )
    engine = RuleEngine(store)

    assert not engine.match(1, "Starbucks", "sandwich").matched
    result = engine.match(1, "Starbucks", "morning coffee")
    assert result.matched
    assert result.target_category_id == 9


def test_empty_rule_set_is_no_match() -> None:
    result = RuleEngine(ListRuleStore([])).match(1, "Starbucks", "coffee")
    assert result.matched is False
    assert result.rule_id is None
    assert result.rule_name is None
    assert result.target_category_id is None


def test_corrupt_rules_are_skipped(caplog) -> None:
    store = ListRuleStore(
        [
            make_rule(1, 0, "merchantPattern: starbucks", category_id=1),
            make_rule(2, 1, {"merchantPattern": "starbucks"}, category_id=2),
            make_rule(3, 2, {"merchantPattern": "starbucks"}, category_id=3),
        ]
    )
    store.rules[1].actions_json = json.dumps({"targetCategoryId": "not-an-id"})

    with caplog.at_level(logging.WARNING, logger="rule_engine"):
        result = RuleEngine(store).match(1, "Starbucks", None)

    assert result.rule_id == 3
    assert caplog.text.count("rule_parse_failed") == 2


def test_uncompilable_stored_pattern_does_not_block_later_rules() -> None:
    store = ListRuleStore(
        [
            make_rule(1, 0, {"merchantPattern": "(unclosed"}, category_id=1),
            make_rule(2, 1, {"merchantPattern": "unclosed"}, category_id=2),
        ]
    )
    assert RuleEngine(store).match(1, "UNCLOSED tab", None).rule_id == 2


def test_match_is_repeatable_and_reads_store_each_call() -> None:
    store = ListRuleStore(
        [
            make_rule(1, 2, {"descriptionPattern": "rent"}, category_id=11),
            make_rule(2, 1, {"merchantPattern": "landlord"}, category_id=22),
        ]
    )
    engine = RuleEngine(store)

    first = engine.match(1, "Landlord LLC", "March rent")
    second = engine.match(1, "Landlord LLC", "March rent")

    assert first == second
    assert first.rule_id == 2
    assert store.calls == 2

    store.rules[1].enabled = False
    assert engine.match(1, "Landlord LLC", "March rent").rule_id == 1


def test_rules_of_other_users_are_not_seen() -> None:
    store = ListRuleStore(
        [make_rule(1, 0, {"merchantPattern": "gym"}, category_id=4, user_id=2)]
    )
    assert not RuleEngine(store).match(1, "Gym Membership", None).matched
    assert RuleEngine(store).match(2, "Gym Membership", None).matched


def test_matching_does_not_modify_rules() -> None:
    rule = make_rule(1, 0, {"merchantPattern": "gym"}, category_id=4)
    before = (rule.conditions_json, rule.actions_json, rule.priority, rule.enabled)

    RuleEngine(ListRuleStore([rule])).match(1, "Gym", None)

    assert (rule.conditions_json, rule.actions_json, rule.priority, rule.enabled) == before
