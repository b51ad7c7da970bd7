"""
Transaction categorization rule engine.

Rules are evaluated in ascending priority (ties keep the order the store
returned them in) and the first rule whose condition holds decides the
category. Matching never writes and never raises: a rule whose stored
payload cannot be read is logged and skipped.

Patterns run on Python's backtracking ``re`` engine. Pattern length is capped
when a rule is written, but a pathological expression can still be slow.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from models import Rule, RuleLogic
from rule_definitions import RuleParseFailure, parse_actions, parse_conditions
from schemas import ParsedConditions

logger = logging.getLogger(__name__)


class RuleStore(Protocol):
    def list_enabled_rules(self, user_id: int) -> Sequence[Rule]:
        """Enabled rules of ``user_id``, ascending priority, stable tie-break."""
        ...


@dataclass(frozen=True)
class MatchResult:
    matched: bool
    rule_id: Optional[int] = None
    rule_name: Optional[str] = None
    target_category_id: Optional[int] = None

    @classmethod
    def no_match(cls) -> "MatchResult":
        return cls(matched=False)


NO_MATCH = MatchResult.no_match()


def search_pattern(text: Optional[str], pattern: Optional[str]) -> Optional[str]:
    """Return the first case-insensitive match of ``pattern`` in ``text``.

    ``None`` when either side is missing, nothing matches, or the pattern
    does not compile.
    """
    if text is None or pattern is None:
        return None
    try:
        found = re.search(pattern, text, flags=re.IGNORECASE)
    except (re.error, OverflowError, RecursionError) as exc:
        logger.warning(f"pattern_compile_failed: pattern={pattern!r} error={exc}")
        return None
    return found.group(0) if found else None


def pattern_matches(text: Optional[str], pattern: Optional[str]) -> bool:
    return search_pattern(text, pattern) is not None


def evaluate_conditions(
    conditions: ParsedConditions,
    merchant: Optional[str],
    description: Optional[str],
) -> bool:
    # An absent pattern contributes False, not "don't care".
    merchant_match = False
    if conditions.merchant_pattern is not None:
        merchant_match = pattern_matches(merchant, conditions.merchant_pattern)

    description_match = False
    if conditions.description_pattern is not None:
        description_match = pattern_matches(description, conditions.description_pattern)

    if conditions.logic is RuleLogic.AND:
        return merchant_match and description_match
    return merchant_match or description_match


class RuleEngine:
    def __init__(self, store: RuleStore) -> None:
        self.store = store

    def match(
        self, user_id: int, merchant: Optional[str], description: Optional[str]
    ) -> MatchResult:
        rules = self.store.list_enabled_rules(user_id)
        # sorted() is stable, so equal priorities keep the store's order.
        for rule in sorted(rules, key=lambda r: r.priority):
            if not rule.enabled:
                continue
            try:
                result = self._evaluate(rule, merchant, description)
            except RuleParseFailure as exc:
                logger.warning(f"rule_parse_failed: rule_id={rule.id} error={exc}")
                continue
            except Exception:
                logger.exception(f"rule_evaluation_failed: rule_id={rule.id}")
                continue
            if result is not None:
                logger.debug(
                    f"rule_matched: user_id={user_id} rule_id={rule.id} "
                    f"category_id={result.target_category_id}"
                )
                return result
        return NO_MATCH

    @staticmethod
    def _evaluate(
        rule: Rule, merchant: Optional[str], description: Optional[str]
    ) -> Optional[MatchResult]:
        try:
            conditions = parse_conditions(rule.conditions_json)
            actions = parse_actions(rule.actions_json)
        except ValueError as exc:
            raise RuleParseFailure(rule.id, str(exc)) from exc

        if not evaluate_conditions(conditions, merchant, description):
            return None
        return MatchResult(
            matched=True,
            rule_id=rule.id,
            rule_name=rule.name,
            target_category_id=actions.target_category_id,
        )
