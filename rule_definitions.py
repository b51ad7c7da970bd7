"""
Rule definition parsing and validation.

A rule stores two small JSON objects:

    conditions  {"merchantPattern": "...", "descriptionPattern": "...", "logic": "AND" | "OR"}
    actions     {"targetCategoryId": 42}

``validate_conditions`` / ``validate_actions`` gate what the rule
administration surface may persist. ``parse_conditions`` / ``parse_actions``
only check structure; the engine uses them to re-read stored rules and never
calls the validators.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ValidationError

from schemas import ParsedActions, ParsedConditions


class InvalidRuleDefinition(ValueError):
    kind = "InvalidRuleDefinition"


class RuleParseFailure(ValueError):
    """A stored rule payload could not be read back at match time."""

    kind = "RuleParseFailure"

    def __init__(self, rule_id: object, message: str) -> None:
        super().__init__(f"rule {rule_id}: {message}")
        self.rule_id = rule_id


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "payload"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def _load(raw: Any, model: type[BaseModel], label: str) -> BaseModel:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidRuleDefinition(
                f"Invalid rule {label}: payload is not UTF-8"
            ) from exc
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise InvalidRuleDefinition(
                f"Invalid rule {label}: not valid JSON ({exc.msg})"
            ) from exc
    else:
        decoded = raw
    if not isinstance(decoded, Mapping):
        raise InvalidRuleDefinition(f"Invalid rule {label}: expected a JSON object")
    try:
        return model.model_validate(dict(decoded))
    except ValidationError as exc:
        raise InvalidRuleDefinition(f"Invalid rule {label}: {_describe(exc)}") from exc


def parse_conditions(raw: Any) -> ParsedConditions:
    return _load(raw, ParsedConditions, "conditions")


def parse_actions(raw: Any) -> ParsedActions:
    return _load(raw, ParsedActions, "actions")


def compile_pattern(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern, re.IGNORECASE)
    # Huge repeat counts raise OverflowError, deep nesting RecursionError.
    except (re.error, OverflowError, RecursionError) as exc:
        raise InvalidRuleDefinition(
            f"Invalid rule conditions: pattern {pattern!r} does not compile ({exc})"
        ) from exc


def validate_conditions(raw: Any) -> ParsedConditions:
    conditions = parse_conditions(raw)
    for pattern in (conditions.merchant_pattern, conditions.description_pattern):
        if pattern is not None:
            compile_pattern(pattern)
    return conditions


def validate_actions(raw: Any) -> ParsedActions:
    return parse_actions(raw)


def dump_conditions(conditions: ParsedConditions) -> str:
    return conditions.model_dump_json(by_alias=True, exclude_none=True)


def dump_actions(actions: ParsedActions) -> str:
    return actions.model_dump_json(by_alias=True)
