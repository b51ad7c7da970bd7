from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import AccountType, RuleLogic, TransactionStatus

MAX_PATTERN_LENGTH = 200


class ParsedConditions(BaseModel):
    """Predicate half of a rule.

    Field names on the wire are camelCase and stable. A blank pattern counts
    as absent, and any ``logic`` other than the exact string ``"AND"`` is
    read as ``OR``.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    merchant_pattern: Optional[str] = Field(
        default=None, alias="merchantPattern", max_length=MAX_PATTERN_LENGTH
    )
    description_pattern: Optional[str] = Field(
        default=None, alias="descriptionPattern", max_length=MAX_PATTERN_LENGTH
    )
    logic: RuleLogic = RuleLogic.OR

    @field_validator("merchant_pattern", "description_pattern", mode="before")
    @classmethod
    def _blank_pattern_is_absent(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("logic", mode="before")
    @classmethod
    def _unrecognized_logic_is_or(cls, value: Any) -> RuleLogic:
        if isinstance(value, str) and value == RuleLogic.AND.value:
            return RuleLogic.AND
        return RuleLogic.OR


class ParsedActions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    target_category_id: int = Field(..., alias="targetCategoryId", gt=0)

    @field_validator("target_category_id", mode="before")
    @classmethod
    def _integer_identifier_only(cls, value: Any) -> Any:
        # Digit strings are the legacy wire form; booleans and floats are not ids.
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise ValueError("must be an integer identifier")
        if isinstance(value, str) and not value.strip().isdigit():
            raise ValueError("must be an integer identifier")
        return value


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    account_type: AccountType = AccountType.checking
    currency: str = Field(default="USD", min_length=3, max_length=3)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, max_length=7)
    is_income: bool = False


class RuleIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    # Raw wire payloads; checked by rule_definitions before anything is stored
    conditions: Any = Field(...)
    actions: Any = Field(...)
    priority: int = 0
    enabled: bool = True


class RuleUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    conditions: Any = None
    actions: Any = None
    priority: Optional[int] = None
    enabled: Optional[bool] = None


class RuleReorderIn(BaseModel):
    rule_ids: list[int] = Field(..., min_length=1)


class PatternTestIn(BaseModel):
    pattern: str = Field(..., min_length=1, max_length=MAX_PATTERN_LENGTH)
    text: str = Field(..., min_length=1)


class MatchPreviewIn(BaseModel):
    merchant: Optional[str] = None
    description: Optional[str] = None


class TransactionIn(BaseModel):
    amount_cents: int
    posted_at: datetime
    merchant: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)
    category_id: Optional[int] = None
    notes: Optional[str] = None
    status: TransactionStatus = TransactionStatus.pending
    external_id: Optional[str] = Field(default=None, max_length=100)


class TransactionUpdate(BaseModel):
    amount_cents: Optional[int] = None
    posted_at: Optional[datetime] = None
    merchant: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)
    category_id: Optional[int] = None
    notes: Optional[str] = None


class CSVRow(BaseModel):
    line_number: int
    posted_at: datetime
    amount_cents: int
    merchant: Optional[str]
    description: Optional[str]
    category_id: Optional[int] = None
    notes: Optional[str] = None


class CsvImportResult(BaseModel):
    total_rows: int
    successful_imports: int
    failed_imports: int
    errors: list[str] = Field(default_factory=list)
    imported_transaction_ids: list[int] = Field(default_factory=list)


class WebhookTransactionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction_id: str = Field(..., alias="transactionId", min_length=1, max_length=100)
    amount: Decimal
    description: Optional[str] = Field(default=None, max_length=500)
    merchant: Optional[str] = Field(default=None, max_length=200)
    posted_at: Optional[datetime] = Field(default=None, alias="postedAt")
    currency: Optional[str] = None
    category: Optional[str] = Field(default=None, max_length=100)
    status: Optional[str] = None


class WebhookPayloadIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_type: str = Field(
        default="transactions.new", alias="eventType", max_length=50
    )
    account_id: str = Field(..., alias="accountId", min_length=1)
    transactions: list[WebhookTransactionIn] = Field(default_factory=list)
