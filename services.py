from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from rapidfuzz.distance import Levenshtein

from config import get_settings
from csv_utils import parse_amount, parse_csv
from models import (
    Account,
    Category,
    Rule,
    Transaction,
    TransactionStatus,
    TransactionType,
    WebhookEvent,
    WebhookEventStatus,
)
from rule_definitions import (
    InvalidRuleDefinition,
    compile_pattern,
    dump_actions,
    dump_conditions,
    validate_actions,
    validate_conditions,
)
from rule_engine import MatchResult, RuleEngine, search_pattern
from schemas import (
    AccountIn,
    CategoryIn,
    CsvImportResult,
    RuleIn,
    RuleUpdate,
    TransactionIn,
    TransactionUpdate,
    WebhookPayloadIn,
    WebhookTransactionIn,
)

logger = logging.getLogger(__name__)


class RecordNotFound(ValueError):
    pass


def get_current_user_id() -> int:
    return 1


def transaction_type_for(amount_cents: int) -> TransactionType:
    return TransactionType.credit if amount_cents >= 0 else TransactionType.debit


def _now_local() -> datetime:
    return (
        datetime.now(ZoneInfo(get_settings().timezone))
        .replace(tzinfo=None)
        .replace(microsecond=0)
    )


class SQLRuleStore:
    """Reads rules for the engine; one fresh query per call, no caching."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def list_enabled_rules(self, user_id: int) -> Sequence[Rule]:
        stmt = (
            select(Rule)
            .where(Rule.user_id == user_id, Rule.enabled.is_(True))
            .order_by(Rule.priority.asc(), Rule.id.asc())
            .execution_options(populate_existing=True)
        )
        return self.session.scalars(stmt).all()


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name, Account.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise RecordNotFound("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        clean_name = data.name.strip()
        existing = self.session.scalar(
            select(Account).where(
                Account.user_id == self.user_id,
                func.lower(Account.name) == clean_name.lower(),
            )
        )
        if existing:
            raise ValueError("Account with this name already exists")
        account = Account(
            user_id=self.user_id,
            name=clean_name,
            account_type=data.account_type,
            currency=data.currency.upper(),
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, include_archived: bool = False) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name)
        )
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise RecordNotFound("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            color=data.color,
            is_income=data.is_income,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def archive(self, category_id: int) -> None:
        category = self.get(category_id)
        category.archived_at = datetime.utcnow()
        self.session.commit()

    def restore(self, category_id: int) -> None:
        category = self.get(category_id)
        category.archived_at = None
        self.session.commit()

    def find_by_name(self, name: str) -> Optional[Category]:
        """Exact (case-insensitive) name, else a unique match within one edit."""
        input_lower = name.strip().lower()
        if not input_lower:
            return None
        active = select(Category).where(
            Category.user_id == self.user_id, Category.archived_at.is_(None)
        )
        exact = self.session.scalar(
            active.where(func.lower(Category.name) == input_lower)
        )
        if exact:
            return exact

        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in self.session.scalars(active).all():
            name_lower = (category.name or "").strip().lower()
            dist = int(Levenshtein.distance(input_lower, name_lower))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)

        if best_distance is not None and best_distance <= 1 and len(best) == 1:
            return best[0]
        if best_distance is not None and best_distance <= 1:
            options = ", ".join(sorted({c.name for c in best}))
            logger.info(f"category_name_ambiguous: name={name!r} matches={options}")
        return None


class RuleService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Rule]:
        stmt = (
            select(Rule)
            .where(Rule.user_id == self.user_id)
            .order_by(Rule.priority.asc(), Rule.id.asc())
        )
        return self.session.scalars(stmt).all()

    def get(self, rule_id: int) -> Rule:
        rule = self.session.get(Rule, rule_id)
        if not rule or rule.user_id != self.user_id:
            raise RecordNotFound("Rule not found")
        return rule

    def _require_target_category(self, category_id: int) -> None:
        category = self.session.get(Category, category_id)
        if (
            not category
            or category.user_id != self.user_id
            or category.archived_at is not None
        ):
            raise InvalidRuleDefinition(
                f"Invalid rule actions: category {category_id} not found"
            )

    @staticmethod
    def _snapshot(rule: Rule) -> dict[str, object]:
        return {
            "name": rule.name,
            "description": rule.description,
            "conditions": rule.conditions_json,
            "actions": rule.actions_json,
            "priority": rule.priority,
            "enabled": rule.enabled,
        }

    def create(self, data: RuleIn) -> Rule:
        conditions = validate_conditions(data.conditions)
        actions = validate_actions(data.actions)
        self._require_target_category(actions.target_category_id)

        rule = Rule(
            user_id=self.user_id,
            name=data.name.strip(),
            description=data.description,
            conditions_json=dump_conditions(conditions),
            actions_json=dump_actions(actions),
            priority=data.priority,
            enabled=data.enabled,
        )
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        logger.info(
            f"rule_created: user_id={self.user_id} rule_id={rule.id} "
            f"priority={rule.priority} enabled={rule.enabled}"
        )
        return rule

    def update(self, rule_id: int, data: RuleUpdate) -> Rule:
        rule = self.get(rule_id)
        before = self._snapshot(rule)

        # Validate both payloads before touching the rule.
        conditions_json = None
        if data.conditions is not None:
            conditions_json = dump_conditions(validate_conditions(data.conditions))
        actions_json = None
        if data.actions is not None:
            actions = validate_actions(data.actions)
            self._require_target_category(actions.target_category_id)
            actions_json = dump_actions(actions)

        if conditions_json is not None:
            rule.conditions_json = conditions_json
        if actions_json is not None:
            rule.actions_json = actions_json
        if data.name is not None:
            rule.name = data.name.strip()
        if data.description is not None:
            rule.description = data.description
        if data.priority is not None:
            rule.priority = data.priority
        if data.enabled is not None:
            rule.enabled = data.enabled

        self.session.commit()
        self.session.refresh(rule)

        after = self._snapshot(rule)
        changes = {k: before[k] for k in before if before[k] != after[k]}
        logger.info(
            f"rule_updated: user_id={self.user_id} rule_id={rule.id} previous={changes}"
        )
        return rule

    def toggle(self, rule_id: int, enabled: bool) -> Rule:
        return self.update(rule_id, RuleUpdate(enabled=enabled))

    def reorder(self, rule_ids: list[int]) -> list[Rule]:
        if len(set(rule_ids)) != len(rule_ids):
            raise ValueError("Rule ids must be unique")
        rules = [self.get(rule_id) for rule_id in rule_ids]
        for index, rule in enumerate(rules):
            rule.priority = index
        self.session.commit()
        logger.info(f"rules_reordered: user_id={self.user_id} order={rule_ids}")
        return self.list_all()

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        self.session.execute(
            update(Transaction)
            .where(Transaction.rule_id == rule.id)
            .values(rule_id=None)
        )
        self.session.delete(rule)
        self.session.commit()
        logger.info(f"rule_deleted: user_id={self.user_id} rule_id={rule_id}")

    def match(self, merchant: Optional[str], description: Optional[str]) -> MatchResult:
        return RuleEngine(SQLRuleStore(self.session)).match(
            self.user_id, merchant, description
        )

    def test_pattern(self, pattern: str, text: str) -> dict[str, object]:
        compile_pattern(pattern)
        matched_text = search_pattern(text, pattern)
        return {"matches": matched_text is not None, "matched_text": matched_text}


class TransactionService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        engine: Optional[RuleEngine] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.engine = engine or RuleEngine(SQLRuleStore(session))

    def _require_category(self, category_id: int) -> Category:
        category = CategoryService(self.session, self.user_id).get(category_id)
        if category.archived_at is not None:
            raise ValueError("Category is archived")
        return category

    def _categorize(
        self, merchant: Optional[str], description: Optional[str]
    ) -> tuple[Optional[int], Optional[int]]:
        result = self.engine.match(self.user_id, merchant, description)
        if not result.matched:
            return None, None
        category = self.session.get(Category, result.target_category_id)
        if (
            not category
            or category.user_id != self.user_id
            or category.archived_at is not None
        ):
            logger.warning(
                f"rule_target_unavailable: rule_id={result.rule_id} "
                f"category_id={result.target_category_id}"
            )
            return None, None
        return category.id, result.rule_id

    def create(self, account_id: int, data: TransactionIn) -> Transaction:
        account = AccountService(self.session, self.user_id).get(account_id)

        rule_id: Optional[int] = None
        if data.category_id is not None:
            category_id: Optional[int] = self._require_category(data.category_id).id
        else:
            category_id, rule_id = self._categorize(data.merchant, data.description)

        txn = Transaction(
            account_id=account.id,
            category_id=category_id,
            rule_id=rule_id,
            amount_cents=data.amount_cents,
            merchant=data.merchant,
            description=data.description,
            notes=data.notes,
            posted_at=data.posted_at,
            type=transaction_type_for(data.amount_cents),
            status=data.status,
            external_id=data.external_id,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .join(Account, Transaction.account_id == Account.id)
            .options(joinedload(Transaction.category))
            .where(Transaction.id == transaction_id, Account.user_id == self.user_id)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise RecordNotFound("Transaction not found")
        return txn

    def list_for_account(
        self, account_id: int, limit: int = 50, offset: int = 0
    ) -> list[Transaction]:
        account = AccountService(self.session, self.user_id).get(account_id)
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.account_id == account.id)
            .order_by(Transaction.posted_at.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return self.session.scalars(stmt).all()

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        if data.amount_cents is not None:
            txn.amount_cents = data.amount_cents
            txn.type = transaction_type_for(data.amount_cents)
        if data.posted_at is not None:
            txn.posted_at = data.posted_at
        if data.merchant is not None:
            txn.merchant = data.merchant
        if data.description is not None:
            txn.description = data.description
        if data.notes is not None:
            txn.notes = data.notes
        if data.category_id is not None:
            txn.category_id = self._require_category(data.category_id).id
            txn.rule_id = None
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()

    def find_duplicate(
        self,
        account_id: int,
        posted_at: datetime,
        amount_cents: int,
        merchant: Optional[str],
        description: Optional[str],
    ) -> Optional[Transaction]:
        stmt = select(Transaction).where(
            Transaction.account_id == account_id,
            Transaction.posted_at == posted_at,
            Transaction.amount_cents == amount_cents,
            Transaction.merchant.is_(None)
            if merchant is None
            else Transaction.merchant == merchant,
            Transaction.description.is_(None)
            if description is None
            else Transaction.description == description,
        )
        return self.session.scalars(stmt).first()


class CSVService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def import_transactions(self, account_id: int, content: str) -> CsvImportResult:
        account = AccountService(self.session, self.user_id).get(account_id)
        rows, errors, total = parse_csv(content)
        transactions = TransactionService(self.session, self.user_id)

        imported: list[int] = []
        for row in rows:
            duplicate = transactions.find_duplicate(
                account.id,
                row.posted_at,
                row.amount_cents,
                row.merchant,
                row.description,
            )
            if duplicate:
                errors.append(f"Line {row.line_number}: Duplicate transaction found")
                continue
            try:
                txn = transactions.create(
                    account.id,
                    TransactionIn(
                        amount_cents=row.amount_cents,
                        posted_at=row.posted_at,
                        merchant=row.merchant,
                        description=row.description,
                        category_id=row.category_id,
                        notes=row.notes,
                    ),
                )
            except ValueError as exc:
                self.session.rollback()
                errors.append(f"Line {row.line_number}: {exc}")
                continue
            imported.append(txn.id)

        result = CsvImportResult(
            total_rows=total,
            successful_imports=len(imported),
            failed_imports=total - len(imported),
            errors=errors,
            imported_transaction_ids=imported,
        )
        logger.info(
            f"csv_import: account_id={account.id} total={result.total_rows} "
            f"imported={result.successful_imports} failed={result.failed_imports}"
        )
        return result


class WebhookService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def receive(self, payload: WebhookPayloadIn, source: str = "mockbank") -> WebhookEvent:
        event = WebhookEvent(
            event_type=payload.event_type,
            source=source,
            payload=payload.model_dump_json(by_alias=True),
            status=WebhookEventStatus.pending,
            attempts=0,
        )
        self.session.add(event)
        self.session.commit()
        return self.process(event.id)

    def list_events(
        self, status: Optional[WebhookEventStatus] = None, limit: int = 100
    ) -> list[WebhookEvent]:
        stmt = select(WebhookEvent).order_by(WebhookEvent.id.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(WebhookEvent.status == status)
        return self.session.scalars(stmt).all()

    def process(self, event_id: int) -> WebhookEvent:
        event = self.session.get(WebhookEvent, event_id)
        if not event:
            raise RecordNotFound("Webhook event not found")

        event.attempts += 1
        self.session.commit()

        try:
            payload = WebhookPayloadIn.model_validate_json(event.payload)
            if payload.event_type == "transactions.new":
                self._process_new_transactions(payload)
        except ValueError as exc:
            self.session.rollback()
            event.status = WebhookEventStatus.failed
            event.error_message = str(exc)
            logger.warning(f"webhook_failed: event_id={event.id} error={exc}")
        else:
            event.status = WebhookEventStatus.processed
            event.error_message = None
        event.processed_at = datetime.utcnow()
        self.session.commit()
        self.session.refresh(event)
        return event

    def process_pending(self, max_attempts: int) -> int:
        stmt = (
            select(WebhookEvent.id)
            .where(
                WebhookEvent.status.in_(
                    [WebhookEventStatus.pending, WebhookEventStatus.failed]
                ),
                WebhookEvent.attempts < max_attempts,
            )
            .order_by(WebhookEvent.id)
        )
        processed = 0
        for event_id in self.session.scalars(stmt).all():
            event = self.process(event_id)
            if event.status == WebhookEventStatus.processed:
                processed += 1
        return processed

    def _process_new_transactions(self, payload: WebhookPayloadIn) -> None:
        account = self.session.scalars(
            select(Account).where(Account.name == payload.account_id).order_by(Account.id)
        ).first()
        if not account:
            raise RecordNotFound(
                f"Account not found for external ID: {payload.account_id}"
            )

        ok = 0
        failed = 0
        for item in payload.transactions:
            try:
                self._upsert_transaction(account, item)
                ok += 1
            except (ValueError, IntegrityError) as exc:
                self.session.rollback()
                failed += 1
                logger.warning(
                    f"webhook_transaction_failed: transaction_id={item.transaction_id} "
                    f"error={exc}"
                )
        logger.info(
            f"webhook_transactions: account_id={account.id} ok={ok} failed={failed}"
        )

    def _upsert_transaction(
        self, account: Account, item: WebhookTransactionIn
    ) -> Transaction:
        amount_cents = parse_amount(str(item.amount))
        category = None
        if item.category:
            category = CategoryService(self.session, account.user_id).find_by_name(
                item.category
            )

        existing = self.session.scalar(
            select(Transaction).where(Transaction.external_id == item.transaction_id)
        )
        if existing:
            if existing.account_id != account.id:
                raise ValueError("External id belongs to another account")
            existing.amount_cents = amount_cents
            existing.type = transaction_type_for(amount_cents)
            existing.merchant = item.merchant
            existing.description = item.description
            if item.posted_at is not None:
                existing.posted_at = item.posted_at
            if category:
                existing.category_id = category.id
                existing.rule_id = None
            self.session.commit()
            return existing

        return TransactionService(self.session, account.user_id).create(
            account.id,
            TransactionIn(
                amount_cents=amount_cents,
                posted_at=item.posted_at or _now_local(),
                merchant=item.merchant,
                description=item.description,
                category_id=category.id if category else None,
                status=TransactionStatus.cleared,
                external_id=item.transaction_id,
            ),
        )
