from datetime import datetime

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

import pytest

from csv_utils import parse_amount, parse_csv
from database import Base
from models import Transaction, TransactionStatus, WebhookEvent, WebhookEventStatus
from schemas import AccountIn, CategoryIn, RuleIn, WebhookPayloadIn
from services import (
    AccountService,
    CSVService,
    CategoryService,
    RuleService,
    WebhookService,
)


def _seed(session: Session):
    account = AccountService(session).create(AccountIn(name="ACC-001"))
    groceries = CategoryService(session).create(CategoryIn(name="Groceries"))
    transport = CategoryService(session).create(CategoryIn(name="Transport"))
    RuleService(session).create(
        RuleIn(
            name="Supermarkets",
            conditions={"merchantPattern": "whole foods|trader joe"},
            actions={"targetCategoryId": groceries.id},
        )
    )
    return account, groceries, transport


def _transactions(session: Session) -> list[Transaction]:
    return session.scalars(select(Transaction).order_by(Transaction.id)).all()


@pytest.mark.parametrize(
    "raw,expected",
    [("12.34", 1234), ("-5", -500), ("$1,50", 150), ("1.234,56", 123456)],
)
def test_parse_amount(raw: str, expected: int) -> None:
    assert parse_amount(raw) == expected


def test_parse_amount_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        parse_amount("twelve")
    with pytest.raises(ValueError):
        parse_amount("-1", allow_negative=False)


def test_parse_csv_reports_bad_lines_with_line_numbers() -> None:
    content = (
        "PostedAt,Amount,Merchant,Description,CategoryId,Notes\n"
        "2025-01-05,-42.10,Whole Foods,Weekly shop,,\n"
        "05/01/2025,-3.00,Cafe,,,\n"
        "\n"
        "2025-01-06 18:30:00,oops,Shell,Fuel,,\n"
        "2025-01-07,-9.99,Lyft,Ride,abc,\n"
    )
    rows, errors, total = parse_csv(content)

    assert total == 4
    assert [r.merchant for r in rows] == ["Whole Foods"]
    assert rows[0].line_number == 2
    assert rows[0].posted_at == datetime(2025, 1, 5)
    assert rows[0].amount_cents == -4210
    assert rows[0].category_id is None
    assert errors[0].startswith("Line 3: Invalid date format")
    assert errors[1].startswith("Line 5: Invalid amount")
    assert errors[2].startswith("Line 6: Invalid category id")


def test_parse_csv_requires_columns() -> None:
    with pytest.raises(ValueError) as excinfo:
        parse_csv("Date,Amount\n2025-01-01,1\n")
    assert "PostedAt" in str(excinfo.value)


def test_csv_import_applies_rules_and_skips_duplicates() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account, groceries, transport = _seed(session)
        content = (
            "PostedAt,Amount,Merchant,Description,CategoryId,Notes\n"
            "2025-01-05,-42.10,Whole Foods,Weekly shop,,\n"
            f"2025-01-06,-18.00,Uber,Airport,{transport.id},work trip\n"
            "2025-01-05,-42.10,Whole Foods,Weekly shop,,\n"
            "2025-01-07,-5.00,Kiosk,Gum,999,\n"
            "bad-date,-1.00,X,Y,,\n"
        )

        result = CSVService(session).import_transactions(account.id, content)

        assert result.total_rows == 5
        assert result.successful_imports == 2
        assert result.failed_imports == 3
        assert len(result.imported_transaction_ids) == 2
        assert any(e.startswith("Line 4: Duplicate") for e in result.errors)
        assert any(e.startswith("Line 5:") for e in result.errors)
        assert any(e.startswith("Line 6:") for e in result.errors)

        shop, ride = _transactions(session)
        assert shop.category_id == groceries.id
        assert shop.rule_id is not None
        assert ride.category_id == transport.id
        assert ride.rule_id is None
        assert ride.notes == "work trip"


def _payload(**overrides) -> WebhookPayloadIn:
    data = {
        "eventType": "transactions.new",
        "accountId": "ACC-001",
        "transactions": [
            {
                "transactionId": "tx-1",
                "amount": "-63.20",
                "merchant": "Trader Joe's",
                "description": "Groceries run",
                "postedAt": "2025-01-08T17:45:00",
            }
        ],
    }
    data.update(overrides)
    return WebhookPayloadIn.model_validate(data)


def test_webhook_creates_categorized_transactions() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account, groceries, _ = _seed(session)
        event = WebhookService(session).receive(_payload())

        assert event.status == WebhookEventStatus.processed
        assert event.attempts == 1
        assert event.processed_at is not None

        (txn,) = _transactions(session)
        assert txn.account_id == account.id
        assert txn.external_id == "tx-1"
        assert txn.amount_cents == -6320
        assert txn.status == TransactionStatus.cleared
        assert txn.category_id == groceries.id


def test_webhook_updates_known_transaction_and_resolves_category_names() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, _, transport = _seed(session)
        service = WebhookService(session)
        service.receive(_payload())

        event = service.receive(
            _payload(
                transactions=[
                    {
                        "transactionId": "tx-1",
                        "amount": "-65.00",
                        "merchant": "Trader Joe's",
                        "description": "Corrected amount",
                        "category": "Transprt",
                    }
                ]
            )
        )

        assert event.status == WebhookEventStatus.processed
        (txn,) = _transactions(session)
        assert txn.amount_cents == -6500
        assert txn.description == "Corrected amount"
        assert txn.category_id == transport.id
        assert txn.rule_id is None
        assert txn.posted_at == datetime(2025, 1, 8, 17, 45)


def test_webhook_for_unknown_account_fails_and_retries() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = WebhookService(session)
        event = service.receive(_payload(accountId="ACC-404"))

        assert event.status == WebhookEventStatus.failed
        assert "ACC-404" in event.error_message
        assert _transactions(session) == []

        # Account shows up later; the sweep picks the event up again.
        _seed(session)
        AccountService(session).create(AccountIn(name="ACC-404"))
        assert service.process_pending(max_attempts=3) == 1

        session.expire_all()
        retried = session.get(WebhookEvent, event.id)
        assert retried.status == WebhookEventStatus.processed
        assert retried.attempts == 2
        assert retried.error_message is None
        assert len(_transactions(session)) == 1


def test_process_pending_respects_attempt_limit() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = WebhookService(session)
        event = service.receive(_payload(accountId="ACC-404"))
        assert event.attempts == 1

        assert service.process_pending(max_attempts=2) == 0
        assert service.process_pending(max_attempts=2) == 0

        session.expire_all()
        assert session.get(WebhookEvent, event.id).attempts == 2
        failed = service.list_events(WebhookEventStatus.failed)
        assert [e.id for e in failed] == [event.id]
        assert service.list_events(WebhookEventStatus.processed) == []


def test_bad_webhook_item_does_not_block_the_rest() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        other = AccountService(session).create(AccountIn(name="ACC-002"))
        service = WebhookService(session)
        service.receive(_payload(accountId=other.name))

        event = service.receive(
            _payload(
                transactions=[
                    {"transactionId": "tx-1", "amount": "-1.00"},
                    {"transactionId": "tx-2", "amount": "-2.00", "merchant": "Whole Foods"},
                ]
            )
        )

        assert event.status == WebhookEventStatus.processed
        ids = {t.external_id: t for t in _transactions(session)}
        assert ids["tx-1"].account_id == other.id
        assert ids["tx-1"].amount_cents == -6320
        assert ids["tx-2"].amount_cents == -200
