import json
import logging
from dataclasses import asdict
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Response, UploadFile
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from models import Account, Category, Rule, Transaction, WebhookEvent, WebhookEventStatus
from rule_definitions import InvalidRuleDefinition
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    CategoryIn,
    MatchPreviewIn,
    PatternTestIn,
    RuleIn,
    RuleReorderIn,
    RuleUpdate,
    TransactionIn,
    TransactionUpdate,
    WebhookPayloadIn,
)
from services import (
    AccountService,
    CSVService,
    CategoryService,
    RecordNotFound,
    RuleService,
    TransactionService,
    WebhookService,
)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Fintech Rules API")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, RecordNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidRuleDefinition):
        return HTTPException(
            status_code=422, detail={"message": str(exc), "kind": exc.kind}
        )
    return HTTPException(status_code=400, detail=str(exc))


def _load_json(raw: str):
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _account_payload(account: Account) -> dict:
    return {
        "id": account.id,
        "name": account.name,
        "account_type": account.account_type.value,
        "currency": account.currency,
        "is_active": account.is_active,
    }


def _category_payload(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "color": category.color,
        "is_income": category.is_income,
        "archived": category.archived_at is not None,
    }


def _rule_payload(rule: Rule) -> dict:
    return {
        "id": rule.id,
        "user_id": rule.user_id,
        "name": rule.name,
        "description": rule.description,
        "conditions": _load_json(rule.conditions_json),
        "actions": _load_json(rule.actions_json),
        "priority": rule.priority,
        "enabled": rule.enabled,
        "created_at": rule.created_at.isoformat() if rule.created_at else None,
        "updated_at": rule.updated_at.isoformat() if rule.updated_at else None,
    }


def _transaction_payload(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "category_id": txn.category_id,
        "rule_id": txn.rule_id,
        "amount_cents": txn.amount_cents,
        "merchant": txn.merchant,
        "description": txn.description,
        "notes": txn.notes,
        "posted_at": txn.posted_at.isoformat(),
        "type": txn.type.value,
        "status": txn.status.value,
        "external_id": txn.external_id,
    }


def _event_payload(event: WebhookEvent) -> dict:
    return {
        "id": event.id,
        "event_type": event.event_type,
        "source": event.source,
        "status": event.status.value,
        "attempts": event.attempts,
        "error_message": event.error_message,
        "processed_at": event.processed_at.isoformat() if event.processed_at else None,
    }


@app.get("/health")
def health_check():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/api/accounts")
def list_accounts(db: Session = Depends(get_db)):
    return [_account_payload(a) for a in AccountService(db).list_all()]


@app.post("/api/accounts", status_code=201)
def create_account(data: AccountIn, db: Session = Depends(get_db)):
    try:
        account = AccountService(db).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _account_payload(account)


@app.get("/api/categories")
def list_categories(include_archived: bool = False, db: Session = Depends(get_db)):
    categories = CategoryService(db).list_all(include_archived=include_archived)
    return [_category_payload(c) for c in categories]


@app.post("/api/categories", status_code=201)
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _category_payload(category)


@app.post("/api/categories/{category_id}/archive", status_code=204)
def archive_category(category_id: int, db: Session = Depends(get_db)):
    try:
        CategoryService(db).archive(category_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/categories/{category_id}/restore", status_code=204)
def restore_category(category_id: int, db: Session = Depends(get_db)):
    try:
        CategoryService(db).restore(category_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/rules")
def list_rules(db: Session = Depends(get_db)):
    return [_rule_payload(r) for r in RuleService(db).list_all()]


@app.post("/api/rules", status_code=201)
def create_rule(data: RuleIn, db: Session = Depends(get_db)):
    try:
        rule = RuleService(db).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _rule_payload(rule)


@app.patch("/api/rules/reorder")
def reorder_rules(data: RuleReorderIn, db: Session = Depends(get_db)):
    try:
        rules = RuleService(db).reorder(data.rule_ids)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return [_rule_payload(r) for r in rules]


@app.post("/api/rules/test")
def test_rule_pattern(data: PatternTestIn, db: Session = Depends(get_db)):
    try:
        return RuleService(db).test_pattern(data.pattern, data.text)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/rules/match")
def preview_rule_match(data: MatchPreviewIn, db: Session = Depends(get_db)):
    result = RuleService(db).match(data.merchant, data.description)
    return asdict(result)


@app.get("/api/rules/{rule_id}")
def get_rule(rule_id: int, db: Session = Depends(get_db)):
    try:
        rule = RuleService(db).get(rule_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _rule_payload(rule)


@app.patch("/api/rules/{rule_id}")
def update_rule(rule_id: int, data: RuleUpdate, db: Session = Depends(get_db)):
    try:
        rule = RuleService(db).update(rule_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _rule_payload(rule)


@app.delete("/api/rules/{rule_id}", status_code=204)
def delete_rule(rule_id: int, db: Session = Depends(get_db)):
    try:
        RuleService(db).delete(rule_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/accounts/{account_id}/transactions")
def list_transactions(
    account_id: int, page: int = 1, limit: int = 50, db: Session = Depends(get_db)
):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    try:
        items = TransactionService(db).list_for_account(
            account_id, limit=limit + 1, offset=(page - 1) * limit
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    has_more = len(items) > limit
    return {
        "items": [_transaction_payload(t) for t in items[:limit]],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/accounts/{account_id}/transactions", status_code=201)
def create_transaction(
    account_id: int, data: TransactionIn, db: Session = Depends(get_db)
):
    try:
        txn = TransactionService(db).create(account_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _transaction_payload(txn)


@app.post("/api/accounts/{account_id}/transactions/import")
async def import_transactions(
    account_id: int, file: UploadFile = File(...), db: Session = Depends(get_db)
):
    try:
        content = (await file.read()).decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="File must be UTF-8") from exc
    try:
        result = CSVService(db).import_transactions(account_id, content)
    except ValueError as exc:
        raise _http_error(exc) from exc
    logger.info(f"csv_upload: filename={file.filename} account_id={account_id}")
    return result.model_dump()


@app.patch("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int, data: TransactionUpdate, db: Session = Depends(get_db)
):
    try:
        txn = TransactionService(db).update(transaction_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _transaction_payload(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/webhooks/mockbank")
def receive_mockbank_webhook(payload: WebhookPayloadIn, db: Session = Depends(get_db)):
    event = WebhookService(db).receive(payload, source="mockbank")
    return _event_payload(event)


@app.get("/api/webhooks/events")
def list_webhook_events(
    status: Optional[WebhookEventStatus] = None, db: Session = Depends(get_db)
):
    return [_event_payload(e) for e in WebhookService(db).list_events(status)]
