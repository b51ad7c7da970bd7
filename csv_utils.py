import csv
from datetime import datetime
from decimal import Decimal, InvalidOperation
from io import StringIO

from schemas import CSVRow

CSV_COLUMNS = ("PostedAt", "Amount", "Merchant", "Description", "CategoryId", "Notes")
REQUIRED_COLUMNS = CSV_COLUMNS[:4]


def parse_posted_at(value: str) -> datetime:
    value = value.strip()
    try:
        return datetime.strptime(value, "%Y-%m-%d %H:%M:%S")
    except ValueError:
        pass
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise ValueError(
            f"Invalid date format: {value!r}. Expected YYYY-MM-DD or YYYY-MM-DD HH:MM:SS"
        ) from exc


def parse_amount(value: str, *, allow_negative: bool = True) -> int:
    clean = value.strip().replace("€", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def _optional(raw: dict, key: str):
    value = (raw.get(key) or "").strip()
    return value or None


def parse_csv(content: str) -> tuple[list[CSVRow], list[str], int]:
    """Parse an import file.

    Returns the valid rows, one error string per rejected line and the number
    of data lines read. Line numbers count the header as line 1.
    """
    reader = csv.DictReader(StringIO(content))
    missing = [c for c in REQUIRED_COLUMNS if c not in (reader.fieldnames or [])]
    if missing:
        raise ValueError(f"Missing CSV columns: {', '.join(missing)}")

    rows: list[CSVRow] = []
    errors: list[str] = []
    total = 0
    for raw in reader:
        line = reader.line_num
        if not any((v or "").strip() for v in raw.values() if isinstance(v, str)):
            continue
        total += 1
        try:
            category_raw = _optional(raw, "CategoryId")
            try:
                category_id = int(category_raw) if category_raw else None
            except ValueError as exc:
                raise ValueError(f"Invalid category id: {category_raw!r}") from exc
            rows.append(
                CSVRow(
                    line_number=line,
                    posted_at=parse_posted_at(raw.get("PostedAt") or ""),
                    amount_cents=parse_amount(raw.get("Amount") or ""),
                    merchant=_optional(raw, "Merchant"),
                    description=_optional(raw, "Description"),
                    category_id=category_id,
                    notes=_optional(raw, "Notes"),
                )
            )
        except Exception as exc:
            errors.append(f"Line {line}: {exc}")
    return rows, errors, total
