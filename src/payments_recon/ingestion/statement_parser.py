"""CSV / XLSX statement parsing.

Provider statements come as exports in several layouts: Russian or English
headers, one or more sheets, a title block above the header row. The parser
finds the header row, maps columns to statement fields and runs every row
through the normalizer. Rows that fail validation are counted and skipped.
"""

import csv
import io
import logging
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import openpyxl
from pydantic import BaseModel, Field

from ..errors import ValidationError
from .models import Transaction, parse_decimal
from .normalizer import normalize_payload
from .statuses import NormalizedStatus, SourceChannel, TransactionType

logger = logging.getLogger(__name__)

HEADER_SCAN_ROWS = 15
DEFAULT_CURRENCY = "BYN"
DEFAULT_TRANSACTION_TYPE = "Платеж"

# Exact header names (lower-cased) per statement field.
_EXACT_HEADERS: Dict[str, Tuple[str, ...]] = {
    "uid": ("uid", "id транзакции", "transaction id"),
    "status": ("статус", "status"),
    "transaction_type": ("тип транзакции", "transaction type", "тип операции", "type"),
    "message": ("сообщение", "message"),
    "amount": ("сумма", "amount"),
    "currency": ("валюта", "currency"),
    "description": ("описание", "description"),
    "tracking_id": ("трекинг id", "tracking id", "tracking_id"),
    "paid_at": ("дата оплаты", "paid at", "paid_at"),
    "created_at": ("дата создания", "created at", "created_at", "дата"),
    "email": ("e-mail", "email"),
    "card_holder": ("владелец карты", "card holder"),
    "card_last4": ("карта", "card"),
    "card_brand": ("платежная система", "card brand", "brand"),
    "first_name": ("имя", "first name"),
    "last_name": ("фамилия", "last name"),
    "country": ("страна", "country"),
    "city": ("город", "city"),
    "phone": ("телефон", "phone"),
    "ip": ("ip", "ip address"),
    "bank_name": ("банк", "bank"),
    "bank_country": ("страна банка", "bank country"),
    "commission_total": ("сумма комиссий", "total fee"),
    "payout_amount": ("перечисленная сумма", "transferred amount"),
}

# Fallback fragments for layouts with unfamiliar headers: (field, fragments, excluded fragments).
_HEADER_FRAGMENTS: Tuple[Tuple[str, Tuple[str, ...], Tuple[str, ...]], ...] = (
    ("uid", ("uid", "id транз"), ()),
    ("status", ("статус", "status"), ()),
    ("card_holder", ("владел", "holder"), ()),
    ("transaction_type", ("тип", "type", "операц"), ("карт", "card")),
    ("commission_total", ("комисс", "fee"), ("%",)),
    ("amount", ("сумма", "amount"), ("комисс", "fee", "перечисл", "transfer")),
    ("currency", ("валют", "currency"), ()),
    ("paid_at", ("оплат", "paid"), ()),
    ("created_at", ("дата", "date", "время", "time"), ("действ", "valid", "перечисл", "transfer")),
    ("email", ("почт", "mail"), ()),
    ("card_last4", ("карт", "card", "pan"), ("владел", "holder", "банк", "bank", "действ", "valid", "bin")),
    ("tracking_id", ("tracking", "трекинг"), ()),
)


class RowIssue(BaseModel):
    """A statement row that was skipped."""
    sheet: Optional[str] = None
    row_number: int
    field: str
    message: str


class StatementStats(BaseModel):
    """Per-bucket counts and totals of a parsed statement."""
    payments_count: int = 0
    payments_amount: Decimal = Decimal("0")
    refunds_count: int = 0
    refunds_amount: Decimal = Decimal("0")
    cancellations_count: int = 0
    cancellations_amount: Decimal = Decimal("0")
    errors_count: int = 0
    errors_amount: Decimal = Decimal("0")
    pending_count: int = 0
    commission_total: Decimal = Decimal("0")
    payout_total: Decimal = Decimal("0")


class StatementParseResult(BaseModel):
    """Outcome of parsing one statement file."""
    transactions: List[Transaction] = Field(default_factory=list)
    sheets: List[str] = Field(default_factory=list)
    total_rows: int = 0
    invalid_rows: int = 0
    issues: List[RowIssue] = Field(default_factory=list)
    stats: StatementStats = Field(default_factory=StatementStats)


def _header_text(value: Any) -> str:
    return str(value).strip().lower() if value is not None else ""


def _is_header_row(row: Sequence[Any]) -> bool:
    for cell in row:
        text = _header_text(cell)
        if text == "uid" or text.startswith("uid") or "id транз" in text:
            return True
    return False


def map_columns(headers: Sequence[Any]) -> Dict[int, str]:
    """Map header cell positions to statement fields.

    Exact names win; fragments are only tried for fields and columns left
    unresolved, so ``Страна банка`` never shadows ``Страна``.
    """
    texts = [_header_text(h) for h in headers]
    mapping: Dict[int, str] = {}
    resolved = set()

    for field, names in _EXACT_HEADERS.items():
        for idx, text in enumerate(texts):
            if idx not in mapping and text in names:
                mapping[idx] = field
                resolved.add(field)
                break

    for field, fragments, excluded in _HEADER_FRAGMENTS:
        if field in resolved:
            continue
        for idx, text in enumerate(texts):
            if idx in mapping or not text:
                continue
            if any(f in text for f in fragments) and not any(x in text for x in excluded):
                mapping[idx] = field
                resolved.add(field)
                break

    return mapping


def _json_cell(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return value


def _card_last4(mask: Any) -> Optional[str]:
    digits = "".join(ch for ch in str(mask) if ch.isdigit())
    return digits[-4:] if len(digits) >= 4 else None


def _row_to_payload(row: Sequence[Any], columns: Dict[int, str]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for idx, field in columns.items():
        if idx >= len(row):
            continue
        value = _json_cell(row[idx])
        if value is None or value == "":
            continue
        payload[field] = value

    if "card_last4" in payload:
        payload["card_last4"] = _card_last4(payload["card_last4"])
    payload["occurred_at"] = payload.pop("paid_at", None) or payload.pop("created_at", None)
    payload.pop("created_at", None)
    payload.setdefault("currency", DEFAULT_CURRENCY)
    payload.setdefault("transaction_type", DEFAULT_TRANSACTION_TYPE)
    return payload


def _update_stats(stats: StatementStats, transaction: Transaction, payload: Dict[str, Any]) -> None:
    amount = abs(transaction.amount or Decimal("0"))
    status = transaction.normalized_status
    if status == NormalizedStatus.REFUNDED:
        stats.refunds_count += 1
        stats.refunds_amount += amount
    elif status == NormalizedStatus.CANCELLED:
        stats.cancellations_count += 1
        stats.cancellations_amount += amount
    elif status == NormalizedStatus.FAILED:
        stats.errors_count += 1
        stats.errors_amount += amount
    elif status == NormalizedStatus.PENDING:
        stats.pending_count += 1
    elif transaction.effective_type == TransactionType.PAYMENT:
        stats.payments_count += 1
        stats.payments_amount += amount

    for key, attr in (("commission_total", "commission_total"), ("payout_amount", "payout_total")):
        try:
            value = parse_decimal(payload.get(key))
        except ValueError:
            value = None
        if value is not None:
            setattr(stats, attr, getattr(stats, attr) + abs(value))


class StatementParser:
    """Parses statement exports into canonical transactions."""

    def parse_path(self, path: Union[str, Path]) -> StatementParseResult:
        """Parse a statement file from disk."""
        path = Path(path)
        return self.parse(path.read_bytes(), path.name)

    def parse(self, content: bytes, filename: str) -> StatementParseResult:
        """Parse statement bytes; the format is chosen by file extension.

        Raises:
            ValidationError: If the format is unsupported or no header row is found.
        """
        suffix = Path(filename).suffix.lower()
        if suffix in (".xlsx", ".xlsm"):
            sheets = self._read_workbook(content)
        elif suffix in (".csv", ".txt"):
            sheets = [(None, self._read_csv(content))]
        else:
            raise ValidationError("file", f"unsupported statement format {suffix or filename!r}")

        result = StatementParseResult()
        header_found = False
        for sheet_name, rows in sheets:
            if self._parse_sheet(sheet_name, rows, result):
                header_found = True
                if sheet_name:
                    result.sheets.append(sheet_name)

        if not header_found:
            raise ValidationError("file", "no header row with a UID column found")

        logger.info(
            f"Parsed statement {filename}: {len(result.transactions)} rows, "
            f"{result.invalid_rows} skipped"
        )
        return result

    def _read_workbook(self, content: bytes) -> List[Tuple[Optional[str], List[Sequence[Any]]]]:
        wb = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
        try:
            return [
                (ws.title, [row for row in ws.iter_rows(values_only=True)])
                for ws in wb.worksheets
            ]
        finally:
            wb.close()

    def _read_csv(self, content: bytes) -> List[Sequence[Any]]:
        text = content.decode("utf-8-sig")
        sample = text[:4096]
        try:
            dialect = csv.Sniffer().sniff(sample, delimiters=",;\t|")
        except csv.Error:
            dialect = csv.excel
        return [row for row in csv.reader(io.StringIO(text), dialect=dialect)]

    def _parse_sheet(
        self,
        sheet_name: Optional[str],
        rows: List[Sequence[Any]],
        result: StatementParseResult,
    ) -> bool:
        header_idx = None
        for idx, row in enumerate(rows[:HEADER_SCAN_ROWS]):
            if row and _is_header_row(row):
                header_idx = idx
                break
        if header_idx is None:
            logger.debug(f"Sheet {sheet_name!r}: no header row, skipped")
            return False

        columns = map_columns(rows[header_idx])
        if "uid" not in columns.values():
            return False

        for offset, row in enumerate(rows[header_idx + 1:]):
            if not row or all(cell in (None, "") for cell in row):
                continue
            row_number = header_idx + offset + 2
            payload = _row_to_payload(row, columns)
            result.total_rows += 1
            try:
                transaction = normalize_payload(payload, SourceChannel.FILE_IMPORT)
            except ValidationError as e:
                result.invalid_rows += 1
                result.issues.append(RowIssue(
                    sheet=sheet_name,
                    row_number=row_number,
                    field=e.field,
                    message=e.message,
                ))
                logger.debug(f"Skipping row {row_number} of {sheet_name!r}: {e}")
                continue
            result.transactions.append(transaction)
            _update_stats(result.stats, transaction, payload)
        return True
