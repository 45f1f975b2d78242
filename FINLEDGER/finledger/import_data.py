"""
Data Import Module
Reads legacy transactions and opening balances from Excel or CSV files.
Amounts in files are major units ("1,250.50") and are stored as minor units.
"""
from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, List, Optional, Tuple
import logging

import pandas as pd

from . import db
from . import validation
from .errors import LedgerError, ValidationError
from .opening_balances import GLOpeningBalance, OpeningBalanceImporter, StudentOpeningBalance

logger = logging.getLogger(__name__)

LEGACY_COLUMNS = ['TransactionRef', 'Date', 'Type', 'Amount']
LEGACY_OPTIONAL_COLUMNS = ['Category', 'PaymentMethod', 'Description', 'StudentID', 'StaffID', 'TermID', 'RecordedBy']
STUDENT_BALANCE_COLUMNS = ['StudentID', 'Amount', 'BalanceType']
GL_BALANCE_COLUMNS = ['AccountCode', 'Debit', 'Credit']

ImportResult = Tuple[int, int, List[str]]


def read_frame(file_path: Path) -> pd.DataFrame:
    """Load a .csv / .xlsx / .xls file with every cell as text."""
    file_path = Path(file_path)
    suffix = file_path.suffix.lower()
    if suffix == ".csv":
        return pd.read_csv(file_path, dtype=str, keep_default_na=False)
    if suffix in (".xlsx", ".xls"):
        return pd.read_excel(file_path, dtype=str, keep_default_na=False)
    raise ValidationError(f"Unsupported file type: {suffix or '(none)'}")


def _cell(row: pd.Series, column: str) -> str:
    if column not in row.index:
        return ""
    value = row[column]
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return ""
    return str(value).strip()


def _date_cell(row: pd.Series, column: str) -> Optional[str]:
    raw = _cell(row, column)
    # Excel dates arrive as "2024-01-05 00:00:00"
    ok, parsed = validation.validate_date(raw[:10])
    return parsed.isoformat() if ok else None


def _int_cell(row: pd.Series, column: str) -> Optional[int]:
    raw = _cell(row, column)
    if not raw:
        return None
    try:
        return int(float(raw))
    except ValueError:
        raise ValidationError(f"{column} must be a whole number, got {raw!r}")


def _amount_cell(row: pd.Series, column: str, *, required: bool = True) -> int:
    raw = _cell(row, column)
    if not raw and not required:
        return 0
    ok, minor = validation.parse_amount(raw)
    if not ok:
        raise ValidationError(f"Invalid {column}: {raw!r}")
    return minor


def _missing(df: pd.DataFrame, required: List[str]) -> List[str]:
    return [col for col in required if col not in df.columns]


def import_legacy_transactions(file_path: Path, conn: sqlite3.Connection, *, user_id: str) -> ImportResult:
    """
    Stage legacy rows for the backfill. Rows whose TransactionRef is already
    staged are reported and left alone. Rows without RecordedBy are credited
    to the importing user.

    Returns: (success_count, error_count, error_messages)
    """
    try:
        validation.require_actor(user_id)
        df = read_frame(file_path)
    except LedgerError as e:
        return (0, 0, [e.message])
    missing_cols = _missing(df, LEGACY_COLUMNS)
    if missing_cols:
        return (0, 0, [f"Missing required columns: {', '.join(missing_cols)}"])

    errors: List[str] = []
    success_count = 0
    error_count = 0
    for idx, row in df.iterrows():
        line_no = idx + 2
        try:
            ref = validation.sanitize_string(_cell(row, 'TransactionRef'), max_length=50)
            if not ref:
                raise ValidationError("Missing transaction reference")
            txn_date = _date_cell(row, 'Date')
            if txn_date is None:
                raise ValidationError(f"Invalid date format: {_cell(row, 'Date')}")
            txn_type = _cell(row, 'Type').upper().replace(" ", "_")
            if not txn_type:
                raise ValidationError("Missing transaction type")
            amount = _amount_cell(row, 'Amount')
            if amount <= 0:
                raise ValidationError("Amount must be positive")
            values: Tuple[Any, ...] = (
                ref,
                txn_date,
                txn_type,
                _cell(row, 'Category') or None,
                amount,
                _cell(row, 'PaymentMethod').upper() or None,
                validation.sanitize_string(_cell(row, 'Description'), max_length=validation.MAX_DESCRIPTION_LENGTH)
                or None,
                _int_cell(row, 'StudentID'),
                _int_cell(row, 'StaffID'),
                _int_cell(row, 'TermID'),
                _cell(row, 'RecordedBy') or str(user_id),
            )
            try:
                with db.atomic(conn):
                    conn.execute(
                        """
                        INSERT INTO legacy_transaction(
                            transaction_ref, transaction_date, transaction_type, category, amount,
                            payment_method, description, student_id, staff_id, term_id, recorded_by
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        values,
                    )
            except sqlite3.IntegrityError:
                raise ValidationError(f"Transaction reference already imported: {ref}")
            success_count += 1
        except LedgerError as e:
            errors.append(f"Row {line_no}: {e.message}")
            error_count += 1

    if success_count:
        with db.atomic(conn):
            db.log_audit(
                action="legacy_transactions_imported",
                details=db.audit_details(file=str(file_path), imported=success_count, errors=error_count),
                user=user_id,
                entity_type="LEGACY_TRANSACTION",
                conn=conn,
            )
    logger.info(f"Legacy import from {file_path} by {user_id}: {success_count} rows, {error_count} errors")
    return (success_count, error_count, errors)


def import_student_opening_balances_from_file(
    file_path: Path,
    year_id: int,
    user_id: str,
    *,
    conn: sqlite3.Connection,
    importer: Optional[OpeningBalanceImporter] = None,
    entry_date: Optional[str] = None,
) -> ImportResult:
    """
    Expected columns: StudentID, Amount, BalanceType (DEBIT/CREDIT), optional Description.
    The batch is imported only if every row parses.
    """
    try:
        df = read_frame(file_path)
    except LedgerError as e:
        return (0, 0, [e.message])
    missing_cols = _missing(df, STUDENT_BALANCE_COLUMNS)
    if missing_cols:
        return (0, 0, [f"Missing required columns: {', '.join(missing_cols)}"])

    balances: List[StudentOpeningBalance] = []
    errors: List[str] = []
    for idx, row in df.iterrows():
        try:
            student_id = _int_cell(row, 'StudentID')
            if student_id is None:
                raise ValidationError("Missing StudentID")
            balances.append(
                StudentOpeningBalance(
                    student_id=student_id,
                    amount=_amount_cell(row, 'Amount'),
                    balance_type=_cell(row, 'BalanceType').upper(),
                    description=_cell(row, 'Description') or None,
                )
            )
        except LedgerError as e:
            errors.append(f"Row {idx + 2}: {e.message}")
    if errors:
        return (0, len(errors), errors)

    importer = importer or OpeningBalanceImporter(conn)
    result = importer.import_student_opening_balances(
        balances, year_id, Path(file_path).name, user_id, entry_date=entry_date
    )
    if not result["success"]:
        return (0, len(balances), [result["message"]])
    return (result["imported"], 0, [])


def import_gl_opening_balances_from_file(
    file_path: Path,
    year_id: int,
    user_id: str,
    *,
    conn: sqlite3.Connection,
    importer: Optional[OpeningBalanceImporter] = None,
    entry_date: Optional[str] = None,
) -> ImportResult:
    """Expected columns: AccountCode, Debit, Credit, optional Description."""
    try:
        df = read_frame(file_path)
    except LedgerError as e:
        return (0, 0, [e.message])
    missing_cols = _missing(df, GL_BALANCE_COLUMNS)
    if missing_cols:
        return (0, 0, [f"Missing required columns: {', '.join(missing_cols)}"])

    balances: List[GLOpeningBalance] = []
    errors: List[str] = []
    for idx, row in df.iterrows():
        try:
            code = _cell(row, 'AccountCode')
            if not code:
                raise ValidationError("Missing AccountCode")
            balances.append(
                GLOpeningBalance(
                    gl_account_code=code,
                    debit_amount=_amount_cell(row, 'Debit', required=False),
                    credit_amount=_amount_cell(row, 'Credit', required=False),
                    description=_cell(row, 'Description') or None,
                )
            )
        except LedgerError as e:
            errors.append(f"Row {idx + 2}: {e.message}")
    if errors:
        return (0, len(errors), errors)

    importer = importer or OpeningBalanceImporter(conn)
    result = importer.import_gl_opening_balances(
        balances, year_id, user_id, source=Path(file_path).name, entry_date=entry_date
    )
    if not result["success"]:
        return (0, len(balances), [result["message"]])
    return (result["imported"], 0, [])
