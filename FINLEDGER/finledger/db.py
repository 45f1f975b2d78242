import os
import sqlite3
import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Tuple, Union


logger = logging.getLogger(__name__)

DB_DIR = Path(os.environ.get("FINLEDGER_DATA_DIR", "."))
DB_PATH = DB_DIR / os.environ.get("FINLEDGER_DB_NAME", "finledger.sqlite3")

ACCOUNT_TYPES: Tuple[str, ...] = ("ASSET", "LIABILITY", "EQUITY", "REVENUE", "EXPENSE")

ENTRY_TYPES: Tuple[str, ...] = (
    "FEE_PAYMENT",
    "FEE_INVOICE",
    "EXPENSE",
    "INCOME",
    "SALARY",
    "REFUND",
    "OPENING_BALANCE",
    "ADJUSTMENT",
    "ASSET_PURCHASE",
    "ASSET_DISPOSAL",
    "LOAN_DISBURSEMENT",
    "LOAN_REPAYMENT",
    "DONATION",
    "GRANT",
)

ALL_DEPARTMENTS = "ALL_DEPARTMENTS"


def get_connection(path: Optional[Union[str, Path]] = None) -> sqlite3.Connection:
    """
    Open a new connection to the store.

    Each call returns a fresh handle; callers pass it explicitly to every
    component. The connection runs in autocommit mode and multi-row writes
    are grouped with ``atomic``.
    """
    if path is None:
        DB_DIR.mkdir(parents=True, exist_ok=True)
        path = DB_PATH
    conn = sqlite3.connect(str(path), isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def atomic(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """All-or-nothing block backed by a savepoint, safe to nest."""
    name = f"sp_{uuid.uuid4().hex}"
    conn.execute(f"SAVEPOINT {name}")
    try:
        yield conn
    except BaseException:
        conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
        conn.execute(f"RELEASE SAVEPOINT {name}")
        raise
    else:
        conn.execute(f"RELEASE SAVEPOINT {name}")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def today_iso() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def init_db(conn: Optional[sqlite3.Connection] = None, *, reset: bool = False) -> None:
    close_after = conn is None
    if conn is None:
        conn = get_connection()
    try:
        _create_schema(conn)
        if reset:
            _clear_domain_tables(conn)
        run_migrations(conn)
    finally:
        if close_after:
            conn.close()


# Children first so foreign keys hold while clearing.
DOMAIN_TABLES: Tuple[str, ...] = (
    "bank_statement_line",
    "reconciliation_adjustment",
    "ledger_reconciliation",
    "bank_statement",
    "bank_account",
    "integrity_check_run",
    "void_audit",
    "approval_history",
    "approval_request",
    "opening_balance",
    "journal_entry_line",
    "journal_entry",
    "legacy_transaction",
    "budget_allocation",
    "audit_log",
)


def _clear_domain_tables(conn: sqlite3.Connection) -> None:
    with atomic(conn):
        for table in DOMAIN_TABLES:
            conn.execute(f"DELETE FROM {table}")
    logger.warning("Domain tables cleared")


def _create_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS gl_account (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            code TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            account_type TEXT NOT NULL CHECK(account_type IN ('ASSET','LIABILITY','EQUITY','REVENUE','EXPENSE')),
            normal_balance TEXT NOT NULL CHECK(normal_balance IN ('DEBIT','CREDIT')),
            parent_code TEXT REFERENCES gl_account(code),
            description TEXT,
            is_system INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT
        );

        -- Import staging for the flat pre-ledger transaction log
        CREATE TABLE IF NOT EXISTS legacy_transaction (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            transaction_ref TEXT NOT NULL UNIQUE,
            transaction_date TEXT NOT NULL,
            transaction_type TEXT NOT NULL,
            category TEXT,
            amount INTEGER NOT NULL,
            payment_method TEXT,
            description TEXT,
            student_id INTEGER,
            staff_id INTEGER,
            term_id INTEGER,
            recorded_by TEXT NOT NULL DEFAULT 'system',
            is_voided INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS journal_entry (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            entry_ref TEXT NOT NULL UNIQUE,
            entry_date TEXT NOT NULL,
            entry_type TEXT NOT NULL CHECK(entry_type IN (
                'FEE_PAYMENT','FEE_INVOICE','EXPENSE','INCOME','SALARY','REFUND','OPENING_BALANCE',
                'ADJUSTMENT','ASSET_PURCHASE','ASSET_DISPOSAL','LOAN_DISBURSEMENT','LOAN_REPAYMENT',
                'DONATION','GRANT'
            )),
            description TEXT NOT NULL,
            student_id INTEGER,
            staff_id INTEGER,
            term_id INTEGER,
            is_posted INTEGER NOT NULL DEFAULT 0,
            posted_by TEXT,
            posted_at TEXT,
            is_voided INTEGER NOT NULL DEFAULT 0,
            voided_reason TEXT,
            voided_by TEXT,
            voided_at TEXT,
            approval_status TEXT NOT NULL DEFAULT 'PENDING' CHECK(approval_status IN ('PENDING','APPROVED','REJECTED')),
            created_by TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            source_legacy_transaction_id INTEGER REFERENCES legacy_transaction(id)
        );
        CREATE INDEX IF NOT EXISTS idx_journal_entry_date ON journal_entry(entry_date);
        CREATE INDEX IF NOT EXISTS idx_journal_entry_student ON journal_entry(student_id);

        CREATE TABLE IF NOT EXISTS journal_entry_line (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            journal_entry_id INTEGER NOT NULL REFERENCES journal_entry(id) ON DELETE CASCADE,
            line_number INTEGER NOT NULL,
            gl_account_code TEXT NOT NULL REFERENCES gl_account(code),
            debit_amount INTEGER NOT NULL DEFAULT 0,
            credit_amount INTEGER NOT NULL DEFAULT 0,
            description TEXT,
            CHECK (debit_amount >= 0 AND credit_amount >= 0),
            CHECK ((debit_amount > 0 AND credit_amount = 0) OR (credit_amount > 0 AND debit_amount = 0)),
            UNIQUE(journal_entry_id, line_number)
        );
        CREATE INDEX IF NOT EXISTS idx_journal_line_account ON journal_entry_line(gl_account_code);

        CREATE TABLE IF NOT EXISTS approval_rule (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            rule_name TEXT NOT NULL UNIQUE,
            description TEXT,
            transaction_type TEXT NOT NULL,
            min_amount INTEGER,
            max_amount INTEGER,
            days_since_transaction INTEGER,
            required_role TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS approval_request (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            entity_type TEXT NOT NULL,
            entity_id INTEGER NOT NULL,
            action TEXT NOT NULL,
            rule_id INTEGER REFERENCES approval_rule(id),
            required_role TEXT,
            status TEXT NOT NULL DEFAULT 'PENDING' CHECK(status IN ('PENDING','APPROVED','REJECTED','CANCELLED')),
            requested_by TEXT NOT NULL,
            requested_at TEXT NOT NULL,
            request_notes TEXT,
            reviewed_by TEXT,
            reviewed_at TEXT,
            review_notes TEXT,
            payload TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_approval_request_entity ON approval_request(entity_type, entity_id);

        CREATE TABLE IF NOT EXISTS approval_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            approval_request_id INTEGER NOT NULL REFERENCES approval_request(id),
            action TEXT NOT NULL,
            action_by TEXT NOT NULL,
            previous_status TEXT,
            new_status TEXT NOT NULL,
            notes TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS void_audit (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            journal_entry_id INTEGER NOT NULL REFERENCES journal_entry(id),
            entry_type TEXT NOT NULL,
            original_amount INTEGER NOT NULL,
            description TEXT,
            void_reason TEXT NOT NULL,
            voided_by TEXT NOT NULL,
            voided_at TEXT NOT NULL,
            approval_request_id INTEGER REFERENCES approval_request(id),
            recovered_amount INTEGER,
            recovered_method TEXT,
            recovered_at TEXT,
            recovered_by TEXT,
            notes TEXT
        );

        CREATE TABLE IF NOT EXISTS opening_balance (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            academic_year_id INTEGER NOT NULL,
            balance_type TEXT NOT NULL CHECK(balance_type IN ('STUDENT','GL')),
            gl_account_code TEXT NOT NULL REFERENCES gl_account(code),
            student_id INTEGER,
            description TEXT,
            debit_amount INTEGER NOT NULL DEFAULT 0,
            credit_amount INTEGER NOT NULL DEFAULT 0,
            source TEXT,
            journal_entry_id INTEGER REFERENCES journal_entry(id),
            imported_by TEXT NOT NULL,
            imported_at TEXT NOT NULL,
            is_verified INTEGER NOT NULL DEFAULT 0,
            verified_by TEXT,
            verified_at TEXT,
            CHECK (debit_amount >= 0 AND credit_amount >= 0)
        );
        CREATE INDEX IF NOT EXISTS idx_opening_balance_year ON opening_balance(academic_year_id);

        CREATE TABLE IF NOT EXISTS bank_account (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_name TEXT NOT NULL,
            account_number TEXT NOT NULL UNIQUE,
            bank_name TEXT,
            gl_account_code TEXT NOT NULL REFERENCES gl_account(code),
            opening_balance INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS bank_statement (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            bank_account_id INTEGER NOT NULL REFERENCES bank_account(id),
            statement_date TEXT NOT NULL,
            opening_balance INTEGER NOT NULL,
            closing_balance INTEGER NOT NULL,
            statement_reference TEXT,
            status TEXT NOT NULL DEFAULT 'PENDING' CHECK(status IN ('PENDING','RECONCILED','PARTIAL')),
            reconciled_by TEXT,
            reconciled_at TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS bank_statement_line (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            bank_statement_id INTEGER NOT NULL REFERENCES bank_statement(id) ON DELETE CASCADE,
            transaction_date TEXT NOT NULL,
            description TEXT NOT NULL,
            reference TEXT,
            debit_amount INTEGER NOT NULL DEFAULT 0,
            credit_amount INTEGER NOT NULL DEFAULT 0,
            running_balance INTEGER,
            is_matched INTEGER NOT NULL DEFAULT 0,
            matched_entry_id INTEGER REFERENCES journal_entry(id),
            matched_by TEXT,
            matched_at TEXT
        );
        CREATE UNIQUE INDEX IF NOT EXISTS idx_statement_line_matched_entry
            ON bank_statement_line(matched_entry_id) WHERE matched_entry_id IS NOT NULL;

        CREATE TABLE IF NOT EXISTS reconciliation_adjustment (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            bank_statement_id INTEGER NOT NULL REFERENCES bank_statement(id),
            adjustment_type TEXT NOT NULL CHECK(adjustment_type IN ('BANK_CHARGE','INTEREST','ERROR','TIMING','OTHER')),
            amount INTEGER NOT NULL,
            description TEXT NOT NULL,
            created_by TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS ledger_reconciliation (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            reconciliation_date TEXT NOT NULL,
            bank_account_id INTEGER NOT NULL REFERENCES bank_account(id),
            bank_statement_id INTEGER REFERENCES bank_statement(id),
            gl_account_code TEXT NOT NULL,
            opening_balance INTEGER NOT NULL,
            total_debits INTEGER NOT NULL,
            total_credits INTEGER NOT NULL,
            closing_balance INTEGER NOT NULL,
            calculated_balance INTEGER NOT NULL,
            variance INTEGER NOT NULL,
            is_balanced INTEGER NOT NULL DEFAULT 0,
            reconciled_by TEXT NOT NULL,
            notes TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS integrity_check_run (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_date TEXT NOT NULL,
            overall_status TEXT NOT NULL,
            total_checks INTEGER NOT NULL,
            passed_checks INTEGER NOT NULL,
            failed_checks INTEGER NOT NULL,
            warning_checks INTEGER NOT NULL,
            details_json TEXT,
            performed_by TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS budget_allocation (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            gl_account_code TEXT NOT NULL REFERENCES gl_account(code),
            fiscal_year INTEGER NOT NULL,
            department TEXT,
            allocated_amount INTEGER NOT NULL CHECK(allocated_amount >= 0),
            notes TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_by TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT,
            UNIQUE(gl_account_code, fiscal_year, department)
        );

        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            user TEXT NOT NULL,
            action TEXT NOT NULL,
            entity_type TEXT,
            entity_id INTEGER,
            details TEXT
        );

        CREATE TABLE IF NOT EXISTS schema_migrations (
            name TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        );
        """
    )


# Every monetary column, scaled together by the minor-units migration.
MONEY_COLUMNS: List[Tuple[str, str]] = [
    ("legacy_transaction", "amount"),
    ("journal_entry_line", "debit_amount"),
    ("journal_entry_line", "credit_amount"),
    ("approval_rule", "min_amount"),
    ("approval_rule", "max_amount"),
    ("void_audit", "original_amount"),
    ("void_audit", "recovered_amount"),
    ("opening_balance", "debit_amount"),
    ("opening_balance", "credit_amount"),
    ("bank_account", "opening_balance"),
    ("bank_statement", "opening_balance"),
    ("bank_statement", "closing_balance"),
    ("bank_statement_line", "debit_amount"),
    ("bank_statement_line", "credit_amount"),
    ("bank_statement_line", "running_balance"),
    ("reconciliation_adjustment", "amount"),
    ("budget_allocation", "allocated_amount"),
]


def _migrate_initial_schema(conn: sqlite3.Connection) -> None:
    # Tables come from _create_schema; recorded so later steps have an anchor.
    return None


def _migrate_amounts_to_minor_units(conn: sqlite3.Connection) -> None:
    for table, column in MONEY_COLUMNS:
        conn.execute(
            f"UPDATE {table} SET {column} = CAST(ROUND({column} * 100) AS INTEGER) WHERE {column} IS NOT NULL"
        )


def _migrate_journal_entry_columns(conn: sqlite3.Connection) -> None:
    _ensure_column(conn, "journal_entry", "department TEXT")
    _ensure_column(conn, "journal_entry", "approved_by TEXT")
    _ensure_column(conn, "journal_entry", "approved_at TEXT")


def _migrate_budget_department_sentinel(conn: sqlite3.Connection) -> None:
    conn.execute(
        "UPDATE budget_allocation SET department = ? WHERE department IS NULL OR TRIM(department) = ''",
        (ALL_DEPARTMENTS,),
    )


def _migrate_unique_legacy_source(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_journal_entry_legacy_source
        ON journal_entry(source_legacy_transaction_id)
        WHERE source_legacy_transaction_id IS NOT NULL
        """
    )


MIGRATIONS: List[Tuple[str, Callable[[sqlite3.Connection], None]]] = [
    ("0001_initial_schema", _migrate_initial_schema),
    ("0002_amounts_to_minor_units", _migrate_amounts_to_minor_units),
    ("0003_journal_entry_columns", _migrate_journal_entry_columns),
    ("0004_budget_department_sentinel", _migrate_budget_department_sentinel),
    ("0005_unique_legacy_source", _migrate_unique_legacy_source),
]


def run_migrations(conn: sqlite3.Connection) -> List[str]:
    """Apply pending named migrations in order. Returns the names applied now."""
    applied = set(list_applied_migrations(conn))
    newly_applied: List[str] = []
    for name, step in MIGRATIONS:
        if name in applied:
            continue
        with atomic(conn):
            step(conn)
            conn.execute(
                "INSERT INTO schema_migrations(name, applied_at) VALUES (?, ?)",
                (name, now_iso()),
            )
        logger.info(f"Applied migration {name}")
        newly_applied.append(name)
    return newly_applied


def list_applied_migrations(conn: sqlite3.Connection) -> List[str]:
    cur = conn.execute("SELECT name FROM schema_migrations ORDER BY name")
    return [row["name"] for row in cur.fetchall()]


def _ensure_column(conn: sqlite3.Connection, table: str, column_def: str) -> None:
    col_name = column_def.split()[0]
    cur = conn.execute(f"PRAGMA table_info({table})")
    if any(row["name"] == col_name for row in cur.fetchall()):
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column_def}")


def seed_chart_of_accounts(conn: Optional[sqlite3.Connection] = None) -> None:
    close_after = conn is None
    if conn is None:
        conn = get_connection()
    try:
        accounts = [
            # Code, Name, Type, Normal balance, Parent code
            ("1000", "Current Assets", "ASSET", "DEBIT", None),
            ("1010", "Cash on Hand", "ASSET", "DEBIT", "1000"),
            ("1020", "Bank Account - KCB", "ASSET", "DEBIT", "1000"),
            ("1030", "Bank Account - Equity", "ASSET", "DEBIT", "1000"),
            ("1100", "Accounts Receivable - Students", "ASSET", "DEBIT", "1000"),
            ("1200", "Inventory - Supplies", "ASSET", "DEBIT", "1000"),
            ("1300", "Fixed Assets - Buildings", "ASSET", "DEBIT", None),
            ("1310", "Fixed Assets - Vehicles", "ASSET", "DEBIT", "1300"),
            ("1320", "Fixed Assets - Furniture", "ASSET", "DEBIT", "1300"),
            ("1390", "Accumulated Depreciation", "ASSET", "CREDIT", "1300"),

            ("2000", "Current Liabilities", "LIABILITY", "CREDIT", None),
            ("2010", "Accounts Payable", "LIABILITY", "CREDIT", "2000"),
            ("2020", "Student Credit Balances", "LIABILITY", "CREDIT", "2000"),
            ("2100", "Salary Payable", "LIABILITY", "CREDIT", "2000"),
            ("2110", "PAYE Payable", "LIABILITY", "CREDIT", "2000"),
            ("2120", "NSSF Payable", "LIABILITY", "CREDIT", "2000"),
            ("2130", "SHIF Payable", "LIABILITY", "CREDIT", "2000"),
            ("2140", "Housing Levy Payable", "LIABILITY", "CREDIT", "2000"),
            ("2200", "Loans Payable", "LIABILITY", "CREDIT", None),

            ("3010", "Capital Fund", "EQUITY", "CREDIT", None),
            ("3020", "Retained Earnings", "EQUITY", "CREDIT", None),
            ("3030", "Current Year Surplus/Deficit", "EQUITY", "CREDIT", None),

            ("4010", "Tuition Fees", "REVENUE", "CREDIT", None),
            ("4020", "Boarding Fees", "REVENUE", "CREDIT", None),
            ("4030", "Transport Fees", "REVENUE", "CREDIT", None),
            ("4040", "Activity Fees", "REVENUE", "CREDIT", None),
            ("4050", "Exam Fees", "REVENUE", "CREDIT", None),
            ("4100", "Government Grants - Capitation", "REVENUE", "CREDIT", None),
            ("4200", "Donations", "REVENUE", "CREDIT", None),
            ("4300", "Other Income", "REVENUE", "CREDIT", None),

            ("5010", "Salaries - Teaching Staff", "EXPENSE", "DEBIT", None),
            ("5020", "Salaries - Non-Teaching Staff", "EXPENSE", "DEBIT", None),
            ("5030", "Employer NSSF Contribution", "EXPENSE", "DEBIT", None),
            ("5040", "Employer SHIF Contribution", "EXPENSE", "DEBIT", None),
            ("5050", "Employer Housing Levy", "EXPENSE", "DEBIT", None),
            ("5100", "Food & Catering", "EXPENSE", "DEBIT", None),
            ("5200", "Transport - Fuel", "EXPENSE", "DEBIT", None),
            ("5210", "Transport - Driver Salaries", "EXPENSE", "DEBIT", None),
            ("5300", "Utilities - Electricity", "EXPENSE", "DEBIT", None),
            ("5310", "Utilities - Water", "EXPENSE", "DEBIT", None),
            ("5400", "Stationery & Supplies", "EXPENSE", "DEBIT", None),
            ("5410", "Cleaning Supplies", "EXPENSE", "DEBIT", None),
            ("5500", "Repairs & Maintenance", "EXPENSE", "DEBIT", None),
            ("5600", "Depreciation Expense", "EXPENSE", "DEBIT", None),
            ("5700", "Bank Charges", "EXPENSE", "DEBIT", None),
            ("5800", "Professional Fees", "EXPENSE", "DEBIT", None),
            ("5900", "Miscellaneous Expenses", "EXPENSE", "DEBIT", None),
        ]
        with atomic(conn):
            conn.executemany(
                """
                INSERT OR IGNORE INTO gl_account(code, name, account_type, normal_balance, parent_code, is_system, is_active)
                VALUES (?, ?, ?, ?, ?, 1, 1)
                """,
                accounts,
            )
    finally:
        if close_after:
            conn.close()


def seed_approval_rules(conn: Optional[sqlite3.Connection] = None) -> None:
    close_after = conn is None
    if conn is None:
        conn = get_connection()
    try:
        rules = [
            # Name, Description, Transaction type, Min amount, Max amount, Days since, Role
            ("High Value Void", "Voids of 50,000 and above", "VOID", 5_000_000, None, None, "FINANCE_MANAGER"),
            ("Aged Transaction Void", "Voids of entries older than 7 days", "VOID", None, None, 7, "FINANCE_MANAGER"),
            ("Large Payment", "Fee payments of 100,000 and above", "FEE_PAYMENT", 10_000_000, None, None, "FINANCE_MANAGER"),
            ("All Refunds", "Every refund is reviewed", "REFUND", None, None, None, "FINANCE_MANAGER"),
        ]
        with atomic(conn):
            conn.executemany(
                """
                INSERT OR IGNORE INTO approval_rule(
                    rule_name, description, transaction_type, min_amount, max_amount,
                    days_since_transaction, required_role
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                rules,
            )
    finally:
        if close_after:
            conn.close()


def log_audit(
    *,
    action: str,
    details: Optional[str] = None,
    user: str = "system",
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    conn: sqlite3.Connection,
) -> None:
    conn.execute(
        """
        INSERT INTO audit_log(timestamp, user, action, entity_type, entity_id, details)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (now_iso(), str(user), action, entity_type, entity_id, details),
    )


def list_audit_log(
    limit: int = 100,
    *,
    entity_type: Optional[str] = None,
    conn: sqlite3.Connection,
) -> List[sqlite3.Row]:
    params: list = []
    where = ""
    if entity_type:
        where = "WHERE entity_type = ?"
        params.append(entity_type)
    params.append(limit)
    cur = conn.execute(
        f"""
        SELECT id, timestamp, user, action, entity_type, entity_id, details
        FROM audit_log
        {where}
        ORDER BY id DESC
        LIMIT ?
        """,
        params,
    )
    return cur.fetchall()


def audit_details(**fields) -> str:
    return json.dumps(fields, default=str)


def export_rows_to_csv(rows: Iterable, headers: Iterable[str], output_path: Path) -> None:
    import csv

    hdrs = list(headers)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(hdrs)
        for r in rows:
            writer.writerow(_row_values(r, hdrs))


def export_rows_to_excel(rows: Iterable, headers: Iterable[str], output_path: Path, *, sheet_name: str = "Sheet1") -> None:
    from openpyxl import Workbook

    output_path.parent.mkdir(parents=True, exist_ok=True)
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_name

    hdrs = list(headers)
    ws.append(hdrs)
    for r in rows:
        ws.append(_row_values(r, hdrs))
    wb.save(str(output_path))


def _row_values(row, headers: List[str]) -> list:
    if isinstance(row, (sqlite3.Row, dict)):
        return [row[h] for h in headers]
    return list(row)
