from pathlib import Path
import argparse
import json
import logging
import sys

from finledger import db
from finledger.import_data import import_legacy_transactions
from finledger.ledger import Ledger


def _print(result) -> None:
    print(json.dumps(result, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="finledger", description="School double-entry ledger")
    parser.add_argument("--db", help="Path to the SQLite store (default from FINLEDGER_DATA_DIR)")
    parser.add_argument("--user", default="system", help="Acting user recorded in the audit trail")
    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init", help="Create or migrate the store and seed reference data")
    init.add_argument("--reset", action="store_true", help="Clear all domain tables first")

    backfill = sub.add_parser("backfill", help="Turn staged legacy transactions into journal entries")
    backfill.add_argument("--dry-run", action="store_true")

    tb = sub.add_parser("trial-balance", help="Print the trial balance for a date range")
    tb.add_argument("start")
    tb.add_argument("end")
    tb.add_argument("--export", type=Path, help="Write to .csv or .xlsx instead of printing")

    verify = sub.add_parser("verify-opening", help="Check that a year's opening balances net to zero")
    verify.add_argument("year", type=int)

    sub.add_parser("integrity-check", help="Run ledger integrity checks")

    imp = sub.add_parser("import-legacy", help="Stage legacy transactions from a CSV or Excel file")
    imp.add_argument("file", type=Path)
    return parser


def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = build_parser().parse_args(argv)

    if args.command == "init":
        conn = db.get_connection(args.db)
        db.init_db(conn, reset=args.reset)
        db.seed_chart_of_accounts(conn)
        db.seed_approval_rules(conn)
        _print({"success": True, "migrations": db.list_applied_migrations(conn)})
        conn.close()
        return 0

    with Ledger.open(args.db) as ledger:
        if args.command == "backfill":
            result = ledger.backfill.run(args.user, dry_run=args.dry_run)
        elif args.command == "trial-balance":
            if args.export:
                path = ledger.journal.export_trial_balance(args.export, args.start, args.end)
                result = {"success": True, "path": str(path)}
            else:
                result = ledger.journal.get_trial_balance(args.start, args.end)
        elif args.command == "verify-opening":
            result = ledger.opening_balances.verify_opening_balances(args.year, args.user)
        elif args.command == "integrity-check":
            result = ledger.reconciliation.run_integrity_checks(args.user)
        else:
            imported, failed, errors = import_legacy_transactions(args.file, ledger.conn, user_id=args.user)
            result = {"success": failed == 0, "imported": imported, "failed": failed, "errors": errors}
    _print(result)
    return 0 if result.get("success", True) else 1


if __name__ == "__main__":
    sys.exit(main())
