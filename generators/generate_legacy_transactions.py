"""
Legacy Transaction Generator for FinLedger
Generates one realistic month of flat school transactions covering:
- Fee payments from students (cash and bank)
- Teaching, non-teaching and driver salaries
- Running expenses (food, fuel, utilities, supplies, repairs)
- Donations, capitation grants and other income
- Occasional refunds
The output file (CSV or Excel) has the columns the legacy import expects.
"""

import argparse
import random
from datetime import date, timedelta
from pathlib import Path

import pandas as pd

# Categories must stay in sync with finledger.backfill.LegacyCategory
TRANSACTION_TYPES = {
    "fee_payment": {
        "type": "FEE_PAYMENT",
        "category": None,
        "description": "Fee payment - {student_name}",
        "methods": ["CASH", "MPESA", "BANK_TRANSFER", "CHEQUE"],
        "amount_range": (2500.0, 45000.0),
        "frequency": 25,
        "student": True,
    },
    "refund": {
        "type": "REFUND",
        "category": None,
        "description": "Fee refund - {student_name}",
        "methods": ["BANK_TRANSFER", "MPESA"],
        "amount_range": (500.0, 8000.0),
        "frequency": 1,
        "student": True,
    },
    "salary_teaching": {
        "type": "SALARY_PAYMENT",
        "category": "SALARY_TEACHING",
        "description": "Salary - {staff_name}",
        "methods": ["BANK_TRANSFER"],
        "amount_range": (35000.0, 85000.0),
        "frequency": 6,
        "staff": True,
        "month_end": True,
    },
    "salary_non_teaching": {
        "type": "SALARY_PAYMENT",
        "category": "SALARY_NON_TEACHING",
        "description": "Salary - {staff_name}",
        "methods": ["BANK_TRANSFER"],
        "amount_range": (15000.0, 30000.0),
        "frequency": 3,
        "staff": True,
        "month_end": True,
    },
    "salary_drivers": {
        "type": "SALARY_PAYMENT",
        "category": "SALARY_DRIVERS",
        "description": "Driver salary - {staff_name}",
        "methods": ["BANK_TRANSFER"],
        "amount_range": (18000.0, 25000.0),
        "frequency": 1,
        "staff": True,
        "month_end": True,
    },
    "food": {
        "type": "EXPENSE",
        "category": "FOOD",
        "description": "Food supplies - {vendor_name}",
        "methods": ["BANK_TRANSFER", "CHEQUE"],
        "amount_range": (8000.0, 60000.0),
        "frequency": 4,
    },
    "fuel": {
        "type": "EXPENSE",
        "category": "FUEL",
        "description": "School bus fuel",
        "methods": ["CASH", "MPESA"],
        "amount_range": (3000.0, 15000.0),
        "frequency": 3,
    },
    "electricity": {
        "type": "EXPENSE",
        "category": "ELECTRICITY",
        "description": "Electricity bill",
        "methods": ["MPESA"],
        "amount_range": (4000.0, 12000.0),
        "frequency": 1,
    },
    "water": {
        "type": "EXPENSE",
        "category": "WATER",
        "description": "Water bill",
        "methods": ["MPESA"],
        "amount_range": (1500.0, 5000.0),
        "frequency": 1,
    },
    "stationery": {
        "type": "EXPENSE",
        "category": "STATIONERY",
        "description": "Stationery - {vendor_name}",
        "methods": ["CASH", "BANK_TRANSFER"],
        "amount_range": (500.0, 7000.0),
        "frequency": 2,
    },
    "repairs": {
        "type": "EXPENSE",
        "category": "REPAIRS",
        "description": "Repairs and maintenance",
        "methods": ["CASH", "BANK_TRANSFER"],
        "amount_range": (1000.0, 20000.0),
        "frequency": 1,
    },
    "bank_charges": {
        "type": "EXPENSE",
        "category": "BANK_CHARGES",
        "description": "Monthly bank charges",
        "methods": ["BANK_TRANSFER"],
        "amount_range": (150.0, 900.0),
        "frequency": 1,
        "month_end": True,
    },
    "donation": {
        "type": "DONATION",
        "category": None,
        "description": "Donation - {donor_name}",
        "methods": ["BANK_TRANSFER", "CHEQUE"],
        "amount_range": (5000.0, 100000.0),
        "frequency": 1,
    },
    "capitation": {
        "type": "GRANT",
        "category": None,
        "description": "Government capitation grant",
        "methods": ["BANK_TRANSFER"],
        "amount_range": (150000.0, 400000.0),
        "frequency": 1,
    },
    "other_income": {
        "type": "INCOME",
        "category": "OTHER_INCOME",
        "description": "Hall hire - {donor_name}",
        "methods": ["CASH", "MPESA"],
        "amount_range": (2000.0, 10000.0),
        "frequency": 1,
    },
}

STUDENT_NAMES = [
    "Achieng Otieno", "Brian Kamau", "Cynthia Wanjiru", "David Mutua", "Esther Njeri",
    "Felix Ochieng", "Grace Chebet", "Hassan Abdi", "Irene Nduta", "James Kiprop",
]
STAFF_NAMES = [
    "Mr. Omondi", "Mrs. Wambui", "Ms. Atieno", "Mr. Kariuki", "Mrs. Jeptoo",
    "Mr. Mwangi", "Ms. Akinyi", "Mr. Barasa",
]
VENDOR_NAMES = ["Unga Distributors", "Nakumatt Supplies", "Text Book Centre", "Mama Mboga Traders"]
DONOR_NAMES = ["Alumni Association", "Parents Association", "Rotary Club", "County Church"]

COLUMNS = [
    "TransactionRef", "Date", "Type", "Category", "Amount", "PaymentMethod",
    "Description", "StudentID", "StaffID", "TermID", "RecordedBy",
]


def generate_month(year: int, month: int, *, seed=None, term_id: int = 1):
    """Return a list of row dicts for one month, sorted by date."""
    rng = random.Random(seed)
    start = date(year, month, 1)
    next_month = date(year + (month // 12), month % 12 + 1, 1)
    days = (next_month - start).days

    rows = []
    for key, cfg in TRANSACTION_TYPES.items():
        for _ in range(cfg["frequency"]):
            if cfg.get("month_end"):
                txn_date = start + timedelta(days=days - 1 - rng.randint(0, 2))
            else:
                txn_date = start + timedelta(days=rng.randint(0, days - 1))
            low, high = cfg["amount_range"]
            amount = round(rng.uniform(low, high), 2)
            student_id = rng.randint(1, len(STUDENT_NAMES)) if cfg.get("student") else None
            staff_id = rng.randint(1, len(STAFF_NAMES)) if cfg.get("staff") else None
            description = cfg["description"].format(
                student_name=STUDENT_NAMES[student_id - 1] if student_id else "",
                staff_name=STAFF_NAMES[staff_id - 1] if staff_id else "",
                vendor_name=rng.choice(VENDOR_NAMES),
                donor_name=rng.choice(DONOR_NAMES),
            )
            rows.append({
                "Date": txn_date.isoformat(),
                "Type": cfg["type"],
                "Category": cfg["category"] or "",
                "Amount": f"{amount:.2f}",
                "PaymentMethod": rng.choice(cfg["methods"]),
                "Description": description,
                "StudentID": student_id if student_id else "",
                "StaffID": staff_id if staff_id else "",
                "TermID": term_id,
                "RecordedBy": "bursar",
                "_kind": key,
            })

    rows.sort(key=lambda r: (r["Date"], r["_kind"]))
    for idx, row in enumerate(rows, start=1):
        row["TransactionRef"] = f"TXN-{year}{month:02d}-{idx:04d}"
        del row["_kind"]
    return rows


def write_transactions(rows, output_path: Path) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame(rows, columns=COLUMNS)
    if output_path.suffix.lower() == ".xlsx":
        df.to_excel(output_path, index=False, sheet_name="Transactions")
    else:
        df.to_csv(output_path, index=False)
    return output_path


def main(argv=None):
    today = date.today()
    parser = argparse.ArgumentParser(description="Generate a month of legacy school transactions")
    parser.add_argument("output", type=Path, help="Output .csv or .xlsx file")
    parser.add_argument("--year", type=int, default=today.year)
    parser.add_argument("--month", type=int, default=today.month)
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args(argv)

    rows = generate_month(args.year, args.month, seed=args.seed)
    path = write_transactions(rows, args.output)
    total = sum(float(r["Amount"]) for r in rows)
    print(f"Wrote {len(rows)} transactions ({total:,.2f}) to {path}")


if __name__ == "__main__":
    main()
