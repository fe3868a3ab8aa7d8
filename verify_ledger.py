from leave_admin.database import SessionLocal
from leave_admin.core.exceptions import LedgerInvariantError
from leave_admin.models.leave_balance import EmployeeLeaveBalance
from leave_admin.services.ledger import BalanceLedger
import sys

db = SessionLocal()
try:
    print("Replaying leave ledger against stored balances...")
    ledger = BalanceLedger(db)
    balances = db.query(EmployeeLeaveBalance).order_by(EmployeeLeaveBalance.id).all()
    failures = 0
    for balance in balances:
        try:
            replayed = ledger.verify(balance.employee_id, balance.leave_type_code)
        except LedgerInvariantError as e:
            failures += 1
            print(f" - employee {balance.employee_id} {balance.leave_type_code}: {e.message} {e.details}")
            continue
        if replayed["available"] < 0:
            failures += 1
            print(f" - employee {balance.employee_id} {balance.leave_type_code}: negative available {replayed['available']}")

    if failures:
        print(f"Error: {failures} of {len(balances)} balances do not match their ledger")
        sys.exit(1)
    print(f"Success: {len(balances)} balances match their ledger.")
finally:
    db.close()
