"""
Balance Ledger

Append-only ledger of balance-changing events per (employee, leave type code)
and the materialized EmployeeLeaveBalance row derived from it.

Every mutation:
- holds the in-process lock for its key for the whole transaction,
- re-reads the balance row with SELECT ... FOR UPDATE,
- appends exactly the ledger entries that explain the change and updates the
  row in the same flush (the row's version column is a compare-and-swap guard),
- commits or rolls back as a unit.

Mutations take `commit=True` when called standalone. The request lifecycle
passes `commit=False` and owns the surrounding transaction and key lock.
"""
from contextlib import contextmanager
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from leave_admin.core.config import settings
from leave_admin.core.exceptions import (
    AlreadyPostedError,
    ConcurrentModificationError,
    InsufficientBalanceError,
    LedgerInvariantError,
    NotFoundError,
    ValidationError,
)
from leave_admin.core.locks import KeyedLockRegistry, balance_locks
from leave_admin.core.retry import retry_on_conflict
from leave_admin.models.leave_balance import EmployeeLeaveBalance
from leave_admin.models.leave_type import AccrualMethod
from leave_admin.models.ledger_entry import AccrualLedgerEntry, LedgerEntryKind
from leave_admin.schemas.policy import EmployeeProfile, LeavePolicy
from leave_admin.services.audit import AuditService
from leave_admin.services.base import BaseService
from leave_admin.services.directory import EmployeeDirectory
from leave_admin.services.periods import (
    AccrualPeriod,
    add_months,
    completed_years,
    first_period_end,
    next_period_end,
    period_containing,
)
from leave_admin.services.policy_store import PolicyStore

CENT = Decimal("0.01")
ZERO = Decimal("0")
BUCKETS = ("accrued", "used", "pending", "carry_forward")


def quantize(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_accrual_amount(policy: LeavePolicy, employee: EmployeeProfile, period: AccrualPeriod) -> Decimal:
    """Policy-defined accrual for one period, before the cap is applied."""
    if employee.hire_date > period.end:
        return ZERO
    rate = Decimal(policy.accrual_rate)
    if policy.accrual_method == AccrualMethod.PRORATED and employee.hire_date > period.start:
        employed_days = (period.end - employee.hire_date).days + 1
        return quantize(rate * employed_days / period.length_days)
    if policy.accrual_method == AccrualMethod.TENURE_BASED:
        years = completed_years(employee.hire_date, period.end)
        return quantize(rate + Decimal(policy.tenure_bonus_per_year) * years)
    return quantize(rate)


class BalanceLedger(BaseService):
    def __init__(
        self,
        db: Session,
        policies: Optional[PolicyStore] = None,
        directory: Optional[EmployeeDirectory] = None,
        audit: Optional[AuditService] = None,
        locks: KeyedLockRegistry = balance_locks
    ):
        super().__init__(db)
        self.policies = policies or PolicyStore(db)
        self.directory = directory or EmployeeDirectory(db)
        self.audit = audit or AuditService(db)
        self.locks = locks

    # ------------------------------------------------------------------
    # Locking / transaction plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def locked(self, employee_id: int, leave_type_code: str):
        """Hold the single-writer lock for one balance key."""
        with self.locks.hold((employee_id, leave_type_code), timeout=settings.ledger.lock_timeout_seconds):
            yield

    def _run(self, key: Tuple[int, str], operation: Callable, commit: bool):
        with self.locked(*key):
            try:
                result = operation()
                if commit:
                    self.db.commit()
                else:
                    self.db.flush()
                return result
            except (StaleDataError, IntegrityError) as e:
                self.db.rollback()
                self._logger.warning(f"Lost balance race on {key}: {e.__class__.__name__}")
                raise ConcurrentModificationError() from e
            except Exception:
                if commit:
                    self.db.rollback()
                raise

    def _execute(self, key: Tuple[int, str], operation: Callable, commit: bool):
        if commit:
            return retry_on_conflict(self._run)(key, operation, True)
        return self._run(key, operation, False)

    def _load_balance(self, employee_id: int, leave_type_code: str, for_update: bool = True) -> Optional[EmployeeLeaveBalance]:
        query = self.db.query(EmployeeLeaveBalance).filter(
            EmployeeLeaveBalance.employee_id == employee_id,
            EmployeeLeaveBalance.leave_type_code == leave_type_code
        ).populate_existing()
        if for_update:
            query = query.with_for_update()
        return query.first()

    def _load_or_create(self, employee_id: int, policy: LeavePolicy, as_of: Optional[date] = None) -> EmployeeLeaveBalance:
        balance = self._load_balance(employee_id, policy.code)
        if balance:
            return balance
        employee = self.directory.get(employee_id)
        as_of = as_of or date.today()
        anchor = max(employee.hire_date, period_containing(as_of, policy.accrual_frequency).start)
        balance = EmployeeLeaveBalance(
            employee_id=employee_id,
            leave_type_code=policy.code,
            leave_type_id=policy.id,
            accrued_balance=ZERO,
            used_balance=ZERO,
            pending_balance=ZERO,
            carry_forward_balance=ZERO,
            ytd_accrued=ZERO,
            ytd_used=ZERO,
            ytd_forfeited=ZERO,
            ytd_cashed_out=ZERO,
            low_balance_threshold=policy.low_balance_threshold,
            policy_year=as_of.year,
            next_accrual_date=first_period_end(anchor, policy.accrual_frequency),
        )
        self.db.add(balance)
        self.db.flush()
        self.log_info(f"Opened {policy.code} balance for employee {employee_id}")
        return balance

    def _append(
        self,
        balance: EmployeeLeaveBalance,
        policy_id: int,
        kind: LedgerEntryKind,
        amount: Decimal,
        deltas: Dict[str, Decimal],
        request_id: Optional[int] = None,
        source_ref: Optional[str] = None,
        period_key: Optional[str] = None,
        note: Optional[str] = None
    ) -> AccrualLedgerEntry:
        current = {
            "accrued": Decimal(balance.accrued_balance),
            "used": Decimal(balance.used_balance),
            "pending": Decimal(balance.pending_balance),
            "carry_forward": Decimal(balance.carry_forward_balance),
        }
        updated = {bucket: quantize(current[bucket] + deltas.get(bucket, ZERO)) for bucket in BUCKETS}
        negative = {bucket: str(value) for bucket, value in updated.items() if value < 0}
        if negative:
            self._logger.error(
                f"Ledger invariant violated for employee {balance.employee_id} {balance.leave_type_code}",
                extra={"kind": kind.value, "negative": negative}
            )
            raise LedgerInvariantError(
                "Balance bucket would become negative",
                details={"kind": kind.value, "negative": negative}
            )

        balance.accrued_balance = updated["accrued"]
        balance.used_balance = updated["used"]
        balance.pending_balance = updated["pending"]
        balance.carry_forward_balance = updated["carry_forward"]
        balance.leave_type_id = policy_id

        if kind == LedgerEntryKind.ACCRUAL:
            balance.ytd_accrued = quantize(Decimal(balance.ytd_accrued) + amount)
        elif kind == LedgerEntryKind.USAGE:
            balance.ytd_used = quantize(Decimal(balance.ytd_used) + amount)
        elif kind == LedgerEntryKind.FORFEITURE:
            balance.ytd_forfeited = quantize(Decimal(balance.ytd_forfeited) - amount)
        elif kind == LedgerEntryKind.CASH_OUT:
            balance.ytd_cashed_out = quantize(Decimal(balance.ytd_cashed_out) - amount)

        entry = AccrualLedgerEntry(
            kind=kind.value,
            employee_id=balance.employee_id,
            leave_type_code=balance.leave_type_code,
            leave_type_id=policy_id,
            balance_id=balance.id,
            amount=quantize(amount),
            delta_accrued=quantize(deltas.get("accrued", ZERO)),
            delta_used=quantize(deltas.get("used", ZERO)),
            delta_pending=quantize(deltas.get("pending", ZERO)),
            delta_carry_forward=quantize(deltas.get("carry_forward", ZERO)),
            snapshot_accrued=updated["accrued"],
            snapshot_used=updated["used"],
            snapshot_pending=updated["pending"],
            snapshot_carry_forward=updated["carry_forward"],
            snapshot_available=quantize(
                updated["accrued"] + updated["carry_forward"] - updated["used"] - updated["pending"]
            ),
            request_id=request_id,
            source_ref=source_ref,
            period_key=period_key,
            note=note,
        )
        self.db.add(entry)
        self.db.flush()

        self.audit.log_action(
            action=f"ledger_{kind.value}",
            entity_type="leave_balance",
            entity_id=balance.id,
            user_id=None,
            details={
                "entry_id": entry.id,
                "employee_id": balance.employee_id,
                "leave_type_code": balance.leave_type_code,
                "amount": entry.amount,
                "request_id": request_id,
                "source_ref": source_ref,
                "period_key": period_key,
            },
            before_state=current,
            after_state=updated,
        )
        return entry

    def _period_posted(self, employee_id: int, leave_type_code: str, kind: LedgerEntryKind, period_key: str) -> bool:
        return self.db.query(AccrualLedgerEntry.id).filter(
            AccrualLedgerEntry.employee_id == employee_id,
            AccrualLedgerEntry.leave_type_code == leave_type_code,
            AccrualLedgerEntry.kind == kind.value,
            AccrualLedgerEntry.period_key == period_key
        ).first() is not None

    def _request_key(self, request_id: int) -> Tuple[int, str, int]:
        entry = self.db.query(AccrualLedgerEntry).filter(
            AccrualLedgerEntry.request_id == request_id
        ).order_by(AccrualLedgerEntry.id).first()
        if not entry:
            raise NotFoundError("Reservation", request_id)
        return entry.employee_id, entry.leave_type_code, entry.leave_type_id

    def request_totals(self, request_id: int) -> Dict[str, Decimal]:
        """Days currently held and consumed on behalf of one leave request."""
        rows = self.db.query(
            AccrualLedgerEntry.kind, func.sum(AccrualLedgerEntry.amount)
        ).filter(AccrualLedgerEntry.request_id == request_id).group_by(AccrualLedgerEntry.kind).all()
        sums = {kind: Decimal(total or 0) for kind, total in rows}
        reserved = sums.get(LedgerEntryKind.RESERVATION.value, ZERO)
        released = -sums.get(LedgerEntryKind.RELEASE.value, ZERO)
        used = sums.get(LedgerEntryKind.USAGE.value, ZERO)
        reversed_usage = -sums.get(LedgerEntryKind.ADJUSTMENT.value, ZERO)
        return {
            "reserved": reserved,
            "pending": quantize(reserved - released - used),
            "used": quantize(used - reversed_usage),
            "committed": used,
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_balance(self, employee_id: int, leave_type_code: str) -> Optional[EmployeeLeaveBalance]:
        return self._load_balance(employee_id, leave_type_code, for_update=False)

    def get_balance(self, employee_id: int, leave_type_id: int) -> EmployeeLeaveBalance:
        """Committed snapshot; an employee with no activity yet reads as all zeros."""
        policy = self.policies.get_leave_type(leave_type_id)
        balance = self.find_balance(employee_id, policy.code)
        if balance:
            return balance
        self.directory.get(employee_id)
        return EmployeeLeaveBalance(
            employee_id=employee_id,
            leave_type_code=policy.code,
            leave_type_id=policy.id,
            accrued_balance=ZERO,
            used_balance=ZERO,
            pending_balance=ZERO,
            carry_forward_balance=ZERO,
            ytd_accrued=ZERO,
            ytd_used=ZERO,
            ytd_forfeited=ZERO,
            ytd_cashed_out=ZERO,
            low_balance_threshold=policy.low_balance_threshold,
            policy_year=date.today().year,
        )

    def list_balances(self, employee_id: int) -> List[EmployeeLeaveBalance]:
        return self.db.query(EmployeeLeaveBalance).filter(
            EmployeeLeaveBalance.employee_id == employee_id
        ).populate_existing().order_by(EmployeeLeaveBalance.leave_type_code).all()

    def list_entries(self, employee_id: int, leave_type_code: str, limit: Optional[int] = None) -> List[AccrualLedgerEntry]:
        query = self.db.query(AccrualLedgerEntry).filter(
            AccrualLedgerEntry.employee_id == employee_id,
            AccrualLedgerEntry.leave_type_code == leave_type_code
        ).order_by(AccrualLedgerEntry.created_at, AccrualLedgerEntry.id)
        if limit:
            query = query.limit(limit)
        return query.all()

    def replay(self, employee_id: int, leave_type_code: str) -> Dict[str, Decimal]:
        """Rebuild the balance from its entries, checking every recorded snapshot on the way."""
        totals = {bucket: ZERO for bucket in BUCKETS}
        for entry in self.list_entries(employee_id, leave_type_code):
            totals["accrued"] += Decimal(entry.delta_accrued)
            totals["used"] += Decimal(entry.delta_used)
            totals["pending"] += Decimal(entry.delta_pending)
            totals["carry_forward"] += Decimal(entry.delta_carry_forward)
            snapshot = {
                "accrued": Decimal(entry.snapshot_accrued),
                "used": Decimal(entry.snapshot_used),
                "pending": Decimal(entry.snapshot_pending),
                "carry_forward": Decimal(entry.snapshot_carry_forward),
            }
            if any(quantize(totals[b]) != quantize(snapshot[b]) for b in BUCKETS):
                raise LedgerInvariantError(
                    f"Ledger entry {entry.id} snapshot does not match replayed totals",
                    details={"entry_id": entry.id}
                )
        totals = {bucket: quantize(value) for bucket, value in totals.items()}
        totals["available"] = quantize(totals["accrued"] + totals["carry_forward"] - totals["used"] - totals["pending"])
        return totals

    def verify(self, employee_id: int, leave_type_code: str) -> Dict[str, Decimal]:
        replayed = self.replay(employee_id, leave_type_code)
        balance = self.find_balance(employee_id, leave_type_code)
        stored = {
            "accrued": quantize(balance.accrued_balance) if balance else ZERO,
            "used": quantize(balance.used_balance) if balance else ZERO,
            "pending": quantize(balance.pending_balance) if balance else ZERO,
            "carry_forward": quantize(balance.carry_forward_balance) if balance else ZERO,
        }
        drift = {b: (str(stored[b]), str(replayed[b])) for b in BUCKETS if stored[b] != replayed[b]}
        if drift:
            self._logger.error(
                f"Balance drift for employee {employee_id} {leave_type_code}", extra={"drift": drift}
            )
            raise LedgerInvariantError("Stored balance does not match ledger replay", details={"drift": drift})
        return replayed

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def ensure_balance(self, employee_id: int, leave_type_id: int, as_of: Optional[date] = None, commit: bool = True) -> EmployeeLeaveBalance:
        policy = self.policies.get_leave_type(leave_type_id)
        return self._execute(
            (employee_id, policy.code), lambda: self._load_or_create(employee_id, policy, as_of), commit
        )

    def reserve(self, employee_id: int, leave_type_id: int, days, request_id: int, commit: bool = True) -> AccrualLedgerEntry:
        days = quantize(days)
        if days <= 0:
            raise ValidationError("Reserved days must be positive")
        policy = self.policies.get_leave_type(leave_type_id)

        def operation():
            balance = self._load_or_create(employee_id, policy)
            if self.request_totals(request_id)["reserved"] > 0:
                raise ValidationError(f"Request {request_id} already holds a reservation")
            available = balance.available_balance
            if available < days:
                raise InsufficientBalanceError(days, available, details={"leave_type": policy.code})
            return self._append(
                balance, policy.id, LedgerEntryKind.RESERVATION, days, {"pending": days},
                request_id=request_id, source_ref=f"request:{request_id}"
            )

        return self._execute((employee_id, policy.code), operation, commit)

    def commit_usage(self, request_id: int, commit: bool = True) -> Optional[AccrualLedgerEntry]:
        """Turn the request's reservation into usage. Committing twice is a no-op."""
        employee_id, code, leave_type_id = self._request_key(request_id)

        def operation():
            balance = self._load_balance(employee_id, code)
            outstanding = self.request_totals(request_id)["pending"]
            if outstanding <= 0:
                return None
            return self._append(
                balance, leave_type_id, LedgerEntryKind.USAGE, outstanding,
                {"pending": -outstanding, "used": outstanding},
                request_id=request_id, source_ref=f"request:{request_id}"
            )

        return self._execute((employee_id, code), operation, commit)

    def release(self, request_id: int, commit: bool = True, note: Optional[str] = None) -> Optional[AccrualLedgerEntry]:
        """Drop whatever is still reserved for the request. Releasing nothing is a no-op."""
        employee_id, code, leave_type_id = self._request_key(request_id)

        def operation():
            balance = self._load_balance(employee_id, code)
            outstanding = self.request_totals(request_id)["pending"]
            if outstanding <= 0:
                return None
            return self._append(
                balance, leave_type_id, LedgerEntryKind.RELEASE, -outstanding, {"pending": -outstanding},
                request_id=request_id, source_ref=f"request:{request_id}", note=note
            )

        return self._execute((employee_id, code), operation, commit)

    def reverse_usage(self, request_id: int, commit: bool = True, note: Optional[str] = None) -> Optional[AccrualLedgerEntry]:
        """Compensating entry returning committed usage after a post-approval cancellation."""
        employee_id, code, leave_type_id = self._request_key(request_id)

        def operation():
            balance = self._load_balance(employee_id, code)
            used = self.request_totals(request_id)["used"]
            if used <= 0:
                return None
            # Usage from a closed policy year was folded away at rollover; return it as accrual
            from_used = min(Decimal(balance.used_balance), used)
            deltas = {"used": -from_used, "accrued": used - from_used}
            return self._append(
                balance, leave_type_id, LedgerEntryKind.ADJUSTMENT, -used, deltas,
                request_id=request_id, source_ref=f"request:{request_id}",
                note=note or "usage reversed on cancellation"
            )

        return self._execute((employee_id, code), operation, commit)

    def post_accrual(
        self,
        employee_id: int,
        leave_type_id: int,
        period_end: date,
        source_ref: Optional[str] = None,
        commit: bool = True
    ) -> AccrualLedgerEntry:
        policy = self.policies.get_leave_type(leave_type_id)
        employee = self.directory.get(employee_id)
        period = period_containing(period_end, policy.accrual_frequency)

        def operation():
            balance = self._load_or_create(employee_id, policy, as_of=period.end)
            if self._period_posted(employee_id, policy.code, LedgerEntryKind.ACCRUAL, period.key):
                raise AlreadyPostedError(period.key, details={"employee_id": employee_id, "leave_type": policy.code})

            amount = compute_accrual_amount(policy, employee, period)
            if policy.accrual_cap is not None:
                headroom = Decimal(policy.accrual_cap) - Decimal(balance.accrued_balance)
                amount = quantize(max(ZERO, min(amount, headroom)))

            entry = self._append(
                balance, policy.id, LedgerEntryKind.ACCRUAL, amount, {"accrued": amount},
                source_ref=source_ref or "accrual:manual", period_key=period.key
            )
            if balance.next_accrual_date is None or balance.next_accrual_date <= period.end:
                balance.next_accrual_date = next_period_end(period.end, policy.accrual_frequency)
            return entry

        return self._execute((employee_id, policy.code), operation, commit)

    def advance_accrual_date(self, employee_id: int, leave_type_id: int, past: date, commit: bool = True) -> Optional[date]:
        """Move the accrual schedule past a period that was skipped or already posted."""
        policy = self.policies.get_leave_type(leave_type_id)

        def operation():
            balance = self._load_balance(employee_id, policy.code)
            if balance is None:
                return None
            if balance.next_accrual_date is None or balance.next_accrual_date <= past:
                balance.next_accrual_date = next_period_end(past, policy.accrual_frequency)
            return balance.next_accrual_date

        return self._execute((employee_id, policy.code), operation, commit)

    def apply_carry_forward(self, employee_id: int, leave_type_id: int, as_of: date, commit: bool = True) -> List[AccrualLedgerEntry]:
        """
        Close the balance's policy year. Up to max_carry_forward_days of the
        unused balance moves into carry_forward_balance; the excess is forfeited
        under use-it-or-lose-it and otherwise stays available. Reservations that
        are still pending stay backed. Running it again for the same year does nothing.
        """
        policy = self.policies.get_leave_type(leave_type_id)

        def operation():
            balance = self._load_balance(employee_id, policy.code)
            if balance is None or as_of.year <= balance.policy_year:
                return []
            closing_year = balance.policy_year
            if self._period_posted(employee_id, policy.code, LedgerEntryKind.CARRY_OVER, f"carry:{closing_year}"):
                balance.policy_year = as_of.year
                return []

            accrued = Decimal(balance.accrued_balance)
            used = Decimal(balance.used_balance)
            pending = Decimal(balance.pending_balance)
            carry = Decimal(balance.carry_forward_balance)
            unused = max(balance.available_balance, ZERO)

            carried = min(unused, Decimal(policy.max_carry_forward_days)) if policy.carry_forward_allowed else ZERO
            excess = unused - carried
            forfeited = excess if policy.use_it_or_lose_it else ZERO

            entries = [
                self._append(
                    balance, policy.id, LedgerEntryKind.CARRY_OVER, carried,
                    {
                        "carry_forward": carried - carry,
                        "used": -used,
                        "accrued": (pending + excess) - accrued,
                    },
                    source_ref=f"rollover:{closing_year}", period_key=f"carry:{closing_year}",
                    note=f"Closing {closing_year}: {carried} carried, {excess} excess"
                )
            ]
            if forfeited > 0:
                entries.append(self._append(
                    balance, policy.id, LedgerEntryKind.FORFEITURE, -forfeited, {"accrued": -forfeited},
                    source_ref=f"rollover:{closing_year}", period_key=f"forfeit:{closing_year}",
                    note="use-it-or-lose-it"
                ))

            balance.policy_year = as_of.year
            balance.ytd_accrued = ZERO
            balance.ytd_used = ZERO
            balance.ytd_forfeited = ZERO
            balance.ytd_cashed_out = ZERO
            if carried > 0 and policy.carry_forward_expiry_months:
                balance.carry_forward_expires_on = add_months(date(as_of.year, 1, 1), policy.carry_forward_expiry_months)
            else:
                balance.carry_forward_expires_on = None
            self.log_info(
                f"Rolled over {policy.code} for employee {employee_id}: carried {carried}, forfeited {forfeited}"
            )
            return entries

        return self._execute((employee_id, policy.code), operation, commit)

    def expire_carry_forward(self, employee_id: int, leave_type_id: int, as_of: date, commit: bool = True) -> Optional[AccrualLedgerEntry]:
        """Forfeit carried-over days left unused when their expiry date passes. Carried days are consumed first."""
        policy = self.policies.get_leave_type(leave_type_id)

        def operation():
            balance = self._load_balance(employee_id, policy.code)
            if balance is None or balance.carry_forward_expires_on is None or as_of < balance.carry_forward_expires_on:
                return None
            expires_on = balance.carry_forward_expires_on
            balance.carry_forward_expires_on = None
            remaining = Decimal(balance.carry_forward_balance) - Decimal(balance.used_balance) - Decimal(balance.pending_balance)
            if remaining <= 0:
                return None
            return self._append(
                balance, policy.id, LedgerEntryKind.FORFEITURE, -remaining, {"carry_forward": -remaining},
                source_ref="carry-forward-expiry", period_key=f"cf-expiry:{expires_on.isoformat()}",
                note=f"Carry-forward expired on {expires_on.isoformat()}"
            )

        return self._execute((employee_id, policy.code), operation, commit)

    def adjust(self, employee_id: int, leave_type_id: int, amount, reason: str, actor_id: Optional[int] = None, commit: bool = True) -> AccrualLedgerEntry:
        """Manual HR correction to the accrued bucket."""
        amount = quantize(amount)
        if amount == 0:
            raise ValidationError("Adjustment amount cannot be zero")
        if not reason or not reason.strip():
            raise ValidationError("Adjustments require a reason")
        policy = self.policies.get_leave_type(leave_type_id)

        def operation():
            balance = self._load_or_create(employee_id, policy)
            if amount < 0 and (balance.available_balance + amount < 0 or Decimal(balance.accrued_balance) + amount < 0):
                raise InsufficientBalanceError(-amount, balance.available_balance, details={"leave_type": policy.code})
            return self._append(
                balance, policy.id, LedgerEntryKind.ADJUSTMENT, amount, {"accrued": amount},
                source_ref=f"admin:{actor_id}" if actor_id else "admin", note=reason.strip()
            )

        return self._execute((employee_id, policy.code), operation, commit)

    def cash_out(self, employee_id: int, leave_type_id: int, days, actor_id: Optional[int] = None, commit: bool = True) -> Tuple[AccrualLedgerEntry, Decimal]:
        """Convert available days to pay. Returns the entry and the payable amount (days x cash_out_rate)."""
        days = quantize(days)
        policy = self.policies.get_leave_type(leave_type_id)
        if not policy.cash_out_allowed:
            raise ValidationError(f"{policy.name} cannot be cashed out")
        if days <= 0:
            raise ValidationError("Cash-out days must be positive")

        def operation():
            balance = self._load_or_create(employee_id, policy)
            if balance.available_balance < days:
                raise InsufficientBalanceError(days, balance.available_balance, details={"leave_type": policy.code})
            from_carry = min(Decimal(balance.carry_forward_balance), days)
            entry = self._append(
                balance, policy.id, LedgerEntryKind.CASH_OUT, -days,
                {"carry_forward": -from_carry, "accrued": -(days - from_carry)},
                source_ref=f"admin:{actor_id}" if actor_id else "admin"
            )
            return entry, quantize(days * Decimal(policy.cash_out_rate))

        return self._execute((employee_id, policy.code), operation, commit)
