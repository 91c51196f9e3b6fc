"""
Repayment Schedule Module

Builds the fixed installment plan of a loan and tracks each installment
through SCHEDULED -> PARTIALLY_PAID | PAID | OVERDUE. Also hosts the
collections arithmetic: overdue marking and late fees.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import List, Optional, TYPE_CHECKING
from enum import Enum
import calendar
import uuid

from .amounts import ZERO, CENT, to_amount
from .config import FincoreConfig, get_config
from .errors import InvalidState
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action

if TYPE_CHECKING:
    from .loans import Loan


def add_months(start, months: int):
    """Add months to a date or datetime, clamping to the last day of the target month"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


class RepaymentStatus(Enum):
    """Installment states"""
    SCHEDULED = "scheduled"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"


@dataclass
class Repayment(StorageRecord):
    """One installment of a loan"""
    loan_id: str
    schedule_number: int
    due_date: date
    due_amount: Decimal
    amount_paid: Decimal = ZERO
    late_fee: Decimal = ZERO
    status: RepaymentStatus = RepaymentStatus.SCHEDULED
    paid_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    savings_account_id: Optional[str] = None

    @property
    def total_due(self) -> Decimal:
        return self.due_amount + self.late_fee

    @property
    def remaining(self) -> Decimal:
        return max(ZERO, self.total_due - self.amount_paid)

    def days_overdue(self, as_of: date) -> int:
        return max(0, (as_of - self.due_date).days)


class RepaymentScheduleGenerator:
    """Generates and advances loan repayment schedules"""

    def __init__(self, storage: StorageInterface, config: Optional[FincoreConfig] = None):
        self.storage = storage
        self.config = config or get_config()
        self.table_name = "repayments"
        self.logger = get_logger("fincore.schedule")

    def generate_schedule(self, loan: 'Loan') -> List[Repayment]:
        """
        Create ``tenor_months`` SCHEDULED installments for a loan.

        Each installment is total_amount / tenor_months rounded to cents; the
        last one absorbs the rounding remainder so the schedule sums to the
        loan's total_amount exactly. Installment i is due i months after the
        request date.

        Raises:
            InvalidState: the loan already has a schedule
        """
        if self.has_schedule(loan.id):
            raise InvalidState(f"Loan {loan.id} already has a repayment schedule", "SCHEDULE_ALREADY_EXISTS")

        tenor = loan.tenor_months
        installment = (loan.total_amount / Decimal(tenor)).quantize(CENT, rounding=ROUND_HALF_UP)
        start = loan.requested_at.date() if isinstance(loan.requested_at, datetime) else loan.requested_at
        now = datetime.now(timezone.utc)

        repayments = []
        allocated = ZERO
        for number in range(1, tenor + 1):
            due_amount = installment if number < tenor else loan.total_amount - allocated
            allocated += due_amount
            repayments.append(Repayment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                schedule_number=number,
                due_date=add_months(start, number),
                due_amount=to_amount(due_amount),
            ))

        with self.storage.atomic():
            for repayment in repayments:
                self._save_repayment(repayment)

        log_action(
            self.logger, "info", f"Generated {tenor} installments for loan {loan.id}",
            user_id=loan.user_id, action="schedule_generated", resource=f"loan:{loan.id}",
            extra={"installment": str(installment), "total_amount": str(loan.total_amount)}
        )
        return repayments

    def has_schedule(self, loan_id: str) -> bool:
        return bool(self.storage.find(self.table_name, {"loan_id": loan_id}))

    def get_schedule(self, loan_id: str) -> List[Repayment]:
        """All installments of a loan ordered by schedule number"""
        repayments = [Repayment.from_dict(data) for data in self.storage.find(self.table_name, {"loan_id": loan_id})]
        return sorted(repayments, key=lambda r: r.schedule_number)

    def get_repayment(self, repayment_id: str) -> Optional[Repayment]:
        data = self.storage.load(self.table_name, repayment_id)
        if data:
            return Repayment.from_dict(data)
        return None

    def next_payable_installment(self, loan_id: str) -> Optional[Repayment]:
        """
        Installment the next repayment goes to: the lowest-numbered SCHEDULED
        one, else the earliest-due OVERDUE one, else the earliest-due
        PARTIALLY_PAID one.
        """
        schedule = self.get_schedule(loan_id)

        scheduled = [r for r in schedule if r.status == RepaymentStatus.SCHEDULED]
        if scheduled:
            return scheduled[0]

        for status in (RepaymentStatus.OVERDUE, RepaymentStatus.PARTIALLY_PAID):
            candidates = sorted((r for r in schedule if r.status == status), key=lambda r: r.due_date)
            if candidates:
                return candidates[0]
        return None

    def apply_payment(self, repayment: Repayment, amount: Decimal, transaction_id: str,
                      savings_account_id: Optional[str] = None) -> Repayment:
        """Add a payment to an installment; PAID once amount_paid covers due_amount + late_fee"""
        now = datetime.now(timezone.utc)
        repayment.amount_paid = to_amount(repayment.amount_paid + amount)
        repayment.transaction_id = transaction_id
        repayment.savings_account_id = savings_account_id
        repayment.paid_at = now
        repayment.updated_at = now
        if repayment.amount_paid >= repayment.total_due:
            repayment.status = RepaymentStatus.PAID
        else:
            repayment.status = RepaymentStatus.PARTIALLY_PAID
        self._save_repayment(repayment)
        return repayment

    def mark_overdue_repayments(self, as_of: Optional[date] = None) -> List[Repayment]:
        """Move SCHEDULED installments due before ``as_of`` to OVERDUE"""
        as_of = as_of or datetime.now(timezone.utc).date()
        marked = []
        with self.storage.atomic():
            for data in self.storage.find(self.table_name, {"status": RepaymentStatus.SCHEDULED}):
                repayment = Repayment.from_dict(data)
                if repayment.due_date < as_of:
                    repayment.status = RepaymentStatus.OVERDUE
                    repayment.updated_at = datetime.now(timezone.utc)
                    self._save_repayment(repayment)
                    marked.append(repayment)

        self.logger.info(f"Marked {len(marked)} repayments as overdue")
        return marked

    def find_overdue_repayments(self) -> List[Repayment]:
        return [Repayment.from_dict(data) for data in self.storage.find(self.table_name, {"status": RepaymentStatus.OVERDUE})]

    def find_upcoming_repayments(self, target_date: date) -> List[Repayment]:
        """SCHEDULED installments falling due on ``target_date``"""
        return [
            Repayment.from_dict(data)
            for data in self.storage.find(self.table_name, {"status": RepaymentStatus.SCHEDULED})
            if date.fromisoformat(data['due_date']) == target_date
        ]

    def calculate_late_fee(self, days_overdue: int, due_amount: Decimal, principal_amount: Decimal) -> Decimal:
        """
        Late fee for an installment.

        Zero inside the grace period and from the default threshold on;
        otherwise the larger of the fixed fee and a percentage of the
        installment, capped at a percentage of the loan principal.
        """
        fee_start_day = self.config.late_fee_grace_period_days + 1
        if days_overdue < fee_start_day or days_overdue >= self.config.default_threshold_days:
            return ZERO

        percentage_fee = due_amount * self.config.late_fee_percentage
        cap = principal_amount * self.config.late_fee_max_percentage
        return to_amount(min(max(self.config.late_fee_fixed, percentage_fee), cap))

    def set_late_fee(self, repayment: Repayment, fee: Decimal) -> Repayment:
        repayment.late_fee = to_amount(fee)
        repayment.updated_at = datetime.now(timezone.utc)
        self._save_repayment(repayment)
        return repayment

    def _save_repayment(self, repayment: Repayment) -> None:
        self.storage.save(self.table_name, repayment.id, repayment.to_dict())
