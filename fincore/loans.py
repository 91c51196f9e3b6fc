"""
Loan Lifecycle Engine

Orchestrates request -> approval decision -> disbursement -> repayment ->
closure. Each money-moving step runs as one unit of work spanning the loan,
its schedule, the savings account, the credit facility and the ledger entry,
so a failure anywhere leaves every balance as it was.

Loan status:      PENDING -> APPROVED | REJECTED
                  APPROVED -> DISBURSED
                  DISBURSED | ACTIVE -> ACTIVE | FULLY_PAID | DEFAULTED
Approval status:  PENDING_REVIEW -> AUTO_APPROVED | MANUAL_APPROVED | REJECTED
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .amounts import ZERO, format_amount, positive_amount, to_amount
from .config import FincoreConfig, get_config
from .credit import CreditFacilityManager
from .errors import InvalidState, LimitExceeded, NotFound, ValidationError
from .identity import KYCStatus, UserDirectory
from .ledger import Transaction, TransactionLedger, TransactionType
from .notifications import NotificationDispatcher, NotificationTemplate, dispatch_safely
from .savings import SavingsAccount, SavingsManager
from .schedule import Repayment, RepaymentScheduleGenerator, RepaymentStatus, add_months
from .storage import StorageInterface, StorageRecord
from .unit_of_work import UnitOfWork
from .logging_config import get_logger, log_action


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"            # Awaiting manual review
    APPROVED = "approved"          # Approved, not yet disbursed
    REJECTED = "rejected"          # Declined
    DISBURSED = "disbursed"        # Funds paid into savings
    ACTIVE = "active"              # At least one repayment received
    FULLY_PAID = "fully_paid"      # Nothing outstanding
    DEFAULTED = "defaulted"        # Installment overdue past the default threshold


class ApprovalStatus(Enum):
    """How the loan was decided"""
    PENDING_REVIEW = "pending_review"
    AUTO_APPROVED = "auto_approved"
    MANUAL_APPROVED = "manual_approved"
    REJECTED = "rejected"


# Flat interest rate (percent of principal) by tenor in months
LOAN_INTEREST_RATES: Dict[int, Decimal] = {
    3: Decimal('5.0'),
    6: Decimal('8.0'),
    12: Decimal('12.0'),
    24: Decimal('18.0'),
}

REPAYABLE_STATUSES = (LoanStatus.DISBURSED, LoanStatus.ACTIVE)


@dataclass
class Loan(StorageRecord):
    """A customer loan"""
    user_id: str
    credit_account_id: str
    savings_account_id: str
    loan_number: str
    principal_amount: Decimal
    interest_rate: Decimal
    tenor_months: int
    total_amount: Decimal
    outstanding_amount: Decimal
    status: LoanStatus
    approval_status: ApprovalStatus
    requested_at: datetime
    due_date: date
    purpose: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    review_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    disbursed_at: Optional[datetime] = None
    fully_paid_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None


@dataclass
class RepaymentReceipt:
    """Outcome of one repayment"""
    loan: Loan
    repayment: Repayment
    transaction: Transaction
    savings_account: SavingsAccount
    paid_installments: int
    total_installments: int
    next_due_date: Optional[date] = None
    next_installment_amount: Optional[Decimal] = None

    @property
    def fully_paid(self) -> bool:
        return self.loan.status == LoanStatus.FULLY_PAID


@dataclass
class RepaymentScheduleView:
    """A loan together with its installments"""
    loan_id: str
    loan_number: str
    total_amount: Decimal
    outstanding_amount: Decimal
    status: LoanStatus
    installments: List[Repayment] = field(default_factory=list)

    @property
    def paid_installments(self) -> int:
        return sum(1 for r in self.installments if r.status == RepaymentStatus.PAID)


class LoanManager:
    """Loan origination, decisioning, disbursement, repayment and collections"""

    def __init__(
        self,
        storage: StorageInterface,
        unit_of_work: UnitOfWork,
        users: UserDirectory,
        ledger: TransactionLedger,
        savings: SavingsManager,
        credit: CreditFacilityManager,
        schedule: RepaymentScheduleGenerator,
        notifications: Optional[NotificationDispatcher] = None,
        interest_rates: Optional[Dict[int, Decimal]] = None,
        config: Optional[FincoreConfig] = None
    ):
        self.storage = storage
        self.unit_of_work = unit_of_work
        self.users = users
        self.ledger = ledger
        self.savings = savings
        self.credit = credit
        self.schedule = schedule
        self.notifications = notifications
        self.interest_rates = interest_rates or LOAN_INTEREST_RATES
        self.config = config or get_config()
        self.loans_table = "loans"
        self.logger = get_logger("fincore.loans")

    def determine_approval_status(self, amount: Decimal, credit_score: int,
                                  kyc_status: KYCStatus, has_defaulted: bool) -> ApprovalStatus:
        """
        Automatic decision for a new request.

        Rejected outright for a very low score or a defaulted history;
        auto-approved for small amounts to verified customers with an
        adequate score; everything else waits for an admin.
        """
        if credit_score < self.config.min_credit_score_reject or has_defaulted:
            return ApprovalStatus.REJECTED
        if (amount <= self.config.auto_approval_threshold
                and credit_score >= self.config.min_credit_score_auto
                and kyc_status == KYCStatus.VERIFIED):
            return ApprovalStatus.AUTO_APPROVED
        return ApprovalStatus.PENDING_REVIEW

    def request_loan(
        self,
        user_id: str,
        principal_amount: Decimal,
        tenor_months: int,
        savings_account_id: Optional[str] = None,
        purpose: Optional[str] = None
    ) -> Loan:
        """
        Request a loan and decide it.

        Auto-approved loans are disbursed before this returns; loans that
        need review stay PENDING; rejected loans are stored as REJECTED.

        Raises:
            NotFound: unknown customer, no credit account, no usable savings account
            ValidationError: non-positive amount or unsupported tenor
            LimitExceeded: principal above available credit
            InvalidState: the customer has a defaulted loan
        """
        principal = positive_amount(principal_amount)
        user = self.users.get_customer(user_id)
        credit_account = self.credit.get_credit_account(user_id)

        if tenor_months not in self.interest_rates:
            raise ValidationError(
                f"Unsupported tenor {tenor_months}; choose one of {sorted(self.interest_rates)}", "INVALID_TENOR"
            )

        if credit_account.available_credit < principal:
            raise LimitExceeded(
                f"Requested {principal} exceeds available credit {credit_account.available_credit}",
                "INSUFFICIENT_CREDIT"
            )

        has_defaulted = self._has_defaulted_loans(user_id)
        if has_defaulted:
            raise InvalidState("Customer has defaulted loans", "EXISTING_DEFAULTED_LOANS")

        destination = self.savings.resolve_destination_account(user_id, savings_account_id)

        interest_rate = self.interest_rates[tenor_months]
        total_amount = to_amount(principal * (Decimal('1') + interest_rate / Decimal('100')))

        profile = user.customer_profile
        approval_status = self.determine_approval_status(
            principal, profile.credit_score, profile.kyc_status, has_defaulted
        )

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            credit_account_id=credit_account.id,
            savings_account_id=destination.id,
            loan_number=self._generate_loan_number(now),
            principal_amount=principal,
            interest_rate=interest_rate,
            tenor_months=tenor_months,
            total_amount=total_amount,
            outstanding_amount=total_amount,
            status=LoanStatus.PENDING,
            approval_status=approval_status,
            requested_at=now,
            due_date=add_months(now.date(), tenor_months),
            purpose=purpose,
        )

        if approval_status == ApprovalStatus.AUTO_APPROVED:
            loan.status = LoanStatus.APPROVED
            loan.approved_at = now
        elif approval_status == ApprovalStatus.REJECTED:
            loan.status = LoanStatus.REJECTED
            loan.rejection_reason = "Credit score below the minimum required"

        self._save_loan(loan)

        log_action(
            self.logger, "info", f"Loan {loan.loan_number} requested: {approval_status.value}",
            user_id=user_id, action="loan_requested", resource=f"loan:{loan.id}",
            extra={
                "principal": str(principal),
                "tenor_months": tenor_months,
                "total_amount": str(total_amount),
                "approval_status": approval_status.value,
            }
        )

        if approval_status == ApprovalStatus.AUTO_APPROVED:
            return self.disburse_loan(loan.id)

        if approval_status == ApprovalStatus.REJECTED:
            self._notify(NotificationTemplate.LOAN_REJECTED, loan, {"reason": loan.rejection_reason})
        return loan

    def approve_loan(self, loan_id: str, admin_id: str, notes: Optional[str] = None) -> Loan:
        """Manual approval of a loan waiting for review"""
        admin = self.users.get_admin(admin_id)

        with self.unit_of_work.atomic():
            loan = self._load_for_update(loan_id)
            self._require_pending_review(loan)

            now = datetime.now(timezone.utc)
            loan.status = LoanStatus.APPROVED
            loan.approval_status = ApprovalStatus.MANUAL_APPROVED
            loan.approved_at = now
            loan.approved_by = admin.id
            loan.review_notes = notes
            loan.updated_at = now
            self._save_loan(loan)

            if not self.schedule.has_schedule(loan.id):
                self.schedule.generate_schedule(loan)

            self.unit_of_work.after_commit(lambda: self._notify(NotificationTemplate.LOAN_APPROVED, loan))

        log_action(
            self.logger, "info", f"Loan {loan.loan_number} approved",
            user_id=loan.user_id, action="loan_approved", resource=f"loan:{loan.id}",
            extra={"admin_id": admin.id}
        )
        return loan

    def reject_loan(self, loan_id: str, admin_id: str, reason: str, notes: Optional[str] = None) -> Loan:
        """Manual rejection of a loan waiting for review"""
        admin = self.users.get_admin(admin_id)
        if not reason:
            raise ValidationError("A rejection reason is required", "REJECTION_REASON_REQUIRED")

        with self.unit_of_work.atomic():
            loan = self._load_for_update(loan_id)
            self._require_pending_review(loan)

            loan.status = LoanStatus.REJECTED
            loan.approval_status = ApprovalStatus.REJECTED
            loan.rejection_reason = reason
            loan.approved_by = admin.id
            loan.review_notes = notes
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)

            self.unit_of_work.after_commit(
                lambda: self._notify(NotificationTemplate.LOAN_REJECTED, loan, {"reason": reason})
            )

        log_action(
            self.logger, "info", f"Loan {loan.loan_number} rejected",
            user_id=loan.user_id, action="loan_rejected", resource=f"loan:{loan.id}",
            extra={"admin_id": admin.id, "reason": reason}
        )
        return loan

    def disburse_loan(self, loan_id: str) -> Loan:
        """
        Pay an APPROVED loan into the customer's savings account.

        The loan row is re-read under lock inside the unit, so a second
        disbursement of the same loan fails with LOAN_NOT_APPROVED.
        """
        def unit(ctx) -> Loan:
            loan = self._load_for_update(loan_id)
            if loan.status != LoanStatus.APPROVED:
                raise InvalidState(f"Loan {loan.loan_number} is not approved", "LOAN_NOT_APPROVED")

            # Lock the facility so concurrent disbursements check against the same row
            credit_account = self.credit.load_for_update(loan.credit_account_id)
            if credit_account.available_credit < loan.principal_amount:
                raise LimitExceeded(
                    f"Principal {loan.principal_amount} exceeds available credit {credit_account.available_credit}",
                    "INSUFFICIENT_CREDIT"
                )

            destination = self.savings.resolve_destination_account(loan.user_id, previous_id=loan.savings_account_id)
            loan.savings_account_id = destination.id

            transaction = self.ledger.create_transaction(
                loan.user_id, destination.id, TransactionType.LOAN_DISBURSEMENT, loan.principal_amount,
                f"Loan disbursement - {loan.loan_number}",
                {"loanId": loan.id, "loanNumber": loan.loan_number}
            )
            account = self.savings.update_balance(destination.id, loan.principal_amount, is_debit=False)
            self.credit.update_available_credit(loan.credit_account_id, loan.principal_amount, is_loan=True)

            now = datetime.now(timezone.utc)
            loan.status = LoanStatus.DISBURSED
            loan.disbursed_at = now
            loan.updated_at = now
            self._save_loan(loan)

            if not self.schedule.has_schedule(loan.id):
                self.schedule.generate_schedule(loan)

            transaction = self.ledger.complete_transaction(transaction.id)

            self.unit_of_work.after_commit(lambda: self._notify_disbursed(loan, account, transaction))
            return loan

        loan = self.unit_of_work.run(unit)
        log_action(
            self.logger, "info", f"Loan {loan.loan_number} disbursed",
            user_id=loan.user_id, action="loan_disbursed", resource=f"loan:{loan.id}",
            extra={"principal": str(loan.principal_amount), "savings_account_id": loan.savings_account_id}
        )
        return loan

    def repay_loan(self, user_id: str, loan_id: str, amount: Decimal,
                   savings_account_id: Optional[str] = None) -> RepaymentReceipt:
        """
        Repay part of a loan from savings.

        The payment goes to the next payable installment. Outstanding drops by
        the amount; at zero the loan is FULLY_PAID, otherwise ACTIVE.

        Raises:
            NotFound: loan not owned by the user, or no usable savings account
            InvalidState: loan not repayable, or no installment left to pay
            LimitExceeded: amount above the outstanding amount
            InsufficientFunds: savings balance below the amount
        """
        amount = positive_amount(amount)

        def unit(ctx) -> RepaymentReceipt:
            loan = self._load_for_update(loan_id)
            if loan.user_id != user_id:
                raise NotFound(f"Loan {loan_id} not found", "LOAN_NOT_FOUND")
            if loan.status not in REPAYABLE_STATUSES:
                raise InvalidState(f"Loan {loan.loan_number} is not active", "LOAN_NOT_ACTIVE")
            if amount > loan.outstanding_amount:
                raise LimitExceeded(
                    f"Repayment {amount} exceeds outstanding {loan.outstanding_amount}", "AMOUNT_EXCEEDS_OUTSTANDING"
                )

            source = self.savings.resolve_destination_account(
                user_id, savings_account_id, previous_id=loan.savings_account_id
            )

            installment = self.schedule.next_payable_installment(loan.id)
            if installment is None:
                raise InvalidState(f"Loan {loan.loan_number} has no pending repayments", "NO_PENDING_REPAYMENTS")

            transaction = self.ledger.create_transaction(
                user_id, source.id, TransactionType.LOAN_REPAYMENT, amount,
                f"Loan repayment - {loan.loan_number}",
                {
                    "loanId": loan.id,
                    "loanNumber": loan.loan_number,
                    "repaymentId": installment.id,
                    "scheduleNumber": installment.schedule_number,
                }
            )
            repayment = self.schedule.apply_payment(installment, amount, transaction.id, source.id)

            now = datetime.now(timezone.utc)
            loan.outstanding_amount = to_amount(loan.outstanding_amount - amount)
            if loan.outstanding_amount <= ZERO:
                loan.outstanding_amount = ZERO
                loan.status = LoanStatus.FULLY_PAID
                loan.fully_paid_at = now
            else:
                loan.status = LoanStatus.ACTIVE
            loan.updated_at = now
            self._save_loan(loan)

            account = self.savings.update_balance(source.id, amount, is_debit=True)
            self.credit.update_available_credit(loan.credit_account_id, amount, is_loan=False)
            transaction = self.ledger.complete_transaction(transaction.id)

            installments = self.schedule.get_schedule(loan.id)
            upcoming = [r for r in installments if r.status == RepaymentStatus.SCHEDULED]
            receipt = RepaymentReceipt(
                loan=loan,
                repayment=repayment,
                transaction=transaction,
                savings_account=account,
                paid_installments=sum(1 for r in installments if r.status == RepaymentStatus.PAID),
                total_installments=len(installments),
                next_due_date=upcoming[0].due_date if upcoming and loan.status != LoanStatus.FULLY_PAID else None,
                next_installment_amount=upcoming[0].due_amount if upcoming and loan.status != LoanStatus.FULLY_PAID else None,
            )
            self.unit_of_work.after_commit(lambda: self._notify_repayment(receipt))
            return receipt

        receipt = self.unit_of_work.run(unit)
        log_action(
            self.logger, "info", f"Repayment of {amount} on loan {receipt.loan.loan_number}",
            user_id=user_id, action="loan_repaid", resource=f"loan:{loan_id}",
            extra={
                "schedule_number": receipt.repayment.schedule_number,
                "outstanding": str(receipt.loan.outstanding_amount),
                "status": receipt.loan.status.value,
            }
        )
        return receipt

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def get_loan_for_user(self, user_id: str, loan_id: str) -> Loan:
        """Loan owned by the user, else NotFound"""
        loan = self.get_loan(loan_id)
        if loan is None or loan.user_id != user_id:
            raise NotFound(f"Loan {loan_id} not found", "LOAN_NOT_FOUND")
        return loan

    def get_customer_loans(self, user_id: str) -> List[Loan]:
        """A customer's loans, newest first"""
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, {"user_id": user_id})]
        return sorted(loans, key=lambda loan: (loan.created_at, loan.loan_number), reverse=True)

    def list_loans(self, status: Optional[LoanStatus] = None,
                   approval_status: Optional[ApprovalStatus] = None) -> List[Loan]:
        """All loans, optionally filtered, newest first"""
        filters = {}
        if status:
            filters["status"] = status
        if approval_status:
            filters["approval_status"] = approval_status
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        return sorted(loans, key=lambda loan: (loan.created_at, loan.loan_number), reverse=True)

    def get_repayment_schedule(self, user_id: str, loan_id: str) -> RepaymentScheduleView:
        loan = self.get_loan_for_user(user_id, loan_id)
        return RepaymentScheduleView(
            loan_id=loan.id,
            loan_number=loan.loan_number,
            total_amount=loan.total_amount,
            outstanding_amount=loan.outstanding_amount,
            status=loan.status,
            installments=self.schedule.get_schedule(loan.id),
        )

    def mark_overdue_repayments(self, as_of: Optional[date] = None) -> List[Repayment]:
        """Flag installments past their due date and tell the customers"""
        as_of = as_of or datetime.now(timezone.utc).date()
        marked = self.schedule.mark_overdue_repayments(as_of)
        for repayment in marked:
            loan = self.get_loan(repayment.loan_id)
            if loan is not None:
                self._notify(NotificationTemplate.PAYMENT_OVERDUE, loan, {
                    "scheduleNumber": repayment.schedule_number,
                    "dueAmount": format_amount(repayment.due_amount, self.config.currency),
                    "daysOverdue": repayment.days_overdue(as_of),
                    "outstandingAmount": format_amount(loan.outstanding_amount, self.config.currency),
                })
        return marked

    def apply_late_fees(self, as_of: Optional[date] = None) -> List[Repayment]:
        """Set the late fee on every OVERDUE installment inside the fee window"""
        as_of = as_of or datetime.now(timezone.utc).date()
        charged = []
        with self.unit_of_work.atomic():
            for repayment in self.schedule.find_overdue_repayments():
                loan = self.get_loan(repayment.loan_id)
                if loan is None:
                    continue
                days_overdue = repayment.days_overdue(as_of)
                fee = self.schedule.calculate_late_fee(days_overdue, repayment.due_amount, loan.principal_amount)
                if fee <= ZERO:
                    continue
                self.schedule.set_late_fee(repayment, fee)
                charged.append(repayment)
                self.unit_of_work.after_commit(
                    lambda loan=loan, repayment=repayment, fee=fee, days=days_overdue: self._notify(
                        NotificationTemplate.LATE_FEE_APPLIED, loan, {
                            "scheduleNumber": repayment.schedule_number,
                            "lateFee": format_amount(fee, self.config.currency),
                            "totalDue": format_amount(repayment.total_due, self.config.currency),
                            "daysOverdue": days,
                        }
                    )
                )

        self.logger.info(f"Applied late fees to {len(charged)} repayments")
        return charged

    def default_loans(self, as_of: Optional[date] = None) -> List[Loan]:
        """
        Default every loan with an installment overdue for at least the
        default threshold, and apply the credit score penalty to its owner.
        """
        as_of = as_of or datetime.now(timezone.utc).date()
        loan_ids = []
        for repayment in self.schedule.find_overdue_repayments():
            if repayment.days_overdue(as_of) >= self.config.default_threshold_days and repayment.loan_id not in loan_ids:
                loan_ids.append(repayment.loan_id)

        defaulted = []
        for loan_id in loan_ids:
            with self.unit_of_work.atomic():
                loan = self._load_for_update(loan_id)
                if loan.status not in REPAYABLE_STATUSES:
                    continue
                now = datetime.now(timezone.utc)
                loan.status = LoanStatus.DEFAULTED
                loan.defaulted_at = now
                loan.updated_at = now
                self._save_loan(loan)
                self.users.adjust_credit_score(
                    loan.user_id, -self.config.default_credit_score_penalty, self.config.min_credit_score
                )
                self.unit_of_work.after_commit(lambda loan=loan: self._notify(
                    NotificationTemplate.LOAN_DEFAULTED, loan, {
                        "outstandingAmount": format_amount(loan.outstanding_amount, self.config.currency),
                        "creditScoreImpact": self.config.default_credit_score_penalty,
                    }
                ))

            log_action(
                self.logger, "warning", f"Loan {loan.loan_number} defaulted",
                user_id=loan.user_id, action="loan_defaulted", resource=f"loan:{loan.id}",
                extra={"outstanding": str(loan.outstanding_amount)}
            )
            defaulted.append(loan)
        return defaulted

    def send_repayment_reminders(self, as_of: Optional[date] = None) -> int:
        """Remind customers of installments due a few days from ``as_of``"""
        as_of = as_of or datetime.now(timezone.utc).date()
        target = date.fromordinal(as_of.toordinal() + self.config.repayment_reminder_days)
        sent = 0
        for repayment in self.schedule.find_upcoming_repayments(target):
            loan = self.get_loan(repayment.loan_id)
            if loan is None:
                continue
            self._notify(NotificationTemplate.REPAYMENT_REMINDER, loan, {
                "scheduleNumber": repayment.schedule_number,
                "dueAmount": format_amount(repayment.due_amount, self.config.currency),
                "dueDate": repayment.due_date.isoformat(),
                "gracePeriod": self.config.late_fee_grace_period_days,
            })
            sent += 1
        return sent

    def _has_defaulted_loans(self, user_id: str) -> bool:
        return bool(self.storage.find(self.loans_table, {"user_id": user_id, "status": LoanStatus.DEFAULTED}))

    def _require_pending_review(self, loan: Loan) -> None:
        if loan.approval_status != ApprovalStatus.PENDING_REVIEW:
            raise InvalidState(f"Loan {loan.loan_number} is not pending review", "LOAN_NOT_PENDING_REVIEW")

    def _load_for_update(self, loan_id: str) -> Loan:
        data = self.storage.load_for_update(self.loans_table, loan_id)
        if data is None:
            raise NotFound(f"Loan {loan_id} not found", "LOAN_NOT_FOUND")
        return Loan.from_dict(data)

    def _notify(self, template: NotificationTemplate, loan: Loan, data: Optional[Dict] = None) -> None:
        user = self.users.get_user(loan.user_id)
        if user is None:
            return
        payload = {
            "customerName": user.full_name,
            "loanNumber": loan.loan_number,
        }
        payload.update(data or {})
        dispatch_safely(self.notifications, self.logger, template, [user.email], payload)

    def _notify_disbursed(self, loan: Loan, account: SavingsAccount, transaction: Transaction) -> None:
        installments = self.schedule.get_schedule(loan.id)
        self._notify(NotificationTemplate.LOAN_DISBURSED, loan, {
            "amount": format_amount(loan.principal_amount, self.config.currency),
            "accountNumber": account.account_number,
            "transactionReference": transaction.transaction_reference,
            "newBalance": format_amount(account.balance, self.config.currency),
            "firstPaymentDate": installments[0].due_date.isoformat() if installments else None,
            "monthlyInstallment": format_amount(installments[0].due_amount, self.config.currency) if installments else None,
        })

    def _notify_repayment(self, receipt: RepaymentReceipt) -> None:
        self._notify(NotificationTemplate.REPAYMENT_RECEIVED, receipt.loan, {
            "amount": format_amount(receipt.transaction.amount, self.config.currency),
            "scheduleNumber": receipt.repayment.schedule_number,
            "totalInstallments": receipt.total_installments,
            "paidInstallments": receipt.paid_installments,
            "outstandingAmount": format_amount(receipt.loan.outstanding_amount, self.config.currency),
            "fullyPaid": receipt.fully_paid,
            "nextPaymentDate": receipt.next_due_date.isoformat() if receipt.next_due_date else None,
        })

    def _generate_loan_number(self, now: datetime) -> str:
        sequence = self.storage.next_sequence(f"loan_number:{now.year}")
        return f"LN-{now.year}-{sequence:05d}"

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
