"""
Teller Operations Module

The operations a teller front end invokes on the ledger: open, view, deposit,
withdraw and close accounts. Input is validated before any state change,
every operation records exactly one transaction audit event whatever the
outcome, and results carry business-level messages only.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from .accounts import Account, AccountKind, CurrentAccount, SavingsAccount
from .audit import UNKNOWN_HOLDER, AuditTrail
from .auth import ApprovalGate, CredentialSource
from .logging_config import log_action
from .repository import EncryptedAccountStore

logger = logging.getLogger(__name__)


MAX_TEXT_LENGTH = 100
MAX_TRANSACTION_AMOUNT = Decimal("1000000")
REASON_THRESHOLD = Decimal("10000")

ACCOUNT_NOT_FOUND = "Account Does Not Exist"
INSUFFICIENT_FUNDS = "Insufficient Funds Available."
APPROVAL_DENIED = "Deletion denied: administrator approval not granted."


class TransactionKind:
    """Audit labels for teller operations"""
    ACCOUNT_CREATION = "Account Creation"
    ACCOUNT_CLOSURE = "Account Closure"
    ACCOUNT_QUERY = "Balance / Account Information Query"
    LODGEMENT = "Lodgement"
    WITHDRAWAL = "Withdrawal"
    MENU_SELECTION = "Menu Selection"


@dataclass
class OperationResult:
    """Outcome of a teller operation"""
    success: bool
    message: str
    account_id: Optional[str] = None
    account: Optional[Account] = None


def validate_text(value: Optional[str], field_name: str, required: bool = True,
                  max_length: int = MAX_TEXT_LENGTH) -> str:
    """Trim and length-check a text input"""
    value = (value or "").strip()
    if required and not value:
        raise ValueError(f"{field_name} is required")
    if len(value) > max_length:
        raise ValueError(f"{field_name} must be at most {max_length} characters")
    return value


def parse_money(value: Union[str, int, float, Decimal], allow_zero: bool = False,
                max_amount: Decimal = MAX_TRANSACTION_AMOUNT) -> Decimal:
    """
    Parse a money amount using invariant formatting ("1,234.56")

    Raises:
        ValueError: if the amount is not a number, is negative, is zero when
            zero is not allowed, or exceeds the transaction limit
    """
    if isinstance(value, bool):
        raise ValueError("Invalid amount")
    text = str(value).strip().replace(",", "")
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise ValueError("Invalid amount")

    if not amount.is_finite() or amount < 0 or (not allow_zero and amount == 0):
        raise ValueError("Invalid amount")
    if amount > max_amount:
        raise ValueError("Amount exceeds allowed limit")
    return amount


class TellerService:
    """Teller operations over the encrypted account store"""

    def __init__(
        self,
        store: EncryptedAccountStore,
        audit_trail: AuditTrail,
        gate: ApprovalGate,
        teller: str,
        max_text_length: int = MAX_TEXT_LENGTH,
        max_transaction_amount: Decimal = MAX_TRANSACTION_AMOUNT,
        reason_threshold: Decimal = REASON_THRESHOLD,
    ):
        self.store = store
        self.audit_trail = audit_trail
        self.gate = gate
        self.teller = teller
        self.max_text_length = max_text_length
        self.max_transaction_amount = max_transaction_amount
        self.reason_threshold = reason_threshold

    @classmethod
    def from_config(cls, store: EncryptedAccountStore, audit_trail: AuditTrail,
                    gate: ApprovalGate, teller: str, config=None) -> 'TellerService':
        """Build a service using business limits from LedgerConfig"""
        if config is None:
            from .config import get_config
            config = get_config()
        return cls(
            store, audit_trail, gate, teller,
            max_text_length=config.max_text_length,
            max_transaction_amount=Decimal(config.max_transaction_amount),
            reason_threshold=Decimal(config.reason_threshold),
        )

    def _money(self, value, allow_zero: bool = False) -> Decimal:
        return parse_money(value, allow_zero=allow_zero, max_amount=self.max_transaction_amount)

    def _text(self, value, field_name: str, required: bool = True) -> str:
        return validate_text(value, field_name, required=required, max_length=self.max_text_length)

    def _reason(self, amount: Decimal, reason: Optional[str]) -> Optional[str]:
        if amount > self.reason_threshold:
            return self._text(reason, "Reason for transaction")
        return self._text(reason, "Reason for transaction", required=False) or None

    def _record(self, account_id: str, holder: str, kind: str, outcome: str, **details) -> None:
        """Record one transaction audit event and mirror it to the operational log"""
        self.audit_trail.record_transaction(self.teller, account_id, holder, kind, outcome, **details)
        log_action(logger, "info", outcome, user_id=self.teller, action=kind, resource=account_id)

    def _not_found(self, account_id: str, kind: str) -> OperationResult:
        self._record(account_id, UNKNOWN_HOLDER, kind, "Failure - Account Not Found")
        return OperationResult(False, ACCOUNT_NOT_FOUND, account_id=account_id)

    def open_account(
        self,
        kind: AccountKind,
        name: str,
        address_line_1: str,
        address_line_2: Optional[str],
        address_line_3: Optional[str],
        town: str,
        opening_balance,
        overdraft_limit=0,
        interest_rate=0,
    ) -> OperationResult:
        """Open a current or savings account"""
        fields = dict(
            name=self._text(name, "Name"),
            address_line_1=self._text(address_line_1, "Address Line 1"),
            address_line_2=self._text(address_line_2, "Address Line 2", required=False),
            address_line_3=self._text(address_line_3, "Address Line 3", required=False),
            town=self._text(town, "Town"),
            balance=float(self._money(opening_balance, allow_zero=True)),
        )

        kind = AccountKind(kind)
        if kind == AccountKind.CURRENT:
            account = CurrentAccount(
                overdraft_limit=float(self._money(overdraft_limit, allow_zero=True)), **fields
            )
        else:
            account = SavingsAccount(
                interest_rate=float(self._money(interest_rate, allow_zero=True)), **fields
            )

        try:
            account_id = self.store.add(account)
        except Exception:
            logger.exception("Account creation failed")
            self._record(account.id, account.name, TransactionKind.ACCOUNT_CREATION, "Failure")
            raise

        self._record(account_id, account.name, TransactionKind.ACCOUNT_CREATION, "Success")
        return OperationResult(True, f"New Account Number Is: {account_id}",
                               account_id=account_id, account=account)

    def view_account(self, account_id: str) -> OperationResult:
        """Look up an account for display"""
        account_id = (account_id or "").strip()
        account = self.store.find_by_id(account_id)
        if account is None:
            return self._not_found(account_id, TransactionKind.ACCOUNT_QUERY)

        self._record(account_id, account.name, TransactionKind.ACCOUNT_QUERY, "Success")
        return OperationResult(True, account.masked_summary(), account_id=account_id, account=account)

    def deposit(self, account_id: str, amount, reason: Optional[str] = None) -> OperationResult:
        """Lodge funds to an account"""
        account_id = (account_id or "").strip()
        account = self.store.find_by_id(account_id)
        if account is None:
            return self._not_found(account_id, TransactionKind.LODGEMENT)

        amount = self._money(amount)
        reason = self._reason(amount, reason)

        try:
            lodged = self.store.deposit(account_id, float(amount))
        except Exception:
            logger.exception(f"Lodgement to {account_id} failed")
            lodged = False

        self._record(account_id, account.name, TransactionKind.LODGEMENT,
                     "Success" if lodged else "Failure", amount=amount, reason=reason)
        if not lodged:
            return OperationResult(False, "Lodgement could not be completed.", account_id=account_id)
        return OperationResult(True, "Lodgement Successful.", account_id=account_id, account=account)

    def withdraw(self, account_id: str, amount, reason: Optional[str] = None) -> OperationResult:
        """Withdraw funds from an account"""
        account_id = (account_id or "").strip()
        account = self.store.find_by_id(account_id)
        if account is None:
            return self._not_found(account_id, TransactionKind.WITHDRAWAL)

        amount = self._money(amount)
        reason = self._reason(amount, reason)

        try:
            withdrawn = self.store.withdraw(account_id, float(amount))
            outcome = "Success" if withdrawn else "Failure - Insufficient Funds"
            message = "Withdrawal Successful." if withdrawn else INSUFFICIENT_FUNDS
        except Exception:
            logger.exception(f"Withdrawal from {account_id} failed")
            withdrawn = False
            outcome = "Failure"
            message = "Withdrawal could not be completed."

        self._record(account_id, account.name, TransactionKind.WITHDRAWAL,
                     outcome, amount=amount, reason=reason)
        return OperationResult(withdrawn, message, account_id=account_id,
                               account=account if withdrawn else None)

    def close_account(self, account_id: str, admin_credentials: CredentialSource,
                      confirm: bool) -> OperationResult:
        """
        Close an account after administrator approval and teller confirmation
        """
        account_id = (account_id or "").strip()
        account = self.store.find_by_id(account_id)
        if account is None:
            return self._not_found(account_id, TransactionKind.ACCOUNT_CLOSURE)

        approver = self.gate.require_admin_approval(admin_credentials)
        if approver is None:
            self._record(account_id, account.name,
                         TransactionKind.ACCOUNT_CLOSURE, "Failure - Admin Approval Denied")
            return OperationResult(False, APPROVAL_DENIED, account_id=account_id)

        if not confirm:
            self._record(account_id, account.name, TransactionKind.ACCOUNT_CLOSURE,
                         "Cancelled By User", approver=approver)
            return OperationResult(False, "Account closure cancelled.", account_id=account_id)

        try:
            closed = self.store.close(account_id)
        except Exception:
            logger.exception(f"Closure of {account_id} failed")
            closed = False

        self._record(account_id, account.name, TransactionKind.ACCOUNT_CLOSURE,
                     "Success" if closed else "Failure", approver=approver)
        if not closed:
            return OperationResult(False, "Account closure could not be completed.", account_id=account_id)
        return OperationResult(True, "Account Closed.", account_id=account_id)

    def record_invalid_selection(self) -> None:
        """Audit an invalid menu choice"""
        self._record("N/A", "N/A", TransactionKind.MENU_SELECTION, "Failure - Invalid Option")
