"""
Test suite for teller operations

Each operation must validate input first and record exactly one transaction
audit event whatever the outcome.
"""

import os
import sqlite3
from decimal import Decimal

import pytest

from teller_ledger.accounts import AccountKind, CurrentAccount, SavingsAccount
from teller_ledger.audit import AuditSink, AuditTrail, FileAuditSink
from teller_ledger.auth import ApprovalGate, LocalCredentialValidator
from teller_ledger.encryption import FieldCipher
from teller_ledger.fingerprint import OperatingContext
from teller_ledger.repository import EncryptedAccountStore
from teller_ledger.storage import InMemoryRowStore
from teller_ledger.teller import (
    ACCOUNT_NOT_FOUND, APPROVAL_DENIED, INSUFFICIENT_FUNDS,
    TellerService, TransactionKind, parse_money, validate_text,
)


class RecordingSink(AuditSink):
    def __init__(self):
        self.events = []

    def ensure_registered(self):
        pass

    def write(self, event):
        self.events.append(event)


@pytest.fixture(scope="module")
def directory():
    validator = LocalCredentialValidator()
    validator.add_user("admin1", "admin-pass", groups=["Bank Teller Administrator"])
    return validator


class TestInputParsing:
    """Test money and text validation"""

    @pytest.mark.parametrize("value,expected", [
        ("20", Decimal("20")),
        ("1,234.56", Decimal("1234.56")),
        (" 0.01 ", Decimal("0.01")),
        (15, Decimal("15")),
        ("1000000", Decimal("1000000")),
    ])
    def test_parse_money(self, value, expected):
        assert parse_money(value) == expected

    @pytest.mark.parametrize("value", ["", "abc", "-5", "0", "NaN", "Infinity", "1000000.01", True])
    def test_parse_money_rejects(self, value):
        with pytest.raises(ValueError):
            parse_money(value)

    def test_parse_money_allow_zero(self):
        assert parse_money("0", allow_zero=True) == Decimal("0")

    def test_validate_text(self):
        assert validate_text("  Alice  ", "Name") == "Alice"
        assert validate_text(None, "Line 2", required=False) == ""

        with pytest.raises(ValueError):
            validate_text("   ", "Name")
        with pytest.raises(ValueError):
            validate_text("x" * 101, "Name")


class TestTellerService:
    """Test teller operations end to end over an in-memory row store"""

    @pytest.fixture(autouse=True)
    def setup_service(self, directory, tmp_path):
        self.sink = RecordingSink()
        self.trail = AuditTrail(
            self.sink, FileAuditSink(tmp_path / "audit.log"),
            context_provider=lambda app: OperatingContext(where="host", how=f"Name={app}"),
        )
        self.rows = InMemoryRowStore()
        self.store = EncryptedAccountStore(self.rows, FieldCipher(os.urandom(32)), self.trail)
        self.service = TellerService(
            self.store, self.trail, ApprovalGate(directory, self.trail), teller="teller1"
        )

    def open_alice(self):
        result = self.service.open_account(
            AccountKind.CURRENT, "Alice", "1 Main Road", "", None, "Springfield",
            "100", overdraft_limit="50",
        )
        self.sink.events.clear()
        return result.account_id

    def test_open_current_account(self):
        result = self.service.open_account(
            AccountKind.CURRENT, "Alice", "1 Main Road", "", "", "Springfield",
            "100", overdraft_limit="50",
        )

        assert result.success
        assert result.message == f"New Account Number Is: {result.account_id}"
        assert isinstance(result.account, CurrentAccount)
        assert result.account.overdraft_limit == 50.0
        assert self.rows.count() == 1

        assert len(self.sink.events) == 1
        event = self.sink.events[0]
        assert event.what == TransactionKind.ACCOUNT_CREATION
        assert event.who == "teller1"
        assert event.account_holder == "Alice"
        assert event.outcome == "Success"

    def test_open_savings_account(self):
        result = self.service.open_account(
            2, "Bob", "2 High St", "", "", "Shelbyville", "0", interest_rate="2.5",
        )

        assert isinstance(result.account, SavingsAccount)
        assert result.account.interest_rate == 2.5
        assert result.account.balance == 0.0

    def test_open_account_validates_before_state_change(self):
        with pytest.raises(ValueError):
            self.service.open_account(AccountKind.CURRENT, "", "1 Rd", "", "", "Town", "10")
        with pytest.raises(ValueError):
            self.service.open_account(AccountKind.CURRENT, "Al", "1 Rd", "", "", "Town", "-1")
        with pytest.raises(ValueError):
            self.service.open_account(7, "Al", "1 Rd", "", "", "Town", "10")

        assert self.rows.count() == 0
        assert self.sink.events == []

    def test_open_account_store_failure_is_audited(self):
        self.rows.fail_next_write = sqlite3.OperationalError("disk full")

        with pytest.raises(sqlite3.OperationalError):
            self.service.open_account(AccountKind.CURRENT, "Al", "1 Rd", "", "", "Town", "10")

        assert [e.outcome for e in self.sink.events] == ["Failure"]
        assert len(self.store) == 0

    def test_view_account(self):
        account_id = self.open_alice()
        result = self.service.view_account(f"  {account_id} ")

        assert result.success
        assert "1 Main Road" not in result.message
        assert "Balance: 100.0" in result.message
        assert self.sink.events[0].what == TransactionKind.ACCOUNT_QUERY

    @pytest.mark.parametrize("operation", ["view", "deposit", "withdraw", "close"])
    def test_unknown_account(self, operation):
        if operation == "view":
            result = self.service.view_account("missing")
        elif operation == "deposit":
            result = self.service.deposit("missing", "10")
        elif operation == "withdraw":
            result = self.service.withdraw("missing", "10")
        else:
            result = self.service.close_account("missing", [("admin1", "admin-pass")], confirm=True)

        assert not result.success
        assert result.message == ACCOUNT_NOT_FOUND
        assert len(self.sink.events) == 1
        assert self.sink.events[0].outcome == "Failure - Account Not Found"
        assert self.sink.events[0].account_holder == "Unknown"

    def test_deposit(self):
        account_id = self.open_alice()
        result = self.service.deposit(account_id, "20")

        assert result.success
        assert self.store.find_by_id(account_id).balance == 120.0
        event = self.sink.events[0]
        assert event.what == TransactionKind.LODGEMENT
        assert event.amount == Decimal("20")
        assert event.reason is None

    def test_large_deposit_needs_reason(self):
        account_id = self.open_alice()

        with pytest.raises(ValueError):
            self.service.deposit(account_id, "10000.01")
        assert self.store.find_by_id(account_id).balance == 100.0

        result = self.service.deposit(account_id, "10000.01", reason="House sale")
        assert result.success
        assert self.sink.events[-1].reason == "House sale"

    def test_deposit_store_failure(self):
        account_id = self.open_alice()
        self.rows.fail_next_write = sqlite3.OperationalError("disk I/O error")

        result = self.service.deposit(account_id, "20")

        assert not result.success
        assert self.store.find_by_id(account_id).balance == 100.0
        assert [e.outcome for e in self.sink.events] == ["Failure"]

    def test_withdraw_insufficient_funds(self):
        account_id = self.open_alice()
        self.service.deposit(account_id, "20")
        self.sink.events.clear()

        result = self.service.withdraw(account_id, "200")

        assert not result.success
        assert result.message == INSUFFICIENT_FUNDS
        assert self.store.find_by_id(account_id).balance == 120.0
        assert self.sink.events[0].outcome == "Failure - Insufficient Funds"
        assert self.sink.events[0].amount == Decimal("200")

    def test_withdraw_into_overdraft(self):
        account_id = self.open_alice()
        result = self.service.withdraw(account_id, "150")

        assert result.success
        assert self.store.find_by_id(account_id).balance == -50.0

    def test_close_account(self):
        account_id = self.open_alice()
        result = self.service.close_account(account_id, [("admin1", "admin-pass")], confirm=True)

        assert result.success
        assert self.store.find_by_id(account_id) is None
        assert self.rows.count() == 0

        closure = [e for e in self.sink.events if e.what == TransactionKind.ACCOUNT_CLOSURE]
        assert len(closure) == 1
        assert closure[0].approver == "admin1"
        assert closure[0].outcome == "Success"

    def test_close_account_denied(self):
        account_id = self.open_alice()
        result = self.service.close_account(account_id, [("admin1", "wrong")] * 3, confirm=True)

        assert not result.success
        assert result.message == APPROVAL_DENIED
        assert account_id in self.store
        closure = [e for e in self.sink.events if e.what == TransactionKind.ACCOUNT_CLOSURE]
        assert closure[0].outcome == "Failure - Admin Approval Denied"

    def test_close_account_cancelled(self):
        account_id = self.open_alice()
        result = self.service.close_account(account_id, [("admin1", "admin-pass")], confirm=False)

        assert not result.success
        assert account_id in self.store
        closure = [e for e in self.sink.events if e.what == TransactionKind.ACCOUNT_CLOSURE]
        assert closure[0].outcome == "Cancelled By User"

    def test_invalid_selection_is_audited(self):
        self.service.record_invalid_selection()
        assert self.sink.events[0].outcome == "Failure - Invalid Option"

    def test_from_config(self, directory):
        from teller_ledger.config import LedgerConfig

        config = LedgerConfig(reason_threshold="50", max_transaction_amount="500")
        service = TellerService.from_config(
            self.store, self.trail, ApprovalGate(directory, self.trail), "teller2", config
        )
        account_id = self.open_alice()

        with pytest.raises(ValueError):
            service.deposit(account_id, "60")
        with pytest.raises(ValueError):
            service.deposit(account_id, "501", reason="Too much")
        assert service.deposit(account_id, "60", reason="Gift").success
