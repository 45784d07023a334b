"""
Encrypted Account Store Module

Keeps the in-memory account index and the backing row store in step. PII
columns are encrypted on the way to the row store and decrypted on the way
back; plaintext PII never reaches the row store.

Every mutation writes the row store first and only then touches the index,
all under one lock, so a failed store write leaves memory unchanged.
"""

import logging
import threading
from typing import Dict, List, Optional

from .accounts import (
    PII_FIELDS, Account, AccountKind, CurrentAccount, SavingsAccount,
    UnsupportedAccountType, kind_of, validate_amount,
)
from .audit import AuditTrail
from .encryption import CryptoError, FieldCipher
from .storage import AccountRow, RowStore

logger = logging.getLogger(__name__)


class EncryptedAccountStore:
    """
    Account index backed by a row store, with PII encrypted at rest.

    One instance owns the ledger for a process; callers share it by reference.
    """

    def __init__(self, rows: RowStore, cipher: FieldCipher, audit_trail: AuditTrail):
        self.rows = rows
        self.cipher = cipher
        self.audit_trail = audit_trail
        self._accounts: Dict[str, Account] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._accounts)

    def __contains__(self, account_id: str) -> bool:
        with self._lock:
            return account_id in self._accounts

    def accounts(self) -> List[Account]:
        """Snapshot of all loaded accounts"""
        with self._lock:
            return list(self._accounts.values())

    def load(self) -> int:
        """
        Load every account from the row store into the index.

        A row whose PII fails to decrypt is reported to the audit trail as
        possible tampering and skipped. A row of unknown kind or with invalid
        values is logged and skipped. The rest of the ledger still loads.

        Returns:
            Number of accounts loaded
        """
        with self._lock:
            if not self.rows.exists():
                self.rows.initialise()
                self._accounts.clear()
                return 0

            self._accounts.clear()
            skipped = 0

            for row in self.rows.iter_rows():
                try:
                    account = self._row_to_account(row)
                except CryptoError:
                    logger.warning(f"Skipping account {row.account_id}: PII failed to decrypt")
                    self.audit_trail.record_tamper(row.account_id)
                    skipped += 1
                    continue
                except (UnsupportedAccountType, ValueError) as e:
                    logger.error(f"Skipping account {row.account_id}: {e}")
                    skipped += 1
                    continue

                self._accounts[account.id] = account

            logger.info(f"Loaded {len(self._accounts)} accounts, skipped {skipped}")
            return len(self._accounts)

    def add(self, account: Account) -> str:
        """
        Persist a new account and add it to the index

        Raises:
            UnsupportedAccountType: for unknown account variants; nothing is persisted
        """
        if account is None:
            raise ValueError("account is required")

        row = self._account_to_row(account)

        with self._lock:
            if account.id in self._accounts:
                raise ValueError(f"Account {account.id} already exists")
            self.rows.insert(row)
            self._accounts[account.id] = account

        logger.info(f"Added account {account.id}")
        return account.id

    def find_by_id(self, account_id: str) -> Optional[Account]:
        """In-memory lookup; None if the account is unknown"""
        with self._lock:
            return self._accounts.get(account_id)

    def close(self, account_id: str) -> bool:
        """Remove an account from the row store and the index"""
        with self._lock:
            if account_id not in self._accounts:
                return False
            self.rows.delete(account_id)
            del self._accounts[account_id]

        logger.info(f"Closed account {account_id}")
        return True

    def deposit(self, account_id: str, amount: float) -> bool:
        """Credit an account; False if the account is unknown"""
        validate_amount(amount)

        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return False

            new_balance = account.balance + amount
            if not self.rows.update_balance(account_id, new_balance):
                logger.error(f"Account {account_id} missing from row store; balance not changed")
                return False
            account.balance = new_balance

        return True

    def withdraw(self, account_id: str, amount: float) -> bool:
        """
        Debit an account; False if unknown or funds are insufficient, in
        which case nothing changes
        """
        validate_amount(amount)

        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return False
            if not account.would_allow_withdrawal(amount):
                return False

            new_balance = account.balance - amount
            if not self.rows.update_balance(account_id, new_balance):
                logger.error(f"Account {account_id} missing from row store; balance not changed")
                return False
            account.balance = new_balance

        return True

    def _account_to_row(self, account: Account) -> AccountRow:
        """Serialize an account, encrypting its PII"""
        kind = kind_of(account)
        encrypted = {name: self.cipher.encrypt(value) for name, value in account.pii_values().items()}

        if kind == AccountKind.CURRENT:
            overdraft_limit, interest_rate = account.overdraft_limit, None
        elif kind == AccountKind.SAVINGS:
            overdraft_limit, interest_rate = None, account.interest_rate
        else:
            raise UnsupportedAccountType(f"Unknown bank account type: {kind}")

        return AccountRow(
            account_id=account.id,
            balance=account.balance,
            account_kind=int(kind),
            overdraft_limit=overdraft_limit,
            interest_rate=interest_rate,
            **encrypted,
        )

    def _row_to_account(self, row: AccountRow) -> Account:
        """Deserialize a row, decrypting its PII"""
        try:
            kind = AccountKind(row.account_kind)
        except ValueError:
            raise UnsupportedAccountType(f"Unknown account kind {row.account_kind}")

        pii = {name: self.cipher.decrypt(getattr(row, name) or "") for name in PII_FIELDS}

        if kind == AccountKind.CURRENT:
            return CurrentAccount(
                balance=row.balance,
                overdraft_limit=row.overdraft_limit or 0.0,
                id=row.account_id,
                **pii,
            )
        if kind == AccountKind.SAVINGS:
            return SavingsAccount(
                balance=row.balance,
                interest_rate=row.interest_rate or 0.0,
                id=row.account_id,
                **pii,
            )
        raise UnsupportedAccountType(f"Unknown account kind {row.account_kind}")
