"""
Account Model Module

Current and savings accounts held by the teller ledger. Name, address lines
and town are PII and are encrypted at rest by the record store; balance and
the variant-specific limits stay plaintext for arithmetic.

The model only checks balance rules. Balance changes go through
EncryptedAccountStore so the row store is written before memory.
"""

import math
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum


# Columns encrypted at rest, in storage order
PII_FIELDS = ("name", "address_line_1", "address_line_2", "address_line_3", "town")


class UnsupportedAccountType(TypeError):
    """Raised for account variants the ledger cannot persist"""
    pass


class AccountKind(IntEnum):
    """Row discriminator for account variants"""
    CURRENT = 1
    SAVINGS = 2


def mask_pii(value: str) -> str:
    """Mask all but the first and last two characters of a PII value"""
    if not value or not value.strip():
        return ""

    value = value.strip()
    if len(value) <= 4:
        return "*" * len(value)

    return value[:2] + "*" * (len(value) - 4) + value[-2:]


def validate_amount(amount: float) -> None:
    """Reject non-positive or non-finite transaction amounts"""
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValueError("Amount must be a number")
    if not math.isfinite(amount) or amount <= 0:
        raise ValueError("Amount must be a positive, finite value")


@dataclass
class Account(ABC):
    """Base bank account"""
    name: str
    address_line_1: str
    address_line_2: str
    address_line_3: str
    town: str
    balance: float
    id: str = field(default_factory=lambda: str(uuid.uuid4()), kw_only=True)

    @abstractmethod
    def floor(self) -> float:
        """Lowest balance this account may reach"""
        pass

    def available_funds(self) -> float:
        """Funds available for withdrawal"""
        return self.balance - self.floor()

    def would_allow_withdrawal(self, amount: float) -> bool:
        """Check a withdrawal against the account floor without applying it"""
        validate_amount(amount)
        return self.balance - amount >= self.floor()

    def pii_values(self) -> dict:
        """PII field values keyed by column name"""
        return {name: getattr(self, name) for name in PII_FIELDS}

    def masked_summary(self) -> str:
        """Teller-facing summary with address and town masked"""
        return (
            f"\nAccount No: {self.id}\n"
            f"Name: {self.name or ''}\n"
            f"Address Line 1: {mask_pii(self.address_line_1)}\n"
            f"Address Line 2: {mask_pii(self.address_line_2)}\n"
            f"Address Line 3: {mask_pii(self.address_line_3)}\n"
            f"Town: {mask_pii(self.town)}\n"
            f"Balance: {self.balance}\n"
        )


@dataclass
class CurrentAccount(Account):
    """Current account that may go overdrawn down to its overdraft limit"""
    overdraft_limit: float = 0.0

    def __post_init__(self):
        if self.overdraft_limit < 0:
            raise ValueError("Overdraft limit cannot be negative")

    def floor(self) -> float:
        return -self.overdraft_limit


@dataclass
class SavingsAccount(Account):
    """Savings account that never goes negative"""
    interest_rate: float = 0.0

    def __post_init__(self):
        if self.interest_rate < 0:
            raise ValueError("Interest rate cannot be negative")

    def floor(self) -> float:
        return 0.0


def kind_of(account: Account) -> AccountKind:
    """Map an account instance to its row discriminator"""
    if isinstance(account, CurrentAccount):
        return AccountKind.CURRENT
    if isinstance(account, SavingsAccount):
        return AccountKind.SAVINGS
    raise UnsupportedAccountType(f"Unknown bank account type: {type(account).__name__}")
