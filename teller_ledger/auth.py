"""
Teller Authentication Module

Gates teller sign-in and administrator approval behind a credential validator
(a directory service in production). Every attempt is audited, and any error
from the validator counts as a failed validation.
"""

import hashlib
import hmac
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, Optional, Set, Tuple, Union

from .audit import AuditTrail

logger = logging.getLogger(__name__)


Credentials = Tuple[str, str]
CredentialSource = Union[Iterable[Credentials], Callable[[], Optional[Credentials]]]


class CredentialValidator(ABC):
    """Directory-style credential and group membership checks"""

    @abstractmethod
    def validate(self, username: str, password: str) -> bool:
        """Check a username/password pair"""
        pass

    @abstractmethod
    def is_member(self, username: str, group: str) -> bool:
        """Check whether a user belongs to a group"""
        pass


@dataclass
class LocalUser:
    """Locally held user with a salted scrypt password hash"""
    username: str
    password_hash: str
    password_salt: str
    groups: Set[str] = field(default_factory=set)


class LocalCredentialValidator(CredentialValidator):
    """In-process credential validator for single-host deployments and tests"""

    def __init__(self):
        self._users: Dict[str, LocalUser] = {}

    def _hash_password(self, password: str, salt: str) -> str:
        """Hash password with salt using scrypt"""
        return hashlib.scrypt(
            password.encode(),
            salt=salt.encode(),
            n=16384, r=8, p=1
        ).hex()

    def add_user(self, username: str, password: str, groups: Iterable[str] = ()) -> LocalUser:
        """Register a user with the given groups"""
        salt = secrets.token_hex(16)
        user = LocalUser(
            username=username,
            password_hash=self._hash_password(password, salt),
            password_salt=salt,
            groups=set(groups),
        )
        self._users[username] = user
        return user

    def validate(self, username: str, password: str) -> bool:
        user = self._users.get(username)
        if user is None:
            return False
        expected = self._hash_password(password, user.password_salt)
        return hmac.compare_digest(expected, user.password_hash)

    def is_member(self, username: str, group: str) -> bool:
        user = self._users.get(username)
        return user is not None and group in user.groups


def _iter_credentials(source: CredentialSource) -> Iterator[Credentials]:
    if callable(source):
        while True:
            credentials = source()
            if credentials is None:
                return
            yield credentials
    else:
        yield from source


class ApprovalGate:
    """Audited teller sign-in and administrator approval"""

    def __init__(
        self,
        validator: CredentialValidator,
        audit_trail: AuditTrail,
        teller_group: str = "Bank Teller",
        admin_group: str = "Bank Teller Administrator",
        max_teller_attempts: int = 5,
        max_admin_attempts: int = 3,
    ):
        self.validator = validator
        self.audit_trail = audit_trail
        self.teller_group = teller_group
        self.admin_group = admin_group
        self.max_teller_attempts = max_teller_attempts
        self.max_admin_attempts = max_admin_attempts

    @classmethod
    def from_config(cls, validator: CredentialValidator, audit_trail: AuditTrail, config=None) -> 'ApprovalGate':
        """Build a gate using group names and attempt limits from LedgerConfig"""
        if config is None:
            from .config import get_config
            config = get_config()
        return cls(
            validator,
            audit_trail,
            teller_group=config.teller_group,
            admin_group=config.admin_group,
            max_teller_attempts=config.max_teller_attempts,
            max_admin_attempts=config.max_admin_attempts,
        )

    def _attempt(self, username: str, password: str, group: str,
                 invalid_reason: str, group_reason: str, error_reason: str) -> bool:
        """One audited attempt; validator errors fail closed"""
        try:
            valid = self.validator.validate(username, password)
        except Exception as e:
            logger.warning(f"Credential validator error for {username}: {e}")
            self.audit_trail.record_login_attempt(username, success=False, reason=error_reason)
            return False

        if not valid:
            self.audit_trail.record_login_attempt(username, success=False, reason=invalid_reason)
            return False

        try:
            member = self.validator.is_member(username, group)
        except Exception as e:
            logger.warning(f"Group lookup error for {username}: {e}")
            self.audit_trail.record_login_attempt(username, success=False, reason=error_reason)
            return False

        if not member:
            self.audit_trail.record_login_attempt(username, success=False, reason=group_reason)
            return False

        self.audit_trail.record_login_attempt(username, success=True)
        return True

    def authenticate_teller(self, credentials: CredentialSource) -> Optional[str]:
        """
        Sign a teller in.

        Args:
            credentials: iterable of (username, password) pairs, or a callable
                returning the next pair (None to give up)

        Returns:
            The authenticated username, or None once attempts are exhausted
        """
        for attempt, (username, password) in enumerate(_iter_credentials(credentials), start=1):
            if self._attempt(
                username, password, self.teller_group,
                invalid_reason="Invalid credentials",
                group_reason="User not in teller group",
                error_reason="Directory service error",
            ):
                return username
            if attempt >= self.max_teller_attempts:
                logger.warning("Teller sign-in attempts exhausted")
                break
        return None

    def require_admin_approval(self, credentials: CredentialSource) -> Optional[str]:
        """
        Obtain administrator approval.

        Returns:
            The approving administrator's username, or None if not granted
        """
        for attempt, (username, password) in enumerate(_iter_credentials(credentials), start=1):
            if self._attempt(
                username, password, self.admin_group,
                invalid_reason="Invalid admin credentials",
                group_reason="User not in admin group",
                error_reason="Directory service error during admin approval",
            ):
                return username
            if attempt >= self.max_admin_attempts:
                break
        return None
