"""
Audit Trail Module

Records who did what, where, when and how for every teller operation. Events
are hash-chained with SHA-256 for tamper detection and written to a primary
structured system event log (syslog). When the primary sink fails, the trail
switches permanently to an append-only local file for the rest of the
process. Audit logging never raises into the operation it describes.
"""

import hashlib
import json
import logging
import logging.handlers
import socket
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .fingerprint import APP_NAME, OperatingContext, get_host_name, get_operating_context
from .logging_config import JSONFormatter

logger = logging.getLogger(__name__)


SYSTEM_ACTOR = "SYSTEM"
UNKNOWN_HOLDER = "Unknown"
TAMPER_OUTCOME = "Failure - Possible Data Tampering Detected"
DECRYPT_ACTION = "Database Read / Decrypt"


class AuditSeverity(Enum):
    """Severity carried to the system event log"""
    INFORMATION = "information"
    WARNING = "warning"


@dataclass(frozen=True)
class AuditEvent:
    """
    Immutable audit event with hash chaining for tamper detection
    """
    who: str
    what: str
    where: str
    when: datetime
    how: str
    outcome: str
    account_id: Optional[str] = None
    account_holder: Optional[str] = None
    amount: Optional[Decimal] = None
    reason: Optional[str] = None
    approver: Optional[str] = None
    details: Optional[str] = None
    severity: AuditSeverity = AuditSeverity.INFORMATION
    previous_hash: str = ""
    current_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary"""
        result = asdict(self)
        result['when'] = self.when.isoformat()
        result['severity'] = self.severity.value
        if self.amount is not None:
            result['amount'] = str(self.amount)
        return result

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = self.to_dict()
        del hash_data['current_hash']

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_block(self) -> str:
        """Render the human-readable block written to the fallback file"""
        lines = []
        if self.account_id is not None:
            lines.append(f"WHO(Teller): {self.who}")
            lines.append(f"WHO(Account): {self.account_id} - {self.account_holder or UNKNOWN_HOLDER}")
        else:
            lines.append(f"WHO: {self.who}")
        lines.append(f"WHAT: {self.what}")
        lines.append(f"WHERE: {self.where}")
        lines.append(f"WHEN: {self.when.isoformat()}")
        if self.amount is not None:
            lines.append(f"AMOUNT: {self.amount}")
        if self.reason:
            lines.append(f"WHY: {self.reason}")
        if self.approver:
            lines.append(f"ADMIN_APPROVAL: {self.approver}")
        lines.append(f"HOW: {self.how}")
        lines.append(f"OUTCOME: {self.outcome}")
        if self.details:
            lines.append(f"DETAILS: {self.details}")
        lines.append(f"HASH: {self.current_hash}")
        lines.append(f"PREV_HASH: {self.previous_hash}")
        return "\n".join(lines)


class AuditSink(ABC):
    """Destination for audit events"""

    @abstractmethod
    def ensure_registered(self) -> None:
        """Make sure the sink is ready to accept events (idempotent)"""
        pass

    @abstractmethod
    def write(self, event: AuditEvent) -> None:
        """Write one event durably; raises on failure"""
        pass


class _StrictSysLogHandler(logging.handlers.SysLogHandler):
    """SysLogHandler that surfaces emit failures instead of printing them"""

    def handleError(self, record):
        raise


class SyslogAuditSink(AuditSink):
    """Structured system event log sink backed by syslog"""

    def __init__(
        self,
        address: Union[str, tuple] = "/dev/log",
        facility: str = "user",
        app_name: str = APP_NAME,
        socktype: Optional[int] = None,
    ):
        self.address = address
        self.facility = facility
        self.app_name = app_name
        self.socktype = socktype
        self._handler: Optional[logging.Handler] = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config=None) -> 'SyslogAuditSink':
        """Build a syslog sink from LedgerConfig settings"""
        if config is None:
            from .config import get_config
            config = get_config()
        if config.syslog_port is not None:
            address = (config.syslog_address, config.syslog_port)
            socktype = socket.SOCK_DGRAM
        else:
            address, socktype = config.syslog_address, None
        return cls(address, config.syslog_facility, config.audit_app_name, socktype)

    def _build_handler(self) -> logging.Handler:
        facility = logging.handlers.SysLogHandler.facility_names.get(self.facility)
        if facility is None:
            raise ValueError(f"Unknown syslog facility {self.facility}")
        # SysLogHandler ignores unix socket connect errors at construction
        if isinstance(self.address, str) and not Path(self.address).exists():
            raise FileNotFoundError(f"Syslog socket {self.address} not found")
        handler = _StrictSysLogHandler(
            address=self.address, facility=facility, socktype=self.socktype
        )
        handler.ident = f"{self.app_name}: "
        handler.setFormatter(JSONFormatter())
        return handler

    def ensure_registered(self) -> None:
        """Connect the syslog handler if not already connected"""
        with self._lock:
            if self._handler is None:
                self._handler = self._build_handler()

    def write(self, event: AuditEvent) -> None:
        """Send one event to syslog"""
        self.ensure_registered()
        level = logging.WARNING if event.severity == AuditSeverity.WARNING else logging.INFO
        record = logging.LogRecord(
            name=f"{self.app_name}.audit", level=level, pathname=__file__,
            lineno=0, msg=event.what, args=(), exc_info=None,
        )
        record.audit = event.to_dict()
        self._handler.handle(record)

    def close(self) -> None:
        with self._lock:
            if self._handler is not None:
                self._handler.close()
                self._handler = None


class FileAuditSink(AuditSink):
    """Append-only UTF-8 audit file, one timestamped block per event"""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()

    def ensure_registered(self) -> None:
        pass

    def _append(self, text: str) -> None:
        stamp = datetime.now(timezone.utc).isoformat()
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(f"[{stamp}] {text}\n\n")

    def write(self, event: AuditEvent) -> None:
        """Append one event block"""
        self._append(event.to_block())

    def write_notice(self, message: str) -> None:
        """Append a free-form operational notice"""
        self._append(message)


class AuditTrail:
    """
    Hash-chained audit trail with a primary sink and a permanent file fallback
    """

    def __init__(
        self,
        primary: AuditSink,
        fallback: FileAuditSink,
        app_name: str = APP_NAME,
        context_provider: Optional[Callable[[str], OperatingContext]] = None,
    ):
        self.primary = primary
        self.fallback = fallback
        self.app_name = app_name
        self._context_provider = context_provider or get_operating_context
        self._primary_available = True
        self._last_hash = ""
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config=None) -> 'AuditTrail':
        """Build a syslog-primary, file-fallback trail from LedgerConfig settings"""
        if config is None:
            from .config import get_config
            config = get_config()
        return cls(
            SyslogAuditSink.from_config(config),
            FileAuditSink(config.audit_fallback_path),
            app_name=config.audit_app_name,
        )

    @property
    def fallback_active(self) -> bool:
        return not self._primary_available

    def get_latest_hash(self) -> str:
        """Get the hash of the most recent audit event"""
        return self._last_hash

    def ensure_event_source(self) -> bool:
        """
        Ensure the primary sink is registered. If registration is impossible
        the trail switches to the fallback file for the rest of the process.

        Returns:
            True if the primary sink is in use
        """
        with self._lock:
            if not self._primary_available:
                return False
            try:
                self.primary.ensure_registered()
                return True
            except PermissionError as e:
                self._switch_to_fallback(
                    "Event log unavailable due to access restrictions. Falling back to file logging.", e
                )
            except Exception as e:
                self._switch_to_fallback(
                    "Event log unavailable due to unexpected error. Falling back to file logging.", e
                )
            return False

    def _switch_to_fallback(self, notice: str, error: Exception) -> None:
        self._primary_available = False
        logger.warning(f"Audit primary sink disabled: {error}")
        try:
            self.fallback.write_notice(notice)
        except Exception as e:
            logger.error(f"Audit fallback sink write failed: {e}")

    def record(self, event: AuditEvent) -> AuditEvent:
        """
        Chain and write an event. Never raises; if both sinks fail the event
        is dropped and the failure is logged.

        Returns:
            The chained event as written
        """
        with self._lock:
            chained = replace(event, previous_hash=self._last_hash, current_hash="")
            chained = replace(chained, current_hash=chained.calculate_hash())
            self._last_hash = chained.current_hash

            if self._primary_available:
                try:
                    self.primary.write(chained)
                    return chained
                except Exception as e:
                    self._primary_available = False
                    logger.warning(f"Audit primary sink failed, switching to fallback: {e}")

            try:
                self.fallback.write(chained)
            except Exception as e:
                logger.error(f"Audit event dropped, fallback sink failed: {e}")

            return chained

    def _context(self) -> OperatingContext:
        try:
            return self._context_provider(self.app_name)
        except Exception as e:
            logger.debug(f"Operating context unavailable: {e}")
            return OperatingContext(where=get_host_name(), how=f"Name={self.app_name}")

    def record_transaction(
        self,
        actor: str,
        account_id: str,
        account_holder: str,
        kind: str,
        outcome: str,
        amount: Optional[Union[Decimal, float]] = None,
        reason: Optional[str] = None,
        approver: Optional[str] = None,
    ) -> AuditEvent:
        """Record a teller transaction or system action against an account"""
        context = self._context()
        event = AuditEvent(
            who=actor,
            what=kind,
            where=context.where,
            when=datetime.now(timezone.utc),
            how=context.how,
            outcome=outcome,
            account_id=account_id,
            account_holder=account_holder,
            amount=Decimal(str(amount)) if amount is not None else None,
            reason=reason or None,
            approver=approver or None,
        )
        return self.record(event)

    def record_login_attempt(
        self,
        user: str,
        success: bool,
        reason: Optional[str] = None,
    ) -> AuditEvent:
        """Record a teller or administrator login attempt"""
        context = self._context()
        event = AuditEvent(
            who=user,
            what="Login Attempt",
            where=context.where,
            when=datetime.now(timezone.utc),
            how=context.how,
            outcome="Success" if success else "Failure",
            details=reason or None,
            severity=AuditSeverity.INFORMATION if success else AuditSeverity.WARNING,
        )
        return self.record(event)

    def record_tamper(self, account_id: Optional[str]) -> AuditEvent:
        """Record a failed decrypt of a stored row"""
        return self.record_transaction(
            actor=SYSTEM_ACTOR,
            account_id=account_id or UNKNOWN_HOLDER,
            account_holder=UNKNOWN_HOLDER,
            kind=DECRYPT_ACTION,
            outcome=TAMPER_OUTCOME,
        )


def verify_chain(events: Iterable[AuditEvent]) -> Dict[str, Any]:
    """
    Verify the integrity of a sequence of chained audit events

    Returns:
        Dictionary with integrity check results
    """
    result: Dict[str, Any] = {
        'valid': True,
        'total_events': 0,
        'hash_errors': [],
        'chain_breaks': [],
    }

    previous_hash: Optional[str] = None
    events: List[AuditEvent] = list(events)
    result['total_events'] = len(events)

    for i, event in enumerate(events):
        if not event.verify_hash():
            result['valid'] = False
            result['hash_errors'].append({
                'position': i,
                'expected_hash': event.calculate_hash(),
                'actual_hash': event.current_hash,
            })

        # The first event may continue a chain that started earlier
        if previous_hash is not None and event.previous_hash != previous_hash:
            result['valid'] = False
            result['chain_breaks'].append({
                'position': i,
                'expected_previous_hash': previous_hash,
                'actual_previous_hash': event.previous_hash,
            })
        previous_hash = event.current_hash

    return result
