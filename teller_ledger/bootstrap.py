"""
Ledger Bootstrap

Wires key protection, field encryption, the row store and the audit trail
into one loaded account store for a process.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .audit import AuditTrail
from .config import LedgerConfig, get_config
from .encryption import FieldCipher
from .keystore import KeyProtector
from .repository import EncryptedAccountStore
from .storage import SQLiteRowStore

logger = logging.getLogger(__name__)


@dataclass
class Ledger:
    """Process-wide ledger components"""
    config: LedgerConfig
    audit_trail: AuditTrail
    store: EncryptedAccountStore


def open_ledger(config: Optional[LedgerConfig] = None,
                key_protector: Optional[KeyProtector] = None,
                audit_trail: Optional[AuditTrail] = None) -> Ledger:
    """
    Build and load the ledger.

    Raises:
        KeyUnavailable: if the data key cannot be unsealed; the ledger never
            falls back to storing plaintext
    """
    config = config or get_config()

    audit_trail = audit_trail or AuditTrail.from_config(config)
    audit_trail.ensure_event_source()

    key_protector = key_protector or KeyProtector.from_config(config)
    cipher = FieldCipher(
        key_protector.get_or_create_key(),
        allow_legacy_plaintext=config.allow_legacy_plaintext,
    )

    store = EncryptedAccountStore(SQLiteRowStore(config.database_path), cipher, audit_trail)
    loaded = store.load()
    logger.info(f"Ledger opened with {loaded} accounts")

    return Ledger(config=config, audit_trail=audit_trail, store=store)
