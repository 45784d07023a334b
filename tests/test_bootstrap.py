"""
Integration tests for opening the ledger
"""

import pytest

from teller_ledger.accounts import SavingsAccount
from teller_ledger.audit import AuditSink, AuditTrail, FileAuditSink, TAMPER_OUTCOME
from teller_ledger.bootstrap import open_ledger
from teller_ledger.config import LedgerConfig
from teller_ledger.fingerprint import OperatingContext
from teller_ledger.keystore import KeyProtector, KeySealer, KeyUnavailable


class XorSealer(KeySealer):
    def seal(self, data: bytes) -> bytes:
        return bytes(b ^ 0xA5 for b in data)

    def unseal(self, blob: bytes) -> bytes:
        return bytes(b ^ 0xA5 for b in blob)


class LockedSealer(KeySealer):
    def seal(self, data: bytes) -> bytes:
        raise PermissionError("vault locked")

    def unseal(self, blob: bytes) -> bytes:
        raise PermissionError("vault locked")


class UnreachableSink(AuditSink):
    def ensure_registered(self):
        raise PermissionError("event source registration requires admin rights")

    def write(self, event):
        raise AssertionError("primary must not be used after registration failed")


class RecordingSink(AuditSink):
    def __init__(self):
        self.events = []

    def ensure_registered(self):
        pass

    def write(self, event):
        self.events.append(event)


def make_config(tmp_path, **overrides):
    values = dict(
        database_path=str(tmp_path / "ledger.db"),
        key_file_path=str(tmp_path / "key.sealed"),
        audit_fallback_path=str(tmp_path / "audit.log"),
    )
    values.update(overrides)
    return LedgerConfig(_env_file=None, **values)


def make_trail(primary, config):
    return AuditTrail(
        primary, FileAuditSink(config.audit_fallback_path),
        context_provider=lambda app: OperatingContext(where="host", how=f"Name={app}"),
    )


class TestOpenLedger:
    """Test wiring of key protection, storage and audit"""

    def test_fresh_ledger(self, tmp_path):
        config = make_config(tmp_path)
        trail = make_trail(RecordingSink(), config)

        ledger = open_ledger(config, KeyProtector(config.key_file_path, XorSealer()), trail)

        assert len(ledger.store) == 0
        assert (tmp_path / "ledger.db").exists()
        assert (tmp_path / "key.sealed").exists()
        assert not ledger.audit_trail.fallback_active

    def test_reopen_reads_existing_accounts(self, tmp_path):
        config = make_config(tmp_path)
        protector = KeyProtector(config.key_file_path, XorSealer())

        first = open_ledger(config, protector, make_trail(RecordingSink(), config))
        first.store.add(SavingsAccount("Bob", "2 High St", "", "", "Shelbyville", 10.0, id="ACC1"))

        second = open_ledger(config, protector, make_trail(RecordingSink(), config))
        assert second.store.find_by_id("ACC1").name == "Bob"

    def test_locked_key_prevents_opening(self, tmp_path):
        config = make_config(tmp_path)
        open_ledger(config, KeyProtector(config.key_file_path, XorSealer()), make_trail(RecordingSink(), config))

        with pytest.raises(KeyUnavailable):
            open_ledger(config, KeyProtector(config.key_file_path, LockedSealer()),
                        make_trail(RecordingSink(), config))

    def test_audit_fallback_when_primary_unavailable(self, tmp_path):
        config = make_config(tmp_path)
        trail = make_trail(UnreachableSink(), config)

        ledger = open_ledger(config, KeyProtector(config.key_file_path, XorSealer()), trail)
        ledger.audit_trail.record_login_attempt("teller1", True)

        assert ledger.audit_trail.fallback_active
        text = (tmp_path / "audit.log").read_text(encoding="utf-8")
        assert "Falling back to file logging" in text
        assert "WHO: teller1" in text

    def test_strict_mode_flags_legacy_rows(self, tmp_path):
        config = make_config(tmp_path)
        protector = KeyProtector(config.key_file_path, XorSealer())
        first = open_ledger(config, protector, make_trail(RecordingSink(), config))
        first.store.add(SavingsAccount("Bob", "2 High St", "", "", "Town", 10.0, id="ACC1"))
        first.store.rows.write_raw_column("ACC1", "name", "Bob in plaintext")

        sink = RecordingSink()
        strict = open_ledger(
            make_config(tmp_path, allow_legacy_plaintext=False), protector, make_trail(sink, config)
        )

        assert len(strict.store) == 0
        assert [e.outcome for e in sink.events] == [TAMPER_OUTCOME]
