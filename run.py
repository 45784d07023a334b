#!/usr/bin/env python3
"""
Teller Ledger Entry Point

Opens the ledger: unseals the data key, connects the audit trail and loads
all accounts, then reports how many were loaded.
"""

import sys

from teller_ledger.config import get_config
from teller_ledger.keystore import KeyUnavailable
from teller_ledger.logging_config import get_logger, setup_logging
from teller_ledger.bootstrap import open_ledger


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, log_file=config.log_file)

    try:
        ledger = open_ledger(config)
    except KeyUnavailable as e:
        get_logger().error(f"Ledger not opened: {e}")
        print(f"Encryption key unavailable: {e}")
        sys.exit(1)

    print(f"Ledger ready: {len(ledger.store)} accounts loaded")
    if ledger.audit_trail.fallback_active:
        print(f"Audit events are being written to {config.audit_fallback_path}")
