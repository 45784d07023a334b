"""
Teller Ledger

A teller-operated account ledger with field-level encryption of customer
PII at rest and a tamper-evident audit trail with file fallback.
"""

__version__ = "1.0.0"
