"""Durable per-resource state."""

from .ledger import LEDGER_FORMAT_VERSION, FileLedger, Ledger, LedgerRecord

__all__ = [
    'LEDGER_FORMAT_VERSION',
    'FileLedger',
    'Ledger',
    'LedgerRecord',
]
