"""
Minibank Ledger Service

A small ledger service: accounts with integer balances, self-deposits and
holder-to-receiver transfers posted atomically, and an append-only,
hash-chained audit log of every committed transaction.
"""

__version__ = "1.0.0"
