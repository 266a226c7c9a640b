"""
EasyCash Ledger

Mobile-money balance-transfer and fee-settlement engine: peer transfers,
agent cash-in and cash-out, admin float top-ups and agent withdrawals, with
atomic multi-account settlement and an append-only transaction ledger.
"""

__version__ = "1.0.0"
