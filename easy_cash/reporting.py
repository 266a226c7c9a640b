"""
Reporting Module

Balance summaries and ledger-wide consistency checks. The checks recompute
what the account balances and the admin system float must be from account
opening balances and the ledger, so any lost update or unrecorded mutation
shows up as a mismatch.
"""

from collections import Counter
from typing import Dict, Any

from .accounts import AccountStore, AccountRole
from .ledger import TransactionLedger, TransactionType


# Effect of each entry kind on the admin system float
SYSTEM_FLOW = {
    TransactionType.SEND_MONEY: lambda e: e.amount + e.charge,
    TransactionType.CASH_IN: lambda e: e.amount,
    TransactionType.CASH_OUT: lambda e: e.amount + e.charge,
    TransactionType.FLOAT_APPROVAL: lambda e: e.amount,
    TransactionType.WITHDRAWAL_APPROVAL: lambda e: -e.amount,
}


class LedgerReport:
    """Read-only views over accounts and the transaction ledger"""

    def __init__(self, accounts: AccountStore, ledger: TransactionLedger):
        self.accounts = accounts
        self.ledger = ledger

    def snapshot(self) -> Dict[str, Any]:
        """
        Current totals per role plus the admin figures

        Returns:
            Dictionary of integer totals and account counts
        """
        accounts = self.accounts.list_accounts()
        admin = next((a for a in accounts if a.role == AccountRole.ADMIN), None)

        return {
            'user_balance': sum(a.balance for a in accounts if a.role == AccountRole.USER),
            'agent_balance': sum(a.balance for a in accounts if a.role == AccountRole.AGENT),
            'agent_income': sum(a.income for a in accounts if a.role == AccountRole.AGENT),
            'admin_balance': admin.balance if admin else 0,
            'system_balance': admin.system_balance if admin else 0,
            'total_balance': sum(a.balance for a in accounts),
            'account_counts': dict(Counter(a.role.value for a in accounts)),
            'transaction_count': self.ledger.count()
        }

    def check_consistency(self) -> Dict[str, Any]:
        """
        Verify the global ledger invariants

        - no account balance is negative
        - total balance equals opening float plus approved floats minus
          approved withdrawals
        - the admin system float equals opening float plus the system flow
          of every ledger entry
        - every transaction id is unique

        Returns:
            Dictionary with a ``valid`` flag and the figures compared
        """
        accounts = self.accounts.list_accounts()
        entries = self.ledger.audit()
        admin = next((a for a in accounts if a.role == AccountRole.ADMIN), None)

        opening = sum(a.opening_balance for a in accounts)
        injected = sum(e.amount for e in entries if e.transaction_type == TransactionType.FLOAT_APPROVAL)
        withdrawn = sum(e.amount for e in entries if e.transaction_type == TransactionType.WITHDRAWAL_APPROVAL)
        system_flow = sum(SYSTEM_FLOW[e.transaction_type](e) for e in entries)

        result = {
            'valid': True,
            'negative_balances': [a.email for a in accounts if a.balance < 0],
            'expected_total_balance': opening + injected - withdrawn,
            'actual_total_balance': sum(a.balance for a in accounts),
            'expected_system_balance': opening + system_flow,
            'actual_system_balance': admin.system_balance if admin else 0,
            'duplicate_trx_ids': [trx_id for trx_id, n in Counter(e.trx_id for e in entries).items() if n > 1]
        }

        if (result['negative_balances']
                or result['duplicate_trx_ids']
                or result['expected_total_balance'] != result['actual_total_balance']
                or result['expected_system_balance'] != result['actual_system_balance']):
            result['valid'] = False

        return result
