"""
Fee Policy Module

Pure mapping from an operation and its principal to the fee charged and how
the fee and the gross flow are settled across the agent, the admin balance
and the admin system float.

All arithmetic is integer (smallest currency unit). Percentages are given in
basis points and rounded once, half-up, to a whole unit. The admin share of a
split fee is whatever remains after the agent share, so the parts always add
up to the fee.
"""

from decimal import Decimal, ROUND_HALF_UP
from dataclasses import dataclass
from typing import Optional

from .config import EasyCashConfig, get_config
from .ledger import TransactionType


BPS_DENOMINATOR = Decimal(10000)


def percentage_of(principal: int, basis_points: int) -> int:
    """Return ``basis_points`` of ``principal`` rounded half-up to a whole unit"""
    share = Decimal(principal) * Decimal(basis_points) / BPS_DENOMINATOR
    return int(share.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class FeeQuote:
    """Fee and settlement split for one operation"""
    transaction_type: TransactionType
    principal: int
    fee: int = 0
    agent_share: int = 0
    admin_share: int = 0
    system_delta: int = 0  # Signed change to the admin system_balance

    @property
    def total_debit(self) -> int:
        """Amount taken from the paying account"""
        return self.principal + self.fee


class FeePolicy:
    """Fee schedule parameterised by configuration"""

    def __init__(self, config: Optional[EasyCashConfig] = None):
        config = config or get_config()
        self.send_money_fee = config.send_money_fee
        self.send_money_fee_threshold = config.send_money_fee_threshold
        self.cash_out_fee_bps = config.cash_out_fee_bps
        self.cash_out_agent_bps = config.cash_out_agent_bps
        self.float_amount = config.float_amount

        if self.cash_out_agent_bps > self.cash_out_fee_bps:
            raise ValueError("Agent share of the cash-out fee cannot exceed the fee itself")

    def quote(self, transaction_type: TransactionType, principal: int) -> FeeQuote:
        """
        Quote the fee and settlement for an operation

        Args:
            transaction_type: Operation being settled
            principal: Amount moved before fees (ignored for float approvals,
                which always inject the configured float amount)

        Returns:
            FeeQuote describing fee, split and system float movement
        """
        if transaction_type == TransactionType.SEND_MONEY:
            fee = self.send_money_fee if principal >= self.send_money_fee_threshold else 0
            return FeeQuote(transaction_type, principal, fee=fee, admin_share=fee,
                            system_delta=principal + fee)

        if transaction_type == TransactionType.CASH_IN:
            return FeeQuote(transaction_type, principal, system_delta=principal)

        if transaction_type == TransactionType.CASH_OUT:
            fee = percentage_of(principal, self.cash_out_fee_bps)
            agent_share = percentage_of(principal, self.cash_out_agent_bps)
            return FeeQuote(transaction_type, principal, fee=fee, agent_share=agent_share,
                            admin_share=fee - agent_share, system_delta=principal + fee)

        if transaction_type == TransactionType.FLOAT_APPROVAL:
            return FeeQuote(transaction_type, self.float_amount, system_delta=self.float_amount)

        if transaction_type == TransactionType.WITHDRAWAL_APPROVAL:
            return FeeQuote(transaction_type, principal, system_delta=-principal)

        raise ValueError(f"Unsupported transaction type: {transaction_type}")


def calculate_fee(transaction_type: TransactionType, principal: int) -> FeeQuote:
    """Quote using the global configuration"""
    return FeePolicy().quote(transaction_type, principal)
