"""
Crypto Wallet Deposit Ledger

This package provides:
- Manual deposit requests with an admin-gated pending → approved / rejected lifecycle
- Atomic balance crediting at the token price in effect at approval time
- One-time referral commissions on approved deposits
- Append-only transaction history and balance reconciliation
"""

from .models import (
    DepositStatus,
    TransactionType,
    TransactionStatus,
    DepositRequest,
    Transaction,
    UserBalance,
    ReferralEarning,
)
from .referral import ReferralAccrualEngine
from .service import BalanceProjection, DepositService, TokenService
from .storage import InMemoryStorage

__all__ = [
    "DepositStatus",
    "TransactionType",
    "TransactionStatus",
    "DepositRequest",
    "Transaction",
    "UserBalance",
    "ReferralEarning",
    "ReferralAccrualEngine",
    "BalanceProjection",
    "DepositService",
    "TokenService",
    "InMemoryStorage",
]
