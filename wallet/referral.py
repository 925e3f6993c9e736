from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Optional
from uuid import UUID, uuid4

from loguru import logger

from .config import get_settings
from .errors import NotFound
from .models import (
    TOKEN_QUANT,
    ReferralEarning,
    ReferralStats,
    TransactionStatus,
    TransactionType,
)
from .storage import InMemoryStorage, UnitOfWork, utcnow


class ReferralAccrualEngine:
    """Posts the one-time commission a referrer earns on an approved deposit.

    The engine never commits on its own: it stages its rows in the unit of
    work of the approval that triggered it, so the commission becomes visible
    together with the deposit credit or not at all.
    """

    def __init__(self, storage: InMemoryStorage, commission_rate: Optional[Decimal] = None):
        self.storage = storage
        if commission_rate is None:
            commission_rate = get_settings().referral_commission_rate
        self.commission_rate = Decimal(commission_rate)

    def accrue(
        self,
        uow: UnitOfWork,
        *,
        referrer_id: UUID,
        referred_user_id: UUID,
        deposit_amount: Decimal,
        deposit_id: Optional[UUID],
        token_config_id: UUID,
        price_usd: Decimal,
        now: Optional[datetime] = None,
    ) -> Optional[ReferralEarning]:
        if referrer_id == referred_user_id:
            logger.warning("Skipping self-referral commission for user {user}", user=referrer_id)
            return None

        referrer = self.storage.get("users", referrer_id)
        if referrer is None:
            logger.warning(
                "Referrer {ref} of user {user} no longer exists, commission skipped",
                ref=referrer_id, user=referred_user_id,
            )
            return None

        referred = self.storage.get("users", referred_user_id)
        referred_name = referred["username"] if referred else str(referred_user_id)

        earnings = (deposit_amount * self.commission_rate).quantize(TOKEN_QUANT)
        if earnings <= 0:
            logger.info(
                "Commission on deposit {deposit} of {amount} rounds to zero, nothing accrued for {ref}",
                deposit=deposit_id, amount=deposit_amount, ref=referrer_id,
            )
            return None

        now = now or utcnow()
        token_amount = (earnings / price_usd).quantize(TOKEN_QUANT, rounding=ROUND_DOWN)

        earning_id = uuid4()
        earning_data = {
            "id": earning_id,
            "referrer_id": referrer_id,
            "referred_user_id": referred_user_id,
            "deposit_request_id": deposit_id,
            "deposit_amount": deposit_amount,
            "earnings_amount": earnings,
            "created_at": now,
        }
        uow.put("referral_earnings", earning_id, earning_data)

        uow.credit_balance(referrer_id, token_config_id, token_amount, earnings)

        tx_id = uuid4()
        uow.put("transactions", tx_id, {
            "id": tx_id,
            "user_id": referrer_id,
            "token_config_id": token_config_id,
            "type": TransactionType.RECEIVE,
            "amount": token_amount,
            "usd_value": earnings,
            "status": TransactionStatus.CONFIRMED,
            "description": f"Referral commission from {referred_name}",
            "deposit_request_id": deposit_id,
            "created_at": now,
        })

        logger.info(
            "Referral commission {earnings} USD ({tokens} tokens) staged for {ref} from deposit {deposit}",
            earnings=earnings, tokens=token_amount, ref=referrer_id, deposit=deposit_id,
        )
        return ReferralEarning(**earning_data)

    def list_earnings(self, referrer_id: UUID) -> list[ReferralEarning]:
        rows = self.storage.newest_first(
            "referral_earnings", lambda r: r["referrer_id"] == referrer_id
        )
        return [ReferralEarning(**r) for r in rows]

    def get_stats(self, referrer_id: UUID) -> ReferralStats:
        referrer = self.storage.get("users", referrer_id)
        if referrer is None:
            raise NotFound(f"User {referrer_id} not found")
        referred = self.storage.select("users", lambda u: u.get("referred_by") == referrer_id)
        total = sum((e.earnings_amount for e in self.list_earnings(referrer_id)), Decimal("0"))
        return ReferralStats(
            referral_code=referrer["referral_code"],
            referred_count=len(referred),
            total_earnings=total,
        )
