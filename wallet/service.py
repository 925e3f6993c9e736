from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Optional, Union
from uuid import UUID, uuid4

from loguru import logger

from .errors import (
    InvalidStateTransition,
    NotFound,
    PriceUnavailable,
    Unauthorized,
    ValidationError,
)
from .models import (
    CREDIT_TYPES,
    DEBIT_TYPES,
    TOKEN_QUANT,
    DepositRequest,
    DepositStatus,
    PaymentMethod,
    Reconciliation,
    TokenConfig,
    TokenConfigRequest,
    TokenPrice,
    TokenPriceRequest,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    UserBalance,
)
from .referral import ReferralAccrualEngine
from .storage import InMemoryStorage, UnitOfWork, utcnow


# Largest amount accepted for a single deposit or price, in USD.
MAX_AMOUNT = Decimal("1000000000000")


def require_admin(acting_admin: Optional[User]) -> User:
    if acting_admin is None:
        raise Unauthorized("Authentication required")
    if not acting_admin.is_admin:
        raise Unauthorized(f"User {acting_admin.username} is not an admin")
    return acting_admin


def parse_amount(value: Union[Decimal, str, int, float, None], field: str = "amount") -> Decimal:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a decimal number, got {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be finite")
    try:
        amount = amount.quantize(TOKEN_QUANT, rounding=ROUND_DOWN)
    except InvalidOperation:
        raise ValidationError(f"{field} is out of range")
    if amount <= 0:
        raise ValidationError(f"{field} must be positive")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field} must not exceed {MAX_AMOUNT}")
    return amount


class TokenService:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def get_active_config(self) -> TokenConfig:
        row = self.storage.find_one("token_configs", lambda r: r["is_active"])
        if not row:
            raise NotFound("No active token configuration found")
        return TokenConfig(**row)

    def list_configs(self) -> list[TokenConfig]:
        return [TokenConfig(**r) for r in self.storage.newest_first("token_configs")]

    def get_price(self, token_config_id: Optional[UUID] = None) -> TokenPrice:
        config = self._config(token_config_id)
        row = self.storage.get("token_prices", config.id)
        if row:
            return TokenPrice(**row)
        return TokenPrice(
            token_config_id=config.id,
            price_usd=config.default_price_usd,
            updated_at=config.created_at,
        )

    def resolve_price(self, token_config_id: Optional[UUID] = None) -> tuple[TokenConfig, Decimal]:
        """Price in effect right now, used to convert USD into token units."""
        try:
            config = self._config(token_config_id)
        except NotFound as e:
            raise PriceUnavailable(str(e))
        price = self.get_price(config.id).price_usd
        if price is None or price <= 0:
            raise PriceUnavailable(f"No usable USD price for {config.token_symbol}")
        return config, price

    def set_active_config(self, request: TokenConfigRequest, acting_admin: Optional[User]) -> TokenConfig:
        require_admin(acting_admin)
        default_price = parse_amount(request.default_price_usd, "defaultPriceUsd")
        now = utcnow()
        config_id = uuid4()
        config_data = {
            "id": config_id,
            "contract_address": request.contract_address,
            "token_name": request.token_name,
            "token_symbol": request.token_symbol,
            "decimals": request.decimals,
            "default_price_usd": default_price,
            "is_active": True,
            "created_at": now,
        }
        with self.storage.unit_of_work() as uow:
            for row in self.storage.select("token_configs", lambda r: r["is_active"]):
                row["is_active"] = False
                uow.put("token_configs", row["id"], row)
            uow.put("token_configs", config_id, config_data)
        logger.info("Token config {symbol} ({id}) activated by {admin}",
                    symbol=request.token_symbol, id=config_id, admin=acting_admin.username)
        return TokenConfig(**config_data)

    def set_price(self, request: TokenPriceRequest, acting_admin: Optional[User],
                  token_config_id: Optional[UUID] = None) -> TokenPrice:
        require_admin(acting_admin)
        config = self._config(token_config_id)
        price_data = {
            "token_config_id": config.id,
            "price_usd": parse_amount(request.price_usd, "priceUsd"),
            "price_change_24h": request.price_change_24h,
            "volume_24h": request.volume_24h,
            "market_cap": request.market_cap,
            "updated_at": utcnow(),
        }
        with self.storage.unit_of_work() as uow:
            uow.put("token_prices", config.id, price_data)
        logger.info("Price of {symbol} set to {price} USD",
                    symbol=config.token_symbol, price=price_data["price_usd"])
        return TokenPrice(**price_data)

    def _config(self, token_config_id: Optional[UUID]) -> TokenConfig:
        if token_config_id is None:
            return self.get_active_config()
        row = self.storage.get("token_configs", token_config_id)
        if not row:
            raise NotFound(f"Token config {token_config_id} not found")
        return TokenConfig(**row)


class DepositService:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        tokens: Optional[TokenService] = None,
        referrals: Optional[ReferralAccrualEngine] = None,
    ):
        self.storage = storage or InMemoryStorage(seed=True)
        self.tokens = tokens or TokenService(self.storage)
        self.referrals = referrals or ReferralAccrualEngine(self.storage)

    def create_deposit(
        self,
        user_id: UUID,
        amount: Union[Decimal, str, int, float],
        transaction_hash: Optional[str] = None,
        payment_method: Union[PaymentMethod, str] = PaymentMethod.BSC,
        currency: str = "USD",
        screenshot: Optional[str] = None,
    ) -> DepositRequest:
        amount = parse_amount(amount)
        try:
            payment_method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError(f"Unsupported payment method {payment_method!r}")
        if not self.storage.get("users", user_id):
            raise NotFound(f"User {user_id} not found")

        now = utcnow()
        deposit_id = uuid4()
        deposit_data = {
            "id": deposit_id,
            "user_id": user_id,
            "amount": amount,
            "currency": currency,
            "payment_method": payment_method,
            "transaction_hash": transaction_hash,
            "screenshot": screenshot,
            "status": DepositStatus.PENDING,
            "admin_notes": None,
            "created_at": now,
            "updated_at": now,
        }
        with self.storage.unit_of_work() as uow:
            uow.put("deposit_requests", deposit_id, deposit_data)

        logger.info("Deposit {id} of {amount} {currency} submitted by {user}",
                    id=deposit_id, amount=amount, currency=currency, user=user_id)
        return DepositRequest(**deposit_data)

    def get_deposit(self, deposit_id: UUID) -> DepositRequest:
        deposit_data = self.storage.get("deposit_requests", deposit_id)
        if not deposit_data:
            raise NotFound(f"Deposit {deposit_id} not found")
        return DepositRequest(**deposit_data)

    def list_deposits(self, user_id: Optional[UUID] = None) -> list[DepositRequest]:
        where = None if user_id is None else (lambda r: r["user_id"] == user_id)
        return [DepositRequest(**r) for r in self.storage.newest_first("deposit_requests", where)]

    def set_status(
        self,
        deposit_id: UUID,
        new_status: Union[DepositStatus, str],
        admin_notes: Optional[str],
        acting_admin: Optional[User],
    ) -> DepositRequest:
        require_admin(acting_admin)
        try:
            target = DepositStatus(new_status)
        except ValueError:
            raise ValidationError(f"Unknown deposit status {new_status!r}")
        if target == DepositStatus.PENDING:
            raise ValidationError("A deposit cannot be moved back to pending")

        self.get_deposit(deposit_id)

        # The status check and every write it guards happen under the row lock.
        with self.storage.deposit_lock(deposit_id):
            deposit_data = self.storage.get("deposit_requests", deposit_id)
            deposit = DepositRequest(**deposit_data)
            if deposit.is_terminal():
                self.storage.release_deposit_lock(deposit_id)
                raise InvalidStateTransition(
                    f"Cannot move deposit {deposit_id} from {deposit.status.value} to {target.value}"
                )

            now = utcnow()
            with self.storage.unit_of_work() as uow:
                if target == DepositStatus.APPROVED:
                    self._credit_approval(uow, deposit, now)
                deposit_data.update(status=target, admin_notes=admin_notes, updated_at=now)
                uow.put("deposit_requests", deposit_id, deposit_data)
            self.storage.release_deposit_lock(deposit_id)

        logger.info("Deposit {id} {status} by {admin}",
                    id=deposit_id, status=target.value, admin=acting_admin.username)
        return DepositRequest(**deposit_data)

    def approve(self, deposit_id: UUID, admin_notes: Optional[str], acting_admin: Optional[User]) -> DepositRequest:
        return self.set_status(deposit_id, DepositStatus.APPROVED, admin_notes, acting_admin)

    def reject(self, deposit_id: UUID, admin_notes: Optional[str], acting_admin: Optional[User]) -> DepositRequest:
        return self.set_status(deposit_id, DepositStatus.REJECTED, admin_notes, acting_admin)

    def _credit_approval(self, uow: UnitOfWork, deposit: DepositRequest, now: datetime) -> None:
        config, price = self.tokens.resolve_price()
        owner = self.storage.get("users", deposit.user_id)
        if owner is None:
            raise NotFound(f"Owner {deposit.user_id} of deposit {deposit.id} not found")

        token_amount = (deposit.amount / price).quantize(TOKEN_QUANT, rounding=ROUND_DOWN)
        uow.credit_balance(deposit.user_id, config.id, token_amount, deposit.amount)

        tx_id = uuid4()
        uow.put("transactions", tx_id, {
            "id": tx_id,
            "user_id": deposit.user_id,
            "token_config_id": config.id,
            "type": TransactionType.DEPOSIT,
            "amount": token_amount,
            "usd_value": deposit.amount,
            "status": TransactionStatus.CONFIRMED,
            "description": "Deposit approved",
            "deposit_request_id": deposit.id,
            "created_at": now,
        })

        if owner.get("referred_by"):
            self.referrals.accrue(
                uow,
                referrer_id=owner["referred_by"],
                referred_user_id=deposit.user_id,
                deposit_amount=deposit.amount,
                deposit_id=deposit.id,
                token_config_id=config.id,
                price_usd=price,
                now=now,
            )


class BalanceProjection:
    def __init__(self, storage: InMemoryStorage, tokens: Optional[TokenService] = None):
        self.storage = storage
        self.tokens = tokens or TokenService(storage)

    def get_balance(self, user_id: UUID, token_config_id: Optional[UUID] = None) -> UserBalance:
        token_config_id = self._token_id(token_config_id)
        if token_config_id is None:
            return UserBalance(user_id=user_id)
        row = self.storage.get("user_balances", (user_id, token_config_id))
        if row:
            return UserBalance(**row)
        return UserBalance(user_id=user_id, token_config_id=token_config_id)

    def get_transactions(self, user_id: UUID) -> list[Transaction]:
        rows = self.storage.newest_first("transactions", lambda r: r["user_id"] == user_id)
        return [Transaction(**r) for r in rows]

    def reconcile(self, user_id: UUID, token_config_id: Optional[UUID] = None) -> Reconciliation:
        token_config_id = self._token_id(token_config_id)
        confirmed = [
            t for t in self.get_transactions(user_id)
            if t.token_config_id == token_config_id and t.status == TransactionStatus.CONFIRMED
        ]
        credits = sum((t.amount for t in confirmed if t.type in CREDIT_TYPES), Decimal("0"))
        debits = sum((t.amount for t in confirmed if t.type in DEBIT_TYPES), Decimal("0"))
        stored = self.get_balance(user_id, token_config_id).balance
        result = Reconciliation(
            user_id=user_id,
            token_config_id=token_config_id,
            stored_balance=stored,
            ledger_balance=credits - debits,
            transaction_count=len(confirmed),
        )
        if not result.is_consistent:
            logger.error("Balance drift for {user}: stored {stored}, ledger {ledger}",
                         user=user_id, stored=stored, ledger=result.ledger_balance)
        return result

    def _token_id(self, token_config_id: Optional[UUID]) -> Optional[UUID]:
        if token_config_id is not None:
            return token_config_id
        try:
            return self.tokens.get_active_config().id
        except NotFound:
            return None


__all__ = [
    "BalanceProjection",
    "DepositService",
    "MAX_AMOUNT",
    "TokenService",
    "parse_amount",
    "require_admin",
]
