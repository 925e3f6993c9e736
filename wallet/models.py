from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel


TOKEN_QUANT = Decimal("0.00000001")


class DepositStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PaymentMethod(str, Enum):
    BSC = "bsc"
    UPI = "upi"


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    SEND = "send"
    RECEIVE = "receive"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


CREDIT_TYPES = (TransactionType.DEPOSIT, TransactionType.RECEIVE)
DEBIT_TYPES = (TransactionType.SEND,)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class User(CamelModel):
    id: UUID
    name: str
    username: str
    email: str
    is_admin: bool = False
    is_active: bool = True
    referral_code: str
    referred_by: Optional[UUID] = None
    wallet_address: Optional[str] = None
    created_at: datetime


class TokenConfig(CamelModel):
    id: UUID
    contract_address: str
    token_name: str
    token_symbol: str
    decimals: int = 18
    default_price_usd: Decimal = Decimal("0.001")
    is_active: bool = True
    created_at: datetime


class TokenPrice(CamelModel):
    token_config_id: UUID
    price_usd: Decimal
    price_change_24h: Decimal = Decimal("0")
    volume_24h: Decimal = Decimal("0")
    market_cap: Decimal = Decimal("0")
    updated_at: datetime


class DepositRequest(CamelModel):
    id: UUID
    user_id: UUID
    amount: Decimal
    currency: str = "USD"
    payment_method: PaymentMethod = PaymentMethod.BSC
    transaction_hash: Optional[str] = None
    screenshot: Optional[str] = None
    status: DepositStatus
    admin_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    def is_terminal(self) -> bool:
        return self.status != DepositStatus.PENDING


class Transaction(CamelModel):
    id: UUID
    user_id: UUID
    token_config_id: UUID
    type: TransactionType
    amount: Decimal
    usd_value: Decimal
    status: TransactionStatus
    description: str
    deposit_request_id: Optional[UUID] = None
    created_at: datetime


class UserBalance(CamelModel):
    user_id: UUID
    token_config_id: Optional[UUID] = None
    balance: Decimal = Decimal("0")
    usd_value: Decimal = Decimal("0")
    updated_at: Optional[datetime] = None


class ReferralEarning(CamelModel):
    id: UUID
    referrer_id: UUID
    referred_user_id: UUID
    deposit_request_id: Optional[UUID] = None
    deposit_amount: Decimal
    earnings_amount: Decimal
    created_at: datetime


class ReferralStats(CamelModel):
    referral_code: str
    referred_count: int
    total_earnings: Decimal


class Reconciliation(CamelModel):
    user_id: UUID
    token_config_id: Optional[UUID] = None
    stored_balance: Decimal
    ledger_balance: Decimal
    transaction_count: int

    @property
    def is_consistent(self) -> bool:
        return self.stored_balance == self.ledger_balance


class CreateDepositRequest(CamelModel):
    amount: Decimal = Field(..., description="USD-equivalent amount, must be positive")
    transaction_hash: Optional[str] = Field(default=None, max_length=128)
    payment_method: PaymentMethod = PaymentMethod.BSC
    currency: str = Field(default="USD", max_length=8)
    screenshot: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": "100.00",
            "transactionHash": "0x9f2c4e1d7a",
            "paymentMethod": "bsc",
        }
    })


class UpdateDepositStatusRequest(CamelModel):
    status: DepositStatus
    admin_notes: Optional[str] = None


class AdminNotesRequest(CamelModel):
    admin_notes: Optional[str] = None


class RegisterRequest(CamelModel):
    name: str
    username: str
    email: str
    password: str
    phone: Optional[str] = None
    referral_code: Optional[str] = None


class LoginRequest(CamelModel):
    email: str
    password: str


class SessionResponse(CamelModel):
    user: User
    token: str


class TokenConfigRequest(CamelModel):
    contract_address: str
    token_name: str
    token_symbol: str
    decimals: int = 18
    default_price_usd: Decimal = Decimal("0.001")


class TokenPriceRequest(CamelModel):
    price_usd: Decimal
    price_change_24h: Decimal = Decimal("0")
    volume_24h: Decimal = Decimal("0")
    market_cap: Decimal = Decimal("0")


class BalanceResponse(CamelModel):
    balance: Decimal
    usd_value: Decimal
