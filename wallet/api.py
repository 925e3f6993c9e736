from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger

from .config import Settings, get_settings
from .errors import Unauthorized, WalletServiceError
from .identity import IdentityService
from .logging_config import setup_logging
from .models import (
    AdminNotesRequest, BalanceResponse, CreateDepositRequest, DepositRequest,
    LoginRequest, ReferralEarning, ReferralStats, RegisterRequest, SessionResponse,
    TokenConfig, TokenConfigRequest, TokenPrice, TokenPriceRequest, Transaction,
    UpdateDepositStatusRequest, User,
)
from .referral import ReferralAccrualEngine
from .service import BalanceProjection, DepositService, TokenService
from .storage import InMemoryStorage

bearer_scheme = HTTPBearer(auto_error=False)


class Services:
    def __init__(self, storage: InMemoryStorage, settings: Settings):
        self.storage = storage
        self.tokens = TokenService(storage)
        self.referrals = ReferralAccrualEngine(storage, settings.referral_commission_rate)
        self.deposits = DepositService(storage, self.tokens, self.referrals)
        self.balances = BalanceProjection(storage, self.tokens)
        self.identity = IdentityService(storage, settings)


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: Services = Depends(get_services),
) -> User:
    if credentials is None:
        raise Unauthorized("Authentication required")
    return services.identity.resolve_session_token(credentials.credentials)


def current_admin(user: User = Depends(current_user)) -> User:
    if not user.is_admin:
        raise Unauthorized("Admin access required")
    return user


def _seed_admin(services: Services, settings: Settings) -> None:
    if not (settings.admin_email and settings.admin_password):
        return
    email = settings.admin_email.strip().lower()
    if services.storage.find_one("users", lambda u: u["email"] == email):
        return
    services.identity.register(RegisterRequest(
        name="Administrator",
        username="admin",
        email=email,
        password=settings.admin_password.get_secret_value(),
    ), is_admin=True)


def create_app(storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_json)

    app = FastAPI(
        title="Crypto Wallet Ledger API",
        description="Manual deposit approval, balance crediting and referral commissions",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    services = Services(storage or InMemoryStorage(seed=settings.seed_demo_data), settings)
    app.state.services = services
    _seed_admin(services, settings)

    @app.exception_handler(WalletServiceError)
    async def wallet_error_handler(request: Request, exc: WalletServiceError) -> JSONResponse:
        if exc.status_code >= 409:
            logger.warning("{method} {path} failed: {message}",
                           method=request.method, path=request.url.path, message=exc.message)
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        if errors:
            location = ".".join(str(p) for p in errors[0].get("loc", ()) if p != "body")
            message = f"{location}: {errors[0].get('msg')}" if location else errors[0].get("msg")
        else:
            message = "Invalid request"
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"message": message})

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "wallet-ledger"}

    # Auth

    @app.post("/api/register", response_model=SessionResponse,
              status_code=status.HTTP_201_CREATED, tags=["Auth"])
    def register(request: RegisterRequest, services: Services = Depends(get_services)) -> SessionResponse:
        user = services.identity.register(request)
        return SessionResponse(user=user, token=services.identity.issue_session_token(user))

    @app.post("/api/login", response_model=SessionResponse, tags=["Auth"])
    def login(request: LoginRequest, services: Services = Depends(get_services)) -> SessionResponse:
        user = services.identity.authenticate(request.email, request.password)
        return SessionResponse(user=user, token=services.identity.issue_session_token(user))

    @app.get("/api/auth/user", response_model=User, tags=["Auth"])
    def get_auth_user(user: User = Depends(current_user)) -> User:
        return user

    # Deposits

    @app.post("/api/deposits", response_model=DepositRequest, tags=["Deposits"])
    def create_deposit(
        request: CreateDepositRequest,
        user: User = Depends(current_user),
        services: Services = Depends(get_services),
    ) -> DepositRequest:
        return services.deposits.create_deposit(
            user.id,
            request.amount,
            transaction_hash=request.transaction_hash,
            payment_method=request.payment_method,
            currency=request.currency,
            screenshot=request.screenshot,
        )

    @app.get("/api/deposits", response_model=list[DepositRequest], tags=["Deposits"])
    def list_my_deposits(
        user: User = Depends(current_user),
        services: Services = Depends(get_services),
    ) -> list[DepositRequest]:
        return services.deposits.list_deposits(user.id)

    @app.get("/api/admin/deposits", response_model=list[DepositRequest], tags=["Admin"])
    def list_all_deposits(
        admin: User = Depends(current_admin),
        services: Services = Depends(get_services),
    ) -> list[DepositRequest]:
        return services.deposits.list_deposits()

    @app.put("/api/admin/deposits/{deposit_id}", response_model=DepositRequest, tags=["Admin"])
    def update_deposit_status(
        deposit_id: UUID,
        request: UpdateDepositStatusRequest,
        admin: User = Depends(current_admin),
        services: Services = Depends(get_services),
    ) -> DepositRequest:
        return services.deposits.set_status(deposit_id, request.status, request.admin_notes, admin)

    @app.post("/api/admin/deposits/{deposit_id}/approve", response_model=DepositRequest, tags=["Admin"])
    def approve_deposit(
        deposit_id: UUID,
        request: Optional[AdminNotesRequest] = None,
        admin: User = Depends(current_admin),
        services: Services = Depends(get_services),
    ) -> DepositRequest:
        notes = request.admin_notes if request else None
        return services.deposits.approve(deposit_id, notes, admin)

    @app.post("/api/admin/deposits/{deposit_id}/reject", response_model=DepositRequest, tags=["Admin"])
    def reject_deposit(
        deposit_id: UUID,
        request: Optional[AdminNotesRequest] = None,
        admin: User = Depends(current_admin),
        services: Services = Depends(get_services),
    ) -> DepositRequest:
        notes = request.admin_notes if request else None
        return services.deposits.reject(deposit_id, notes, admin)

    # Balances and history

    @app.get("/api/user/token/balance", response_model=BalanceResponse, tags=["Users"])
    def get_token_balance(
        user: User = Depends(current_user),
        services: Services = Depends(get_services),
    ) -> BalanceResponse:
        balance = services.balances.get_balance(user.id)
        return BalanceResponse(balance=balance.balance, usd_value=balance.usd_value)

    @app.get("/api/transactions", response_model=list[Transaction], tags=["Users"])
    def get_transactions(
        user: User = Depends(current_user),
        services: Services = Depends(get_services),
    ) -> list[Transaction]:
        return services.balances.get_transactions(user.id)

    @app.get("/api/user/referral-earnings", response_model=list[ReferralEarning], tags=["Users"])
    def get_referral_earnings(
        user: User = Depends(current_user),
        services: Services = Depends(get_services),
    ) -> list[ReferralEarning]:
        return services.referrals.list_earnings(user.id)

    @app.get("/api/user/referral-stats", response_model=ReferralStats, tags=["Users"])
    def get_referral_stats(
        user: User = Depends(current_user),
        services: Services = Depends(get_services),
    ) -> ReferralStats:
        return services.referrals.get_stats(user.id)

    # Token reference data

    @app.get("/api/token/config", response_model=TokenConfig, tags=["Token"])
    def get_token_config(services: Services = Depends(get_services)) -> TokenConfig:
        return services.tokens.get_active_config()

    @app.put("/api/admin/token/config", response_model=TokenConfig, tags=["Admin"])
    def update_token_config(
        request: TokenConfigRequest,
        admin: User = Depends(current_admin),
        services: Services = Depends(get_services),
    ) -> TokenConfig:
        return services.tokens.set_active_config(request, admin)

    @app.get("/api/token/price", response_model=TokenPrice, tags=["Token"])
    def get_token_price(services: Services = Depends(get_services)) -> TokenPrice:
        return services.tokens.get_price()

    @app.put("/api/admin/token/price", response_model=TokenPrice, tags=["Admin"])
    def update_token_price(
        request: TokenPriceRequest,
        admin: User = Depends(current_admin),
        services: Services = Depends(get_services),
    ) -> TokenPrice:
        return services.tokens.set_price(request, admin)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
