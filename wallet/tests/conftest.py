from decimal import Decimal

import pytest

from wallet.config import Settings
from wallet.identity import IdentityService
from wallet.models import RegisterRequest, TokenPriceRequest
from wallet.referral import ReferralAccrualEngine
from wallet.service import BalanceProjection, DepositService, TokenService
from wallet.storage import InMemoryStorage


@pytest.fixture
def settings():
    return Settings(
        bcrypt_rounds=4,
        seed_demo_data=True,
        admin_email=None,
        admin_password=None,
        jwt_secret="test-secret",
        log_level="WARNING",
    )


@pytest.fixture
def storage():
    return InMemoryStorage(seed=True)


@pytest.fixture
def identity(storage, settings):
    return IdentityService(storage, settings)


@pytest.fixture
def tokens(storage):
    return TokenService(storage)


@pytest.fixture
def referrals(storage):
    return ReferralAccrualEngine(storage, Decimal("0.05"))


@pytest.fixture
def deposits(storage, tokens, referrals):
    return DepositService(storage, tokens, referrals)


@pytest.fixture
def balances(storage, tokens):
    return BalanceProjection(storage, tokens)


@pytest.fixture
def make_user(identity):
    def _make(username, referral_code=None, is_admin=False):
        return identity.register(RegisterRequest(
            name=username.title(),
            username=username,
            email=f"{username}@example.com",
            password="password123",
            referral_code=referral_code,
        ), is_admin=is_admin)
    return _make


@pytest.fixture
def admin(make_user):
    return make_user("admin", is_admin=True)


@pytest.fixture
def set_price(tokens, admin):
    def _set(price):
        return tokens.set_price(TokenPriceRequest(price_usd=Decimal(price)), admin)
    return _set
