"""Accounts, password login and bearer session tokens."""

import re
import secrets
import time
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID, uuid4

import bcrypt
import jwt
from jwt import InvalidTokenError
from loguru import logger

from .config import Settings, get_settings
from .errors import NotFound, Unauthorized, ValidationError
from .models import RegisterRequest, User
from .storage import InMemoryStorage, utcnow


USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,30}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class IdentityService:
    def __init__(self, storage: InMemoryStorage, settings: Optional[Settings] = None):
        self.storage = storage
        self.settings = settings or get_settings()

    def register(self, request: RegisterRequest, is_admin: bool = False) -> User:
        name = request.name.strip()
        username = request.username.strip()
        email = request.email.strip().lower()
        self._validate_registration(name, username, email, request.password)
        password_hash = self._hash_password(request.password)

        # Uniqueness checks and the insert must not interleave with another registration.
        with self.storage.exclusive():
            if self.storage.find_one("users", lambda u: u["email"] == email):
                raise ValidationError("User already exists with this email")
            if self.storage.find_one("users", lambda u: u["username"].lower() == username.lower()):
                raise ValidationError("Username is already taken")

            referred_by = None
            if request.referral_code:
                referrer = self.storage.find_one(
                    "users", lambda u: u["referral_code"] == request.referral_code.strip().upper()
                )
                if referrer is None:
                    raise ValidationError(f"Unknown referral code {request.referral_code}")
                referred_by = referrer["id"]

            now = utcnow()
            user_id = uuid4()
            user_data = {
                "id": user_id,
                "name": name,
                "username": username,
                "email": email,
                "password_hash": password_hash,
                "phone": request.phone,
                "is_admin": is_admin,
                "is_active": True,
                "referral_code": self._new_referral_code(),
                "referred_by": referred_by,
                "wallet_address": "0x" + secrets.token_hex(20),
                "created_at": now,
            }
            active = self.storage.find_one("token_configs", lambda r: r["is_active"])
            with self.storage.unit_of_work() as uow:
                uow.put("users", user_id, user_data)
                if active:
                    uow.put("user_balances", (user_id, active["id"]), {
                        "user_id": user_id, "token_config_id": active["id"],
                        "balance": Decimal("0"), "usd_value": Decimal("0"), "updated_at": now,
                    })

        logger.info("Registered user {username} ({id}), referred by {ref}",
                    username=username, id=user_id, ref=referred_by)
        return User(**user_data)

    def authenticate(self, email: str, password: str) -> User:
        email = (email or "").strip().lower()
        user_data = self.storage.find_one("users", lambda u: u["email"] == email)
        if not user_data or not self._check_password(password, user_data["password_hash"]):
            raise Unauthorized("Invalid email or password")
        if not user_data["is_active"]:
            raise Unauthorized("Account is deactivated")
        return User(**user_data)

    def get_user(self, user_id: UUID) -> User:
        user_data = self.storage.get("users", user_id)
        if not user_data:
            raise NotFound(f"User {user_id} not found")
        return User(**user_data)

    def issue_session_token(self, user: User, ttl_minutes: Optional[int] = None) -> str:
        ttl = ttl_minutes or self.settings.jwt_ttl_minutes
        now = int(time.time())
        payload = {
            "sub": str(user.id),
            "adm": user.is_admin,
            "iat": now,
            "exp": now + ttl * 60,
        }
        return jwt.encode(payload, self.settings.jwt_secret.get_secret_value(),
                          algorithm=self.settings.jwt_algorithm)

    def decode_session_token(self, token: str) -> dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self.settings.jwt_secret.get_secret_value(),
                algorithms=[self.settings.jwt_algorithm],
            )
        except InvalidTokenError as exc:
            raise Unauthorized("Invalid or expired session") from exc

    def resolve_session_token(self, token: str) -> User:
        payload = self.decode_session_token(token)
        try:
            user_id = UUID(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise Unauthorized("Invalid or expired session")
        user_data = self.storage.get("users", user_id)
        if not user_data or not user_data["is_active"]:
            raise Unauthorized("Session user no longer exists")
        return User(**user_data)

    def _validate_registration(self, name: str, username: str, email: str, password: str) -> None:
        if not 2 <= len(name) <= 50:
            raise ValidationError("Name must be 2-50 characters")
        if not USERNAME_RE.match(username):
            raise ValidationError("Username must be 3-30 letters, numbers or underscores")
        if not EMAIL_RE.match(email):
            raise ValidationError("Please provide a valid email")
        if len(password or "") < 6:
            raise ValidationError("Password must be at least 6 characters")
        # bcrypt only looks at the first 72 bytes
        if len(password.encode()) > 72:
            raise ValidationError("Password must be at most 72 bytes")

    def _hash_password(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self.settings.bcrypt_rounds)
        return bcrypt.hashpw(password.encode(), salt).decode()

    @staticmethod
    def _check_password(password: str, password_hash: str) -> bool:
        if not password or not password_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode(), password_hash.encode())
        except ValueError:
            return False

    def _new_referral_code(self) -> str:
        while True:
            code = secrets.token_hex(4).upper()
            if not self.storage.find_one("users", lambda u: u["referral_code"] == code):
                return code
