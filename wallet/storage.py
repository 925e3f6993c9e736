"""In-process ledger store.

Tables are dicts of plain row dicts. Reads hand out copies; every write goes
through a :class:`UnitOfWork`, which stages rows and balance deltas and
applies them in one step under the store's commit lock. Leaving the
``unit_of_work()`` block with an exception throws the staged writes away.
"""

import itertools
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterator, Optional
from uuid import UUID

from loguru import logger

from .errors import ValidationError
from .models import TOKEN_QUANT


TABLES = (
    "users",
    "token_configs",
    "token_prices",
    "user_balances",
    "deposit_requests",
    "transactions",
    "referral_earnings",
)

# Rows in these tables are written once and never replaced.
APPEND_ONLY = ("transactions", "referral_earnings")

SEED_TOKEN_ID = UUID("11111111-1111-1111-1111-111111111111")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UnitOfWork:
    def __init__(self, storage: "InMemoryStorage"):
        self._storage = storage
        self._rows: list[tuple[str, object, dict]] = []
        self._balance_deltas: dict[tuple[UUID, UUID], list[Decimal]] = {}
        self.committed = False

    def put(self, table: str, key, row: dict) -> None:
        if table not in TABLES:
            raise KeyError(f"Unknown table {table}")
        self._rows.append((table, key, dict(row)))

    def credit_balance(self, user_id: UUID, token_config_id: UUID,
                       amount: Decimal, usd_value: Decimal) -> None:
        delta = self._balance_deltas.setdefault((user_id, token_config_id), [Decimal("0"), Decimal("0")])
        delta[0] += amount
        delta[1] += usd_value

    def staged(self, table: str) -> list[dict]:
        return [dict(row) for t, _, row in self._rows if t == table]

    def commit(self) -> None:
        if self.committed:
            raise RuntimeError("Unit of work already committed")
        self._storage._apply(self._rows, self._balance_deltas)
        self.committed = True

    def discard(self) -> None:
        self._rows.clear()
        self._balance_deltas.clear()


class InMemoryStorage:
    def __init__(self, seed: bool = False):
        self.users: dict[UUID, dict] = {}
        self.token_configs: dict[UUID, dict] = {}
        self.token_prices: dict[UUID, dict] = {}
        self.user_balances: dict[tuple[UUID, UUID], dict] = {}
        self.deposit_requests: dict[UUID, dict] = {}
        self.transactions: dict[UUID, dict] = {}
        self.referral_earnings: dict[UUID, dict] = {}
        self._commit_lock = threading.RLock()
        self._row_locks: dict[UUID, threading.Lock] = {}
        self._row_locks_guard = threading.Lock()
        self._seq = itertools.count(1)
        if seed:
            self._seed_data()

    def _seed_data(self):
        now = utcnow()
        with self.unit_of_work() as uow:
            uow.put("token_configs", SEED_TOKEN_ID, {
                "id": SEED_TOKEN_ID,
                "contract_address": "0x55d398326f99059fF775485246999027B3197955",
                "token_name": "CryptoWallet Token", "token_symbol": "CWT",
                "decimals": 18, "default_price_usd": Decimal("1.00000000"),
                "is_active": True, "created_at": now,
            })
            uow.put("token_prices", SEED_TOKEN_ID, {
                "token_config_id": SEED_TOKEN_ID,
                "price_usd": Decimal("1.00000000"),
                "price_change_24h": Decimal("0"), "volume_24h": Decimal("0"),
                "market_cap": Decimal("0"), "updated_at": now,
            })

    @contextmanager
    def unit_of_work(self) -> Iterator[UnitOfWork]:
        uow = UnitOfWork(self)
        try:
            yield uow
        except BaseException:
            uow.discard()
            raise
        uow.commit()

    def deposit_lock(self, deposit_id: UUID) -> threading.Lock:
        with self._row_locks_guard:
            lock = self._row_locks.get(deposit_id)
            if lock is None:
                lock = self._row_locks[deposit_id] = threading.Lock()
            return lock

    def release_deposit_lock(self, deposit_id: UUID) -> None:
        """Forget the row lock of a deposit that can no longer change."""
        with self._row_locks_guard:
            self._row_locks.pop(deposit_id, None)

    def exclusive(self) -> threading.RLock:
        """The commit lock, for check-then-insert sequences that must not interleave."""
        return self._commit_lock

    def get(self, table: str, key) -> Optional[dict]:
        with self._commit_lock:
            row = getattr(self, table).get(key)
            return dict(row) if row is not None else None

    def select(self, table: str, where: Optional[Callable[[dict], bool]] = None) -> list[dict]:
        with self._commit_lock:
            rows = [dict(r) for r in getattr(self, table).values()]
        if where is None:
            return rows
        return [r for r in rows if where(r)]

    def newest_first(self, table: str, where: Optional[Callable[[dict], bool]] = None) -> list[dict]:
        rows = self.select(table, where)
        rows.sort(key=lambda r: (r["created_at"], r.get("_seq", 0)), reverse=True)
        return rows

    def find_one(self, table: str, where: Callable[[dict], bool]) -> Optional[dict]:
        rows = self.select(table, where)
        return rows[0] if rows else None

    def _apply(self, rows: list[tuple[str, object, dict]],
               balance_deltas: dict[tuple[UUID, UUID], list[Decimal]]) -> None:
        with self._commit_lock:
            for table, key, _ in rows:
                if table in APPEND_ONLY and key in getattr(self, table):
                    raise RuntimeError(f"{table} row {key} is immutable")
            now = utcnow()

            # Every check and computation runs before the first table write.
            new_balances = {}
            for (user_id, token_config_id), (amount, usd_value) in balance_deltas.items():
                current = self.user_balances.get((user_id, token_config_id))
                if current is None:
                    current = {
                        "user_id": user_id, "token_config_id": token_config_id,
                        "balance": Decimal("0"), "usd_value": Decimal("0"),
                        "updated_at": now,
                    }
                try:
                    balance = (current["balance"] + amount).quantize(TOKEN_QUANT)
                    usd_total = (current["usd_value"] + usd_value).quantize(TOKEN_QUANT)
                except InvalidOperation:
                    raise ValidationError(f"Balance of user {user_id} would exceed the supported range")
                new_balances[(user_id, token_config_id)] = {
                    **current, "balance": balance, "usd_value": usd_total, "updated_at": now,
                }

            for table, key, row in rows:
                row.setdefault("_seq", next(self._seq))
                getattr(self, table)[key] = row
            self.user_balances.update(new_balances)
        if rows or balance_deltas:
            logger.debug("Committed {rows} rows and {balances} balance deltas",
                         rows=len(rows), balances=len(balance_deltas))
