"""
Balance store: current balance per user plus an append-only snapshot history.

Each mutation and the snapshot it produces commit in one transaction. Writers
for the same user are serialized by an in-process lock and by a row lock
(``SELECT ... FOR UPDATE``, or ``BEGIN IMMEDIATE`` on SQLite).
"""
import logging
import math
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeout
from sqlmodel import Session, select

from .config import Settings
from .db import init_db, make_engine
from .errors import (
    BalanceError,
    ConcurrentUpdateConflict,
    CorruptBalanceData,
    InsufficientFunds,
    StorageUnavailable,
    UnknownUser,
    UserAlreadyExists,
)
from .locks import UserLocks
from .models import Amount, CurrentBalance, PastBalance

logger = logging.getLogger(__name__)

MAX_USER_ID = 0xFFFFFFFF  # INT UNSIGNED

RETRYABLE = (OperationalError, DisconnectionError, PoolTimeout, IntegrityError)
CONFLICT_MARKERS = ("deadlock", "lock wait timeout", "database is locked", "could not serialize")


def now_ms() -> int:
    return int(time.time() * 1000)


def classify(exc: Exception, **ctx) -> BalanceError:
    """Map an engine error onto the store's error taxonomy."""
    if isinstance(exc, IntegrityError):
        return ConcurrentUpdateConflict("concurrent insert of balance row", **ctx)
    reason = str(getattr(exc, "orig", None) or exc)
    if any(m in reason.lower() for m in CONFLICT_MARKERS):
        return ConcurrentUpdateConflict(reason, **ctx)
    return StorageUnavailable(reason, **ctx)


def with_retries(fn: Callable, retries: int, backoff: float, sleep: Callable = time.sleep, **ctx):
    """Run fn, retrying transient engine errors up to `retries` more times."""
    attempt = 0
    while True:
        try:
            return fn()
        except RETRYABLE as e:
            err = classify(e, **ctx)
            if attempt >= retries:
                logger.error("giving up after %d attempt(s): %s", attempt + 1, err)
                raise err from e
            delay = backoff * (2 ** attempt)
            logger.warning("%s: retry %d/%d in %.3fs", err, attempt + 1, retries, delay)
            sleep(delay)
            attempt += 1


def is_amount(value) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value)


def load_balances(raw, user_id: int) -> Dict[str, Amount]:
    if not isinstance(raw, dict):
        raise CorruptBalanceData("balances is not an object", user_id=user_id)
    for currency, amount in raw.items():
        if not isinstance(currency, str) or not is_amount(amount):
            raise CorruptBalanceData("malformed balance entry", user_id=user_id, currency=currency)
    return dict(raw)


def _check_user(user_id) -> None:
    if isinstance(user_id, bool) or not isinstance(user_id, int) or not 0 <= user_id <= MAX_USER_ID:
        raise ValueError(f"invalid user_id: {user_id!r}")


def _check_currency(currency) -> None:
    if not isinstance(currency, str) or not currency:
        raise ValueError(f"invalid currency: {currency!r}")


def _check_amount(amount) -> None:
    if not is_amount(amount):
        raise ValueError(f"invalid amount: {amount!r}")


class BalanceHistory:
    """
    Snapshots of one user in ascending id order. Pages are fetched while
    iterating; every new iteration starts again from the first record.
    """

    def __init__(self, store: "BalanceStore", user_id: int,
                 since: Optional[int] = None, until: Optional[int] = None,
                 page_size: int = 100):
        self._store = store
        self.user_id = user_id
        self.since = since
        self.until = until
        self.page_size = max(1, page_size)

    def __iter__(self) -> Iterator[PastBalance]:
        after_id = 0
        while True:
            page = self._store._history_page(self.user_id, after_id, self.since, self.until, self.page_size)
            yield from page
            if len(page) < self.page_size:
                return
            after_id = page[-1].id


class BalanceStore:
    def __init__(self, engine, settings: Optional[Settings] = None, clock: Optional[Callable[[], int]] = None):
        self.engine = engine
        self.settings = settings or Settings()
        self._clock = clock or now_ms
        self._locks = UserLocks()

    @classmethod
    def from_settings(cls, settings: Settings) -> "BalanceStore":
        engine = make_engine(settings.database_url, pool_timeout=settings.pool_timeout)
        init_db(engine)
        return cls(engine, settings)

    # ---------- reads ----------

    def get_current_balance(self, user_id: int) -> Dict[str, Amount]:
        _check_user(user_id)

        def read():
            with Session(self.engine) as session:
                row = session.get(CurrentBalance, user_id)
                return {} if row is None else load_balances(row.balances, user_id)

        return self._retrying(read, user_id=user_id)

    def get_history(self, user_id: int, since: Optional[int] = None, until: Optional[int] = None) -> BalanceHistory:
        _check_user(user_id)
        return BalanceHistory(self, user_id, since, until, self.settings.history_page_size)

    def _history_page(self, user_id, after_id, since, until, limit) -> List[PastBalance]:
        def read():
            with Session(self.engine) as session:
                stmt = select(PastBalance).where(PastBalance.user_id == user_id, PastBalance.id > after_id)
                if since is not None:
                    stmt = stmt.where(PastBalance.changed >= since)
                if until is not None:
                    stmt = stmt.where(PastBalance.changed <= until)
                stmt = stmt.order_by(PastBalance.id).limit(limit)
                return list(session.exec(stmt).all())

        return self._retrying(read, user_id=user_id)

    # ---------- writes ----------

    def register_user(self, user_id: int) -> None:
        _check_user(user_id)

        def txn():
            with self._transaction(user_id) as session:
                if self._lock_row(session, user_id) is not None:
                    raise UserAlreadyExists("user already registered", user_id=user_id)
                session.add(CurrentBalance(user_id=user_id, balances={}))

        self._retrying(txn, user_id=user_id)
        logger.info("registered user %s", user_id)

    def set_balance(self, user_id: int, currency: str, amount: Amount) -> Dict[str, Amount]:
        _check_user(user_id)
        _check_currency(currency)
        _check_amount(amount)

        def apply(balances):
            balances[currency] = amount

        return self._mutate(user_id, currency, apply)

    def adjust_balance(self, user_id: int, currency: str, delta: Amount) -> Dict[str, Amount]:
        _check_user(user_id)
        _check_currency(currency)
        _check_amount(delta)

        def apply(balances):
            current = balances.get(currency, 0)
            try:
                result = current + delta
            except OverflowError:
                result = None
            if not is_amount(result):
                raise ValueError(f"amount out of range for user_id={user_id} currency={currency}: {result!r}")
            if result < 0 and not self.settings.allow_negative:
                raise InsufficientFunds("insufficient balance", user_id=user_id, currency=currency,
                                        available=current, delta=delta)
            balances[currency] = result

        return self._mutate(user_id, currency, apply)

    def record_snapshot(self, user_id: int) -> PastBalance:
        _check_user(user_id)

        def txn():
            with self._transaction(user_id) as session:
                row = self._lock_row(session, user_id)
                balances = {} if row is None else load_balances(row.balances, user_id)
                return self._append_snapshot(session, user_id, balances)

        return self._retrying(txn, user_id=user_id)

    # ---------- internals ----------

    def _mutate(self, user_id: int, currency: str, apply: Callable[[Dict[str, Amount]], None]) -> Dict[str, Amount]:
        def txn():
            with self._transaction(user_id) as session:
                row = self._lock_row(session, user_id)
                if row is None:
                    if not self.settings.auto_create:
                        raise UnknownUser("no balance account", user_id=user_id, currency=currency)
                    row = CurrentBalance(user_id=user_id, balances={})
                balances = load_balances(row.balances, user_id)
                apply(balances)
                row.balances = balances
                session.add(row)
                session.flush()
                self._append_snapshot(session, user_id, balances)
                return dict(balances)

        balances = self._retrying(txn, user_id=user_id, currency=currency)
        logger.debug("user %s %s -> %s", user_id, currency, balances.get(currency))
        return balances

    @contextmanager
    def _transaction(self, user_id: int):
        with self._locks.hold(user_id, timeout=self.settings.lock_timeout):
            with Session(self.engine, expire_on_commit=False) as session:
                with session.begin():
                    yield session

    @staticmethod
    def _lock_row(session: Session, user_id: int) -> Optional[CurrentBalance]:
        stmt = select(CurrentBalance).where(CurrentBalance.user_id == user_id).with_for_update()
        return session.exec(stmt).first()

    def _append_snapshot(self, session: Session, user_id: int, balances: Dict[str, Amount]) -> PastBalance:
        last = session.exec(select(func.max(PastBalance.changed)).where(PastBalance.user_id == user_id)).one()
        record = PastBalance(user_id=user_id, balances=dict(balances), changed=max(self._clock(), last or 0))
        session.add(record)
        session.flush()
        return record

    def _retrying(self, fn: Callable, **ctx):
        return with_retries(fn, self.settings.max_retries, self.settings.retry_backoff, **ctx)
