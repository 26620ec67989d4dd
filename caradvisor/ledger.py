"""Credit ledger and purchase idempotency log.

The ledger owns the per-user integer balance. Every mutation is a single
transaction per call:

* ``debit`` creates the account with the initial grant if it is missing and
  then applies a conditional decrement (``credits > 0``) in the same
  transaction, so two concurrent debits can never both spend the last credit.
* ``credit`` creates the account the same way and applies
  ``max(credits, 0) + amount``.
* ``apply_purchase`` records the purchase token and credits the account in one
  transaction. The token is the primary key of ``purchases``, so a token is
  credited at most once even when two requests race.

Nothing here retries. Storage failures roll back and surface as
:class:`~caradvisor.exceptions.LedgerUnavailableError`.

``SqlCreditLedger`` is the durable implementation. ``InMemoryCreditLedger``
honours the same contract with process-local locks and backs tests and local
development.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from caradvisor.exceptions import LedgerUnavailableError
from caradvisor.extensions import db
from caradvisor.models import PurchaseRecord, UserAccount

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_CREDITS = 7


@dataclass(frozen=True)
class DebitResult:
    ok: bool
    remaining: int

    @property
    def limit_exceeded(self) -> bool:
        return not self.ok


@dataclass(frozen=True)
class PurchaseResult:
    already_processed: bool
    total: int


def _check_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"credit amount must be a positive integer, got {amount!r}")
    return amount


class CreditLedger:
    """Contract shared by every ledger backend."""

    initial_grant: int = DEFAULT_INITIAL_CREDITS

    def ensure(self, user_id: str) -> int:
        raise NotImplementedError

    def balance(self, user_id: str) -> Optional[int]:
        raise NotImplementedError

    def debit(self, user_id: str) -> DebitResult:
        raise NotImplementedError

    def credit(self, user_id: str, amount: int) -> int:
        raise NotImplementedError

    def apply_purchase(
        self,
        purchase_token: str,
        user_id: str,
        amount: int,
        meta: Optional[Mapping[str, Any]] = None,
    ) -> PurchaseResult:
        raise NotImplementedError

    def purchase_recorded(self, purchase_token: str) -> bool:
        raise NotImplementedError


# ==========================
# ===== SQL (durable) ======
# ==========================

class SqlCreditLedger(CreditLedger):
    """Ledger stored in the ``users`` / ``purchases`` tables.

    Must be called inside a Flask application context; it uses the
    Flask-SQLAlchemy scoped session.
    """

    def __init__(self, initial_grant: int = DEFAULT_INITIAL_CREDITS, clock: Callable[[], datetime] = datetime.utcnow):
        self.initial_grant = initial_grant
        self._clock = clock

    @contextmanager
    def _transaction(self, operation: str, user_id: str):
        try:
            yield db.session
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.exception("[LEDGER] %s failed for user=%s", operation, user_id)
            raise LedgerUnavailableError(operation) from e
        except Exception:
            db.session.rollback()
            raise

    def _insert_if_absent(self, model, values: Dict[str, Any], key_column: str) -> bool:
        """Insert ``values`` unless a row with the same key exists. Returns True if inserted."""
        bind = db.session.get_bind()
        dialect_name = bind.dialect.name if bind else ""

        if dialect_name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as pg_insert
            stmt = pg_insert(model).values(**values).on_conflict_do_nothing(index_elements=[key_column])
            return db.session.execute(stmt).rowcount == 1
        if dialect_name == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as sqlite_insert
            stmt = sqlite_insert(model).values(**values).on_conflict_do_nothing(index_elements=[key_column])
            return db.session.execute(stmt).rowcount == 1

        # Generic path: the primary key still guarantees a single row.
        try:
            with db.session.begin_nested():
                if db.session.get(model, values[key_column]) is not None:
                    return False
                db.session.add(model(**values))
                db.session.flush()
            return True
        except IntegrityError:
            return False

    def _insert_account_if_absent(self, user_id: str, now: datetime) -> bool:
        return self._insert_if_absent(
            UserAccount,
            {"user_id": user_id, "credits": self.initial_grant, "created_at": now, "updated_at": now},
            "user_id",
        )

    def _read_credits(self, user_id: str) -> Optional[int]:
        return db.session.execute(
            select(UserAccount.credits).where(UserAccount.user_id == user_id)
        ).scalar_one_or_none()

    def _apply_credit(self, user_id: str, amount: int, now: datetime) -> int:
        self._insert_account_if_absent(user_id, now)
        floored = case((UserAccount.credits < 0, 0), else_=UserAccount.credits)
        db.session.execute(
            update(UserAccount)
            .where(UserAccount.user_id == user_id)
            .values(credits=floored + amount, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return self._read_credits(user_id)

    def ensure(self, user_id: str) -> int:
        with self._transaction("ensure", user_id):
            created = self._insert_account_if_absent(user_id, self._clock())
            credits = self._read_credits(user_id)
        if created:
            logger.info("[LEDGER] account created user=%s credits=%s", user_id, credits)
        return credits

    def balance(self, user_id: str) -> Optional[int]:
        try:
            return self._read_credits(user_id)
        except SQLAlchemyError as e:
            db.session.rollback()
            raise LedgerUnavailableError("balance") from e

    def debit(self, user_id: str) -> DebitResult:
        now = self._clock()
        with self._transaction("debit", user_id):
            self._insert_account_if_absent(user_id, now)
            result = db.session.execute(
                update(UserAccount)
                .where(UserAccount.user_id == user_id, UserAccount.credits > 0)
                .values(credits=UserAccount.credits - 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            ok = result.rowcount == 1
            remaining = self._read_credits(user_id)

        if not ok:
            logger.info("[LEDGER] debit refused user=%s credits=%s", user_id, remaining)
        return DebitResult(ok=ok, remaining=remaining)

    def credit(self, user_id: str, amount: int) -> int:
        _check_amount(amount)
        with self._transaction("credit", user_id):
            total = self._apply_credit(user_id, amount, self._clock())
        logger.info("[LEDGER] credited user=%s amount=%s total=%s", user_id, amount, total)
        return total

    def apply_purchase(
        self,
        purchase_token: str,
        user_id: str,
        amount: int,
        meta: Optional[Mapping[str, Any]] = None,
    ) -> PurchaseResult:
        _check_amount(amount)
        meta = dict(meta or {})
        now = self._clock()
        with self._transaction("apply_purchase", user_id):
            recorded = self._insert_if_absent(
                PurchaseRecord,
                {
                    "purchase_token": purchase_token,
                    "user_id": user_id,
                    "amount": amount,
                    "product_id": str(meta.get("productId", "")),
                    "product_meta": meta,
                    "created_at": now,
                },
                "purchase_token",
            )
            if recorded:
                total = self._apply_credit(user_id, amount, now)
            else:
                current = self._read_credits(user_id)
                total = self.initial_grant if current is None else current

        if recorded:
            logger.info("[PURCHASE] credited user=%s amount=%s total=%s", user_id, amount, total)
        else:
            logger.info("[PURCHASE] duplicate token ignored user=%s total=%s", user_id, total)
        return PurchaseResult(already_processed=not recorded, total=total)

    def purchase_recorded(self, purchase_token: str) -> bool:
        return db.session.get(PurchaseRecord, purchase_token) is not None


# ==========================
# ===== In-memory ==========
# ==========================

@dataclass
class _Account:
    credits: int
    created_at: datetime
    updated_at: datetime


class InMemoryCreditLedger(CreditLedger):
    """Process-local ledger with the same atomicity contract as the SQL one.

    Balance changes for a user happen under that user's lock. ``apply_purchase``
    takes the purchase-log lock first and the user lock second; ``debit`` and
    ``credit`` only take the user lock, so lock order is always consistent.
    """

    def __init__(self, initial_grant: int = DEFAULT_INITIAL_CREDITS, clock: Callable[[], datetime] = datetime.utcnow):
        self.initial_grant = initial_grant
        self._clock = clock
        self._accounts: Dict[str, _Account] = {}
        self._purchases: Dict[str, Dict[str, Any]] = {}
        self._registry_lock = threading.Lock()
        self._purchase_lock = threading.Lock()
        self._user_locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.Lock()
            return lock

    def _account(self, user_id: str, now: datetime) -> _Account:
        account = self._accounts.get(user_id)
        if account is None:
            account = self._accounts[user_id] = _Account(self.initial_grant, now, now)
        return account

    def _apply_credit(self, user_id: str, amount: int) -> int:
        now = self._clock()
        account = self._account(user_id, now)
        account.credits = max(account.credits, 0) + amount
        account.updated_at = now
        return account.credits

    def ensure(self, user_id: str) -> int:
        with self._lock_for(user_id):
            return self._account(user_id, self._clock()).credits

    def balance(self, user_id: str) -> Optional[int]:
        account = self._accounts.get(user_id)
        return account.credits if account else None

    def debit(self, user_id: str) -> DebitResult:
        with self._lock_for(user_id):
            now = self._clock()
            account = self._account(user_id, now)
            if account.credits <= 0:
                return DebitResult(ok=False, remaining=account.credits)
            account.credits -= 1
            account.updated_at = now
            return DebitResult(ok=True, remaining=account.credits)

    def credit(self, user_id: str, amount: int) -> int:
        _check_amount(amount)
        with self._lock_for(user_id):
            return self._apply_credit(user_id, amount)

    def apply_purchase(
        self,
        purchase_token: str,
        user_id: str,
        amount: int,
        meta: Optional[Mapping[str, Any]] = None,
    ) -> PurchaseResult:
        _check_amount(amount)
        with self._purchase_lock:
            with self._lock_for(user_id):
                if purchase_token in self._purchases:
                    current = self.balance(user_id)
                    return PurchaseResult(
                        already_processed=True,
                        total=self.initial_grant if current is None else current,
                    )
                self._purchases[purchase_token] = {
                    "user_id": user_id,
                    "amount": amount,
                    "product_meta": dict(meta or {}),
                    "created_at": self._clock(),
                }
                total = self._apply_credit(user_id, amount)
        return PurchaseResult(already_processed=False, total=total)

    def purchase_recorded(self, purchase_token: str) -> bool:
        return purchase_token in self._purchases
