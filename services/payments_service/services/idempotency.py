"""Idempotency gate for payment notifications.

Two layers:

* ``IdempotencyGate``: a process-local TTL map of payment ids currently being
  settled. Only short-circuits redeliveries that land on the same process
  while the first attempt is still running.
* ``record_payment``: the insert of the payment row, guarded by the unique
  ``payment_id`` constraint. This one is authoritative across processes.
"""

import threading
import time
from typing import Callable, Optional

from libs.common.config import get_settings
from libs.common.logging import get_logger
from services.payments_service.models import MercadoPagoPayment
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


class IdempotencyGate:
    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds is None:
            ttl_seconds = get_settings().IDEMPOTENCY_CACHE_TTL_SECONDS
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._started: dict[str, float] = {}

    def begin(self, payment_id: str) -> bool:
        """Mark ``payment_id`` as in progress.

        Returns False when a fresh marker already exists (duplicate in flight).
        """
        now = self._clock()
        with self._lock:
            self._purge_locked(now)
            if payment_id in self._started:
                return False
            self._started[payment_id] = now
            return True

    def release(self, payment_id: str) -> None:
        with self._lock:
            self._started.pop(payment_id, None)

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked(self._clock())

    def _purge_locked(self, now: float) -> int:
        expired = [
            key
            for key, started in self._started.items()
            if now - started >= self.ttl_seconds
        ]
        for key in expired:
            del self._started[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._started)


_default_gate: Optional[IdempotencyGate] = None
_default_gate_lock = threading.Lock()


def get_idempotency_gate() -> IdempotencyGate:
    global _default_gate
    with _default_gate_lock:
        if _default_gate is None:
            _default_gate = IdempotencyGate()
        return _default_gate


async def record_payment(db: AsyncSession, payment: MercadoPagoPayment) -> bool:
    """Insert the payment row.

    Returns False when another execution already recorded this payment id.
    Any other database error propagates.
    """
    db.add(payment)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info(
            "Payment %s already recorded by another execution", payment.payment_id
        )
        return False
    return True
