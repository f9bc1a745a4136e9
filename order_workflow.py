"""
Order fulfilment workflow.

An order moves pending -> dispatched -> delivered, and can be cancelled from
pending or dispatched. Every legal edge is listed in ``TRANSITIONS`` together
with the payload it needs and whether the acting admin has to re-enter their
password first. ``apply_transition`` is pure; ``OrderStore`` commits the result
with a compare-and-swap on the stored status.
"""
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from pymongo import ReturnDocument

import settings
from database import now_utc, oid
from errors import (
    ConflictError,
    InvalidTransitionError,
    MissingFieldError,
    OrderNotFoundError,
    UnauthorizedTransitionError,
)

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: Any) -> "OrderStatus":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        if text == "shipped":
            return cls.DISPATCHED
        try:
            return cls(text)
        except ValueError:
            raise InvalidTransitionError(f"Unknown order status: {value}")


TERMINAL_STATES: FrozenSet[OrderStatus] = frozenset([OrderStatus.DELIVERED, OrderStatus.CANCELLED])


@dataclass(frozen=True)
class Transition:
    required_fields: Tuple[str, ...] = ()
    requires_reauth: bool = False


TRANSITIONS: Dict[Tuple[OrderStatus, OrderStatus], Transition] = {
    (OrderStatus.PENDING, OrderStatus.DISPATCHED): Transition(("tracking_id", "courier_company")),
    (OrderStatus.PENDING, OrderStatus.CANCELLED): Transition(("reject_reason",), requires_reauth=True),
    (OrderStatus.DISPATCHED, OrderStatus.DELIVERED): Transition(),
    (OrderStatus.DISPATCHED, OrderStatus.CANCELLED): Transition(("reject_reason",), requires_reauth=True),
}

DISPLAY_NAMES = {
    OrderStatus.PENDING: "Pending",
    OrderStatus.DISPATCHED: "Shipped",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.CANCELLED: "Cancelled",
}


@dataclass(frozen=True)
class AuthContext:
    verified: bool = False
    admin_email: Optional[str] = None


def display_status(status: Any) -> str:
    return DISPLAY_NAMES[OrderStatus.parse(status)]


def allowed_targets(status: Any) -> List[OrderStatus]:
    current = OrderStatus.parse(status)
    return [to for (frm, to) in TRANSITIONS if frm == current]


def get_transition(current: Any, target: Any) -> Transition:
    frm, to = OrderStatus.parse(current), OrderStatus.parse(target)
    transition = TRANSITIONS.get((frm, to))
    if transition is None:
        if frm in TERMINAL_STATES:
            raise InvalidTransitionError(f"Order is already {frm.value}; no further changes are allowed")
        raise InvalidTransitionError(f"Cannot move an order from {frm.value} to {to.value}")
    return transition


def apply_transition(order: Mapping[str, Any], target_status: Any, payload: Optional[Mapping[str, Any]] = None,
                     auth_context: Optional[AuthContext] = None) -> Dict[str, Any]:
    """Return a copy of ``order`` moved to ``target_status``.

    Raises InvalidTransitionError for an edge not in TRANSITIONS,
    MissingFieldError when a required payload field is absent or blank, and
    UnauthorizedTransitionError when the edge needs re-authentication that has
    not happened. The input order is never modified.
    """
    payload = payload or {}
    auth_context = auth_context or AuthContext()
    target = OrderStatus.parse(target_status)
    transition = get_transition(order.get("status"), target)

    values = {}
    for field in transition.required_fields:
        value = payload.get(field)
        if not isinstance(value, str) or not value.strip():
            raise MissingFieldError(field)
        values[field] = value.strip()

    if transition.requires_reauth and not auth_context.verified:
        raise UnauthorizedTransitionError("Admin verification is required to cancel an order")

    updated = dict(order)
    updated.update(values)
    updated["status"] = target.value
    updated["updated_at"] = now_utc()
    updated["status_history"] = list(order.get("status_history") or []) + [
        {"status": target.value, "at": updated["updated_at"], "by": auth_context.admin_email}
    ]
    return updated


class OrderStore:
    """Reads orders and commits transitions against the ``order`` collection."""

    def __init__(self, database):
        self.collection = database["order"]

    def get(self, order_id: str) -> Dict[str, Any]:
        order = self.collection.find_one({"_id": oid(order_id)})
        if not order:
            raise OrderNotFoundError("Order not found")
        return order

    def commit_transition(self, before: Mapping[str, Any], after: Mapping[str, Any]) -> Dict[str, Any]:
        changes = {k: v for k, v in after.items() if k != "_id" and before.get(k) != v}
        # only lands if nobody moved the order since we read it
        saved = self.collection.find_one_and_update(
            {"_id": before["_id"], "status": before.get("status")},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if saved is None:
            current = self.collection.find_one({"_id": before["_id"]})
            if current is None:
                raise OrderNotFoundError("Order not found")
            logger.warning(
                "Order %s changed to %s while moving %s -> %s",
                before["_id"], current.get("status"), before.get("status"), after.get("status"),
            )
            raise ConflictError(
                f"Order status changed to {current.get('status')} in the meantime; reload and try again"
            )
        return saved

    def transition(self, order_id: str, target_status: Any, payload: Optional[Mapping[str, Any]] = None,
                   auth_context: Optional[AuthContext] = None) -> Dict[str, Any]:
        before = self.get(order_id)
        after = apply_transition(before, target_status, payload, auth_context)
        saved = self.commit_transition(before, after)
        logger.info(
            "Order %s moved %s -> %s by %s",
            order_id, before.get("status"), saved["status"], (auth_context or AuthContext()).admin_email,
        )
        return saved


@dataclass
class PendingCancellation:
    order_id: str
    admin_email: str
    reject_reason: str
    created_at: float


class PendingCancellations:
    """Cancellations waiting for the admin to re-enter their password.

    Held in process memory only. An entry is dropped when it is taken for
    verification, dismissed, or older than the configured TTL.
    """

    def __init__(self, ttl_seconds: Optional[float] = None, clock=time.monotonic):
        self.ttl_seconds = settings.PENDING_CANCELLATION_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str], PendingCancellation] = {}

    def hold(self, order: Mapping[str, Any], admin_email: str, reject_reason: Any) -> PendingCancellation:
        # dry run so a bad edge or blank reason fails before the password prompt
        apply_transition(order, OrderStatus.CANCELLED, {"reject_reason": reject_reason},
                         AuthContext(verified=True, admin_email=admin_email))
        entry = PendingCancellation(
            order_id=str(order["_id"]),
            admin_email=admin_email,
            reject_reason=reject_reason.strip(),
            created_at=self._clock(),
        )
        with self._lock:
            self._evict_expired(entry.created_at)
            self._entries[(entry.order_id, admin_email)] = entry
        return entry

    def _evict_expired(self, now: float) -> None:
        # caller holds the lock
        stale = [key for key, held in self._entries.items() if now - held.created_at > self.ttl_seconds]
        for key in stale:
            del self._entries[key]

    def take(self, order_id: str, admin_email: str) -> Optional[PendingCancellation]:
        with self._lock:
            entry = self._entries.pop((order_id, admin_email), None)
        if entry is None or self._clock() - entry.created_at > self.ttl_seconds:
            return None
        return entry

    def discard(self, order_id: str, admin_email: str) -> bool:
        with self._lock:
            return self._entries.pop((order_id, admin_email), None) is not None

    def __len__(self):
        with self._lock:
            return len(self._entries)


def status_timeline(order: Mapping[str, Any]) -> List[Dict[str, Any]]:
    status = OrderStatus.parse(order.get("status"))
    changed = {}
    for change in order.get("status_history") or []:
        changed.setdefault(change.get("status"), change.get("at"))

    placed = {"status": "Order Placed", "date": order.get("created_at"), "completed": True}
    if status == OrderStatus.CANCELLED:
        return [placed, {"status": "Cancelled", "date": changed.get("cancelled"), "completed": True}]

    moved_on = status != OrderStatus.PENDING
    shipped = status in (OrderStatus.DISPATCHED, OrderStatus.DELIVERED)
    delivered = status == OrderStatus.DELIVERED
    return [
        placed,
        {"status": "Processing", "date": changed.get("dispatched") if moved_on else None, "completed": moved_on},
        {"status": "Dispatched", "date": changed.get("dispatched") if shipped else None, "completed": shipped},
        {"status": "Delivered", "date": changed.get("delivered") if delivered else None, "completed": delivered},
    ]
