import uuid
from dataclasses import dataclass
from threading import Lock
from typing import Protocol

from payflow.core.id_utils import generate_order_number


@dataclass(frozen=True)
class OrderHandoffRequest:
    tenant_id: str
    checkout_session_id: str
    cart_id: str
    user_id: str | None
    customer_email: str
    grand_total: str
    currency: str
    payment_transaction_id: str | None
    idempotency_key: str


@dataclass(frozen=True)
class OrderHandoffResult:
    order_id: str
    order_number: str


class OrderService(Protocol):
    """Order-creation collaborator called when a checkout session completes.

    The hand-off runs before the completing unit of work commits, so a lost
    race or a gateway retry can call ``create_order`` again for the same
    session. Implementations must return the order already created for a
    repeated ``idempotency_key`` instead of creating a second one.
    """

    name: str

    def create_order(self, request: OrderHandoffRequest) -> OrderHandoffResult:
        ...


class StubOrderService:
    """Local stand-in for the order-creation service."""

    name = "stub"

    def __init__(self) -> None:
        self._lock = Lock()
        self._orders: dict[tuple[str, str], OrderHandoffResult] = {}

    def create_order(self, request: OrderHandoffRequest) -> OrderHandoffResult:
        key = (request.tenant_id, request.idempotency_key)
        with self._lock:
            existing = self._orders.get(key)
            if existing is None:
                existing = OrderHandoffResult(order_id=str(uuid.uuid4()), order_number=generate_order_number())
                self._orders[key] = existing
            return existing


_ORDER_SERVICES: dict[str, OrderService] = {
    "stub": StubOrderService(),
}


def register_order_service(service: OrderService) -> None:
    _ORDER_SERVICES[(service.name or "").strip().lower()] = service


def get_order_service(name: str) -> OrderService:
    normalized = (name or "").strip().lower()
    service = _ORDER_SERVICES.get(normalized)
    if not service:
        available = ", ".join(sorted(_ORDER_SERVICES.keys()))
        raise ValueError(f"Unknown order service '{name}'. Available: {available}")
    return service
