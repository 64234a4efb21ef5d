import os
import tempfile
import uuid
from datetime import timedelta
from decimal import Decimal

_tmpdir = tempfile.mkdtemp(prefix="returns-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_tmpdir, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret-key-not-for-production"
os.environ["MSG91_AUTH_KEY"] = ""
os.environ["MSG91_TEMPLATE_ID_PICKUP_OTP"] = ""

import httpx
import pytest

from app.core.permissions import Actor, ActorRole
from app.core.security import create_access_token
from app.database import async_session_factory, drop_db, engine, init_db
from app.db_types import utcnow
from app.main import app
from app.models.order import Order, OrderItem, OrderStatus
from app.services.events import dispatcher


CUSTOMER_ID = uuid.UUID("7d4f3a0e-6a51-4f8e-9a0e-1c2b3d4e5f60")
STAFF_ID = "staff-001"
MANAGER_ID = "manager-001"
AGENT_ID = "agent-007"
OTHER_AGENT_ID = "agent-999"


@pytest.fixture
async def db():
    await drop_db()
    await init_db()
    async with async_session_factory() as session:
        yield session
    dispatcher.clear()
    await engine.dispose()


@pytest.fixture
async def client(db):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def customer():
    return Actor(actor_id=str(CUSTOMER_ID), role=ActorRole.CUSTOMER)


@pytest.fixture
def staff():
    return Actor(actor_id=STAFF_ID, role=ActorRole.STAFF_ADMIN)


@pytest.fixture
def manager():
    return Actor(actor_id=MANAGER_ID, role=ActorRole.ORDER_MANAGER)


@pytest.fixture
def agent():
    return Actor(actor_id=AGENT_ID, role=ActorRole.DELIVERY_AGENT, name="Ravi")


@pytest.fixture
def other_agent():
    return Actor(actor_id=OTHER_AGENT_ID, role=ActorRole.DELIVERY_AGENT)


def auth_headers(actor: Actor) -> dict:
    token = create_access_token(actor.actor_id, additional_claims={"role": actor.role.value})
    return {"Authorization": f"Bearer {token}"}


def agent_payload(agent: Actor) -> dict:
    return {"agent_id": agent.actor_id, "name": agent.name or "Agent", "phone": "9000000001"}


async def create_order(
    session,
    lines=(("Steel Bottle", "118.00", 1, "18", True),),
    discount="0",
    shipping="0",
    warehouse_state="Karnataka",
    delivery_state="Karnataka",
    is_interstate=None,
    status=OrderStatus.DELIVERED.value,
    delivered_days_ago=1,
) -> Order:
    """
    Persist a delivered order.

    Each line is (name, unit_price, quantity, tax_rate or None, price_includes_tax).
    Order subtotal and tax are derived the way checkout records them.
    """
    subtotal = Decimal("0")
    tax_amount = Decimal("0")
    items = []
    for name, price, qty, rate, inclusive in lines:
        gross = Decimal(price) * qty
        r = Decimal(rate) if rate is not None else Decimal("0")
        if inclusive:
            base = gross / (1 + r / 100)
            tax = gross - base
        else:
            base = gross
            tax = gross * r / 100
        subtotal += base
        tax_amount += tax
        items.append(OrderItem(
            product_id=uuid.uuid4(),
            product_name=name,
            quantity=qty,
            unit_price=Decimal(price),
            price_includes_tax=inclusive,
            tax_name=f"GST {rate}%" if rate is not None else None,
            tax_rate=Decimal(rate) if rate is not None else None,
        ))

    order = Order(
        order_number=f"ORD{uuid.uuid4().hex[:10].upper()}",
        customer_id=CUSTOMER_ID,
        customer_phone="9876543210",
        status=status,
        delivered_at=utcnow() - timedelta(days=delivered_days_ago) if delivered_days_ago is not None else None,
        warehouse_state=warehouse_state,
        delivery_state=delivery_state,
        is_interstate=is_interstate,
        subtotal=subtotal.quantize(Decimal("0.01")),
        tax_amount=tax_amount.quantize(Decimal("0.01")),
        discount_amount=Decimal(discount),
        shipping_amount=Decimal(shipping),
        items=items,
    )
    session.add(order)
    await session.commit()
    return order


def return_lines(order: Order, quantity: int = None) -> list:
    return [
        {
            "order_item_id": item.id,
            "quantity": quantity or item.quantity,
            "return_reason": "DAMAGED",
        }
        for item in order.items
    ]
