"""Pytest fixtures for order engine tests.

The engine is configured from the environment at import time, so the test
database (a temp-file SQLite) and switches are set before anything from
``order_engine`` is imported.
"""
import os
import tempfile
from pathlib import Path

JWT_SECRET = "order-engine-test-secret-0123456789abcdef"
_TMP = Path(tempfile.mkdtemp(prefix="order-engine-tests-"))
os.environ["POSTGRES_DSN"] = f"sqlite:///{_TMP / 'orders.db'}"
os.environ["EXPIRY_WORKER_ENABLED"] = "false"
os.environ["EVENTS_ENABLED"] = "true"
os.environ["JWT_SECRET"] = JWT_SECRET
os.environ["SVC_INTERNAL_KEY"] = "devkey"
os.environ["RECOMMENDER_BASE"] = ""

import fakeredis  # noqa: E402
import jwt  # noqa: E402
import pytest  # noqa: E402

from order_engine.db.models import Product, ShipClass, Variant  # noqa: E402
from order_engine.db.session import Base, SessionLocal, engine  # noqa: E402
from order_engine.kafka import producer  # noqa: E402
from order_engine.services import ledger, orders  # noqa: E402
from order_engine.store import cart_store  # noqa: E402

JNT_DETAILS = {
    "receiver_name": "Juan Dela Cruz",
    "receiver_phone": "0917 123 4567",
    "house_street_unit": "12 Mabini St.",
    "barangay": "San Antonio",
    "city": "Pasig",
    "province": "Metro Manila",
    "postal_code": "1600",
}


@pytest.fixture(autouse=True)
def fresh_schema():
    """Empty tables for every test."""
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def events(monkeypatch):
    """Messages that would have gone to Kafka."""
    sent = []
    monkeypatch.setattr(producer, "send", lambda topic, key, value: sent.append(value))
    return sent


@pytest.fixture(autouse=True)
def redis_client(monkeypatch):
    client = fakeredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr(cart_store, "get_client", lambda: client)
    return client


@pytest.fixture
def make_variant(db):
    """Create a product with one variant and ``qty`` units on hand."""
    counter = {"n": 0}

    def _make(title="Mini GT Nissan Skyline GT-R R34", price=500, qty=1, ship_class=ShipClass.MINI_GT,
              brand="Mini GT", model=None):
        counter["n"] += 1
        product = Product(title=title, brand=brand, model=model, active=True)
        variant = Variant(sku=f"SKU-{counter['n']}", price_cents=price * 100, ship_class=ship_class, active=True)
        product.variants.append(variant)
        db.add(product)
        db.flush()
        if qty:
            ledger.restock(db, variant.id, qty)
        db.commit()
        return variant

    return _make


@pytest.fixture
def place_order(db):
    """Submit a J&T Metro Manila order for ``{variant_id: qty}``."""

    def _place(customer_id, wanted, **kwargs):
        lines = [orders.LineRequest(variant_id=v, qty=q) for v, q in wanted.items()]
        kwargs.setdefault("shipping_method", "JNT")
        kwargs.setdefault("shipping_region", "METRO_MANILA")
        kwargs.setdefault("shipping_details", JNT_DETAILS)
        return orders.submit(db, customer_id, lines, kwargs.pop("shipping_method"),
                             kwargs.pop("shipping_region"), kwargs.pop("shipping_details"), **kwargs)

    return _place


def token(sub, role="customer"):
    return jwt.encode({"sub": sub, "role": role, "type": "access"}, JWT_SECRET, algorithm="HS256")


def auth(sub, role="customer"):
    return {"Authorization": f"Bearer {token(sub, role)}"}


@pytest.fixture(name="auth")
def auth_fixture():
    return auth
