"""
Pytest configuration for storefront tests.

Each test gets its own SQLite database file, an app built with create_app()
whose get_db dependency is overridden, and a FakeGateway standing in for
Stripe API calls. Webhook signature checks still run through the real
stripe.WebhookSignature verifier, using signatures built with the same
HMAC-SHA256 scheme Stripe uses.
"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from storefront.cache import CacheClient
from storefront.config import Settings
from storefront.database import Base, get_db
from storefront.errors import PaymentProviderError
from storefront.main import create_app
from storefront.models import (
    Address, Brand, CartItem, Category, Coupon, Inventory, Product, ProductVariant, User,
)
from storefront.payments.gateway import IntentResult, RefundResult, StripeGateway

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway(StripeGateway):
    """In-memory Stripe stand-in. Signature verification is inherited unchanged."""

    def __init__(self):
        super().__init__(api_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET, webhook_tolerance=300)
        self.intents: Dict[str, IntentResult] = {}
        self.intent_calls = []
        self.customers = []
        self.refunds = []
        self.fail_intents = False

    def create_customer(self, user_id, email, name=None):
        customer_id = f"cus_test_{len(self.customers) + 1}"
        self.customers.append((customer_id, user_id, email))
        return customer_id

    def create_payment_intent(self, amount_cents, currency, customer_id, metadata, idempotency_key=None):
        if self.fail_intents:
            raise PaymentProviderError("Failed to create payment intent", code="PAYMENT_INTENT_FAILED")
        intent_id = f"pi_test_{len(self.intents) + 1}"
        intent = IntentResult(
            id=intent_id,
            status="requires_payment_method",
            amount=amount_cents,
            currency=currency.lower(),
            client_secret=f"{intent_id}_secret_abc123",
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        self.intent_calls.append({"customer_id": customer_id, "idempotency_key": idempotency_key, **metadata})
        return intent

    def retrieve_payment_intent(self, intent_id):
        if intent_id not in self.intents:
            raise PaymentProviderError("Failed to retrieve payment status", code="STRIPE_ERROR")
        return self.intents[intent_id]

    def set_status(self, intent_id, status, last_error=None):
        self.intents[intent_id].status = status
        self.intents[intent_id].last_error = last_error

    def create_refund(self, intent_id, amount_cents, reason):
        amount = amount_cents if amount_cents is not None else self.intents[intent_id].amount
        refund = RefundResult(id=f"re_test_{len(self.refunds) + 1}", amount=amount, status="succeeded")
        self.refunds.append((intent_id, amount, reason))
        return refund


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def intent_event(event_id: str, event_type: str, intent_id: str, status: str, amount: int = 0, error: Optional[str] = None) -> str:
    obj = {
        "id": intent_id,
        "object": "payment_intent",
        "status": status,
        "amount": amount,
        "currency": "usd",
        "metadata": {},
        "last_payment_error": {"code": "card_declined", "message": error} if error else None,
    }
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    })


def auth(user_id: str) -> Dict[str, str]:
    return {"X-User-Id": user_id}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        env="test",
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        stripe_secret_key="sk_test_fake",
        stripe_webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def session_factory(settings):
    engine = create_engine(settings.database_url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app(settings, session_factory, gateway):
    app = create_app(settings, gateway=gateway, cache=CacheClient(None))

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def seed(session_factory):
    """
    Users, addresses, catalog, inventory and coupons shared by the API tests.

    mouse     $10.00  stock 5
    keyboard  $120.00 stock 10
    shirt     $20.00  variants M (inherits price, stock 3) and L ($25.00, stock 3)
    gift card $50.00  inventory not tracked
    draft     unpublished
    """
    now = datetime.now(timezone.utc)
    db = session_factory()

    customer = User(email="alice@example.com", name="Alice")
    other = User(email="bob@example.com", name="Bob")
    admin = User(email="admin@example.com", name="Admin", role="ADMIN")
    db.add_all([customer, other, admin])
    db.flush()

    address = Address(user_id=customer.id, name="Alice", line1="1 Main St", city="Springfield", region="IL", postal_code="62701", country="US")
    other_address = Address(user_id=other.id, name="Bob", line1="2 Oak Ave", city="Springfield", region="IL", postal_code="62702", country="US")
    category = Category(name="Accessories", slug="accessories")
    brand = Brand(name="Acme", slug="acme")
    db.add_all([address, other_address, category, brand])
    db.flush()

    def product(sku, name, price_cents, status="PUBLISHED", track=True, oversell=False):
        p = Product(
            sku=sku, name=name, slug=name.lower().replace(" ", "-"), price_cents=price_cents,
            category_id=category.id, brand_id=brand.id, status=status,
            track_inventory=track, allow_out_of_stock=oversell,
        )
        db.add(p)
        db.flush()
        return p

    mouse = product("MOUSE-001", "Wireless Mouse", 1000)
    keyboard = product("KEY-001", "Mechanical Keyboard", 12000)
    shirt = product("SHIRT-001", "Logo Shirt", 2000)
    gift_card = product("GIFT-050", "Gift Card", 5000, track=False)
    draft = product("DRAFT-001", "Prototype Gadget", 3000, status="DRAFT")

    shirt_m = ProductVariant(product_id=shirt.id, sku="SHIRT-001-M", name="Medium", price_cents=None, attributes={"size": "M"})
    shirt_l = ProductVariant(product_id=shirt.id, sku="SHIRT-001-L", name="Large", price_cents=2500, attributes={"size": "L"})
    db.add_all([shirt_m, shirt_l])
    db.flush()

    db.add_all([
        Inventory(product_id=mouse.id, quantity=5, reserved_quantity=0),
        Inventory(product_id=keyboard.id, quantity=10, reserved_quantity=0),
        Inventory(product_id=shirt.id, variant_id=shirt_m.id, quantity=3, reserved_quantity=0),
        Inventory(product_id=shirt.id, variant_id=shirt_l.id, quantity=3, reserved_quantity=0),
        Inventory(product_id=draft.id, quantity=3, reserved_quantity=0),
    ])

    window = dict(valid_from=now - timedelta(days=1), valid_to=now + timedelta(days=30))
    db.add_all([
        Coupon(code="WELCOME10", type="PERCENTAGE", value=10, minimum_amount_cents=5000, usage_limit=1000, **window),
        Coupon(code="HALFOFF", type="PERCENTAGE", value=50, max_discount_cents=1500, **window),
        Coupon(code="SAVE5", type="FIXED_AMOUNT", value=500, **window),
        Coupon(code="FREESHIP", type="FREE_SHIPPING", value=0, **window),
        Coupon(code="ONEUSE", type="FIXED_AMOUNT", value=500, usage_limit=1, usage_count=0, **window),
        Coupon(code="USEDUP", type="FIXED_AMOUNT", value=500, usage_limit=1, usage_count=1, **window),
        Coupon(
            code="EXPIRED", type="FIXED_AMOUNT", value=500,
            valid_from=now - timedelta(days=30), valid_to=now - timedelta(days=1),
        ),
        Coupon(code="PAUSED", type="FIXED_AMOUNT", value=500, is_active=False, **window),
    ])
    db.commit()

    ids = SimpleNamespace(
        customer_id=customer.id,
        other_id=other.id,
        admin_id=admin.id,
        address_id=address.id,
        other_address_id=other_address.id,
        category_id=category.id,
        brand_id=brand.id,
        mouse_id=mouse.id,
        keyboard_id=keyboard.id,
        shirt_id=shirt.id,
        shirt_m_id=shirt_m.id,
        shirt_l_id=shirt_l.id,
        gift_card_id=gift_card.id,
        draft_id=draft.id,
    )
    db.close()
    return ids


def stock(session_factory, product_id: str, variant_id: Optional[str] = None):
    """(quantity, reserved_quantity) for a product or variant, read in a fresh session."""
    with session_factory() as db:
        query = db.query(Inventory).filter(Inventory.product_id == product_id)
        if variant_id:
            query = query.filter(Inventory.variant_id == variant_id)
        else:
            query = query.filter(Inventory.variant_id.is_(None))
        row = query.one()
        return row.quantity, row.reserved_quantity


def cart_count(session_factory, user_id: str) -> int:
    with session_factory() as db:
        return db.query(CartItem).filter(CartItem.user_id == user_id).count()


def place_order(client, seed, items, **extra):
    """POST /api/orders as the seeded customer."""
    body = {"items": items, "shipping_address_id": seed.address_id}
    body.update(extra)
    return client.post("/api/orders", json=body, headers=auth(seed.customer_id))
