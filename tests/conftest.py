import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

import marketplace.database
from marketplace.auth import verify_token
from marketplace.database import Base, utcnow
from marketplace.main import app as fastapi_app
from marketplace.models import Order, Product, Seller


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def TestingSessionLocal(engine, monkeypatch):
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    # Every service resolves the factory through marketplace.database.get_session
    monkeypatch.setattr(marketplace.database, "SessionLocal", factory)
    return factory


@pytest.fixture
def db(TestingSessionLocal):
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def make_seller(db):
    def _make(seller_id="seller-1", balance=0):
        db.add(Seller(id=seller_id, business_name=f"{seller_id} shop", balance=balance))
        db.commit()
        return seller_id
    return _make


@pytest.fixture
def make_product(db, make_seller):
    def _make(price="10.00", shipping="1.00", inventory=5, merchant="seller-1", **kwargs):
        if db.get(Seller, merchant) is None:
            make_seller(merchant)
        product = Product(
            id=str(uuid.uuid4()),
            name=kwargs.pop("name", "Lime Tee"),
            price=Decimal(price),
            shipping_cost=Decimal(shipping),
            images=kwargs.pop("images", ["tee.jpg"]),
            inventory=inventory,
            merchant_id=merchant,
            **kwargs,
        )
        db.add(product)
        db.commit()
        return product.id
    return _make


@pytest.fixture
def product_state(db):
    def _state(product_id):
        db.expire_all()
        p = db.get(Product, product_id)
        return {"inventory": p.inventory, "reserved": p.reserved_inventory, "sold": p.sold_count, "status": p.status}
    return _state


@pytest.fixture
def backdate(db):
    """Move an order group's creation time into the past."""
    def _backdate(code, seconds):
        db.execute(
            update(Order)
            .where(Order.code == code)
            .values(created_at=utcnow() - timedelta(seconds=seconds))
        )
        db.commit()
    return _backdate


@pytest.fixture
def fake_stripe(mocker):
    """Stand-in for the Stripe checkout API with just enough state for a session lifecycle."""
    sessions = {}
    counter = {"n": 0}

    def create(**kwargs):
        counter["n"] += 1
        sid = f"cs_test_{counter['n']}"
        sessions[sid] = {
            "id": sid,
            "url": f"https://checkout.stripe.test/{sid}",
            "status": "open",
            "payment_status": "unpaid",
            "payment_intent": f"pi_test_{counter['n']}",
            "expires_at": kwargs["expires_at"],
            "metadata": dict(kwargs["metadata"]),
            "line_items": kwargs["line_items"],
        }
        return dict(sessions[sid])

    def retrieve(sid):
        return dict(sessions[sid])

    def pay(sid):
        sessions[sid].update(status="complete", payment_status="paid")

    def expire(sid):
        sessions[sid].update(status="expired")
        return dict(sessions[sid])

    fake = mocker.Mock()
    fake.sessions = sessions
    fake.pay = pay
    fake.create = mocker.patch("stripe.checkout.Session.create", side_effect=create)
    fake.retrieve = mocker.patch("stripe.checkout.Session.retrieve", side_effect=retrieve)
    fake.refund = mocker.patch("stripe.Refund.create", return_value={"id": "re_test_1", "status": "succeeded"})
    fake.expire = mocker.patch("stripe.checkout.Session.expire", side_effect=expire)
    return fake


@pytest.fixture
def identity():
    return {"user": "user-1"}


@pytest.fixture
def client(TestingSessionLocal, identity):
    fastapi_app.dependency_overrides[verify_token] = lambda: identity["user"]
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()
