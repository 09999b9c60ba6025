import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from marketplace.database import utcnow
from marketplace.errors import ConflictError, NotFoundError, ValidationError
from marketplace.jobs import JobQueue, ORDER_EXPIRATION_QUEUE, order_job_id
from marketplace.models import Order, OrderStatus, ScheduledJob
from marketplace.orders import OrderService, parse_products


def test_parse_products_merges_duplicates():
    a, b = str(uuid.uuid4()), str(uuid.uuid4())

    assert parse_products(f"2_{a}#1_{b}#3_{a}") == [(a, 5), (b, 1)]


@pytest.mark.parametrize("raw", ["", "   ", "2", "0_x", "-1_abc", "two_abc"])
def test_parse_products_rejects_malformed_entries(raw):
    with pytest.raises(ValidationError):
        parse_products(raw)


def test_parse_products_rejects_malformed_ids():
    with pytest.raises(ValidationError, match="Invalid Product Id"):
        parse_products("2_not-an-id")


def test_create_order_returns_total_in_major_units(make_product, db, product_state):
    pid = make_product(price="10.00", shipping="1.00", inventory=5)

    result = OrderService().create_order(user_id="user-1", products=f"2_{pid}")

    assert result["total"] == 22.0
    assert result["discount"] == 0
    assert result["orderCount"] == 1
    assert result["code"].startswith("ORD-")

    orders = db.execute(select(Order).where(Order.code == result["code"])).scalars().all()
    assert len(orders) == 1
    assert orders[0].status == OrderStatus.PENDING
    assert orders[0].inventory_reserved is False
    assert orders[0].is_paid is False
    assert orders[0].quantity == 2
    # Creating the order does not touch stock
    assert product_state(pid)["inventory"] == 5
    assert product_state(pid)["reserved"] == 0


def test_create_order_uses_minor_unit_arithmetic(make_product):
    pid = make_product(price="0.10", shipping="0.20", inventory=10)

    result = OrderService().create_order(user_id="user-1", products=f"3_{pid}")

    assert result["total"] == 0.9


def test_create_order_schedules_expiry_job(make_product, db):
    pid = make_product()
    before = utcnow()

    result = OrderService().create_order(user_id="user-1", products=f"1_{pid}")

    job = db.get(ScheduledJob, order_job_id(result["code"]))
    assert job is not None
    assert job.queue == ORDER_EXPIRATION_QUEUE
    assert job.payload == {"code": result["code"]}
    assert job.status == "queued"
    assert before + timedelta(minutes=5) <= job.run_at <= utcnow() + timedelta(minutes=5)


def test_create_order_lists_missing_products(make_product, db):
    pid = make_product()
    ghost = str(uuid.uuid4())

    with pytest.raises(NotFoundError) as exc:
        OrderService().create_order(user_id="user-1", products=f"1_{pid}#1_{ghost}")

    assert ghost in exc.value.message
    assert db.execute(select(Order)).first() is None


def test_create_order_rejects_quantity_above_inventory(make_product, db):
    pid = make_product(inventory=2, name="Lime Cap")

    with pytest.raises(ConflictError, match="Lime Cap"):
        OrderService().create_order(user_id="user-1", products=f"3_{pid}")

    assert db.execute(select(Order)).first() is None
    assert db.execute(select(ScheduledJob)).first() is None


def test_failed_enqueue_aborts_the_whole_order(make_product, db, mocker):
    pid = make_product()
    mocker.patch.object(JobQueue, "add", side_effect=SQLAlchemyError("queue unavailable"))

    with pytest.raises(SQLAlchemyError):
        OrderService().create_order(user_id="user-1", products=f"1_{pid}")

    assert db.execute(select(Order)).first() is None


def test_rescheduling_same_job_id_replaces_it(TestingSessionLocal, db):
    queue = JobQueue(ORDER_EXPIRATION_QUEUE)
    with TestingSessionLocal() as s:
        queue.add(s, "order:ORD-1", {"code": "ORD-1"}, timedelta(minutes=5))
        s.commit()
    with TestingSessionLocal() as s:
        queue.add(s, "order:ORD-1", {"code": "ORD-1"}, timedelta(minutes=10))
        s.commit()

    jobs = db.execute(select(ScheduledJob)).scalars().all()
    assert len(jobs) == 1
    assert jobs[0].run_at > utcnow() + timedelta(minutes=9)


def test_get_order_group_is_scoped_to_owner(make_product):
    pid = make_product()
    service = OrderService()
    code = service.create_order(user_id="user-1", products=f"2_{pid}")["code"]

    group = service.get_order_group(code=code, user_id="user-1")
    assert group["total"] == 22.0
    assert group["totalShipping"] == 2.0
    assert group["items"][0]["quantity"] == 2

    with pytest.raises(NotFoundError):
        service.get_order_group(code=code, user_id="someone-else")
