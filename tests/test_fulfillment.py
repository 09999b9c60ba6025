import itertools

import pytest
from sqlalchemy import select, update

from marketplace.errors import ConflictError, InvalidTransitionError, NotFoundError
from marketplace.fulfillment import FulfillmentService, can_transition, check_transition
from marketplace.models import Order, OrderStatus, Product
from marketplace.orders import OrderService
from marketplace.settlement import SettlementService

ALLOWED = {
    ("pending", "processing"),
    ("pending", "cancel"),
    ("processing", "confirm"),
    ("processing", "cancel"),
    ("confirm", "delivery"),
    ("confirm", "cancel"),
    ("delivery", "success"),
    ("delivery", "cancel"),
    ("cancel", "confirm"),
}
SELLER_STATES = ["pending", "processing", "confirm", "delivery", "success", "cancel"]
OTHER_STATES = ["expired", "refund", "refund_failed", "bogus"]


@pytest.mark.parametrize(
    "current, requested", list(itertools.product(SELLER_STATES + OTHER_STATES, repeat=2))
)
def test_transition_table_is_exact(current, requested):
    assert can_transition(current, requested) == ((current, requested) in ALLOWED)
    if (current, requested) not in ALLOWED:
        with pytest.raises(InvalidTransitionError) as exc:
            check_transition(current, requested)
        assert exc.value.current == current
        assert exc.value.requested == requested
        assert current in exc.value.message and requested in exc.value.message


def test_order_placed_behaves_as_pending():
    assert can_transition(OrderStatus.ORDER_PLACED, OrderStatus.PROCESSING)
    assert not can_transition(OrderStatus.ORDER_PLACED, OrderStatus.CONFIRM)


@pytest.fixture
def placed(make_product):
    """A cash-on-delivery group for seller-1: 2 units, 3 left on the shelf."""
    pid = make_product(inventory=5, cash_on_delivery=True)
    code = OrderService().create_order(user_id="user-1", products=f"2_{pid}")["code"]
    SettlementService().confirm_cash_on_delivery(code=code, user_id="user-1")
    return code, pid


def status_of(db, code):
    db.expire_all()
    return {o.status for o in db.execute(select(Order).where(Order.code == code)).scalars()}


def test_full_fulfillment_path(placed, db, product_state):
    code, pid = placed
    service = FulfillmentService()

    service.update_status(merchant_id="seller-1", code=code, status="processing")
    assert product_state(pid)["inventory"] == 3

    result = service.update_status(merchant_id="seller-1", code=code, status="confirm")
    assert result["updated"] == 1
    assert product_state(pid)["inventory"] == 1

    service.update_status(merchant_id="seller-1", code=code, status="delivery")
    service.update_status(merchant_id="seller-1", code=code, status="success")
    assert status_of(db, code) == {"success"}
    assert product_state(pid)["inventory"] == 1


def test_cancel_after_confirm_restocks_and_reconfirm_takes_again(placed, product_state):
    code, pid = placed
    service = FulfillmentService()
    service.update_status(merchant_id="seller-1", code=code, status="processing")
    service.update_status(merchant_id="seller-1", code=code, status="confirm")
    assert product_state(pid)["inventory"] == 1

    service.update_status(merchant_id="seller-1", code=code, status="cancel")
    assert product_state(pid)["inventory"] == 3

    service.update_status(merchant_id="seller-1", code=code, status="confirm")
    assert product_state(pid)["inventory"] == 1


def test_cancel_before_confirm_leaves_stock(placed, product_state):
    code, pid = placed
    FulfillmentService().update_status(merchant_id="seller-1", code=code, status="cancel")

    assert product_state(pid)["inventory"] == 3


def test_invalid_transition_changes_nothing(placed, db, product_state):
    code, pid = placed

    with pytest.raises(InvalidTransitionError):
        FulfillmentService().update_status(merchant_id="seller-1", code=code, status="delivery")

    assert status_of(db, code) == {OrderStatus.ORDER_PLACED}
    assert product_state(pid)["inventory"] == 3


def test_confirm_needs_stock(placed, db):
    code, pid = placed
    service = FulfillmentService()
    service.update_status(merchant_id="seller-1", code=code, status="processing")
    db.execute(update(Product).where(Product.id == pid).values(inventory=1))
    db.commit()

    with pytest.raises(ConflictError):
        service.update_status(merchant_id="seller-1", code=code, status="confirm")

    assert status_of(db, code) == {"processing"}


def test_single_line_can_move_on_its_own(make_product, db):
    a = make_product(inventory=5, cash_on_delivery=True)
    b = make_product(inventory=5, cash_on_delivery=True)
    code = OrderService().create_order(user_id="user-1", products=f"1_{a}#1_{b}")["code"]
    SettlementService().confirm_cash_on_delivery(code=code, user_id="user-1")
    line = db.execute(select(Order).where(Order.code == code, Order.product_id == a)).scalar_one()

    FulfillmentService().update_status(merchant_id="seller-1", code=code, status="processing", order_id=line.id)

    assert status_of(db, code) == {"processing", OrderStatus.ORDER_PLACED}


def test_other_sellers_orders_are_invisible(placed, make_seller):
    code, _ = placed
    make_seller("seller-2")

    with pytest.raises(NotFoundError):
        FulfillmentService().update_status(merchant_id="seller-2", code=code, status="processing")


def test_unsettled_orders_cannot_be_fulfilled(make_product):
    pid = make_product()
    code = OrderService().create_order(user_id="user-1", products=f"1_{pid}")["code"]

    with pytest.raises(ConflictError):
        FulfillmentService().update_status(merchant_id="seller-1", code=code, status="processing")


def test_list_orders_filters_by_status(placed):
    code, _ = placed
    service = FulfillmentService()

    assert [o["code"] for o in service.list_orders(merchant_id="seller-1")] == [code]
    assert service.list_orders(merchant_id="seller-1", status="delivery") == []
