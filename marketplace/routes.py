from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from marketplace.auth import verify_seller, verify_token
from marketplace.checkout import CheckoutService
from marketplace.fulfillment import FulfillmentService
from marketplace.notifications import Notifier
from marketplace.orders import OrderService
from marketplace.settlement import SettlementService

router = APIRouter()


class OrderRequest(BaseModel):
    products: str = Field(..., min_length=1)


class CodeRequest(BaseModel):
    code: str = Field(..., min_length=1)


class CheckoutSuccessRequest(BaseModel):
    sessionId: str = Field(..., min_length=1)


class StatusRequest(BaseModel):
    code: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    orderId: Optional[str] = None


def get_notifier(request: Request) -> Notifier:
    return Notifier(request.app.state.registry)


@router.post("/order", status_code=201)
def create_order(body: OrderRequest, user_id: str = Depends(verify_token)):
    result = OrderService().create_order(user_id=user_id, products=body.products)
    return {**result, "isSuccess": True}


@router.get("/order/{code}")
def get_order(code: str, user_id: str = Depends(verify_token)):
    return {**OrderService().get_order_group(code=code, user_id=user_id), "isSuccess": True}


@router.post("/create-checkout-session")
def create_checkout_session(body: CodeRequest, user_id: str = Depends(verify_token)):
    result = CheckoutService().create_checkout_session(code=body.code, user_id=user_id)
    return {**result, "isSuccess": True}


@router.post("/checkout-success")
def checkout_success(
    body: CheckoutSuccessRequest,
    user_id: str = Depends(verify_token),
    notifier: Notifier = Depends(get_notifier),
):
    result = SettlementService(notifier=notifier).settle_checkout(session_id=body.sessionId)
    return {**result, "isSuccess": True}


@router.post("/cash-on-delivery")
def cash_on_delivery(
    body: CodeRequest,
    user_id: str = Depends(verify_token),
    notifier: Notifier = Depends(get_notifier),
):
    result = SettlementService(notifier=notifier).confirm_cash_on_delivery(code=body.code, user_id=user_id)
    return {**result, "isSuccess": True}


@router.get("/seller/orders")
def list_seller_orders(status: Optional[str] = None, merchant_id: str = Depends(verify_seller)):
    orders = FulfillmentService().list_orders(merchant_id=merchant_id, status=status)
    return {"orders": orders, "isSuccess": True}


@router.patch("/seller/orders/status")
def update_order_status(
    body: StatusRequest,
    merchant_id: str = Depends(verify_seller),
    notifier: Notifier = Depends(get_notifier),
):
    result = FulfillmentService(notifier=notifier).update_status(
        merchant_id=merchant_id, code=body.code, status=body.status, order_id=body.orderId
    )
    return {**result, "isSuccess": True}
