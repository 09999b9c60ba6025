import logging

import anyio
import stripe
import uvicorn
from fastapi import FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from marketplace.auth import user_from_token
from marketplace.config import settings
from marketplace.database import Base, engine
from marketplace.errors import InternalError, MarketplaceError, PaymentError
from marketplace.notifications import ConnectionRegistry, Notifier
from marketplace.routes import router
from marketplace.settlement import SettlementService
from marketplace.stripe_service import construct_event

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Marketplace Checkout Service")
app.state.registry = ConnectionRegistry()

app.include_router(router)

Base.metadata.create_all(bind=engine)

SETTLING_EVENTS = {"checkout.session.completed", "checkout.session.async_payment_succeeded"}


def envelope(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "message": message,
            "status": "error" if status_code >= 500 else "fail",
            "isSuccess": False,
        },
    )


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.error("request.failed path=%s error=%s", request.url.path, exc.message, exc_info=exc)
        return envelope(InternalError.default_message, exc.status_code)
    return envelope(exc.message, exc.status_code)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return envelope(str(exc.detail), exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = f"Invalid {field}" if field else "Invalid request"
    return envelope(message, 400)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("request.database_error path=%s", request.url.path, exc_info=exc)
    return envelope(InternalError.default_message, 500)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("request.unhandled path=%s", request.url.path, exc_info=exc)
    return envelope(InternalError.default_message, 500)


@app.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
    payload = await request.body()

    try:
        event = construct_event(payload, stripe_signature)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.error.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    if event["type"] in SETTLING_EVENTS:
        session_id = event["data"]["object"]["id"]
        service = SettlementService(notifier=Notifier(app.state.registry))
        try:
            result = await run_in_threadpool(service.settle_checkout, session_id=session_id)
            logger.info("webhook.settled session=%s status=%s", session_id, result["status"])
        except PaymentError as exc:
            # Not paid yet; a later event settles it
            logger.info("webhook.skipped session=%s reason=%s", session_id, exc.message)

    return {"ok": True}


@app.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket, token: str):
    try:
        user_id = user_from_token(token)
    except HTTPException:
        await websocket.close(code=4401)
        return
    await websocket.accept()

    def send(event: str, payload: dict) -> None:
        # Called from request worker threads
        anyio.from_thread.run(websocket.send_json, {"event": event, "data": payload})

    registry = app.state.registry
    registry.connect(user_id, send)
    await websocket.send_json({"event": "connected", "data": {"userId": user_id}})
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        registry.disconnect(user_id, send)


def serve() -> None:
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    serve()
