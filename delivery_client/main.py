"""
main.py — FastAPI Entry Point for the Delivery Client

This module exposes the order-lifecycle engine as a small local JSON service,
so any front end (terminal, web, kiosk) can drive cart, checkout and payment
tracking without holding state of its own.

Responsibilities:
    • Build the client context at startup (storage, session, backend client,
      cart store, coupon engine, checkout orchestrator, payment trackers)
    • Tear it down at shutdown (every payment tracker stopped, HTTP clients closed)
    • Translate checkout outcomes into HTTP status codes
    • Provide system health information
"""

from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .cart import CartStore
from .checkout import CheckoutOrchestrator, CheckoutOutcome
from .clients import CepClient, DeliveryApiClient, error_message
from .coupons import CouponEngine, CouponHandoff
from .logging_config import get_logger, setup_logging
from .models import PaymentMethod
from .money import format_brl
from .orders import OrderHistory
from .payment_status import PaymentTrackerRegistry
from .session import Session
from .storage import LocalStorage

# Initialization
setup_logging()
log = get_logger(__name__)

OUTCOME_STATUS_CODES = {
    CheckoutOutcome.AWAITING_PAYMENT: 201,
    CheckoutOutcome.COMPLETED: 201,
    CheckoutOutcome.VALIDATION_ERROR: 422,
    CheckoutOutcome.LOGIN_REQUIRED: 401,
    CheckoutOutcome.FAILED: 502,
}


class ClientContext:
    """
    Every long-lived component of the client, constructed once and closed once.
    """
    def __init__(self, storage_path: Optional[str] = None,
                 api_transport: Optional[httpx.AsyncBaseTransport] = None,
                 cep_transport: Optional[httpx.AsyncBaseTransport] = None,
                 api_base_url: Optional[str] = None,
                 open_link=None, poll_interval: Optional[float] = None):
        self.storage = LocalStorage(storage_path)
        self.session = Session(self.storage)
        self.api = DeliveryApiClient(self.session, base_url=api_base_url, transport=api_transport)
        self.cep = CepClient(transport=cep_transport)
        self.cart = CartStore(self.storage)
        self.coupons = CouponEngine(self.api)
        self.handoff = CouponHandoff(self.storage)
        self.trackers = PaymentTrackerRegistry(self.api, self.cart, interval=poll_interval)
        self.history = OrderHistory(self.api, self.cart)
        kwargs = {"open_link": open_link} if open_link is not None else {}
        self.checkout = CheckoutOrchestrator(
            self.api, self.cart, self.coupons, self.session, self.trackers,
            handoff=self.handoff, cep_client=self.cep, **kwargs
        )

    async def aclose(self):
        self.trackers.close_all()
        await self.api.aclose()
        await self.cep.aclose()


# --- Request bodies ---

class AddItemRequest(BaseModel):
    product_id: int
    quantity: int = Field(1, gt=0)
    notes: str = ""


class UpdateItemRequest(BaseModel):
    quantity: int = Field(..., gt=0)
    notes: Optional[str] = None


class CouponRequest(BaseModel):
    code: str


class AddressRequest(BaseModel):
    history_id: Optional[str] = None
    cep: Optional[str] = None
    street: Optional[str] = None
    number: Optional[str] = None
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    complement: Optional[str] = None


class SubmitRequest(BaseModel):
    payment_method: PaymentMethod = PaymentMethod.PIX


class LoginRequest(BaseModel):
    email: str
    password: str


def _ctx(request: Request) -> ClientContext:
    return request.app.state.ctx


def _cart_view(ctx: ClientContext) -> dict:
    return {
        "items": [item.model_dump(mode="json") for item in ctx.cart.items],
        "cart_total": ctx.cart.cart_total,
        "cart_count": ctx.cart.cart_count,
        "cart_total_display": format_brl(ctx.cart.cart_total),
    }


def _checkout_view(ctx: ClientContext) -> dict:
    checkout = ctx.checkout
    coupons = ctx.coupons
    return {
        **checkout.summary(),
        "payment_method": checkout.payment_method.value,
        "coupon": {
            "code": checkout.coupon_code,
            "applied": coupons.applied_coupon.model_dump(mode="json") if coupons.applied_coupon else None,
            "message": coupons.message.model_dump(mode="json") if coupons.message else None,
        },
        "address": {
            "use_new_address": checkout.address.use_new_address,
            "selected_id": checkout.address.selected_id,
            "history": [a.model_dump() for a in checkout.address.history],
            "new_address": checkout.address.new_address.model_dump(),
        },
    }


def _tracker_view(tracker) -> dict:
    return {
        "order_id": tracker.order_id,
        "status": tracker.status.value,
        "polling": tracker.is_polling,
        "payment_link": tracker.payment_link,
    }


def create_app(**context_options) -> FastAPI:
    """
    Builds the FastAPI application.

    Args:
        **context_options: Forwarded to ClientContext at startup (storage path,
            transports, poll interval, link opener).

    Returns:
        FastAPI: The configured application.
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup / Shutdown: lifecycle of the client context
        log.info("Delivery client iniciando...")
        app.state.ctx = ClientContext(**context_options)
        log.info(f"Carrinho com {app.state.ctx.cart.cart_count} item(ns) restaurado.")
        try:
            yield
        finally:
            await app.state.ctx.aclose()
            log.info("Delivery client encerrado.")

    app = FastAPI(title="Delivery Client", lifespan=lifespan)

    # --- Sessão ---

    @app.post("/v1/session")
    async def login(body: LoginRequest, request: Request):
        ctx = _ctx(request)
        try:
            result = await ctx.api.login(body.email, body.password)
        except httpx.HTTPStatusError as e:
            raise HTTPException(status_code=401, detail=error_message(e, "error", default="Login inválido."))
        except httpx.HTTPError:
            raise HTTPException(status_code=502, detail="Erro ao conectar com o servidor.")
        return {"authenticated": True, "user": result.user.model_dump() if result.user else None}

    @app.delete("/v1/session")
    async def logout(request: Request):
        _ctx(request).session.logout()
        return {"authenticated": False}

    # --- Carrinho ---

    @app.get("/v1/cart")
    async def get_cart(request: Request):
        return _cart_view(_ctx(request))

    @app.post("/v1/cart/items", status_code=201)
    async def add_item(body: AddItemRequest, request: Request):
        """
        Adds a catalog product to the cart as a new line.

        Raises:
            HTTPException(404): If the product is not in the current catalog.
            HTTPException(502): If the catalog cannot be fetched.
        """
        ctx = _ctx(request)
        try:
            products = await ctx.api.list_products()
        except (httpx.HTTPError, ValueError):
            raise HTTPException(status_code=502, detail="Não foi possível carregar o cardápio.")
        product = next((p for p in products if p.id == body.product_id), None)
        if product is None:
            raise HTTPException(status_code=404, detail="Produto não encontrado.")
        ctx.cart.add(product, body.quantity, body.notes)
        return _cart_view(ctx)

    @app.patch("/v1/cart/items/{item_id}")
    async def update_item(item_id: str, body: UpdateItemRequest, request: Request):
        ctx = _ctx(request)
        ctx.cart.update(item_id, body.quantity, body.notes)
        return _cart_view(ctx)

    @app.delete("/v1/cart/items/{item_id}")
    async def remove_item(item_id: str, request: Request):
        ctx = _ctx(request)
        ctx.cart.remove(item_id)
        return _cart_view(ctx)

    @app.delete("/v1/cart")
    async def clear_cart(request: Request):
        ctx = _ctx(request)
        ctx.cart.clear()
        return _cart_view(ctx)

    # --- Cupons ---

    @app.get("/v1/coupons")
    async def list_coupons(request: Request):
        try:
            coupons = await _ctx(request).coupons.list_available()
        except (httpx.HTTPError, ValueError):
            raise HTTPException(status_code=502, detail="Não foi possível carregar os cupons.")
        return [
            {**coupon.model_dump(mode="json"), "min_order_text": coupon.min_order_text()}
            for coupon in coupons
        ]

    @app.post("/v1/coupons/{code}/select", status_code=202)
    async def select_coupon(code: str, request: Request):
        """Stores a coupon to be applied automatically on the next checkout entry."""
        _ctx(request).handoff.select(code)
        return {"selected": code.strip().upper()}

    # --- Checkout ---

    @app.get("/v1/checkout")
    async def get_checkout(request: Request):
        return _checkout_view(_ctx(request))

    @app.post("/v1/checkout/enter")
    async def enter_checkout(request: Request):
        ctx = _ctx(request)
        await ctx.checkout.enter()
        return _checkout_view(ctx)

    @app.post("/v1/checkout/coupon")
    async def apply_coupon(body: CouponRequest, request: Request):
        ctx = _ctx(request)
        await ctx.checkout.apply_coupon(body.code)
        return _checkout_view(ctx)

    @app.put("/v1/checkout/address")
    async def set_address(body: AddressRequest, request: Request):
        ctx = _ctx(request)
        selection = ctx.checkout.address
        if body.history_id:
            selection.select_history(body.history_id)
        else:
            fields = body.model_dump(exclude_none=True, exclude={"history_id", "cep"})
            if body.cep is not None:
                await ctx.checkout.lookup_cep(body.cep)
            selection.update_new(**fields)
        return _checkout_view(ctx)

    @app.post("/v1/checkout")
    async def submit_checkout(body: SubmitRequest, request: Request):
        """
        Creates the order from the current checkout state.

        Status codes:
            201: order created (awaiting payment or completed)
            401: login required
            422: address or cart validation failed
            502: backend rejected the order or could not be reached
        """
        result = await _ctx(request).checkout.submit(body.payment_method)
        return JSONResponse(status_code=OUTCOME_STATUS_CODES[result.outcome], content=result.model_dump(mode="json"))

    # --- Pagamento ---

    @app.post("/v1/payments/{order_id}")
    async def track_payment(order_id: int, request: Request):
        """Opens (or re-enters) the payment view of an order; one tracker per order."""
        tracker = _ctx(request).trackers.track(order_id)
        return _tracker_view(tracker)

    @app.get("/v1/payments/{order_id}")
    async def get_payment(order_id: int, request: Request):
        tracker = _ctx(request).trackers.get(order_id)
        if tracker is None:
            raise HTTPException(status_code=404, detail="Pedido sem acompanhamento ativo.")
        return _tracker_view(tracker)

    @app.post("/v1/payments/{order_id}/check")
    async def check_payment(order_id: int, request: Request):
        tracker = _ctx(request).trackers.get(order_id)
        if tracker is None:
            raise HTTPException(status_code=404, detail="Pedido sem acompanhamento ativo.")
        await tracker.check_now()
        return _tracker_view(tracker)

    @app.delete("/v1/payments/{order_id}", status_code=204)
    async def release_payment(order_id: int, request: Request):
        _ctx(request).trackers.release(order_id)

    # --- Pedidos ---

    @app.get("/v1/orders")
    async def list_orders(request: Request):
        orders = await _ctx(request).history.list_orders()
        return [
            {
                **order.model_dump(mode="json"),
                "net_total": order.net_total,
                "net_total_display": format_brl(order.net_total),
                "delivery_text": order.delivery_text(),
            }
            for order in orders
        ]

    @app.post("/v1/orders/{order_id}/repeat")
    async def repeat_order(order_id: int, request: Request):
        ctx = _ctx(request)
        order = await ctx.history.find(order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="Pedido não encontrado.")
        result = await ctx.history.repeat(order)
        return {**result.model_dump(), "cart": _cart_view(ctx)}

    # Health Check Endpoint
    @app.get("/health")
    def health_check():
        """
        Simple health check endpoint.

        Returns:
            dict: A basic JSON object indicating service availability.
        """
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8080)
