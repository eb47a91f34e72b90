"""
checkout.py — Checkout Orchestrator

Turns {cart, delivery address, coupon, payment method} into one create_order
request, submits it and decides what happens next.

Workflow Overview:
1. enter(): load the customer's last delivery addresses and apply a coupon handed
   over from the promotions listing (validated once)
2. Resolve the delivery address (fresh structured form or historical free text)
3. Build and submit the create_order payload
4. Route on the response:
     - PIX/CARD with a payment link → open the link, start payment tracking (cart kept)
     - CASH → clear the cart, order completed
     - online method without link → degraded success, clear the cart
     - failure → message for the user, cart and coupon untouched

Validation problems are caught locally and never reach the network. Remote and
transport errors are converted into a CheckoutResult at this boundary.
"""

import logging
import re
import webbrowser
from enum import Enum
from typing import Callable, List, Optional

import httpx
from pydantic import BaseModel

from .cart import CartStore
from .clients import CepClient, DeliveryApiClient, error_message
from .coupons import CouponEngine, CouponHandoff
from .models import (
    CreateOrderRequest,
    HistoricalAddress,
    LastAddress,
    NewAddress,
    OrderItemPayload,
    PaymentMethod,
    ZipcodeAddress,
)
from .money import clamp_non_negative, format_brl
from .payment_status import PaymentStatusTracker, PaymentTrackerRegistry
from .session import Session

log = logging.getLogger(__name__)

ADDRESS_PREFIX = "Endereço: "
_PREFIX_RE = re.compile(r"^Endereço:\s*", re.IGNORECASE)

MSG_MISSING_FIELDS = "Por favor, preencha todos os campos obrigatórios do endereço."
MSG_INVALID_HISTORY = "Endereço selecionado inválido."
MSG_EMPTY_CART = "Seu carrinho está vazio."
MSG_LOGIN_REQUIRED = "Faça login para finalizar o pedido."
MSG_ORDER_FAILED = "Erro ao criar pedido."


class CheckoutValidationError(Exception):
    """Input problem detected before any network call."""


class CheckoutOutcome(str, Enum):
    VALIDATION_ERROR = "validation_error"
    LOGIN_REQUIRED = "login_required"
    AWAITING_PAYMENT = "awaiting_payment"
    COMPLETED = "completed"
    FAILED = "failed"


class CheckoutResult(BaseModel):
    outcome: CheckoutOutcome
    order_id: Optional[int] = None
    payment_link: Optional[str] = None
    message: Optional[str] = None
    degraded: bool = False


class ResolvedAddress(BaseModel):
    notes: str
    street: str = ""
    number: str = ""
    neighborhood: str = ""
    city: str = ""
    state: str = ""
    complement: str = ""


def strip_address_prefix(text: str) -> str:
    return _PREFIX_RE.sub("", text or "", count=1)


def format_address_notes(address: NewAddress) -> str:
    """
    'Endereço: {street}, {number} - {neighborhood}, {city}/{state}, CEP: {cep}[ - Comp: {complement}]'
    """
    line = (f"{ADDRESS_PREFIX}{address.street}, {address.number} - {address.neighborhood}, "
            f"{address.city}/{address.state}, CEP: {address.cep}")
    if address.complement:
        line += f" - Comp: {address.complement}"
    return line


def history_address_notes(text: str) -> str:
    return text if text.startswith(ADDRESS_PREFIX.strip()) else f"{ADDRESS_PREFIX}{text}"


def historical_addresses(entries: List[LastAddress]) -> List[HistoricalAddress]:
    """Maps list_last_addresses entries to display addresses, dropping empty ones."""
    addresses = []
    for entry in entries:
        if not (entry.delivery_address or "").strip():
            continue
        addresses.append(HistoricalAddress(
            id=f"last-{entry.id}",
            text=strip_address_prefix(entry.delivery_address),
            created_at=entry.created_at,
        ))
    return addresses


class AddressSelection:
    """
    Delivery address state of the checkout: either the fresh form or one historical entry.

    Switching to the fresh form resets it; switching to a historical entry drops the
    fresh form's in-progress edits.
    """

    def __init__(self):
        self.history: List[HistoricalAddress] = []
        self.use_new_address = True
        self.selected_id: Optional[str] = None
        self.new_address = NewAddress()

    def load_history(self, addresses: List[HistoricalAddress]):
        self.history = addresses
        if addresses:
            # Com histórico, o mais recente vem selecionado
            self.use_new_address = False
            self.selected_id = addresses[0].id

    def select_history(self, address_id: str):
        self.use_new_address = False
        self.selected_id = address_id
        self.new_address = NewAddress()

    def use_new(self):
        self.use_new_address = True
        self.selected_id = None
        self.new_address = NewAddress()

    def update_new(self, **fields) -> NewAddress:
        self.use_new_address = True
        self.selected_id = None
        self.new_address = self.new_address.model_copy(update=fields)
        return self.new_address

    def selected(self) -> Optional[HistoricalAddress]:
        return next((a for a in self.history if a.id == self.selected_id), None)

    def resolve(self) -> ResolvedAddress:
        """
        Returns the notes line and structured delivery fields for the order.

        Raises:
            CheckoutValidationError: Required fields missing, or no valid historical selection.
        """
        if self.use_new_address:
            address = self.new_address
            missing = address.missing_fields()
            if missing:
                log.info(f"Endereço incompleto, campos faltando: {', '.join(missing)}")
                raise CheckoutValidationError(MSG_MISSING_FIELDS)
            return ResolvedAddress(
                notes=format_address_notes(address),
                street=address.street,
                number=address.number,
                neighborhood=address.neighborhood,
                city=address.city,
                state=address.state,
                complement=address.complement,
            )

        chosen = self.selected()
        if chosen is None:
            raise CheckoutValidationError(MSG_INVALID_HISTORY)
        # Histórico guarda só o texto livre; ele vai também no campo de rua
        return ResolvedAddress(notes=history_address_notes(chosen.text), street=chosen.text)


class CheckoutOrchestrator:
    """
    Checkout state and order submission for the current cart.

    Args:
        api (DeliveryApiClient): Backend client.
        cart (CartStore): Shared cart store.
        coupons (CouponEngine): Coupon state of this checkout.
        session (Session): Used to require a login before submission.
        trackers (PaymentTrackerRegistry): Starts payment tracking for online orders.
        handoff (Optional[CouponHandoff]): Source of a coupon picked in the promotions listing.
        cep_client (Optional[CepClient]): Postal-code autofill.
        open_link (Callable[[str], object]): Opens the payment page (default: new browser tab).
    """

    def __init__(self, api: DeliveryApiClient, cart: CartStore, coupons: CouponEngine, session: Session,
                 trackers: PaymentTrackerRegistry, handoff: Optional[CouponHandoff] = None,
                 cep_client: Optional[CepClient] = None,
                 open_link: Callable[[str], object] = webbrowser.open_new_tab):
        self.api = api
        self.cart = cart
        self.coupons = coupons
        self.session = session
        self.trackers = trackers
        self.handoff = handoff
        self.cep_client = cep_client
        self.open_link = open_link
        self.address = AddressSelection()
        self.payment_method = PaymentMethod.PIX
        self.coupon_code = ""

    # --- Totais ---

    @property
    def subtotal(self) -> int:
        return self.cart.cart_total

    @property
    def discount(self) -> int:
        return self.coupons.discount

    @property
    def final_total(self) -> int:
        """Advisory total shown to the user; the backend computes the real charge."""
        return clamp_non_negative(self.subtotal - self.discount)

    def summary(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "discount": self.discount,
            "final_total": self.final_total,
            "subtotal_display": format_brl(self.subtotal),
            "discount_display": format_brl(self.discount),
            "final_total_display": format_brl(self.final_total),
        }

    # --- Entrada no checkout ---

    async def enter(self):
        """Loads the address history and applies a handed-over coupon."""
        await self.load_address_history()
        if self.handoff is not None:
            code = self.handoff.consume()
            if code:
                log.info(f"Aplicando cupom selecionado na listagem: {code}")
                await self.apply_coupon(code)

    async def load_address_history(self) -> List[HistoricalAddress]:
        if not self.session.is_authenticated:
            return []
        try:
            entries = await self.api.list_last_addresses()
        except (httpx.HTTPError, ValueError) as e:
            log.error(f"Falha ao carregar histórico de endereços: {e!r}")
            return []
        addresses = historical_addresses(entries)
        self.address.load_history(addresses)
        return addresses

    async def apply_coupon(self, code: Optional[str] = None) -> bool:
        if code is not None:
            self.coupon_code = code.strip().upper()
        return await self.coupons.validate(self.coupon_code, self.subtotal)

    async def lookup_cep(self, cep: str) -> Optional[ZipcodeAddress]:
        """Autofills street, neighborhood, city and state of the fresh address form."""
        self.address.update_new(cep=cep)
        if self.cep_client is None:
            return None
        found = await self.cep_client.lookup(cep)
        if found is not None:
            self.address.update_new(
                street=found.street,
                neighborhood=found.neighborhood,
                city=found.city,
                state=found.state,
            )
        return found

    # --- Envio ---

    def build_order_request(self, payment_method: Optional[PaymentMethod] = None) -> CreateOrderRequest:
        """
        Assembles the create_order payload from the current state.

        Raises:
            CheckoutValidationError: Empty cart or unresolved address.
        """
        if self.cart.is_empty():
            raise CheckoutValidationError(MSG_EMPTY_CART)
        resolved = self.address.resolve()
        return CreateOrderRequest(
            items=[
                OrderItemPayload(product_id=item.product.id, quantity=item.quantity, notes=item.notes)
                for item in self.cart.items
            ],
            notes=resolved.notes,
            payment_method=payment_method or self.payment_method,
            coupon_code=self.coupons.applied_code,
            delivery_address=resolved.street,
            delivery_number=resolved.number,
            delivery_neighborhood=resolved.neighborhood,
            delivery_city=resolved.city,
            delivery_state=resolved.state,
            delivery_complement=resolved.complement,
        )

    async def submit(self, payment_method: Optional[PaymentMethod] = None) -> CheckoutResult:
        """
        Validates, creates the order and routes on the response.

        Args:
            payment_method (Optional[PaymentMethod]): Overrides the selected method.
        Returns:
            CheckoutResult: Outcome, order id, payment link and user message.
        """
        method = PaymentMethod(payment_method or self.payment_method)
        self.payment_method = method

        if not self.session.is_authenticated:
            return CheckoutResult(outcome=CheckoutOutcome.LOGIN_REQUIRED, message=MSG_LOGIN_REQUIRED)
        try:
            request = self.build_order_request(method)
        except CheckoutValidationError as e:
            return CheckoutResult(outcome=CheckoutOutcome.VALIDATION_ERROR, message=str(e))

        log.info(f"Criando pedido: {len(request.items)} item(ns), pagamento {method.value}, "
                 f"cupom {request.coupon_code or '-'}.")
        try:
            response = await self.api.create_order(request)
        except httpx.HTTPStatusError as e:
            message = error_message(e, "payment_error", "error", default=MSG_ORDER_FAILED)
            return CheckoutResult(outcome=CheckoutOutcome.FAILED, message=message)
        except (httpx.HTTPError, ValueError) as e:
            log.error(f"Falha ao criar pedido: {e!r}")
            return CheckoutResult(outcome=CheckoutOutcome.FAILED, message=MSG_ORDER_FAILED)

        if not response.success or response.order_id is None:
            message = response.payment_error or response.error or MSG_ORDER_FAILED
            log.warning(f"Pedido recusado pelo servidor: {message}")
            return CheckoutResult(outcome=CheckoutOutcome.FAILED, message=message)

        return self._route(method, response.order_id, response.payment_url)

    def _route(self, method: PaymentMethod, order_id: int, link: Optional[str]) -> CheckoutResult:
        log_prefix = f"[Order: {order_id}]"

        if link and method.is_online:
            log.info(f"{log_prefix} Pedido criado. Aguardando pagamento {method.value}.")
            try:
                self.open_link(link)
            except webbrowser.Error as e:
                log.warning(f"{log_prefix} Não foi possível abrir o link de pagamento: {e}")
            self.trackers.track(order_id, link)
            return CheckoutResult(outcome=CheckoutOutcome.AWAITING_PAYMENT, order_id=order_id, payment_link=link)

        degraded = method.is_online
        if degraded:
            log.warning(f"{log_prefix} Nenhum link de pagamento retornado para {method.value}. Seguindo para o histórico.")
        else:
            log.info(f"{log_prefix} Pedido em dinheiro criado.")
        self.cart.clear()
        self.coupons.clear()
        return CheckoutResult(outcome=CheckoutOutcome.COMPLETED, order_id=order_id, degraded=degraded)

    def tracker_for(self, order_id: int) -> Optional[PaymentStatusTracker]:
        return self.trackers.get(order_id)
