"""
models.py — Data Models for the Delivery Client

This module defines the data structures exchanged with the delivery backend
and held by the client. Pydantic models give type safety and validation for
every payload coming from the remote service.

Models:
    - Product / Category: Catalog snapshots.
    - CartItem: One cart line (product snapshot, quantity, notes).
    - Coupon / CouponValidationResponse: Coupon descriptors and validation results.
    - NewAddress / HistoricalAddress / LastAddress / ZipcodeAddress: Delivery address forms.
    - CreateOrderRequest / CreateOrderResponse: Order creation payloads.
    - Order / OrderItem / Billing: Order history records.
    - CheckStatusResponse: Payment status polling payload.
    - User / LoginResponse: Session data.

All money fields are integers in cents.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta
from decimal import InvalidOperation
from enum import Enum
from typing import Any, ClassVar, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from .money import format_brl, to_cents

log = logging.getLogger(__name__)

DELIVERED_AFTER = timedelta(hours=3)
DELIVERY_WINDOW = (timedelta(minutes=30), timedelta(minutes=60))

_datetime_adapter = TypeAdapter(datetime)


class PaymentMethod(str, Enum):
    PIX = "PIX"
    CARD = "CARD"
    CASH = "CASH"

    @property
    def is_online(self) -> bool:
        return self in (PaymentMethod.PIX, PaymentMethod.CARD)


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class PaymentStatus(str, Enum):
    """
    Normalized (lower-case) payment/billing status of an order.

    Accepting states: paid, completed, approved.
    Rejecting states: cancelled, expired, refunded.
    Everything else is treated as pending.
    """
    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    APPROVED = "approved"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"

    @classmethod
    def parse(cls, raw: Any) -> Optional["PaymentStatus"]:
        """
        Case-folds a raw status value.

        Args:
            raw (Any): Status as sent by the backend ('PAID', 'paid', None, ...).

        Returns:
            Optional[PaymentStatus]: None for a missing/empty value, PENDING for an
            unknown one, otherwise the matching member.
        """
        if raw is None:
            return None
        text = str(raw).strip().lower()
        if not text:
            return None
        try:
            return cls(text)
        except ValueError:
            log.debug(f"Status desconhecido '{raw}' tratado como pendente.")
            return cls.PENDING

    @property
    def is_accepting(self) -> bool:
        return self in ACCEPTING_STATUSES

    @property
    def is_rejecting(self) -> bool:
        return self in REJECTING_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.is_accepting or self.is_rejecting


ACCEPTING_STATUSES = frozenset({PaymentStatus.PAID, PaymentStatus.COMPLETED, PaymentStatus.APPROVED})
REJECTING_STATUSES = frozenset({PaymentStatus.CANCELLED, PaymentStatus.EXPIRED, PaymentStatus.REFUNDED})


def effective_status(status: Any, billing: Any = None) -> Optional[PaymentStatus]:
    """Prefers the nested billing status over the order's own status field."""
    billing_status = None
    if isinstance(billing, Billing):
        billing_status = billing.status
    elif isinstance(billing, dict):
        billing_status = billing.get("status")
    return PaymentStatus.parse(billing_status) or PaymentStatus.parse(status)


# --- Catalog ---

class Category(BaseModel):
    id: int
    name: str
    product_count: Optional[int] = None


class Product(BaseModel):
    """
    Catalog product snapshot. Immutable once fetched.

    Attributes:
        id (int): Product identifier in the backend.
        name (str): Display name.
        description (str): Free-text description.
        price (int): Unit price in cents.
        category_id (Optional[int]): Category reference.
        category_name (Optional[str]): Category display name.
        image_url (Optional[str]): Image reference.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: str = ""
    price: int = Field(..., ge=0)
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    image_url: Optional[str] = None

    @field_validator("description", mode="before")
    @classmethod
    def _none_description(cls, value):
        return value or ""


# --- Cart ---

class CartItem(BaseModel):
    """
    One cart line.

    The item_id is generated locally and is distinct from the product id: the same
    product may appear in several lines with different quantities or notes.

    Attributes:
        item_id (str): Locally generated unique identifier.
        product (Product): Product snapshot frozen at add-time.
        quantity (int): Positive quantity.
        notes (str): Free-text notes, may be empty.
    """
    model_config = ConfigDict(validate_assignment=True)

    item_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    product: Product
    quantity: int = Field(..., gt=0)
    notes: str = ""

    @property
    def subtotal(self) -> int:
        return self.product.price * self.quantity


# --- Coupons ---

class Coupon(BaseModel):
    """
    Coupon descriptor as issued by the backend.

    Attributes:
        code (str): Coupon code, canonically upper-case.
        type (DiscountType): PERCENTAGE or FIXED.
        value (float): Percentage points (PERCENTAGE) or cents (FIXED).
        min_order_value (Optional[int]): Minimum order in cents (validate_coupon).
        min_order_display (Optional[Union[float, str]]): Minimum order in BRL units (list_coupons).
        usage_status (Optional[str]): Usage-limit status text.
        description (Optional[str]): Human description.
    """
    id: Optional[int] = None
    code: str
    type: DiscountType
    value: float = 0
    min_order_value: Optional[int] = None
    description: Optional[str] = None
    discount_display: Optional[str] = None
    min_order_display: Optional[Union[float, str]] = None
    usage_status: Optional[str] = None

    @field_validator("code")
    @classmethod
    def _canonical_code(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("type", mode="before")
    @classmethod
    def _upper_type(cls, value):
        return value.upper() if isinstance(value, str) else value

    def min_order_cents(self) -> int:
        if self.min_order_display is not None:
            try:
                return to_cents(str(self.min_order_display).replace(",", "."))
            except InvalidOperation:
                log.warning(f"Valor mínimo inválido no cupom {self.code}: {self.min_order_display!r}")
                return 0
        if self.min_order_value is not None:
            return self.min_order_value
        return 0

    def min_order_text(self) -> str:
        minimum = self.min_order_cents()
        if minimum <= 0:
            return "Sem valor mínimo"
        return f"Mínimo: {format_brl(minimum)}"


class CouponValidationResponse(BaseModel):
    valid: bool = False
    coupon: Optional[Coupon] = None
    discount: Optional[int] = None
    final_total: Optional[int] = None
    message: Optional[str] = None


# --- Addresses ---

class NewAddress(BaseModel):
    """
    Structured delivery address typed in by the user.

    Fields default to empty strings because the form is edited incrementally;
    missing_fields() tells what still blocks the checkout.
    """
    REQUIRED_FIELDS: ClassVar[Tuple[str, ...]] = ("cep", "street", "number", "neighborhood", "city", "state")

    cep: str = ""
    street: str = ""
    number: str = ""
    neighborhood: str = ""
    city: str = ""
    state: str = ""
    complement: str = ""

    def missing_fields(self) -> List[str]:
        return [name for name in self.REQUIRED_FIELDS if not getattr(self, name).strip()]


class LastAddress(BaseModel):
    """Entry of list_last_addresses: the free-form notes text of a previous order."""
    id: int
    delivery_address: Optional[str] = ""
    created_at: Optional[str] = None


class HistoricalAddress(BaseModel):
    """
    Previously used address, kept only as display text (without the 'Endereço: ' marker).
    """
    id: str
    text: str
    created_at: Optional[str] = None


class ZipcodeAddress(BaseModel):
    """Postal-code lookup result (BrasilAPI CEP v1)."""
    cep: str = ""
    street: str = ""
    neighborhood: str = ""
    city: str = ""
    state: str = ""

    @field_validator("cep", "street", "neighborhood", "city", "state", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or ""


# --- Orders ---

class OrderItemPayload(BaseModel):
    product_id: int
    quantity: int = Field(..., gt=0)
    notes: str = ""


class CreateOrderRequest(BaseModel):
    """
    Body of the create_order action.

    Attributes:
        items (List[OrderItemPayload]): Cart lines, 1:1.
        notes (str): Serialized delivery address line ('Endereço: ...').
        payment_method (PaymentMethod): PIX, CARD or CASH.
        coupon_code (Optional[str]): Applied coupon code or None.
        delivery_* (str): Structured delivery fields; empty for historical addresses
            except delivery_address, which carries the free-form text.
    """
    items: List[OrderItemPayload]
    notes: str
    payment_method: PaymentMethod
    coupon_code: Optional[str] = None
    delivery_address: str = ""
    delivery_number: str = ""
    delivery_neighborhood: str = ""
    delivery_city: str = ""
    delivery_state: str = ""
    delivery_complement: str = ""


class PaymentInfo(BaseModel):
    billing_id: Optional[str] = None
    url: Optional[str] = None
    qr_code: Optional[str] = None
    status: Optional[str] = None


class CreateOrderResponse(BaseModel):
    success: bool = False
    order_id: Optional[int] = None
    total: Optional[int] = None
    final_total: Optional[int] = None
    discount: Optional[int] = None
    payment_link: Optional[str] = None
    billing_id: Optional[str] = None
    payment: Optional[PaymentInfo] = None
    error: Optional[str] = None
    payment_error: Optional[str] = None

    @property
    def payment_url(self) -> Optional[str]:
        if self.payment and self.payment.url:
            return self.payment.url
        return self.payment_link or None


class OrderItem(BaseModel):
    """
    Line of a past order. product_id may be null for products removed from the
    catalog; such lines are kept and reported as unavailable on repeat.
    """
    id: Optional[int] = None
    product_id: Optional[int] = None
    name: str = ""
    product_name: Optional[str] = None
    image_url: Optional[str] = None
    quantity: int = Field(..., gt=0)
    price: int = 0
    notes: Optional[str] = ""

    @property
    def display_name(self) -> str:
        return self.product_name or self.name


class Billing(BaseModel):
    status: Optional[str] = None
    billing_id: Optional[str] = None
    url: Optional[str] = None


class Order(BaseModel):
    """
    Order as returned by list_orders.

    The effective status (billing status first, then the order status) is derived
    once when the record is ingested and stored in effective_status.

    Attributes:
        total (int): Gross total in cents (before discount).
        discount (int): Discount in cents.
        items (List[OrderItem]): Line items; the backend may send them as a JSON string.
        notes (Optional[str]): Carries the serialized delivery address.
    """
    id: int
    user_id: Optional[int] = None
    total: int = 0
    discount: int = 0
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    coupon_code: Optional[str] = None
    notes: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)
    billing: Optional[Billing] = None
    effective_status: PaymentStatus = PaymentStatus.PENDING

    @field_validator("discount", mode="before")
    @classmethod
    def _none_discount(cls, value):
        return value or 0

    @field_validator("items", mode="before")
    @classmethod
    def _parse_items(cls, value):
        if not value:
            return []
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError as e:
                log.error(f"Itens do pedido corrompidos, ignorando: {e}")
                return []
        if not isinstance(value, list):
            log.error(f"Itens do pedido em formato inesperado: {type(value).__name__}")
            return []

        items = []
        for raw in value:
            try:
                items.append(OrderItem.model_validate(raw))
            except ValidationError as e:
                log.error(f"Item de pedido inválido ignorado: {e.error_count()} erro(s) - {raw!r:.200}")
        return items

    @field_validator("created_at", mode="before")
    @classmethod
    def _tolerant_created_at(cls, value):
        if value in (None, ""):
            return None
        try:
            return _datetime_adapter.validate_python(value)
        except ValidationError:
            log.warning(f"Data de criação do pedido inválida, ignorando: {value!r}")
            return None

    @field_validator("billing", mode="before")
    @classmethod
    def _billing_object(cls, value):
        # Algumas respostas trazem só o id da cobrança
        if isinstance(value, str):
            return {"billing_id": value}
        if value is not None and not isinstance(value, (dict, Billing)):
            log.warning(f"Campo billing em formato inesperado, ignorando: {type(value).__name__}")
            return None
        return value

    @model_validator(mode="after")
    def _derive_effective_status(self):
        self.effective_status = effective_status(self.status, self.billing) or PaymentStatus.PENDING
        return self

    @property
    def net_total(self) -> int:
        return max(0, self.total - self.discount)

    @property
    def is_paid(self) -> bool:
        return self.effective_status.is_accepting

    @property
    def is_cancelled(self) -> bool:
        return self.effective_status.is_rejecting

    def _now(self, now: Optional[datetime]) -> datetime:
        if now is not None:
            return now
        tz = self.created_at.tzinfo if self.created_at else None
        return datetime.now(tz)

    def is_delivered(self, now: Optional[datetime] = None) -> bool:
        """Paid orders older than DELIVERED_AFTER are assumed delivered (no tracking data in the backend)."""
        if not self.is_paid or self.created_at is None:
            return False
        return self._now(now) - self.created_at > DELIVERED_AFTER

    def delivery_text(self, now: Optional[datetime] = None) -> str:
        if self.is_cancelled:
            return "Pedido cancelado."
        if self.is_delivered(now):
            return "Pedido entregue com sucesso."
        if not self.is_paid or self.created_at is None:
            return "Aguardando confirmação de pagamento."
        start = self.created_at + DELIVERY_WINDOW[0]
        end = self.created_at + DELIVERY_WINDOW[1]
        return f"Previsão: {start:%H:%M} - {end:%H:%M}"


class CheckStatusResponse(BaseModel):
    status: Optional[str] = None
    billing: Optional[Any] = None

    def to_status(self) -> Optional[PaymentStatus]:
        return effective_status(self.status, self.billing)


# --- Session ---

class User(BaseModel):
    id: int
    name: str
    email: str
    phone: Optional[str] = None
    cpf: Optional[str] = None


class LoginResponse(BaseModel):
    success: bool = True
    token: str
    user: Optional[User] = None
