"""
This module provides communication clients for the external systems used by the delivery client:
- Delivery backend (single JSON endpoint, action selected by query parameter)
- CEP lookup service (BrasilAPI, REST)
Each class encapsulates its protocol logic, error handling, and connection management.
"""

import logging
import os
import re
from typing import List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from .models import (
    Category,
    CheckStatusResponse,
    Coupon,
    CouponValidationResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    LastAddress,
    LoginResponse,
    Order,
    Product,
    ZipcodeAddress,
)
from .session import Session

# Endereços dos serviços (normalmente via env vars)
DELIVERY_API_URL = os.environ.get("DELIVERY_API_URL", "http://delivery_api:8002/")
CEP_API_URL = os.environ.get("CEP_API_URL", "https://brasilapi.com.br/api/cep/v1/")
ENDPOINT_PATH = "index.php"

log = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def error_message(exc: httpx.HTTPStatusError, *fields: str, default: Optional[str] = None) -> Optional[str]:
    """
    Extracts the first non-empty string among `fields` from an error response body.

    Args:
        exc (httpx.HTTPStatusError): The raised HTTP error.
        *fields (str): Body keys to look at, in order of preference.
        default (Optional[str]): Returned when the body is not JSON or has none of the fields.
    """
    try:
        body = exc.response.json()
    except ValueError:
        return default
    if isinstance(body, dict):
        for field in fields:
            value = body.get(field)
            if isinstance(value, str) and value.strip():
                return value
    return default


# --- Delivery Backend Client (REST) ---
class DeliveryApiClient:
    """
    Client for the delivery backend.
    Every call goes to the same endpoint with an `action` query parameter and
    carries the session's bearer token when the customer is logged in.
    """
    def __init__(self, session: Session, base_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initializes the async HTTP client with the backend timeout configuration.

        Args:
            session (Session): Source of the bearer token; invalidated on 401/403.
            base_url (Optional[str]): Overrides DELIVERY_API_URL.
            transport (Optional[httpx.AsyncBaseTransport]): Custom transport (tests, mock backend).
        """
        self.session = session
        timeout_config = httpx.Timeout(15.0)
        self.client = httpx.AsyncClient(
            base_url=base_url or DELIVERY_API_URL,
            timeout=timeout_config,
            transport=transport
        )

    async def aclose(self):
        """Closes the HTTP client session."""
        await self.client.aclose()

    async def _call(self, method: str, action: str, params: Optional[dict] = None, payload: Optional[dict] = None) -> httpx.Response:
        """
        Performs one backend action.

        Args:
            method (str): HTTP method.
            action (str): Backend action name (e.g. 'create_order').
            params (Optional[dict]): Extra query parameters.
            payload (Optional[dict]): JSON body.
        Returns:
            httpx.Response: The successful response.
        Raises:
            httpx.HTTPStatusError: On 4xx/5xx. 401/403 also invalidate the session.
            httpx.TransportError: On network failures and timeouts.
        """
        query = {"action": action}
        query.update(params or {})
        headers = {}
        if self.session.token:
            headers["Authorization"] = f"Bearer {self.session.token}"

        try:
            response = await self.client.request(method, ENDPOINT_PATH, params=query, json=payload, headers=headers)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            log.error(f"[API:{action}] HTTP {status_code}: {e.response.text[:300]}")
            if status_code in (401, 403):
                self.session.invalidate()
            raise
        except httpx.TransportError as e:
            log.error(f"[API:{action}] Falha de comunicação com o servidor: {e!r}")
            raise

    async def _list(self, action: str, model: Type[ModelT], params: Optional[dict] = None) -> List[ModelT]:
        """Fetches a `{"data": [...]}` listing, skipping records that fail validation."""
        response = await self._call("GET", action, params=params)
        body = response.json()
        rows = body.get("data") if isinstance(body, dict) else None
        if not isinstance(rows, list):
            log.warning(f"[API:{action}] Resposta sem lista 'data'. Tratando como vazia.")
            return []

        result = []
        for row in rows:
            try:
                result.append(model.model_validate(row))
            except ValidationError as e:
                log.warning(f"[API:{action}] Registro inválido ignorado: {e.error_count()} erro(s) - {row!r:.200}")
        return result

    async def list_products(self) -> List[Product]:
        return await self._list("list_products", Product)

    async def list_categories(self) -> List[Category]:
        return await self._list("list_categories", Category)

    async def list_coupons(self) -> List[Coupon]:
        return await self._list("list_coupons", Coupon)

    async def list_orders(self) -> List[Order]:
        return await self._list("list_orders", Order)

    async def list_last_addresses(self) -> List[LastAddress]:
        return await self._list("list_last_addresses", LastAddress)

    async def validate_coupon(self, code: str, order_total: int) -> CouponValidationResponse:
        """
        Asks the backend to validate a coupon against an order subtotal.

        Args:
            code (str): Coupon code.
            order_total (int): Cart subtotal in cents.
        Returns:
            CouponValidationResponse: valid flag, coupon descriptor, optional server discount and message.
        """
        response = await self._call("POST", "validate_coupon", payload={"code": code, "order_total": order_total})
        return CouponValidationResponse.model_validate(response.json())

    async def create_order(self, request: CreateOrderRequest) -> CreateOrderResponse:
        """
        Creates an order.

        Args:
            request (CreateOrderRequest): Items, address notes, payment method and coupon.
        Returns:
            CreateOrderResponse: success flag, order id and payment link data.
        Raises:
            httpx.HTTPStatusError: If the backend rejects the order (body carries error / payment_error).
        """
        response = await self._call("POST", "create_order", payload=request.model_dump(mode="json"))
        return CreateOrderResponse.model_validate(response.json())

    async def check_payment_status(self, order_id: int) -> CheckStatusResponse:
        response = await self._call("GET", "check_payment_status", params={"order_id": order_id})
        return CheckStatusResponse.model_validate(response.json())

    async def login(self, email: str, password: str) -> LoginResponse:
        """Logs in and stores the returned credential in the session."""
        response = await self._call("POST", "login", payload={"email": email, "password": password})
        result = LoginResponse.model_validate(response.json())
        self.session.login(result.token, result.user)
        return result

    async def register(self, name: str, email: str, password: str, phone: str = "", cpf: str = "") -> LoginResponse:
        """Creates an account and stores the returned credential in the session."""
        payload = {"name": name, "email": email, "phone": phone, "cpf": cpf, "password": password}
        response = await self._call("POST", "register", payload=payload)
        result = LoginResponse.model_validate(response.json())
        self.session.login(result.token, result.user)
        return result


# --- CEP Client (REST) ---
def normalize_cep(cep: str) -> str:
    return re.sub(r"\D", "", cep or "")


class CepClient:
    """
    Client for the postal-code (CEP) lookup service.
    Lookups are best-effort: any failure returns None and the user types the address by hand.
    """
    def __init__(self, base_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        timeout_config = httpx.Timeout(5.0, read=8.0)
        self.client = httpx.AsyncClient(base_url=base_url or CEP_API_URL, timeout=timeout_config, transport=transport)

    async def aclose(self):
        await self.client.aclose()

    async def lookup(self, cep: str) -> Optional[ZipcodeAddress]:
        """
        Resolves a CEP to street, neighborhood, city and state.

        Args:
            cep (str): Postal code, with or without punctuation.
        Returns:
            Optional[ZipcodeAddress]: The address, or None if the CEP is malformed or not found.
        """
        digits = normalize_cep(cep)
        if len(digits) != 8:
            return None
        try:
            response = await self.client.get(digits)
            response.raise_for_status()
            return ZipcodeAddress.model_validate(response.json())
        except (httpx.HTTPError, ValueError) as e:
            log.info(f"[CEP {digits}] Consulta sem resultado: {e!r}")
            return None
