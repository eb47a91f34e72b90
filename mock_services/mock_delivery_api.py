"""
mock_delivery_api.py — Mock Implementation of the Delivery Backend (REST API)

This module provides a simulated delivery backend for local runs and for the
test-suite. It exposes the same single-endpoint contract as the real service:
every call goes to /index.php and the `action` query parameter selects the
operation.

Simulation Scenarios:
    • Coupons: DEZOFF (10%, no server discount), FRETE5 (R$ 5,00 fixed, server
      discount), MIN50 (20%, minimum order R$ 50,00), anything else is invalid
    • PIX/CARD orders receive a payment link, unless the notes contain "SEM-LINK"
    • Notes containing "PAGAMENTO-RECUSADO" → HTTP 402 with payment_error
    • Unknown product ids → HTTP 400
    • Missing/unknown bearer token on protected actions → HTTP 401
    • POST /mock/orders/{order_id}/status moves an order's billing status

Port:
    Default: 8002 (HTTP)
"""

import copy
import itertools
import json
import logging
import secrets
import time
from typing import Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

app = FastAPI(title="Mock Delivery Backend")
logging.basicConfig(level=logging.INFO)

SEED_PRODUCTS = [
    {"id": 1, "name": "X-Burger", "description": "Pão, carne, queijo", "price": 2500,
     "category_id": 1, "category_name": "Lanches", "image_url": None},
    {"id": 2, "name": "Batata Frita", "description": "Porção média", "price": 1200,
     "category_id": 1, "category_name": "Lanches", "image_url": None},
    {"id": 3, "name": "Refrigerante Lata", "description": "350 ml", "price": 600,
     "category_id": 2, "category_name": "Bebidas", "image_url": None},
]
SEED_CATEGORIES = [{"id": 1, "name": "Lanches", "product_count": 2}, {"id": 2, "name": "Bebidas", "product_count": 1}]
SEED_COUPONS = {
    "DEZOFF": {"id": 1, "code": "DEZOFF", "type": "PERCENTAGE", "value": 10, "min_order_value": 0,
               "description": "10% em qualquer pedido"},
    "FRETE5": {"id": 2, "code": "FRETE5", "type": "FIXED", "value": 500, "min_order_value": 0,
               "description": "R$ 5,00 de desconto"},
    "MIN50": {"id": 3, "code": "MIN50", "type": "PERCENTAGE", "value": 20, "min_order_value": 5000,
              "description": "20% acima de R$ 50,00"},
}
SERVER_DISCOUNT_COUPONS = {"FRETE5"}
SEED_USER = {"id": 1, "name": "Cliente Teste", "email": "cliente@example.com", "phone": "11999990000",
             "cpf": "00000000000", "password": "segredo"}

PUBLIC_ACTIONS = {"list_products", "list_categories", "list_coupons", "validate_coupon", "login", "register"}


class MockState:
    """In-memory data of the mock backend. reset() restores the seed data."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.products = copy.deepcopy(SEED_PRODUCTS)
        self.categories = copy.deepcopy(SEED_CATEGORIES)
        self.coupons = copy.deepcopy(SEED_COUPONS)
        self.users = {SEED_USER["email"]: dict(SEED_USER)}
        self.tokens = {}
        self.orders = {}
        self.status_checks = 0
        self._order_ids = itertools.count(1001)
        self._user_ids = itertools.count(2)

    def issue_token(self, email: str) -> str:
        token = f"tok_{secrets.token_hex(8)}"
        self.tokens[token] = email
        return token

    def user_for(self, authorization: Optional[str]) -> Optional[dict]:
        if not authorization or not authorization.startswith("Bearer "):
            return None
        email = self.tokens.get(authorization[len("Bearer "):])
        return self.users.get(email) if email else None

    def next_order_id(self) -> int:
        return next(self._order_ids)

    def next_user_id(self) -> int:
        return next(self._user_ids)


state = MockState()


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def _public_user(user: dict) -> dict:
    return {k: v for k, v in user.items() if k != "password"}


def _discount_for(coupon: dict, subtotal: int) -> int:
    if coupon["type"] == "PERCENTAGE":
        return subtotal * coupon["value"] // 100
    return coupon["value"]


# --- Actions ---

def list_products(body, request, user):
    return {"data": state.products}


def list_categories(body, request, user):
    return {"data": state.categories}


def list_coupons(body, request, user):
    data = []
    for coupon in state.coupons.values():
        data.append({**coupon, "min_order_display": coupon["min_order_value"] / 100, "usage_status": "Disponível"})
    return {"data": data}


def validate_coupon(body, request, user):
    code = str(body.get("code", "")).strip().upper()
    order_total = int(body.get("order_total") or 0)
    coupon = state.coupons.get(code)
    if coupon is None:
        return {"valid": False, "message": "Cupom não encontrado."}
    if order_total < coupon["min_order_value"]:
        return {"valid": False, "message": "Valor mínimo do pedido não atingido."}

    response = {"valid": True, "coupon": coupon}
    if code in SERVER_DISCOUNT_COUPONS:
        discount = _discount_for(coupon, order_total)
        response.update(discount=discount, final_total=max(0, order_total - discount))
    return response


def create_order(body, request, user):
    products = {p["id"]: p for p in state.products}
    items = []
    for raw in body.get("items") or []:
        product = products.get(raw.get("product_id"))
        if product is None:
            return _error(400, f"Produto {raw.get('product_id')} indisponível.")
        items.append({"product_id": product["id"], "name": product["name"], "quantity": raw["quantity"],
                      "price": product["price"], "notes": raw.get("notes", "")})
    if not items:
        return _error(400, "Pedido sem itens.")

    method = body.get("payment_method")
    if method not in ("PIX", "CARD", "CASH"):
        return _error(400, "Forma de pagamento inválida.")

    notes = body.get("notes") or ""
    if "PAGAMENTO-RECUSADO" in notes:
        logging.warning("[MOCK] Pagamento recusado (cenário simulado).")
        return _error(402, "Falha no pagamento.", payment_error="Cartão recusado pela operadora.")

    total = sum(i["price"] * i["quantity"] for i in items)
    discount = 0
    coupon = state.coupons.get(str(body.get("coupon_code") or "").upper())
    if coupon and total >= coupon["min_order_value"]:
        discount = _discount_for(coupon, total)

    order_id = state.next_order_id()
    billing_id = f"bill_{order_id}"
    order = {
        "id": order_id,
        "user_id": user["id"],
        "total": total,
        "discount": discount,
        "status": "pending",
        "created_at": time.strftime("%Y-%m-%dT%H:%M:%S"),
        "payment_method": method,
        "coupon_code": coupon["code"] if coupon else None,
        "notes": notes,
        # Como no banco: itens serializados em texto
        "items": json.dumps(items, ensure_ascii=False),
        "billing": {"status": "PENDING", "billing_id": billing_id} if method != "CASH" else None,
    }
    state.orders[order_id] = order
    logging.info(f"[MOCK] Pedido {order_id} criado ({method}, total {total}, desconto {discount}).")

    response = {"success": True, "order_id": order_id, "total": total,
                "final_total": max(0, total - discount), "discount": discount}
    if method != "CASH" and "SEM-LINK" not in notes:
        url = f"https://pagamento.example.com/{billing_id}"
        order["billing"]["url"] = url
        response["payment"] = {"billing_id": billing_id, "url": url, "status": "PENDING"}
    return response


def list_orders(body, request, user):
    own = [o for o in state.orders.values() if o["user_id"] == user["id"]]
    return {"data": sorted(own, key=lambda o: o["id"], reverse=True)}


def list_last_addresses(body, request, user):
    seen = set()
    data = []
    for order in list_orders(body, request, user)["data"]:
        if order["notes"] and order["notes"] not in seen:
            seen.add(order["notes"])
            data.append({"id": order["id"], "delivery_address": order["notes"], "created_at": order["created_at"]})
    return {"data": data[:3]}


def check_payment_status(body, request, user):
    state.status_checks += 1
    order_id = int(request.query_params.get("order_id") or 0)
    order = state.orders.get(order_id)
    if order is None or order["user_id"] != user["id"]:
        return _error(404, "Pedido não encontrado.")
    billing = order.get("billing") or {}
    return {"status": billing.get("status") or order["status"], "billing": billing.get("billing_id")}


def login(body, request, user):
    found = state.users.get(body.get("email"))
    if found is None or found["password"] != body.get("password"):
        return _error(401, "E-mail ou senha inválidos.")
    return {"success": True, "token": state.issue_token(found["email"]), "user": _public_user(found)}


def register(body, request, user):
    email = body.get("email")
    if not email or email in state.users:
        return _error(400, "E-mail já cadastrado.")
    new_user = {"id": state.next_user_id(), "name": body.get("name", ""), "email": email,
                "phone": body.get("phone"), "cpf": body.get("cpf"), "password": body.get("password")}
    state.users[email] = new_user
    return {"success": True, "token": state.issue_token(email), "user": _public_user(new_user)}


ACTIONS = {
    "list_products": list_products,
    "list_categories": list_categories,
    "list_coupons": list_coupons,
    "validate_coupon": validate_coupon,
    "create_order": create_order,
    "list_orders": list_orders,
    "list_last_addresses": list_last_addresses,
    "check_payment_status": check_payment_status,
    "login": login,
    "register": register,
}


@app.api_route("/index.php", methods=["GET", "POST"])
async def dispatch(request: Request, action: str = "", authorization: Optional[str] = Header(None)):
    """
    Single backend endpoint; `action` selects the operation.

    Returns:
        dict | JSONResponse: The action's JSON body, or {"error": ...} with 4xx.
    """
    handler = ACTIONS.get(action)
    if handler is None:
        return _error(400, f"Ação desconhecida: {action}")

    raw = await request.body()
    try:
        body = json.loads(raw) if raw else {}
    except ValueError:
        return _error(400, "JSON inválido.")

    user = state.user_for(authorization)
    if action not in PUBLIC_ACTIONS and user is None:
        logging.warning(f"[MOCK] {action} sem autenticação válida.")
        return _error(401, "Não autorizado.")
    return handler(body, request, user)


class StatusUpdate(BaseModel):
    status: str


def set_payment_status(order_id: int, status: str):
    order = state.orders[order_id]
    if order.get("billing") is None:
        order["billing"] = {"billing_id": f"bill_{order_id}"}
    order["billing"]["status"] = status
    logging.info(f"[MOCK] Pedido {order_id}: status de pagamento -> {status}")


@app.post("/mock/orders/{order_id}/status")
def update_status(order_id: int, update: StatusUpdate):
    """Simulates the payment processor settling (or cancelling) an order."""
    if order_id not in state.orders:
        return _error(404, "Pedido não encontrado.")
    set_payment_status(order_id, update.status)
    return {"order_id": order_id, "status": update.status}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8002)
