"""Local JSON service driven end to end against the mock backend."""

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import BACKEND_URL
from delivery_client.main import create_app
from mock_services import mock_delivery_api
from mock_services.mock_delivery_api import set_payment_status

ADDRESS = {"cep": "01001-000", "street": "Praça da Sé", "number": "100",
           "neighborhood": "Sé", "city": "São Paulo", "state": "SP"}


@pytest.fixture
def opened():
    return []


@pytest.fixture
def client(tmp_path, backend, opened):
    app = create_app(
        storage_path=str(tmp_path / "client.json"),
        api_transport=httpx.ASGITransport(app=mock_delivery_api.app),
        cep_transport=httpx.MockTransport(lambda request: httpx.Response(404)),
        api_base_url=BACKEND_URL,
        open_link=opened.append,
        poll_interval=60,
    )
    with TestClient(app) as test_client:
        yield test_client


def login(client):
    response = client.post("/v1/session", json={"email": "cliente@example.com", "password": "segredo"})
    assert response.status_code == 200
    return response


def fill_cart_and_address(client, quantity=3):
    assert client.post("/v1/cart/items", json={"product_id": 1, "quantity": quantity}).status_code == 201
    assert client.put("/v1/checkout/address", json=ADDRESS).status_code == 200


def test_health_check(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_login(client):
    bad = client.post("/v1/session", json={"email": "cliente@example.com", "password": "errada"})
    assert bad.status_code == 401
    assert bad.json()["detail"] == "E-mail ou senha inválidos."

    body = login(client).json()
    assert body["authenticated"]
    assert body["user"]["email"] == "cliente@example.com"


def test_cart_endpoints(client):
    response = client.post("/v1/cart/items", json={"product_id": 1, "quantity": 3, "notes": "sem cebola"})
    assert response.status_code == 201
    cart = response.json()
    assert cart["cart_total"] == 7500
    assert cart["cart_count"] == 3
    assert cart["cart_total_display"] == "R$ 75,00"

    item_id = cart["items"][0]["item_id"]
    cart = client.patch(f"/v1/cart/items/{item_id}", json={"quantity": 1}).json()
    assert cart["cart_total"] == 2500
    assert cart["items"][0]["notes"] == "sem cebola"

    assert client.post("/v1/cart/items", json={"product_id": 99}).status_code == 404
    assert client.post("/v1/cart/items", json={"product_id": 1, "quantity": 0}).status_code == 422

    cart = client.delete(f"/v1/cart/items/{item_id}").json()
    assert cart["items"] == []
    assert cart["cart_total"] == 0


def test_cash_checkout(client, opened):
    login(client)
    fill_cart_and_address(client)
    client.post("/v1/checkout/coupon", json={"code": "dezoff"})
    summary = client.get("/v1/checkout").json()
    assert summary["discount"] == 750
    assert summary["final_total_display"] == "R$ 67,50"

    response = client.post("/v1/checkout", json={"payment_method": "CASH"})
    assert response.status_code == 201
    result = response.json()
    assert result["outcome"] == "completed"
    assert opened == []
    assert client.get("/v1/cart").json()["cart_count"] == 0

    orders = client.get("/v1/orders").json()
    assert [o["id"] for o in orders] == [result["order_id"]]
    assert orders[0]["net_total"] == 6750
    assert orders[0]["coupon_code"] == "DEZOFF"


def test_incomplete_address_is_422(client):
    login(client)
    client.post("/v1/cart/items", json={"product_id": 1})
    client.put("/v1/checkout/address", json={**ADDRESS, "number": ""})
    response = client.post("/v1/checkout", json={"payment_method": "CASH"})
    assert response.status_code == 422
    assert response.json()["outcome"] == "validation_error"


def test_checkout_requires_login(client):
    fill_cart_and_address(client)
    response = client.post("/v1/checkout", json={"payment_method": "PIX"})
    assert response.status_code == 401
    assert response.json()["outcome"] == "login_required"


def test_refused_payment_is_502(client):
    login(client)
    client.post("/v1/cart/items", json={"product_id": 1})
    client.put("/v1/checkout/address", json={**ADDRESS, "complement": "PAGAMENTO-RECUSADO"})
    response = client.post("/v1/checkout", json={"payment_method": "CARD"})
    assert response.status_code == 502
    assert response.json()["message"] == "Cartão recusado pela operadora."
    assert client.get("/v1/cart").json()["cart_count"] == 1


def test_pix_checkout_until_paid(client, opened):
    login(client)
    fill_cart_and_address(client, quantity=2)

    response = client.post("/v1/checkout", json={"payment_method": "PIX"})
    assert response.status_code == 201
    result = response.json()
    assert result["outcome"] == "awaiting_payment"
    assert opened == [result["payment_link"]]
    order_id = result["order_id"]

    payment = client.get(f"/v1/payments/{order_id}").json()
    assert payment["status"] == "pending"
    assert client.get("/v1/cart").json()["cart_count"] == 2

    # re-entering the payment view reuses the running tracker
    assert client.post(f"/v1/payments/{order_id}").json()["polling"]

    set_payment_status(order_id, "PAID")
    payment = client.post(f"/v1/payments/{order_id}/check").json()
    assert payment["status"] == "paid"
    assert not payment["polling"]
    assert client.get("/v1/cart").json()["cart_count"] == 0

    assert client.delete(f"/v1/payments/{order_id}").status_code == 204
    assert client.get(f"/v1/payments/{order_id}").status_code == 404


def test_selected_coupon_is_applied_on_checkout_entry(client):
    login(client)
    client.post("/v1/cart/items", json={"product_id": 1, "quantity": 4})

    coupons = client.get("/v1/coupons").json()
    assert {c["code"] for c in coupons} == {"DEZOFF", "FRETE5", "MIN50"}
    min50 = next(c for c in coupons if c["code"] == "MIN50")
    assert min50["min_order_text"] == "Mínimo: R$ 50,00"

    assert client.post("/v1/coupons/min50/select").status_code == 202
    view = client.post("/v1/checkout/enter").json()
    assert view["coupon"]["code"] == "MIN50"
    assert view["coupon"]["applied"]["code"] == "MIN50"
    assert view["discount"] == 2000


def test_repeat_order(client):
    login(client)
    fill_cart_and_address(client, quantity=2)
    order_id = client.post("/v1/checkout", json={"payment_method": "CASH"}).json()["order_id"]

    view = client.post("/v1/checkout/enter").json()
    assert view["address"]["history"][0]["text"].startswith("Praça da Sé, 100")
    assert not view["address"]["use_new_address"]

    result = client.post(f"/v1/orders/{order_id}/repeat").json()
    assert result["ok"]
    assert result["added"] == 1
    assert result["cart"]["cart_total"] == 5000
    assert client.post("/v1/orders/9999/repeat").status_code == 404
