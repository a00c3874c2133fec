"""
HTTP API tests against the FastAPI app with fake collaborators.
"""
import pytest
from fastapi.testclient import TestClient

from pos_service.config import Settings
from pos_service.exceptions import ProtocolError, RequestTimeoutError
from pos_service.main import PosServices, create_app

from conftest import MERCHANT_WALLET

ITEMS = [
    {"id": "p-1", "name": "Café", "unitPrice": "18.00", "qty": 2},
    {"productId": "p-3", "name": "Té", "unitPrice": 25, "quantity": 1},
]


@pytest.fixture
def api(order_orchestrator, reconciliation, checkout_orchestrator):
    services = PosServices(orders=order_orchestrator, reconciliation=reconciliation, checkout=checkout_orchestrator)
    app = create_app(Settings(log_file=""), services=services)
    with TestClient(app) as client:
        yield client


def test_health(api):
    response = api.get("/health")
    assert response.status_code == 200
    assert response.text == "ok"


def test_config(api):
    response = api.get("/config")
    assert response.status_code == 200
    assert response.json() == {
        "merchantWalletAddressUrl": MERCHANT_WALLET,
        "assetCode": "MXN",
        "assetScale": 2,
        "inventoryConfigured": True,
    }


def test_config_protocol_error(api, protocol_client):
    protocol_client.fail["get_wallet_address"] = ProtocolError("bad gateway", status=502)
    response = api.get("/config")
    assert response.status_code == 502
    assert response.json()["error"] == "bad gateway"


class TestCreateOrder:
    def test_create_order(self, api, order_orchestrator):
        response = api.post("/pos/create-order", json={"items": ITEMS, "taxPercent": 16})

        assert response.status_code == 200
        body = response.json()
        assert body["paymentUrl"].startswith("https://ilp.example/incoming-payments/")
        order = order_orchestrator.orders.get(body["orderId"])
        assert order.total.value == "7076"
        assert [line.productId for line in order.lines] == ["p-1", "p-3"]

    def test_legacy_tax_rate_is_a_fraction(self, api, order_orchestrator):
        response = api.post("/pos/create-order", json={"items": ITEMS, "taxRate": 0.16})

        assert response.status_code == 200
        order = order_orchestrator.orders.get(response.json()["orderId"])
        assert order.tax == "976"
        assert order.total.value == "7076"

    def test_invalid_tax_rate(self, api):
        response = api.post("/pos/create-order", json={"items": ITEMS, "taxRate": "16%"})
        assert response.status_code == 400
        assert response.json()["error_code"] == "invalid_amount"

    def test_empty_cart(self, api):
        response = api.post("/pos/create-order", json={"items": []})
        assert response.status_code == 400
        assert response.json()["error_code"] == "empty_cart"
        assert response.json()["error"]

    def test_invalid_price(self, api):
        response = api.post("/pos/create-order", json={"items": [{"name": "x", "unitPrice": "1,5", "qty": 1}]})
        assert response.status_code == 400
        assert response.json()["error_code"] == "invalid_amount"

    def test_invalid_quantity(self, api):
        response = api.post("/pos/create-order", json={"items": [{"name": "x", "unitPrice": "1", "qty": 0}]})
        assert response.status_code == 400
        assert response.json()["error_code"] == "validation_error"

    def test_merchant_approval_pending(self, api, protocol_client):
        protocol_client.grant_interact_redirect = "https://auth.ilp.example/interact/merchant"
        response = api.post("/pos/create-order", json={"items": ITEMS})
        assert response.status_code == 403
        assert response.json()["interactRedirect"] == "https://auth.ilp.example/interact/merchant"

    def test_protocol_error_passthrough(self, api, protocol_client):
        protocol_client.fail["request_grant"] = ProtocolError(
            "unknown key", status=401, details={"code": "invalid_client"}, operation="grant.request"
        )
        response = api.post("/pos/create-order", json={"items": ITEMS})
        assert response.status_code == 401
        assert response.json() == {
            "error": "unknown key",
            "error_code": "protocol_error",
            "details": {"code": "invalid_client"},
        }

    def test_timeout(self, api, protocol_client):
        protocol_client.fail["create_incoming_payment"] = RequestTimeoutError(
            "incomingPayment.create timed out", operation="incomingPayment.create"
        )
        response = api.post("/pos/create-order", json={"items": ITEMS})
        assert response.status_code == 504
        assert response.json()["error_code"] == "timeout"


class TestOrderStatus:
    def test_unknown_order(self, api):
        assert api.get("/pos/order-status", params={"orderId": "nope"}).status_code == 404
        assert api.get("/pos/order-status").status_code == 404

    def test_completed_order_reconciles_inventory(self, api, protocol_client, inventory):
        order_id = api.post("/pos/create-order", json={"items": ITEMS, "taxPercent": "16"}).json()["orderId"]
        protocol_client.incoming_payment_state = {"state": "completed"}

        response = api.get("/pos/order-status", params={"orderId": order_id})

        assert response.status_code == 200
        status = response.json()["status"]
        assert status["completed"] is True
        assert status["inventoryReconciled"] is True
        assert status["inventoryReconciledAt"]
        assert status["inventoryResult"]["succeededCount"] == 2
        assert inventory.get_product("p-1").stock == 8


class TestCheckout:
    def test_start_and_finish(self, api, protocol_client):
        response = api.post("/checkout/start", json={
            "customerWalletAddressUrl": "$ilp.example/alice",
            "receiverPaymentUrl": "https://ilp.example/incoming-payments/42",
        })
        assert response.status_code == 200
        body = response.json()
        assert body["interactRedirect"] == "https://auth.ilp.example/interact/abc"

        finish = {"checkoutId": body["checkoutId"], "interactRef": "ref-1"}
        first = api.post("/checkout/finish", json=finish)
        second = api.post("/checkout/finish", json=finish)

        assert first.status_code == 200
        assert first.json()["ok"] is True
        assert first.json() == second.json()
        assert protocol_client.count("create_outgoing_payment") == 1

    def test_missing_pointer(self, api):
        response = api.post("/checkout/start", json={"receiverPaymentUrl": "https://ilp.example/incoming-payments/42"})
        assert response.status_code == 400

    def test_invalid_pointer(self, api):
        response = api.post("/checkout/start", json={
            "customerWalletAddressUrl": "ftp://alice",
            "receiverPaymentUrl": "https://ilp.example/incoming-payments/42",
        })
        assert response.status_code == 400
        assert response.json()["error_code"] == "invalid_pointer"

    def test_no_redirect(self, api, protocol_client):
        protocol_client.outgoing_grant_redirect = None
        response = api.post("/checkout/start", json={
            "customerWalletAddressUrl": "$ilp.example/alice",
            "receiverPaymentUrl": "https://ilp.example/incoming-payments/42",
        })
        assert response.status_code == 500
        assert response.json()["error_code"] == "no_redirect"

    def test_unknown_checkout(self, api):
        response = api.post("/checkout/finish", json={"checkoutId": "nope", "interactRef": "ref"})
        assert response.status_code == 404


class TestInventoryReview:
    def test_unknown_decrement_outcome_waits_for_operator(self, api, protocol_client, inventory):
        original = inventory.decrement_if_unchanged

        def applied_then_timed_out(product_id, expected_stock, quantity, timeout=None):
            original(product_id, expected_stock, quantity, timeout)
            raise RequestTimeoutError("inventory.decrement timed out", operation="inventory.decrement")

        inventory.decrement_if_unchanged = applied_then_timed_out
        order_id = api.post("/pos/create-order", json={"items": ITEMS[:1], "taxPercent": "16"}).json()["orderId"]
        protocol_client.incoming_payment_state = {"state": "completed"}

        status = api.get("/pos/order-status", params={"orderId": order_id}).json()["status"]
        assert status["inventoryReconciled"] is False
        assert status["inventoryNeedsReview"] is True
        assert "outcome unknown" in status["inventoryError"]

        response = api.post("/pos/inventory-review", json={"orderId": order_id, "applied": True})
        assert response.status_code == 200
        assert response.json() == {"orderId": order_id, "inventoryReconciled": True, "inventoryNeedsReview": False}
        assert inventory.get_product("p-1").stock == 8

    def test_unknown_order(self, api):
        response = api.post("/pos/inventory-review", json={"orderId": "nope", "applied": False})
        assert response.status_code == 404
