"""
Tests for the Open Payments client and the REST inventory gateway (httpx.MockTransport).
"""
import json

import httpx
import pytest

from pos_service.clients import OpenPaymentsClient, RestInventoryGateway, access_token_of
from pos_service.exceptions import InventoryGatewayError, ProtocolError, RequestTimeoutError

CLIENT_WALLET = "https://ilp.example/merchant"


def make_client(handler):
    return OpenPaymentsClient(CLIENT_WALLET, timeout=2.0, transport=httpx.MockTransport(handler))


class TestOpenPaymentsClient:
    def test_wallet_address(self):
        def handler(request):
            assert request.headers["accept"] == "application/json"
            return httpx.Response(200, json={
                "id": "https://ilp.example/alice",
                "authServer": "https://auth.ilp.example",
                "resourceServer": "https://ilp.example",
                "assetCode": "MXN",
                "assetScale": 2,
            })

        wallet = make_client(handler).get_wallet_address("https://ilp.example/alice")
        assert wallet.assetScale == 2
        assert wallet.authServer == "https://auth.ilp.example"

    def test_incomplete_wallet_address_is_a_protocol_error(self):
        client = make_client(lambda request: httpx.Response(200, json={"id": "https://ilp.example/alice"}))
        with pytest.raises(ProtocolError) as excinfo:
            client.get_wallet_address("https://ilp.example/alice")
        assert excinfo.value.status == 502

    def test_grant_request_body(self):
        seen = {}

        def handler(request):
            seen["host"] = request.url.host
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"access_token": {"value": "tok"}})

        access = [{"type": "quote", "actions": ["create", "read"]}]
        grant = make_client(handler).request_grant("https://auth.ilp.example", access)

        assert access_token_of(grant, "grant.request") == "tok"
        assert seen["host"] == "auth.ilp.example"
        assert seen["body"] == {"access_token": {"access": access}, "client": CLIENT_WALLET}

    def test_resource_calls_carry_gnap_token(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": "https://ilp.example/incoming-payments/1"})

        amount = {"value": "7076", "assetCode": "MXN", "assetScale": 2}
        payment = make_client(handler).create_incoming_payment(
            "https://ilp.example/", "tok", CLIENT_WALLET, amount, metadata={"description": "x"}
        )

        assert payment["id"].endswith("/1")
        assert seen["auth"] == "GNAP tok"
        assert seen["url"] == "https://ilp.example/incoming-payments"
        assert seen["body"]["incomingAmount"] == amount

    def test_continue_grant(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"access_token": {"value": "op"}})

        make_client(handler).continue_grant("https://auth.ilp.example/continue/1", "cont", "ref-9")
        assert seen == {"auth": "GNAP cont", "body": {"interact_ref": "ref-9"}}

    def test_unauthenticated_read_has_no_authorization_header(self):
        def handler(request):
            assert "authorization" not in request.headers
            return httpx.Response(200, json={"id": str(request.url), "completed": True})

        payment = make_client(handler).get_incoming_payment("https://ilp.example/incoming-payments/1")
        assert payment["completed"] is True

    def test_error_status_and_description_pass_through(self):
        def handler(request):
            return httpx.Response(401, json={"error": {"code": "invalid_client", "description": "unknown key"}})

        with pytest.raises(ProtocolError) as excinfo:
            make_client(handler).request_grant("https://auth.ilp.example", [])

        err = excinfo.value
        assert err.status == 401
        assert err.status_code == 401
        assert err.message == "unknown key"
        assert err.details == {"code": "invalid_client", "description": "unknown key"}
        assert err.operation == "grant.request"

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(RequestTimeoutError) as excinfo:
            make_client(handler).create_outgoing_payment("https://ilp.example", "tok", CLIENT_WALLET, "q1")
        assert excinfo.value.operation == "outgoingPayment.create"

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ProtocolError) as excinfo:
            make_client(handler).create_quote("https://ilp.example", "tok", CLIENT_WALLET, "https://r")
        assert excinfo.value.status == 502

    def test_grant_without_token(self):
        with pytest.raises(ProtocolError):
            access_token_of({"interact": {}}, "grant.request")


class FakePostgrest:
    """Minimal PostgREST table honoring eq. filters on GET and PATCH."""

    def __init__(self, rows):
        self.rows = rows
        self.requests = []

    def _matches(self, row, params):
        for key, value in params.items():
            if key == "select":
                continue
            if str(row.get(key)) != value[len("eq."):]:
                return False
        return True

    def __call__(self, request):
        self.requests.append(request)
        params = dict(request.url.params)
        matched = [row for row in self.rows if self._matches(row, params)]
        if request.method == "GET":
            return httpx.Response(200, json=matched)
        if request.method == "PATCH":
            changes = json.loads(request.content)
            for row in matched:
                row.update(changes)
            return httpx.Response(200, json=matched)
        return httpx.Response(405)


class TestRestInventoryGateway:
    def make(self, table):
        return RestInventoryGateway(
            "https://db.example", api_key="anon", transport=httpx.MockTransport(table)
        )

    def test_get_product(self):
        table = FakePostgrest([{"id": 7, "nombre": "Café", "cantidad": 4}])
        product = self.make(table).get_product("7")

        assert (product.id, product.name, product.stock) == ("7", "Café", 4)
        request = table.requests[0]
        assert request.url.path == "/rest/v1/productos"
        assert request.headers["apikey"] == "anon"
        assert request.headers["authorization"] == "Bearer anon"

    def test_missing_product(self):
        assert self.make(FakePostgrest([])).get_product("7") is None

    def test_conditional_decrement(self):
        table = FakePostgrest([{"id": 7, "nombre": "Café", "cantidad": 4}])
        gateway = self.make(table)

        updated = gateway.decrement_if_unchanged("7", 4, 3)

        assert updated.stock == 1
        request = table.requests[0]
        assert request.method == "PATCH"
        assert request.url.params["cantidad"] == "eq.4"
        assert request.headers["prefer"] == "return=representation"
        assert "fecha_actualizacion" in json.loads(request.content)

    def test_decrement_loses_race(self):
        table = FakePostgrest([{"id": 7, "nombre": "Café", "cantidad": 2}])
        assert self.make(table).decrement_if_unchanged("7", 4, 3) is None
        assert table.rows[0]["cantidad"] == 2

    def test_http_error(self):
        gateway = self.make(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(InventoryGatewayError):
            gateway.get_product("7")
