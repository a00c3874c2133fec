"""
Pytest configuration and fixtures.
"""
import os

os.environ.setdefault("LOG_FILE", "")

import threading
from typing import Any, Dict, List, Optional

import pytest

from pos_service.clients import ProtocolClient
from pos_service.inventory import InMemoryInventoryGateway, ProductStock
from pos_service.models import CartLine, WalletAddress
from pos_service.orders import OrderOrchestrator
from pos_service.reconciliation import ReconciliationService
from pos_service.checkout import CheckoutOrchestrator
from pos_service.retry import RetryPolicy
from pos_service.store import InMemoryEntityStore

MERCHANT_WALLET = "https://ilp.example/merchant"
FINISH_URL = "http://pos.local/complete"


class FakeProtocolClient(ProtocolClient):
    """
    Records every call and answers from configurable canned responses.

    Set `fail[<method>]` to an exception (or a list of exceptions, consumed one per call)
    to make a method raise.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.fail: Dict[str, Any] = {}
        self.wallets = {
            MERCHANT_WALLET: WalletAddress(
                id=MERCHANT_WALLET, authServer="https://auth.ilp.example", resourceServer="https://ilp.example",
                assetCode="MXN", assetScale=2,
            ),
            "https://ilp.example/alice": WalletAddress(
                id="https://ilp.example/alice", authServer="https://auth.ilp.example",
                resourceServer="https://ilp.example", assetCode="MXN", assetScale=2,
            ),
        }
        self.grant_interact_redirect: Optional[str] = None
        self.outgoing_grant_redirect: Optional[str] = "https://auth.ilp.example/interact/abc"
        self.incoming_payment_state: Dict[str, Any] = {"completed": False}
        self._lock = threading.Lock()
        self._counter = 0

    def _record(self, name, **kwargs):
        with self._lock:
            self.calls.append((name, kwargs))
            self._counter += 1
            counter = self._counter
        failure = self.fail.get(name)
        if isinstance(failure, list):
            if failure:
                raise failure.pop(0)
        elif failure is not None:
            raise failure
        return counter

    def count(self, name):
        return len([c for c in self.calls if c[0] == name])

    def get_wallet_address(self, url, timeout=None):
        self._record("get_wallet_address", url=url, timeout=timeout)
        return self.wallets[url]

    def request_grant(self, auth_server, access, interact=None, timeout=None):
        self._record("request_grant", auth_server=auth_server, access=access, interact=interact, timeout=timeout)
        kind = access[0]["type"]
        if kind == "incoming-payment" and self.grant_interact_redirect:
            return {"interact": {"redirect": self.grant_interact_redirect}, "continue": {"uri": "https://auth/continue/1"}}
        if kind == "outgoing-payment":
            grant = {"continue": {"uri": "https://auth.ilp.example/continue/op", "access_token": {"value": "cont-token"}}}
            if self.outgoing_grant_redirect:
                grant["interact"] = {"redirect": self.outgoing_grant_redirect, "finish": "nonce"}
            return grant
        return {"access_token": {"value": f"{kind}-token"}}

    def continue_grant(self, uri, access_token, interact_ref, timeout=None):
        self._record("continue_grant", uri=uri, access_token=access_token, interact_ref=interact_ref)
        return {"access_token": {"value": "op-token"}}

    def create_quote(self, resource_server, access_token, wallet_address, receiver, timeout=None):
        self._record("create_quote", resource_server=resource_server, access_token=access_token,
                     wallet_address=wallet_address, receiver=receiver)
        return {
            "id": "https://ilp.example/quotes/q1",
            "debitAmount": {"value": "7100", "assetCode": "MXN", "assetScale": 2},
            "receiveAmount": {"value": "7076", "assetCode": "MXN", "assetScale": 2},
        }

    def create_incoming_payment(self, resource_server, access_token, wallet_address, incoming_amount,
                                metadata=None, timeout=None):
        n = self._record("create_incoming_payment", resource_server=resource_server, access_token=access_token,
                         wallet_address=wallet_address, incoming_amount=incoming_amount, metadata=metadata)
        return {"id": f"https://ilp.example/incoming-payments/{n}", "incomingAmount": incoming_amount}

    def get_incoming_payment(self, url, access_token=None, timeout=None):
        self._record("get_incoming_payment", url=url)
        return {"id": url, **self.incoming_payment_state}

    def create_outgoing_payment(self, resource_server, access_token, wallet_address, quote_id,
                                metadata=None, timeout=None):
        n = self._record("create_outgoing_payment", resource_server=resource_server, access_token=access_token,
                         wallet_address=wallet_address, quote_id=quote_id, metadata=metadata)
        return {"id": f"https://ilp.example/outgoing-payments/{n}"}


@pytest.fixture
def protocol_client() -> FakeProtocolClient:
    return FakeProtocolClient()


@pytest.fixture
def order_store() -> InMemoryEntityStore:
    return InMemoryEntityStore(name="orders")


@pytest.fixture
def inventory() -> InMemoryInventoryGateway:
    return InMemoryInventoryGateway([
        ProductStock(id="p-1", name="Café", stock=10),
        ProductStock(id="p-2", name="Pan", stock=1),
        ProductStock(id="p-3", name="Té", stock=5),
    ])


@pytest.fixture
def order_orchestrator(protocol_client, order_store) -> OrderOrchestrator:
    return OrderOrchestrator(protocol_client, order_store, MERCHANT_WALLET, FINISH_URL)


@pytest.fixture
def reconciliation(protocol_client, order_store, inventory) -> ReconciliationService:
    return ReconciliationService(protocol_client, order_store, inventory=inventory)


@pytest.fixture
def checkout_orchestrator(protocol_client) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        protocol_client,
        InMemoryEntityStore(name="checkouts"),
        FINISH_URL,
        wallet_retry=RetryPolicy(max_attempts=3, backoff=0.0),
    )


@pytest.fixture
def cart() -> List[CartLine]:
    return [
        CartLine(productId="p-1", name="Café", unitPrice="18.00", quantity=2),
        CartLine(productId="p-3", name="Té", unitPrice="25.00", quantity=1),
    ]
