"""
This module provides communication clients for the external systems used by the POS service:
- Open Payments authorization and resource servers (REST/GNAP)
- Product inventory store (PostgREST / Supabase REST API)
Each class encapsulates its protocol logic, error handling, and connection management.

Request signing (HTTP message signatures) is not done here: a signer can be plugged
into OpenPaymentsClient as an `httpx.Auth` implementation.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from .exceptions import InventoryGatewayError, ProtocolError, RequestTimeoutError
from .inventory import InventoryGateway, ProductStock
from .models import WalletAddress

log = logging.getLogger(__name__)


def _timeout_arg(timeout: Optional[float]):
    return httpx.USE_CLIENT_DEFAULT if timeout is None else timeout


# --- Protocol Client (Open Payments) ---
class ProtocolClient(ABC):
    """
    Capability used by the orchestrators to talk to Open Payments servers.

    Every method accepts an optional `timeout` in seconds; exceeding it raises
    RequestTimeoutError, any other failure raises ProtocolError.
    """

    @abstractmethod
    def get_wallet_address(self, url: str, timeout: Optional[float] = None) -> WalletAddress:
        ...

    @abstractmethod
    def request_grant(
        self,
        auth_server: str,
        access: List[Dict[str, Any]],
        interact: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    def continue_grant(
        self, uri: str, access_token: Optional[str], interact_ref: str, timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    def create_quote(
        self, resource_server: str, access_token: str, wallet_address: str, receiver: str,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    def create_incoming_payment(
        self, resource_server: str, access_token: str, wallet_address: str,
        incoming_amount: Dict[str, Any], metadata: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    def get_incoming_payment(
        self, url: str, access_token: Optional[str] = None, timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    def create_outgoing_payment(
        self, resource_server: str, access_token: str, wallet_address: str, quote_id: str,
        metadata: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        ...


class OpenPaymentsClient(ProtocolClient):
    """
    ProtocolClient over httpx.

    Grants are requested on behalf of `client_wallet_address_url`; resource calls
    carry the granted token as `Authorization: GNAP <token>`.
    """

    def __init__(
        self,
        client_wallet_address_url: str,
        timeout: float = 10.0,
        auth: Optional[httpx.Auth] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initializes the HTTP client with proper timeout configuration.

        Args:
            client_wallet_address_url (str): Wallet address identifying this client to auth servers.
            timeout (float): Default timeout in seconds for every request.
            auth (httpx.Auth | None): Request signer.
            transport (httpx.BaseTransport | None): Custom transport (tests use httpx.MockTransport).
        """
        self.client_wallet_address_url = client_wallet_address_url
        self.client = httpx.Client(
            timeout=httpx.Timeout(timeout),
            auth=auth,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    def close(self):
        """Closes the HTTP client session."""
        self.client.close()

    def _request(
        self,
        operation: str,
        method: str,
        url: str,
        access_token: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Sends one request and translates every failure into the service's error types.

        Raises:
            RequestTimeoutError: If the server does not answer in time. The resource may exist anyway.
            ProtocolError: For error responses (status passed through) and transport failures.
        """
        headers = {"Authorization": f"GNAP {access_token}"} if access_token else {}
        try:
            response = self.client.request(method, url, json=json, headers=headers, timeout=_timeout_arg(timeout))
            response.raise_for_status()
            return response.json() if response.content else {}
        except httpx.TimeoutException as e:
            log.error(f"[{operation}] Timeout bei {method} {url}. Status unbekannt.")
            raise RequestTimeoutError(f"{operation} timed out", operation=operation, details={"url": url}) from e
        except httpx.HTTPStatusError as e:
            message, details = _describe_error_response(e.response)
            log.error(f"[{operation}] HTTP {e.response.status_code} von {url}: {message}")
            raise ProtocolError(
                message or f"{operation} failed",
                status=e.response.status_code,
                details=details,
                operation=operation,
            ) from e
        except httpx.RequestError as e:
            log.error(f"[{operation}] Verbindung zu {url} fehlgeschlagen: {e}")
            raise ProtocolError(f"{operation} failed: {e}", status=502, operation=operation) from e
        except ValueError as e:
            raise ProtocolError(f"{operation} returned invalid JSON", status=502, operation=operation) from e

    def get_wallet_address(self, url, timeout=None):
        data = self._request("walletAddress.get", "GET", url, timeout=timeout)
        try:
            return WalletAddress.model_validate(data)
        except ValidationError as e:
            raise ProtocolError(
                "Invalid wallet address response", status=502, details=e.errors(), operation="walletAddress.get"
            ) from e

    def request_grant(self, auth_server, access, interact=None, timeout=None):
        body = {"access_token": {"access": access}, "client": self.client_wallet_address_url}
        if interact:
            body["interact"] = interact
        return self._request("grant.request", "POST", auth_server, json=body, timeout=timeout)

    def continue_grant(self, uri, access_token, interact_ref, timeout=None):
        return self._request(
            "grant.continue", "POST", uri, access_token=access_token,
            json={"interact_ref": interact_ref}, timeout=timeout,
        )

    def create_quote(self, resource_server, access_token, wallet_address, receiver, timeout=None):
        body = {"walletAddress": wallet_address, "receiver": receiver, "method": "ilp"}
        return self._request(
            "quote.create", "POST", f"{resource_server.rstrip('/')}/quotes",
            access_token=access_token, json=body, timeout=timeout,
        )

    def create_incoming_payment(self, resource_server, access_token, wallet_address, incoming_amount,
                                metadata=None, timeout=None):
        body = {"walletAddress": wallet_address, "incomingAmount": incoming_amount}
        if metadata:
            body["metadata"] = metadata
        return self._request(
            "incomingPayment.create", "POST", f"{resource_server.rstrip('/')}/incoming-payments",
            access_token=access_token, json=body, timeout=timeout,
        )

    def get_incoming_payment(self, url, access_token=None, timeout=None):
        return self._request("incomingPayment.get", "GET", url, access_token=access_token, timeout=timeout)

    def create_outgoing_payment(self, resource_server, access_token, wallet_address, quote_id,
                                metadata=None, timeout=None):
        body = {"walletAddress": wallet_address, "quoteId": quote_id}
        if metadata:
            body["metadata"] = metadata
        return self._request(
            "outgoingPayment.create", "POST", f"{resource_server.rstrip('/')}/outgoing-payments",
            access_token=access_token, json=body, timeout=timeout,
        )


def access_token_of(grant: Dict[str, Any], operation: str) -> str:
    """Returns the granted access token or raises ProtocolError if the grant carries none."""
    token = (grant.get("access_token") or {}).get("value")
    if not token:
        raise ProtocolError(f"{operation}: grant response without access token", status=502, operation=operation)
    return token


def _describe_error_response(response: httpx.Response):
    """Extracts (message, details) from an Open Payments error body."""
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase, response.text or None

    if isinstance(body, dict):
        error = body.get("error")
        # GNAP: {"error": {"code": ..., "description": ...}}
        if isinstance(error, dict):
            return error.get("description") or error.get("code"), error
        message = body.get("message") or error or body.get("description")
        return message, body.get("details") or body.get("description") or body
    return response.reason_phrase, body


# --- Inventory Gateway (PostgREST / Supabase REST) ---
class RestInventoryGateway(InventoryGateway):
    """
    InventoryGateway backed by a PostgREST table.

    The decrement is a PATCH filtered on both the product id and the stock value
    that was read, so a concurrent sale elsewhere makes it match no row.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        table: str = "productos",
        id_column: str = "id",
        name_column: str = "nombre",
        stock_column: str = "cantidad",
        updated_column: Optional[str] = "fecha_actualizacion",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self.table = table
        self.id_column = id_column
        self.name_column = name_column
        self.stock_column = stock_column
        self.updated_column = updated_column
        self.client = httpx.Client(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def close(self):
        self.client.close()

    def _send(self, operation: str, method: str, params: Dict[str, str], timeout=None, **kwargs) -> List[Dict[str, Any]]:
        try:
            response = self.client.request(method, f"/{self.table}", params=params, timeout=_timeout_arg(timeout), **kwargs)
            response.raise_for_status()
            return response.json() if response.content else []
        except httpx.TimeoutException as e:
            log.error(f"[{operation}] Timeout beim Inventar-Store.")
            raise RequestTimeoutError(f"{operation} timed out", operation=operation) from e
        except httpx.HTTPStatusError as e:
            log.error(f"[{operation}] HTTP {e.response.status_code} vom Inventar-Store: {e.response.text}")
            raise InventoryGatewayError(
                f"{operation} failed with HTTP {e.response.status_code}", details=e.response.text or None
            ) from e
        except httpx.RequestError as e:
            log.error(f"[{operation}] Inventar-Store nicht erreichbar: {e}")
            raise InventoryGatewayError(f"{operation} failed: {e}") from e
        except ValueError as e:
            raise InventoryGatewayError(f"{operation} returned invalid JSON") from e

    def _to_product(self, row: Dict[str, Any]) -> ProductStock:
        try:
            return ProductStock(
                id=str(row[self.id_column]),
                name=row.get(self.name_column) or "",
                stock=int(row[self.stock_column]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InventoryGatewayError("Unexpected product row", details=row) from e

    def get_product(self, product_id, timeout=None):
        params = {
            self.id_column: f"eq.{product_id}",
            "select": f"{self.id_column},{self.name_column},{self.stock_column}",
        }
        rows = self._send("inventory.get", "GET", params, timeout=timeout)
        return self._to_product(rows[0]) if rows else None

    def decrement_if_unchanged(self, product_id, expected_stock, quantity, timeout=None):
        params = {
            self.id_column: f"eq.{product_id}",
            self.stock_column: f"eq.{expected_stock}",
        }
        payload = {self.stock_column: expected_stock - quantity}
        if self.updated_column:
            payload[self.updated_column] = datetime.now(timezone.utc).isoformat()
        rows = self._send(
            "inventory.decrement", "PATCH", params, timeout=timeout,
            json=payload, headers={"Prefer": "return=representation"},
        )
        return self._to_product(rows[0]) if rows else None
