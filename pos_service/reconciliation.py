"""
reconciliation.py — Payment Status Polling and At-Most-Once Inventory Reconciliation

The POS polls the status of an order's incoming payment. The first poll that
sees the payment completed decrements stock for the order's lines; the order's
`inventoryReconciled` flag guarantees this happens at most once, even when
several polls for the same order run in parallel.
"""

import logging
from typing import Optional

from .clients import ProtocolClient
from .exceptions import NotFoundError
from .inventory import InventoryGateway, reconcile_inventory
from .models import Order, OrderStatusView, utcnow
from .store import EntityStore

log = logging.getLogger(__name__)

GATEWAY_MISSING = "inventory gateway not configured"


def is_completed(payment: dict) -> bool:
    return bool(payment.get("completed")) or payment.get("state") == "completed"


class ReconciliationService:
    """
    Refreshes order status and reconciles inventory once a charge is paid.

    Args:
        client (ProtocolClient): Used for the (unauthenticated) incoming payment read.
        orders (EntityStore[Order]): Store written by the OrderOrchestrator.
        inventory (InventoryGateway | None): Product store; None disables reconciliation.
        default_asset_code (str): Asset reported for an empty received amount.
        default_asset_scale (int): Scale reported for an empty received amount.
        timeout (float | None): Default bound for protocol and inventory calls.
    """

    def __init__(
        self,
        client: ProtocolClient,
        orders: EntityStore,
        inventory: Optional[InventoryGateway] = None,
        default_asset_code: str = "MXN",
        default_asset_scale: int = 2,
        timeout: Optional[float] = None,
    ):
        self.client = client
        self.orders = orders
        self.inventory = inventory
        self.default_asset_code = default_asset_code
        self.default_asset_scale = default_asset_scale
        self.timeout = timeout

    def refresh_status(self, order_id: str, timeout: Optional[float] = None) -> OrderStatusView:
        """
        Fetches the payment state of an order and reconciles inventory on completion.

        A reconciliation failure is recorded on the order (`inventoryError`) and
        retried on the next call; it never fails the status fetch itself. An order
        whose stock update timed out waits for `resolve_review` instead.

        Raises:
            NotFoundError: If the order is unknown.
            ProtocolError, RequestTimeoutError: If the payment could not be fetched.
        """
        timeout = timeout or self.timeout
        order = self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order not found", details={"orderId": order_id})

        payment = self.client.get_incoming_payment(order.incomingPaymentUrl, timeout=timeout)
        completed = is_completed(payment)

        if order.inventoryNeedsReview:
            log.warning(f"[Order: {order_id}] Inventarabgleich wartet auf manuelle Prüfung.")
        elif completed and not order.inventoryReconciled and order.lines:
            log.info(f"[Order: {order_id}] Zahlung abgeschlossen. Starte Inventarabgleich...")
            order = self.reconcile(order_id, timeout=timeout)

        return self._view(order, payment, completed)

    def reconcile(self, order_id: str, timeout: Optional[float] = None) -> Order:
        """
        Runs the inventory reconciliation for one order unless it already happened.

        Serialized per order: a second caller waits and then sees the flag set.
        """
        with self.orders.locked(order_id):
            order = self.orders.get(order_id)
            if order is None:
                raise NotFoundError("Order not found", details={"orderId": order_id})
            if order.inventoryReconciled or order.inventoryNeedsReview:
                return order

            if self.inventory is None:
                log.warning(f"[Order: {order_id}] Kein Inventar-Store konfiguriert. Bestand wird nicht aktualisiert.")
                return self.orders.update(order_id, inventoryError=GATEWAY_MISSING)

            result = reconcile_inventory(self.inventory, order.lines, timeout=timeout or self.timeout)

            if result.success:
                self.orders.compare_and_swap(
                    order_id, "inventoryReconciled", False, True,
                    inventoryReconciledAt=utcnow(),
                    inventoryResult=result,
                    inventoryError=result.error_summary(),
                )
                log.info(f"[Order: {order_id}] Inventar aktualisiert ({result.succeededCount} Positionen).")
            elif result.unknownCount:
                error = result.error_summary()
                self.orders.update(order_id, inventoryResult=result, inventoryError=error, inventoryNeedsReview=True)
                log.critical(f"[Order: {order_id}] Inventarabgleich unklar, automatische Wiederholung gestoppt: {error}")
            else:
                error = result.error_summary() or "no line could be reconciled"
                self.orders.update(order_id, inventoryResult=result, inventoryError=error)
                log.error(f"[Order: {order_id}] Inventarabgleich fehlgeschlagen: {error}")

            return self.orders.get(order_id)

    def resolve_review(self, order_id: str, applied: bool) -> Order:
        """
        Records the operator's verdict on a reconciliation whose outcome was unknown.

        Args:
            order_id (str): Order waiting for review.
            applied (bool): True if the stock was found decremented; the order is then
                marked reconciled. False re-enables the automatic reconciliation.

        Raises:
            NotFoundError: If the order is unknown.
        """
        with self.orders.locked(order_id):
            order = self.orders.get(order_id)
            if order is None:
                raise NotFoundError("Order not found", details={"orderId": order_id})
            if not order.inventoryNeedsReview:
                return order

            if applied:
                log.info(f"[Order: {order_id}] Bestand manuell bestätigt. Inventar gilt als abgeglichen.")
                self.orders.compare_and_swap(
                    order_id, "inventoryReconciled", False, True,
                    inventoryReconciledAt=utcnow(),
                    inventoryNeedsReview=False,
                )
            else:
                log.info(f"[Order: {order_id}] Prüfung abgeschlossen. Inventarabgleich wird erneut versucht.")
                self.orders.update(order_id, inventoryNeedsReview=False)
            return self.orders.get(order_id)

    def _view(self, order: Order, payment: dict, completed: bool) -> OrderStatusView:
        return OrderStatusView(
            id=payment.get("id") or order.incomingPaymentUrl,
            state=payment.get("state") or ("completed" if completed else "pending"),
            completed=completed,
            walletAddress=payment.get("walletAddress"),
            receivedAmount=payment.get("receivedAmount") or {
                "value": "0",
                "assetCode": self.default_asset_code,
                "assetScale": self.default_asset_scale,
            },
            incomingAmount=payment.get("incomingAmount"),
            expiresAt=payment.get("expiresAt"),
            metadata=payment.get("metadata"),
            inventoryReconciled=order.inventoryReconciled,
            inventoryReconciledAt=order.inventoryReconciledAt,
            inventoryError=order.inventoryError,
            inventoryNeedsReview=order.inventoryNeedsReview,
            inventoryResult=order.inventoryResult,
        )
