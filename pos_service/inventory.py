"""
inventory.py — Inventory Gateway and Stock Reconciliation

This module defines the contract of the product store and the reconciliation
step that runs once a charge has been paid:

    • InventoryGateway — read one product row, conditionally decrement its stock
    • InMemoryInventoryGateway — process-local gateway for development and tests
    • reconcile_inventory() — decrement stock for every line of a paid order

Other sales channels write the same rows, so a decrement is always a
compare-and-set against the stock value that was just read.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from pydantic import BaseModel

from .exceptions import InsufficientStockError, InventoryGatewayError, NotFoundError, RequestTimeoutError
from .models import CartLine, InventoryLineResult, InventoryResult

log = logging.getLogger(__name__)

MAX_DECREMENT_RACES = 3


class ProductStock(BaseModel):
    id: str
    name: str = ""
    stock: int


class InventoryGateway(ABC):
    """Row-level access to the product store."""

    @abstractmethod
    def get_product(self, product_id: str, timeout: Optional[float] = None) -> Optional[ProductStock]:
        """Returns the current row, or None if the product does not exist."""

    @abstractmethod
    def decrement_if_unchanged(
        self, product_id: str, expected_stock: int, quantity: int, timeout: Optional[float] = None
    ) -> Optional[ProductStock]:
        """
        Writes `expected_stock - quantity` only if the stored stock still equals `expected_stock`.

        Returns:
            ProductStock | None: The updated row, or None if the row changed in between.
        """


class InMemoryInventoryGateway(InventoryGateway):
    def __init__(self, products: Optional[List[ProductStock]] = None):
        self._products: Dict[str, ProductStock] = {p.id: p for p in products or []}
        self._lock = threading.Lock()

    def get_product(self, product_id, timeout=None):
        with self._lock:
            product = self._products.get(product_id)
            return product.model_copy() if product else None

    def decrement_if_unchanged(self, product_id, expected_stock, quantity, timeout=None):
        with self._lock:
            product = self._products.get(product_id)
            if product is None or product.stock != expected_stock:
                return None
            updated = product.model_copy(update={"stock": expected_stock - quantity})
            self._products[product_id] = updated
            return updated.model_copy()


def _decrement_line(gateway: InventoryGateway, line: CartLine, timeout: Optional[float]) -> InventoryLineResult:
    """
    Decrements stock for one line, re-reading the row whenever the conditional write loses a race.

    Raises:
        NotFoundError: If the product no longer exists.
        InsufficientStockError: If the current stock is lower than the sold quantity.
    """
    for _ in range(MAX_DECREMENT_RACES):
        product = gateway.get_product(line.productId, timeout=timeout)
        if product is None:
            raise NotFoundError(f"Product {line.productId} not found")
        if product.stock < line.quantity:
            raise InsufficientStockError(
                f"Insufficient stock ({product.stock} available)",
                details={"available": product.stock, "requested": line.quantity},
            )
        try:
            updated = gateway.decrement_if_unchanged(line.productId, product.stock, line.quantity, timeout=timeout)
        except RequestTimeoutError as e:
            # the write may have been applied; re-reading cannot tell it apart from another sale
            return InventoryLineResult(
                productId=line.productId,
                name=line.name,
                quantity=line.quantity,
                success=False,
                unknown=True,
                operation=e.operation or "inventory.decrement",
                error=f"outcome unknown: {e.message}",
                stockBefore=product.stock,
            )
        if updated is not None:
            return InventoryLineResult(
                productId=line.productId,
                name=line.name,
                quantity=line.quantity,
                success=True,
                stockBefore=product.stock,
                stockAfter=updated.stock,
            )
        log.info(f"[Produkt: {line.productId}] Bestand wurde parallel geändert. Lese neu...")
    raise InventoryGatewayError(f"Stock of product {line.productId} kept changing, giving up")


def reconcile_inventory(
    gateway: InventoryGateway, lines: List[CartLine], timeout: Optional[float] = None
) -> InventoryResult:
    """
    Decrements stock for each line of a paid order.

    Lines without a product id (or with a non-positive quantity) are skipped and
    count neither as success nor as failure. A failing line never stops the
    remaining lines. A decrement that timed out is reported as unknown rather
    than failed, since it may have been applied.

    Args:
        gateway (InventoryGateway): Product store.
        lines (list[CartLine]): Lines copied into the order at creation.
        timeout (float | None): Bound for every gateway call.

    Returns:
        InventoryResult: Counts plus one entry per line.
    """
    result = InventoryResult()
    for line in lines:
        if not line.productId or line.quantity <= 0:
            log.warning(f"Position ohne Produkt-ID oder Menge wird übersprungen: {line.name}")
            result.perLine.append(
                InventoryLineResult(
                    productId=line.productId, name=line.name, quantity=line.quantity,
                    success=False, skipped=True, error="No product id",
                )
            )
            continue

        try:
            line_result = _decrement_line(gateway, line, timeout)
        except (NotFoundError, InsufficientStockError, InventoryGatewayError, RequestTimeoutError) as e:
            log.warning(f"[Produkt: {line.productId}] Bestand nicht aktualisiert: {e.message}")
            result.failedCount += 1
            result.perLine.append(
                InventoryLineResult(
                    productId=line.productId, name=line.name, quantity=line.quantity,
                    success=False, error=e.message,
                )
            )
            continue

        if line_result.unknown:
            log.critical(
                f"[Produkt: {line.productId}] Ergebnis der Bestandsänderung unbekannt ({line_result.operation}). "
                f"MANUELLE PRÜFUNG ERFORDERLICH!"
            )
            result.unknownCount += 1
            result.perLine.append(line_result)
            continue

        log.info(
            f"[Produkt: {line.productId}] Bestand {line_result.stockBefore} -> {line_result.stockAfter} "
            f"({line.quantity} verkauft)."
        )
        result.succeededCount += 1
        result.perLine.append(line_result)

    log.info(f"Inventarabgleich: {result.succeededCount} erfolgreich, {result.failedCount} fehlgeschlagen, {result.unknownCount} unbekannt.")
    return result
