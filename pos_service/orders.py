"""
orders.py — Receiver-Initiated Charges

The merchant creates an incoming payment on its own wallet for the cart total
and hands the payment URL to the customer (QR code). Completion is detected
later by the ReconciliationService.

Workflow Overview:
1. Validate the cart (no external call yet)
2. Resolve the merchant wallet address (asset code/scale, auth and resource server)
3. Compute subtotal, tax and total in scaled integers
4. Request an incoming-payment grant (may require merchant approval → InteractionRequired)
5. Create the incoming payment and store the Order

No protocol call is retried here: repeating a grant or payment request can
create duplicate resources.
"""

import logging
import uuid
from typing import List, Optional, Tuple, Union

from .clients import ProtocolClient, access_token_of
from .exceptions import EmptyCartError, ProtocolError
from .models import CartLine, InteractionRequired, Order, WalletAddress, new_id
from .money import ScaledAmount, add, multiply_by_quantity, percent_of, require_positive_total, to_scaled
from .store import EntityStore

log = logging.getLogger(__name__)

PAYMENT_DESCRIPTION = "POS Open Payments"


def compute_totals(lines: List[CartLine], tax_percent: Optional[str], scale: int) -> Tuple[str, str, str]:
    """
    Computes (subtotal, tax, total) as scaled values.

    Raises:
        InvalidAmountError: If a price or the tax percentage is malformed.
        NegativeOrZeroTotalError: If the total is not strictly positive.
    """
    subtotal = "0"
    for line in lines:
        subtotal = add(subtotal, multiply_by_quantity(line.unitPrice, line.quantity, scale))
    tax = percent_of(subtotal, tax_percent) if tax_percent else "0"
    total = add(subtotal, tax)
    require_positive_total(total)
    return subtotal, tax, total


class OrderOrchestrator:
    """
    Builds receiver-initiated charges and owns the Order store.

    Args:
        client (ProtocolClient): Open Payments client acting for the merchant.
        orders (EntityStore[Order]): Store shared with the ReconciliationService.
        merchant_wallet_address_url (str): Wallet receiving the payments.
        finish_url (str): Default redirect after merchant approval.
        default_asset_code (str): Used when the wallet does not report an asset code.
        default_asset_scale (int): Used when the wallet does not report an asset scale.
        timeout (float | None): Default bound for every protocol call.
    """

    def __init__(
        self,
        client: ProtocolClient,
        orders: EntityStore,
        merchant_wallet_address_url: str,
        finish_url: str,
        default_asset_code: str = "MXN",
        default_asset_scale: int = 2,
        timeout: Optional[float] = None,
    ):
        self.client = client
        self.orders = orders
        self.merchant_wallet_address_url = merchant_wallet_address_url
        self.finish_url = finish_url
        self.default_asset_code = default_asset_code
        self.default_asset_scale = default_asset_scale
        self.timeout = timeout

    def merchant_wallet(self, timeout: Optional[float] = None) -> WalletAddress:
        return self.client.get_wallet_address(self.merchant_wallet_address_url, timeout=timeout or self.timeout)

    def asset_of(self, wallet: WalletAddress) -> Tuple[str, int]:
        code = wallet.assetCode or self.default_asset_code
        scale = wallet.assetScale if wallet.assetScale is not None else self.default_asset_scale
        return code, scale

    def create_order(
        self,
        lines: List[CartLine],
        tax_percent: Optional[str] = "0",
        finish_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Union[Order, InteractionRequired]:
        """
        Creates an incoming payment for the cart and stores the resulting Order.

        Args:
            lines (list[CartLine]): Cart lines; copied into the Order.
            tax_percent (str | None): Tax as a plain percentage ("16" = 16%).
            finish_url (str | None): Redirect after merchant approval; defaults to the configured one.
            timeout (float | None): Bound for each protocol call.

        Returns:
            Order: The stored order with its incoming payment URL.
            InteractionRequired: The merchant must approve the grant first. Nothing is stored.

        Raises:
            EmptyCartError, InvalidAmountError, NegativeOrZeroTotalError: Before any external call.
            ProtocolError, RequestTimeoutError: Passed through from the protocol client.
            StoreWriteError: If the order could not be stored.
        """
        if not lines:
            raise EmptyCartError()

        timeout = timeout or self.timeout
        # Validierung der Beträge vor dem ersten externen Aufruf
        for line in lines:
            to_scaled(line.unitPrice, 0)
        if tax_percent:
            percent_of("0", tax_percent)

        log.info(f"[Kasse] Erstelle Auftrag mit {len(lines)} Positionen.")
        for line in lines:
            log.info(f"[Kasse]   - {line.name} x{line.quantity} (ID: {line.productId})")

        wallet = self.merchant_wallet(timeout)
        asset_code, asset_scale = self.asset_of(wallet)

        subtotal, tax, total = compute_totals(lines, tax_percent, asset_scale)
        log.info(f"[Kasse] Zwischensumme={subtotal}, Steuer={tax}, Gesamt={total} ({asset_code}, Skala {asset_scale})")

        grant = self.client.request_grant(
            wallet.authServer,
            access=[{"type": "incoming-payment", "actions": ["create", "read", "complete"]}],
            interact={
                "start": ["redirect"],
                "finish": {"method": "redirect", "uri": finish_url or self.finish_url, "nonce": str(uuid.uuid4())},
            },
            timeout=timeout,
        )

        redirect = (grant.get("interact") or {}).get("redirect")
        if redirect:
            log.warning("[Kasse] Grant benötigt Freigabe durch den Händler. Kein Auftrag angelegt.")
            return InteractionRequired(redirect_url=redirect)

        access_token = access_token_of(grant, "grant.request")
        incoming = self.client.create_incoming_payment(
            wallet.resourceServer,
            access_token,
            wallet_address=wallet.id,
            incoming_amount={"value": total, "assetCode": asset_code, "assetScale": asset_scale},
            metadata={
                "description": PAYMENT_DESCRIPTION,
                "items": [line.model_dump() for line in lines],
                "subtotal": subtotal,
                "tax": tax,
                "total": total,
            },
            timeout=timeout,
        )

        if not incoming.get("id"):
            raise ProtocolError("Incoming payment response without id", status=502, operation="incomingPayment.create")

        order = Order(
            id=new_id(),
            incomingPaymentUrl=incoming["id"],
            total=ScaledAmount(value=total, assetCode=asset_code, assetScale=asset_scale),
            subtotal=subtotal,
            tax=tax,
            lines=[line.model_copy() for line in lines],
        )
        self.orders.put(order.id, order)
        log.info(f"[Order: {order.id}] Auftrag angelegt. Zahlung: {order.incomingPaymentUrl}")
        return order
