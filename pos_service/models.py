"""
models.py — Data Models for Charges and Checkouts

This module defines the data structures used by the orchestrators and the API.
It uses Pydantic models to ensure type safety and automatic validation of incoming data.

Models:
    - CartLine: A single product line of a cart.
    - Order: A receiver-initiated charge (incoming payment) and its inventory reconciliation state.
    - Checkout: A payer-initiated checkout waiting for (or done with) the wallet interaction.
    - WalletAddress: Wallet address metadata resolved from the Open Payments server.
    - InventoryLineResult / InventoryResult: Outcome of a stock reconciliation run.
    - OrderStatusView: Payment state combined with the order's reconciliation flags.
    - Request bodies of the HTTP API.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .money import ScaledAmount, rate_to_percent


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CartLine(BaseModel):
    """
    Represents a single product line in a cart.

    Attributes:
        productId (str | None): Inventory identifier. Lines without one are not reconciled.
        name (str): Display name of the product.
        unitPrice (str): Unit price as a decimal string, e.g. "18.00".
        quantity (int): Number of units. Must be greater than zero.
    """
    model_config = ConfigDict(populate_by_name=True)

    productId: Optional[str] = Field(default=None, validation_alias=AliasChoices("productId", "id"))
    name: str = ""
    unitPrice: str
    quantity: int = Field(..., gt=0, validation_alias=AliasChoices("quantity", "qty"))

    @field_validator("productId", "unitPrice", mode="before")
    @classmethod
    def stringify(cls, v):
        # JSON numbers ("unitPrice": 18.5, "id": 7) are accepted as their decimal text
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class WalletAddress(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    authServer: str
    resourceServer: str
    assetCode: Optional[str] = None
    assetScale: Optional[int] = None
    publicName: Optional[str] = None


class InteractionRequired(BaseModel):
    """Merchant approval is pending: the operator must visit `redirect_url` and retry."""
    redirect_url: str


class InventoryLineResult(BaseModel):
    productId: Optional[str] = None
    name: str = ""
    quantity: int
    success: bool
    skipped: bool = False
    # the write was sent but its result is unknown (timeout); the stock must be checked by hand
    unknown: bool = False
    operation: Optional[str] = None
    error: Optional[str] = None
    stockBefore: Optional[int] = None
    stockAfter: Optional[int] = None


class InventoryResult(BaseModel):
    succeededCount: int = 0
    failedCount: int = 0
    unknownCount: int = 0
    perLine: List[InventoryLineResult] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.succeededCount > 0

    def error_summary(self) -> Optional[str]:
        failures = [f"{line.name or line.productId}: {line.error}" for line in self.perLine if not line.success and not line.skipped]
        if not failures:
            return None
        return "; ".join(failures)


class Order(BaseModel):
    """
    A receiver-initiated charge.

    Created once the incoming payment exists; afterwards only the inventory
    fields change, and only through the reconciliation service.
    """
    id: str = Field(default_factory=new_id)
    incomingPaymentUrl: str
    total: ScaledAmount
    subtotal: str
    tax: str
    lines: List[CartLine]
    inventoryReconciled: bool = False
    inventoryReconciledAt: Optional[datetime] = None
    inventoryError: Optional[str] = None
    inventoryResult: Optional[InventoryResult] = None
    inventoryNeedsReview: bool = False
    createdAt: datetime = Field(default_factory=utcnow)


class CheckoutState(str, Enum):
    # "started" only exists inside start_checkout; a checkout is stored once its redirect is known
    INTERACTION_PENDING = "interaction_pending"
    FINALIZED = "finalized"
    CONTINUATION_CONSUMED = "continuation_consumed"


class Continuation(BaseModel):
    uri: str
    accessToken: Optional[str] = None


class Checkout(BaseModel):
    """
    A payer-initiated checkout.

    Moves interaction_pending -> finalized. When the grant
    continuation succeeded but the outgoing payment could not be created it
    ends in continuation_consumed instead and needs manual follow-up.
    """
    id: str = Field(default_factory=new_id)
    state: CheckoutState = CheckoutState.INTERACTION_PENDING
    continuation: Continuation
    quoteId: str
    debitAmount: Optional[ScaledAmount] = None
    payerWalletId: str
    payerResourceServer: str
    finalizedPaymentId: Optional[str] = None
    finishAttempts: int = 0
    lastError: Optional[str] = None
    createdAt: datetime = Field(default_factory=utcnow)


class CheckoutStarted(BaseModel):
    checkout_id: str
    redirect_url: str


class OrderStatusView(BaseModel):
    id: str
    state: str
    completed: bool
    walletAddress: Optional[str] = None
    receivedAmount: Dict[str, Any]
    incomingAmount: Optional[Dict[str, Any]] = None
    expiresAt: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    inventoryReconciled: bool
    inventoryReconciledAt: Optional[datetime] = None
    inventoryError: Optional[str] = None
    inventoryNeedsReview: bool = False
    inventoryResult: Optional[InventoryResult] = None


# --- Request bodies ---

class CreateOrderRequest(BaseModel):
    """
    Body of POST /pos/create-order.

    An empty `items` list passes validation here and is rejected by the
    orchestrator with EmptyCartError (HTTP 400).
    """
    model_config = ConfigDict(populate_by_name=True)

    items: List[CartLine] = Field(default_factory=list)
    taxPercent: Optional[str] = None
    # older frontends send the rate as a fraction (0.16 for 16%)
    taxRate: Optional[str] = None
    finishUrl: Optional[str] = None

    @field_validator("taxPercent", "taxRate", mode="before")
    @classmethod
    def stringify_tax(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    def tax_percent(self) -> str:
        """
        Tax as a plain percentage; `taxPercent` wins over `taxRate`.

        Raises:
            InvalidAmountError: If `taxRate` is not a decimal number.
        """
        if self.taxPercent is not None:
            return self.taxPercent
        if self.taxRate is not None:
            return rate_to_percent(self.taxRate)
        return "0"


class CheckoutStartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customerWalletAddressUrl: str = Field(..., min_length=1, validation_alias=AliasChoices("customerWalletAddressUrl", "payerPointer"))
    receiverPaymentUrl: str = Field(..., min_length=1)
    finishUrl: Optional[str] = None


class CheckoutFinishRequest(BaseModel):
    checkoutId: str = Field(..., min_length=1)
    interactRef: str = Field(..., min_length=1)


class InventoryReviewRequest(BaseModel):
    """Body of POST /pos/inventory-review: the operator's verdict on an ambiguous stock update."""
    orderId: str = Field(..., min_length=1)
    applied: bool
