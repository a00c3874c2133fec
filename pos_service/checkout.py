"""
checkout.py — Payer-Initiated Checkout

The customer pays an existing incoming payment from their own wallet:

    start_checkout:  normalize pointer → resolve payer wallet (retried) → quote grant
                     → quote → interactive outgoing-payment grant → redirect URL
    finish_checkout: continue the grant with the interaction reference
                     → create the outgoing payment

Checkout states:
    interaction_pending ──finish──▶ finalized
            │
            └── continuation used, payment creation failed ──▶ continuation_consumed

A finalized checkout returns its payment id on every further finish call.
Continuation tokens are single-use, so a checkout allows two finish attempts;
after the second failure the operator has to step in.
"""

import logging
import uuid
from typing import Optional
from urllib.parse import urlencode, urlparse

from pydantic import ValidationError

from .clients import ProtocolClient, access_token_of
from .exceptions import (
    ContinuationConsumedError,
    FinishAttemptsExhaustedError,
    InvalidPointerError,
    NoRedirectReceivedError,
    NotFoundError,
    ProtocolError,
    RequestTimeoutError,
)
from .models import Checkout, CheckoutStarted, CheckoutState, Continuation, new_id
from .money import ScaledAmount
from .retry import RetryPolicy
from .store import EntityStore

log = logging.getLogger(__name__)

PAYMENT_DESCRIPTION = "POS Open Payments"
MAX_FINISH_ATTEMPTS = 2


def normalize_pointer(pointer: str) -> str:
    """
    Turns a payment pointer or wallet address into an https:// URL.

    "$ilp.example/alice" and "http://ilp.example/alice/" both become
    "https://ilp.example/alice".

    Raises:
        InvalidPointerError: If the result is not an absolute https:// URL.
    """
    value = (pointer or "").strip()
    if value.startswith("$"):
        value = f"https://{value[1:]}"
    elif value.lower().startswith("http://"):
        value = f"https://{value[len('http://'):]}"
    value = value.rstrip("/")

    parsed = urlparse(value)
    if parsed.scheme.lower() != "https" or not parsed.netloc:
        raise InvalidPointerError("Invalid payment pointer", details={"pointer": pointer})
    return value


def with_query_param(url: str, key: str, value: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode({key: value})}"


class CheckoutOrchestrator:
    """
    Runs payer-initiated checkouts and owns the Checkout store.

    Args:
        client (ProtocolClient): Open Payments client of this service.
        checkouts (EntityStore[Checkout]): Store of started checkouts.
        finish_url (str): Default redirect after the payer's interaction.
        wallet_retry (RetryPolicy): Applied to the payer wallet lookup only.
        timeout (float | None): Default bound for every protocol call.
    """

    def __init__(
        self,
        client: ProtocolClient,
        checkouts: EntityStore,
        finish_url: str,
        wallet_retry: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
    ):
        self.client = client
        self.checkouts = checkouts
        self.finish_url = finish_url
        self.wallet_retry = wallet_retry or RetryPolicy.from_retries(2, 0.5)
        self.timeout = timeout

    def start_checkout(
        self,
        payer_pointer: str,
        receiver_incoming_payment_url: str,
        finish_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CheckoutStarted:
        """
        Prepares an outgoing payment from the payer's wallet to `receiver_incoming_payment_url`.

        Returns:
            CheckoutStarted: Checkout id and the interaction URL the payer must visit.

        Raises:
            InvalidPointerError: Before any external call.
            NoRedirectReceivedError: If the outgoing-payment grant has no interaction redirect.
            ProtocolError, RequestTimeoutError: Passed through from the protocol client.
        """
        pointer = normalize_pointer(payer_pointer)
        if not receiver_incoming_payment_url:
            raise InvalidPointerError("Missing receiver payment URL")
        timeout = timeout or self.timeout

        wallet = self.wallet_retry.call(
            lambda: self.client.get_wallet_address(pointer, timeout=timeout),
            description=f"[Checkout] walletAddress.get {pointer}",
        )

        quote_grant = self.client.request_grant(
            wallet.authServer,
            access=[{"type": "quote", "actions": ["create", "read"]}],
            timeout=timeout,
        )
        quote = self.client.create_quote(
            wallet.resourceServer,
            access_token_of(quote_grant, "grant.request"),
            wallet_address=wallet.id,
            receiver=receiver_incoming_payment_url,
            timeout=timeout,
        )
        if not quote.get("id") or not quote.get("debitAmount"):
            raise ProtocolError("Quote response without id or debit amount", status=502, operation="quote.create")

        checkout_id = new_id()
        log.info(f"[Checkout: {checkout_id}] Quote {quote['id']} erstellt. Fordere Zahlungs-Grant an...")

        grant = self.client.request_grant(
            wallet.authServer,
            access=[{
                "type": "outgoing-payment",
                "actions": ["read", "create", "list"],
                "identifier": wallet.id,
                "limits": {"debitAmount": quote["debitAmount"]},
            }],
            interact={
                "start": ["redirect"],
                "finish": {
                    "method": "redirect",
                    "uri": with_query_param(finish_url or self.finish_url, "checkoutId", checkout_id),
                    "nonce": str(uuid.uuid4()),
                },
            },
            timeout=timeout,
        )

        redirect = (grant.get("interact") or {}).get("redirect")
        if not redirect:
            log.error(f"[Checkout: {checkout_id}] Grant ohne Interaktions-Redirect erhalten.")
            raise NoRedirectReceivedError()

        continuation = grant.get("continue") or {}
        if not continuation.get("uri"):
            raise ProtocolError("Grant response without continuation", status=502, operation="grant.request")

        try:
            debit_amount = ScaledAmount.model_validate(quote["debitAmount"])
        except ValidationError as e:
            raise ProtocolError("Quote with malformed debit amount", status=502, details=e.errors(),
                                operation="quote.create") from e

        checkout = Checkout(
            id=checkout_id,
            continuation=Continuation(
                uri=continuation["uri"],
                accessToken=(continuation.get("access_token") or {}).get("value"),
            ),
            quoteId=quote["id"],
            debitAmount=debit_amount,
            payerWalletId=wallet.id,
            payerResourceServer=wallet.resourceServer,
        )
        self.checkouts.put(checkout_id, checkout)
        log.info(f"[Checkout: {checkout_id}] Warte auf Interaktion des Kunden.")
        return CheckoutStarted(checkout_id=checkout_id, redirect_url=redirect)

    def finish_checkout(self, checkout_id: str, interact_ref: str, timeout: Optional[float] = None) -> str:
        """
        Completes a checkout after the payer returned from the interaction.

        Idempotent: a finalized checkout returns its outgoing payment id without
        another protocol call.

        Returns:
            str: Id of the outgoing payment.

        Raises:
            NotFoundError: If the checkout is unknown.
            ContinuationConsumedError: If an earlier attempt used the continuation but no payment exists.
            FinishAttemptsExhaustedError: If the allowed finish attempts are used up.
            ProtocolError, RequestTimeoutError: Passed through from the protocol client.
        """
        timeout = timeout or self.timeout
        checkout = self._get(checkout_id)
        if checkout.finalizedPaymentId:
            return checkout.finalizedPaymentId

        with self.checkouts.locked(checkout_id):
            checkout = self._get(checkout_id)
            if checkout.finalizedPaymentId:
                return checkout.finalizedPaymentId
            if checkout.state == CheckoutState.CONTINUATION_CONSUMED:
                raise ContinuationConsumedError(
                    "Grant continuation already used, payment state unknown. Manual reconciliation required.",
                    details={"checkoutId": checkout_id, "lastError": checkout.lastError},
                )
            if checkout.finishAttempts >= MAX_FINISH_ATTEMPTS:
                raise FinishAttemptsExhaustedError(
                    "Checkout cannot be finished anymore",
                    details={"checkoutId": checkout_id, "lastError": checkout.lastError},
                )

            attempt = checkout.finishAttempts + 1
            self.checkouts.update(checkout_id, finishAttempts=attempt)

            try:
                grant = self.client.continue_grant(
                    checkout.continuation.uri, checkout.continuation.accessToken, interact_ref, timeout=timeout
                )
                access_token = access_token_of(grant, "grant.continue")
            except (ProtocolError, RequestTimeoutError) as e:
                self.checkouts.update(checkout_id, lastError=e.message)
                if attempt >= MAX_FINISH_ATTEMPTS:
                    log.critical(
                        f"[Checkout: {checkout_id}] Grant-Fortsetzung erneut fehlgeschlagen: {e.message}. "
                        f"BENÖTIGT MANUELLE AKTION!"
                    )
                else:
                    log.error(f"[Checkout: {checkout_id}] Grant-Fortsetzung fehlgeschlagen: {e.message}")
                raise

            try:
                payment = self.client.create_outgoing_payment(
                    checkout.payerResourceServer,
                    access_token,
                    wallet_address=checkout.payerWalletId,
                    quote_id=checkout.quoteId,
                    metadata={"description": PAYMENT_DESCRIPTION},
                    timeout=timeout,
                )
                if not payment.get("id"):
                    raise ProtocolError(
                        "Outgoing payment response without id", status=502, operation="outgoingPayment.create"
                    )
            except (ProtocolError, RequestTimeoutError) as e:
                # Token ist verbraucht, Zahlung evtl. angelegt
                self.checkouts.update(checkout_id, state=CheckoutState.CONTINUATION_CONSUMED, lastError=e.message)
                log.critical(
                    f"[Checkout: {checkout_id}] Ausgehende Zahlung nach Grant-Fortsetzung fehlgeschlagen: "
                    f"{e.message}. BENÖTIGT MANUELLE AKTION!"
                )
                raise

            self.checkouts.compare_and_swap(
                checkout_id, "finalizedPaymentId", None, payment["id"], state=CheckoutState.FINALIZED
            )
            log.info(f"[Checkout: {checkout_id}] Ausgehende Zahlung {payment['id']} erstellt.")
            return payment["id"]

    def _get(self, checkout_id: str) -> Checkout:
        checkout = self.checkouts.get(checkout_id)
        if checkout is None:
            raise NotFoundError("Checkout not found", details={"checkoutId": checkout_id})
        return checkout
