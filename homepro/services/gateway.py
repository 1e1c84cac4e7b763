"""Payment gateway client.

Talks to a Stripe-compatible REST API over httpx. Every failure is mapped onto
the ``GatewayErrorKind`` taxonomy so callers can tell a retryable hiccup
(timeout, rate limit) from a permanent rejection (declined card, payout
account not onboarded). Writes carry idempotency keys so a retried request is
never applied twice by the gateway.

See: https://docs.stripe.com/api
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol, TypeVar

import httpx

from homepro.config import settings
from homepro.errors import GatewayError, GatewayErrorKind, RetryableGatewayError
from homepro.services.fees import to_minor_units

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ACCOUNT_NOT_READY_CODES = {
    "account_invalid",
    "account_closed",
    "payouts_not_allowed",
    "transfers_not_allowed",
}
_REFUND_TARGET_CLOSED_CODES = {"charge_disputed", "expired_or_canceled_card"}
_RETRYABLE_CODES = {"lock_timeout", "rate_limit"}


@dataclass(frozen=True)
class CaptureResult:
    intent_id: str
    amount_minor: int


@dataclass(frozen=True)
class TransferResult:
    transfer_id: str
    amount_minor: int


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    amount_minor: int
    status: str


@dataclass(frozen=True)
class AccountStatus:
    account_id: str
    details_submitted: bool
    payouts_enabled: bool
    requirements_due: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class OnboardingLink:
    url: str
    expires_at: int


class PaymentGateway(Protocol):
    """What the escrow core needs from a payment processor."""

    async def create_customer(self, user_id: str, email: str | None = None) -> str: ...

    async def capture(
        self,
        amount: Decimal,
        payer_ref: str,
        idempotency_key: str,
        payment_method: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> CaptureResult: ...

    async def transfer(
        self,
        destination: str,
        amount: Decimal,
        transfer_group: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> TransferResult: ...

    async def refund(self, intent_id: str, idempotency_key: str) -> RefundResult: ...

    async def find_transfer(self, transfer_group: str) -> TransferResult | None: ...

    async def find_refund(self, intent_id: str) -> RefundResult | None: ...

    async def get_account(self, account_id: str) -> AccountStatus: ...

    async def create_account(self, contractor_id: str, email: str | None = None) -> str: ...

    async def create_onboarding_link(self, account_id: str, refresh_url: str, return_url: str) -> OnboardingLink: ...


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff, applied to retryable gateway errors only."""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.gateway_max_attempts,
            base_delay=settings.gateway_backoff_base_seconds,
            max_delay=settings.gateway_backoff_max_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    async def run(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        attempt = 1
        while True:
            try:
                return await fn()
            except RetryableGatewayError as e:
                if attempt >= self.max_attempts:
                    logger.error(
                        "Gateway %s failed after %d attempts: %s", operation, attempt, e.detail
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Gateway %s attempt %d/%d failed (%s), retrying in %.2fs",
                    operation, attempt, self.max_attempts, e.kind.value, delay,
                )
                await self.sleep(delay)
                attempt += 1


def classify_error(status_code: int, body: dict) -> GatewayErrorKind:
    """Map a gateway error response onto our error taxonomy."""
    if status_code == 429:
        return GatewayErrorKind.RATE_LIMITED
    if status_code >= 500:
        return GatewayErrorKind.NETWORK

    error = body.get("error") or {}
    code = error.get("code") or ""
    decline_code = error.get("decline_code") or ""

    if "insufficient_funds" in (code, decline_code):
        return GatewayErrorKind.INSUFFICIENT_FUNDS
    if error.get("type") == "card_error":
        return GatewayErrorKind.DECLINED
    if code in _ACCOUNT_NOT_READY_CODES:
        return GatewayErrorKind.ACCOUNT_NOT_READY
    if code in _REFUND_TARGET_CLOSED_CODES:
        return GatewayErrorKind.REFUND_TARGET_CLOSED
    if code in _RETRYABLE_CODES:
        return GatewayErrorKind.RATE_LIMITED
    return GatewayErrorKind.UNKNOWN


def _flatten_metadata(metadata: dict[str, str] | None) -> dict[str, str]:
    return {f"metadata[{k}]": str(v) for k, v in (metadata or {}).items()}


class StripeGateway:
    """httpx-backed client for the Stripe REST API (form-encoded requests)."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.stripe.com/v1",
        timeout_seconds: float = 15.0,
        currency: str = "usd",
        statement_descriptor: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._currency = currency
        self._statement_descriptor = statement_descriptor
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls) -> "StripeGateway":
        return cls(
            api_key=settings.gateway_api_key,
            base_url=settings.gateway_api_url,
            timeout_seconds=settings.gateway_timeout_seconds,
            currency=settings.currency,
            statement_descriptor=settings.statement_descriptor,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        data: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> dict:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            resp = await self._client.request(
                method, path.lstrip("/"), data=data, params=params, headers=headers
            )
        except httpx.TimeoutException:
            logger.error("Payment gateway timed out: %s %s", method, path)
            raise GatewayError.from_kind(
                GatewayErrorKind.NETWORK, f"Payment gateway timed out on {method} {path}"
            )
        except httpx.RequestError as e:
            logger.error("Payment gateway request failed: %s", e)
            raise GatewayError.from_kind(
                GatewayErrorKind.NETWORK, "Failed to reach the payment gateway"
            )

        if resp.status_code < 400:
            return resp.json()

        try:
            body = resp.json()
        except ValueError:
            body = {}
        kind = classify_error(resp.status_code, body)
        message = (body.get("error") or {}).get("message") or resp.text[:500]
        logger.warning(
            "Payment gateway %s %s returned %d (%s): %s",
            method, path, resp.status_code, kind.value, message,
        )
        raise GatewayError.from_kind(kind, message)

    async def create_customer(self, user_id: str, email: str | None = None) -> str:
        data = {"metadata[user_id]": user_id}
        if email:
            data["email"] = email
        body = await self._request(
            "POST", "/customers", data=data, idempotency_key=f"customer-{user_id}"
        )
        return body["id"]

    async def capture(
        self,
        amount: Decimal,
        payer_ref: str,
        idempotency_key: str,
        payment_method: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> CaptureResult:
        """Authorize then capture ``amount`` from the payer.

        Funds land on the platform balance and stay there until a transfer
        (release) or refund moves them.
        """
        data = {
            "amount": str(to_minor_units(amount)),
            "currency": self._currency,
            "customer": payer_ref,
            "capture_method": "manual",
            "confirm": "true",
            "off_session": "true",
            **_flatten_metadata(metadata),
        }
        if payment_method:
            data["payment_method"] = payment_method
        if self._statement_descriptor:
            data["statement_descriptor_suffix"] = self._statement_descriptor[:22]

        intent = await self._request(
            "POST", "/payment_intents", data=data, idempotency_key=f"{idempotency_key}-authorize"
        )
        intent_id = intent["id"]
        if intent.get("status") not in ("requires_capture", "succeeded"):
            await self._cancel_quietly(intent_id)
            raise GatewayError.from_kind(
                GatewayErrorKind.DECLINED,
                f"Payment could not be authorized (status {intent.get('status')})",
            )

        if intent.get("status") == "requires_capture":
            try:
                intent = await self._request(
                    "POST",
                    f"/payment_intents/{intent_id}/capture",
                    idempotency_key=f"{idempotency_key}-capture",
                )
            except GatewayError:
                await self._cancel_quietly(intent_id)
                raise

        return CaptureResult(intent_id=intent_id, amount_minor=int(intent["amount"]))

    async def _cancel_quietly(self, intent_id: str) -> None:
        """Release an uncaptured authorization; the original error is what matters."""
        try:
            await self._request("POST", f"/payment_intents/{intent_id}/cancel")
        except GatewayError as e:
            logger.warning("Could not cancel payment intent %s: %s", intent_id, e.detail)

    async def transfer(
        self,
        destination: str,
        amount: Decimal,
        transfer_group: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> TransferResult:
        data = {
            "amount": str(to_minor_units(amount)),
            "currency": self._currency,
            "destination": destination,
            "transfer_group": transfer_group,
            **_flatten_metadata(metadata),
        }
        body = await self._request("POST", "/transfers", data=data, idempotency_key=idempotency_key)
        return TransferResult(transfer_id=body["id"], amount_minor=int(body["amount"]))

    async def refund(self, intent_id: str, idempotency_key: str) -> RefundResult:
        body = await self._request(
            "POST", "/refunds", data={"payment_intent": intent_id}, idempotency_key=idempotency_key
        )
        return RefundResult(
            refund_id=body["id"], amount_minor=int(body["amount"]), status=body.get("status", "")
        )

    async def find_transfer(self, transfer_group: str) -> TransferResult | None:
        body = await self._request(
            "GET", "/transfers", params={"transfer_group": transfer_group, "limit": "10"}
        )
        for item in body.get("data", []):
            if not item.get("reversed"):
                return TransferResult(transfer_id=item["id"], amount_minor=int(item["amount"]))
        return None

    async def find_refund(self, intent_id: str) -> RefundResult | None:
        body = await self._request(
            "GET", "/refunds", params={"payment_intent": intent_id, "limit": "10"}
        )
        for item in body.get("data", []):
            if item.get("status") in ("succeeded", "pending"):
                return RefundResult(
                    refund_id=item["id"], amount_minor=int(item["amount"]), status=item["status"]
                )
        return None

    async def get_account(self, account_id: str) -> AccountStatus:
        body = await self._request("GET", f"/accounts/{account_id}")
        requirements = body.get("requirements") or {}
        return AccountStatus(
            account_id=body["id"],
            details_submitted=bool(body.get("details_submitted", False)),
            payouts_enabled=bool(body.get("payouts_enabled", False)),
            requirements_due=list(requirements.get("currently_due") or []),
        )

    async def create_account(self, contractor_id: str, email: str | None = None) -> str:
        """Create an Express connected account that can receive transfers."""
        data = {
            "type": "express",
            "capabilities[transfers][requested]": "true",
            "business_type": "individual",
            "metadata[contractor_id]": contractor_id,
        }
        if email:
            data["email"] = email
        body = await self._request(
            "POST", "/accounts", data=data, idempotency_key=f"account-{contractor_id}"
        )
        return body["id"]

    async def create_onboarding_link(self, account_id: str, refresh_url: str, return_url: str) -> OnboardingLink:
        body = await self._request(
            "POST",
            "/account_links",
            data={
                "account": account_id,
                "refresh_url": refresh_url,
                "return_url": return_url,
                "type": "account_onboarding",
            },
        )
        return OnboardingLink(url=body["url"], expires_at=int(body["expires_at"]))
