"""Error taxonomy shared by the escrow core and rendered once at the API edge.

Services raise these instead of HTTP exceptions; ``main.py`` installs a single
handler that turns them into JSON responses.
"""

import enum


class HomeProError(Exception):
    """Base class for every error the service surfaces to callers."""

    status_code = 400
    code = "error"
    retryable = False

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    @property
    def user_message(self) -> str:
        if self.retryable:
            return "Temporary problem, please try again."
        return "This request could not be completed."


class ValidationError(HomeProError):
    status_code = 422
    code = "validation_error"


class NotFound(HomeProError):
    status_code = 404
    code = "not_found"


class InvalidState(HomeProError):
    status_code = 409
    code = "invalid_state"


class Unauthorized(HomeProError):
    status_code = 403
    code = "unauthorized"


class Conflict(HomeProError):
    status_code = 409
    code = "conflict"


class GatewayErrorKind(enum.Enum):
    DECLINED = "declined"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    ACCOUNT_NOT_READY = "account_not_ready"
    REFUND_TARGET_CLOSED = "refund_target_closed"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({GatewayErrorKind.NETWORK, GatewayErrorKind.RATE_LIMITED})


class GatewayError(HomeProError):
    """A failure reported by (or while reaching) the payment gateway."""

    status_code = 502
    code = "gateway_error"

    def __init__(self, kind: GatewayErrorKind, detail: str) -> None:
        super().__init__(detail)
        self.kind = kind

    @classmethod
    def from_kind(cls, kind: GatewayErrorKind, detail: str) -> "GatewayError":
        """Build the retryable or permanent subclass matching ``kind``."""
        if kind in RETRYABLE_KINDS:
            return RetryableGatewayError(kind, detail)
        return PermanentGatewayError(kind, detail)


class RetryableGatewayError(GatewayError):
    status_code = 503
    code = "gateway_retryable"
    retryable = True

    @property
    def user_message(self) -> str:
        return "The payment provider is temporarily unavailable. Please try again in a moment."


class PermanentGatewayError(GatewayError):
    status_code = 402
    code = "gateway_permanent"

    @property
    def user_message(self) -> str:
        messages = {
            GatewayErrorKind.DECLINED: "The card was declined. Please use a different payment method.",
            GatewayErrorKind.INSUFFICIENT_FUNDS: "The card has insufficient funds.",
            GatewayErrorKind.ACCOUNT_NOT_READY: (
                "The contractor's payout account is not ready. Payout onboarding must be completed."
            ),
            GatewayErrorKind.REFUND_TARGET_CLOSED: (
                "The original payment method can no longer receive refunds. Support will follow up."
            ),
        }
        return messages.get(self.kind, "This payment requires manual intervention by support.")
