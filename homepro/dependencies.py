"""FastAPI dependencies for the components the lifespan builds.

The gateway client and escrow service live on ``app.state``; there are no
module-level instances of either, so tests swap them through
``app.dependency_overrides`` or by setting ``app.state`` directly.
"""

from fastapi import Request

from homepro.services.escrow import EscrowService
from homepro.services.gateway import PaymentGateway, RetryPolicy


def get_escrow_service(request: Request) -> EscrowService:
    return request.app.state.escrow_service


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_retry_policy(request: Request) -> RetryPolicy:
    return request.app.state.retry_policy
