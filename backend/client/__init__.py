# client/__init__.py
from client.api_client import CheckoutApiClient
from client.checkout_flow import (
    CheckoutFlow,
    CheckoutOutcome,
    CheckoutOutcomeKind,
)
from client.remote_store import build_client_store

__all__ = [
    "CheckoutApiClient",
    "CheckoutFlow",
    "CheckoutOutcome",
    "CheckoutOutcomeKind",
    "build_client_store",
]
