# api/__init__.py
from api.server import (
    CheckoutServices,
    build_services,
    create_app,
)

__all__ = [
    "CheckoutServices",
    "build_services",
    "create_app",
]
