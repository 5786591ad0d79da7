# schemas/__init__.py
from schemas.base import ApiModel, money, utcnow
from schemas.surface_messages import (
    SurfaceChannel,
    parse_surface_message,
)

__all__ = [
    "ApiModel",
    "money",
    "utcnow",
    "SurfaceChannel",
    "parse_surface_message",
]
