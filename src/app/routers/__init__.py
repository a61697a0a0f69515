# Routers package
from . import (
    public_router,
    stripe_router,
)

__all__ = [
    "public_router",
    "stripe_router",
]
