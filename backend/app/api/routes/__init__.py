# API Routes Module
from app.api.routes import (
    access,
    admin,
    billing,
    webhooks,
)

__all__ = [
    "access",
    "admin",
    "billing",
    "webhooks",
]
