"""Routers package."""

from . import (
    health,
    storage,
    billing,
    admin,
)
