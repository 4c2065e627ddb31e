"""Routers package."""

from .appointments import router as appointments_router
from .invoices import router as invoices_router
from .prepaid import router as prepaid_router

__all__ = [
    "appointments_router",
    "invoices_router",
    "prepaid_router",
]
