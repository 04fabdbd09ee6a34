"""API router modules for the FuelFlow service."""

from __future__ import annotations

from api.routers import access, admin, contracts, health, invoices, metrics

__all__ = [
    "access",
    "admin",
    "contracts",
    "health",
    "invoices",
    "metrics",
]
