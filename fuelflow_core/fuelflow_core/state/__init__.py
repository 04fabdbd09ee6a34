"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from fuelflow_core.state.database import get_engine, get_session
from fuelflow_core.state.repository import (
    AcceptanceRepository,
    AdminRepository,
    AllowlistRepository,
    BlocklistRepository,
    ContractRepository,
    SessionRevocationRepository,
    normalise_email,
)

__all__ = [
    "AcceptanceRepository",
    "AdminRepository",
    "AllowlistRepository",
    "BlocklistRepository",
    "ContractRepository",
    "SessionRevocationRepository",
    "get_engine",
    "get_session",
    "normalise_email",
]
