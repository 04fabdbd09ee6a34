"""FuelFlow core: persistence for access records, contracts, and acceptances."""

__version__ = "0.4.0"
