"""FuelFlow API: access gating, contract lifecycle, and document delivery."""

__version__ = "0.4.0"
