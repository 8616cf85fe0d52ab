"""Storage cost arithmetic shared by previews and savings snapshots.

All prices come from a :class:`~coldstore.config.RateTable`; nothing here
hard-codes a rate.
"""

from __future__ import annotations

from coldstore.config import RateTable, settings

BYTES_PER_GB = 1024**3


def bytes_to_gb(size_bytes: int) -> float:
    return size_bytes / BYTES_PER_GB


def monthly_savings_per_gb(tier: str, rates: RateTable | None = None) -> float:
    """Return the per-GB-month saving of storing in *tier* instead of the source system."""
    rates = rates or settings.RATE_TABLE
    return rates.source_cost_per_gb_month - rates.tier_costs.get(tier, 0.0)


def annual_savings(size_bytes: int, tier: str, rates: RateTable | None = None) -> float:
    """Annualised saving of moving *size_bytes* into *tier*, floored at zero.

    ``GB × (source rate − tier rate) × 12``, rounded to cents.
    """
    savings = bytes_to_gb(size_bytes) * monthly_savings_per_gb(tier, rates) * 12
    return round(max(0.0, savings), 2)


def coldest_tier_rank(tier: str, rates: RateTable | None = None) -> float:
    """Sort key that orders tiers cheapest first."""
    rates = rates or settings.RATE_TABLE
    return rates.tier_costs.get(tier, float("inf"))
