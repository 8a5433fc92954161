"""Loyalty service exports."""

from .affiliate_points import (  # noqa: F401
    NEXT_ORDER_BONUS_ACTION,
    AffiliatePointsService,
    BoosterConsumption,
)
