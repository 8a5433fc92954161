"""Coupon service exports."""

from .service import (  # noqa: F401
    COUPON_CODE_ALPHABET,
    CouponCodeExhaustedError,
    CouponService,
    IssuedCoupon,
)
