"""SQLAlchemy models package."""

# Import all models
from .affiliate import AffiliatePointBalance, AffiliatePointBooster, AffiliatePointLog  # noqa: F401
from .coupon import Coupon, CouponDiscountTypeEnum  # noqa: F401
from .magic_rule import (  # noqa: F401
    MagicEventTypeEnum,
    MagicRule,
    MagicRuleExecution,
    MagicRuleExecutionStatusEnum,
    MagicRuleScopeEnum,
)
from .notification import (  # noqa: F401
    NotificationChannelEnum,
    NotificationOutbox,
    NotificationOutboxStatusEnum,
)
from .order import CartProduct, Order  # noqa: F401
