"""
Plan Limits
===========

Tracked-item limits by entitlement tier.
"""

from app.config import settings

# -1 means unlimited
UNLIMITED = -1


def get_item_limit(tier: str) -> int:
    """Maximum number of live tracked items for a tier."""
    if tier == "premium":
        return UNLIMITED
    return settings.FREE_TIER_ITEM_LIMIT


def can_add_item(tier: str, items_used: int) -> bool:
    """Check if one more item fits under the tier's limit."""
    limit = get_item_limit(tier)
    return limit == UNLIMITED or items_used < limit


def remaining_slots(tier: str, items_used: int) -> int:
    """Free slots left, or -1 when unlimited."""
    limit = get_item_limit(tier)
    if limit == UNLIMITED:
        return UNLIMITED
    return max(0, limit - items_used)
