"""
Pure subscription and tier logic.

No I/O here: the reconciler feeds live Stripe data in and persists the
snapshot that comes out.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional

from shared.constants import ACTIVE_STATUSES, NO_SUBSCRIPTION_STATUS, Tier

PriceTierMap = Mapping[str, Tier]


@dataclass(frozen=True)
class ProviderSubscription:
    """The fields of a Stripe subscription that reconciliation reads."""

    id: str
    status: str
    price_id: Optional[str]
    current_period_end: Optional[int]
    created: int = 0


@dataclass(frozen=True)
class CanonicalSnapshot:
    """The single derived subscription state stored per user."""

    status: str
    tier: Tier
    price_id: Optional[str]
    current_period_end: Optional[int]
    subscription_id: Optional[str] = None

    @property
    def current_period_end_iso(self) -> Optional[str]:
        return epoch_to_iso(self.current_period_end)


FREE_SNAPSHOT = CanonicalSnapshot(
    status=NO_SUBSCRIPTION_STATUS,
    tier=Tier.FREE,
    price_id=None,
    current_period_end=None,
)


def epoch_to_iso(timestamp: Optional[int]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).isoformat()


def iso_to_epoch(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp())


def tier_for_price(price_id: Optional[str], price_tiers: PriceTierMap) -> Tier:
    """Map a price id to its tier. Unmapped or missing prices are FREE."""
    if not price_id:
        return Tier.FREE
    return price_tiers.get(price_id, Tier.FREE)


def is_subscription_active(status: Optional[str]) -> bool:
    return status in ACTIVE_STATUSES


def select_canonical(
    subscriptions: Iterable[ProviderSubscription],
    price_tiers: PriceTierMap,
) -> CanonicalSnapshot:
    """Derive the canonical snapshot from a customer's subscriptions.

    Only active-like subscriptions count. The winner has the highest tier;
    equal tiers go to the most recently created subscription. With nothing
    active the user is on the free snapshot.
    """
    active = [s for s in subscriptions if is_subscription_active(s.status)]
    if not active:
        return FREE_SNAPSHOT

    winner = max(active, key=lambda s: (tier_for_price(s.price_id, price_tiers), s.created or 0))
    return CanonicalSnapshot(
        status=winner.status,
        tier=tier_for_price(winner.price_id, price_tiers),
        price_id=winner.price_id,
        current_period_end=winner.current_period_end,
        subscription_id=winner.id,
    )


def subscription_info(profile: Mapping, price_tiers: PriceTierMap) -> dict:
    """Client-facing subscription summary from a stored profile."""
    status = profile.get("subscription_status") or NO_SUBSCRIPTION_STATUS
    price_id = profile.get("subscription_price_id")
    return {
        "status": status,
        "plan_tier": tier_for_price(price_id, price_tiers).label,
        "price_id": price_id,
        "current_period_end": profile.get("subscription_current_period_end"),
        "is_active": is_subscription_active(status),
    }
