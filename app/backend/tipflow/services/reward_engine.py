"""
Reward engine: decides whether an engagement earns a reward and how much.

``evaluate`` is a pure function over already-resolved inputs. Rules, in order:

1. the creator has a config and it is active
2. the action is enabled in that config
3. the actor is not the creator
4. the actor has a verified address

Amounts are integer token minor units end to end.
"""

from dataclasses import dataclass
from typing import Optional

from tipflow.core.config import settings
from tipflow.models.user_config import EngagementAction, UserConfig
from tipflow.services.types import EngagementEvent


SELF_CHECK_FID = "fid"
SELF_CHECK_ADDRESS = "address"
SELF_CHECK_BOTH = "both"


@dataclass(frozen=True)
class RewardPolicy:
    """Deployment-level eligibility choices."""
    self_engagement_check: str = SELF_CHECK_BOTH
    follow_requires_cast_context: bool = False

    @classmethod
    def from_settings(cls) -> "RewardPolicy":
        return cls(
            self_engagement_check=settings.self_engagement_check,
            follow_requires_cast_context=settings.follow_requires_cast_context,
        )


@dataclass(frozen=True)
class RewardDecision:
    eligible: bool
    reason: str
    amount: int = 0
    token_address: Optional[str] = None


def _ineligible(reason: str) -> RewardDecision:
    return RewardDecision(eligible=False, reason=reason)


def is_self_engagement(
    event: EngagementEvent,
    actor_address: Optional[str],
    creator_address: Optional[str],
    policy: RewardPolicy
) -> bool:
    same_fid = event.creator_fid is not None and event.actor_fid == event.creator_fid
    same_address = (
        actor_address is not None
        and creator_address is not None
        and actor_address.lower() == creator_address.lower()
    )
    if policy.self_engagement_check == SELF_CHECK_FID:
        return same_fid
    if policy.self_engagement_check == SELF_CHECK_ADDRESS:
        return same_address
    return same_fid or same_address


def evaluate(
    event: EngagementEvent,
    config: Optional[UserConfig],
    actor_address: Optional[str],
    creator_address: Optional[str] = None,
    policy: Optional[RewardPolicy] = None
) -> RewardDecision:
    """Eligibility and amount for one engagement event."""
    policy = policy or RewardPolicy()

    if config is None or not config.is_active:
        return _ineligible("creator has no active reward config")

    if not config.is_enabled(event.action):
        return _ineligible(f"{event.action.value} rewards disabled")

    if is_self_engagement(event, actor_address, creator_address or config.wallet_address, policy):
        return _ineligible("self engagement")

    if not actor_address:
        return _ineligible("actor has no verified address")

    if (
        event.action == EngagementAction.FOLLOW
        and policy.follow_requires_cast_context
        and not event.target_cast_hash
    ):
        return _ineligible("follow without cast context")

    amount = config.amount_for(event.action)
    if amount <= 0:
        return _ineligible(f"no {event.action.value} amount set")

    return RewardDecision(
        eligible=True,
        reason="eligible",
        amount=amount,
        token_address=config.token_address.lower(),
    )
