"""
Test reward eligibility and amounts.
"""

import pytest

from tipflow.models.user_config import EngagementAction, UserConfig
from tipflow.services.notification_dispatcher import format_token_amount
from tipflow.services.reward_engine import RewardPolicy, evaluate, is_self_engagement
from tipflow.services.types import EngagementEvent, EngagementEventType

from conftest import ACTOR, ACTOR_FID, CREATOR, CREATOR_FID, OTHER_TOKEN, USDC


def make_config(**overrides) -> UserConfig:
    values = dict(
        wallet_address=CREATOR,
        is_active=True,
        token_address=USDC,
        like_amount=100,
        recast_amount=200,
        reply_amount=300,
        follow_amount=400,
        like_enabled=True,
        recast_enabled=True,
        reply_enabled=True,
        follow_enabled=True,
    )
    values.update(overrides)
    return UserConfig(**values)


def make_event(action=EngagementAction.LIKE, actor_fid=ACTOR_FID, creator_fid=CREATOR_FID, cast_hash="0xcafe"):
    event_type = {
        EngagementAction.LIKE: EngagementEventType.REACTION_CREATED,
        EngagementAction.RECAST: EngagementEventType.REACTION_CREATED,
        EngagementAction.REPLY: EngagementEventType.CAST_CREATED,
        EngagementAction.FOLLOW: EngagementEventType.FOLLOW_CREATED,
    }[action]
    return EngagementEvent(
        event_type=event_type,
        action=action,
        actor_fid=actor_fid,
        creator_fid=creator_fid,
        target_cast_hash=None if action == EngagementAction.FOLLOW else cast_hash,
        provider_event_id=f"evt-{action.value}",
    )


@pytest.mark.parametrize("action,amount", [
    (EngagementAction.LIKE, 100),
    (EngagementAction.RECAST, 200),
    (EngagementAction.REPLY, 300),
    (EngagementAction.FOLLOW, 400),
])
def test_eligible_actions_pay_configured_amount(action, amount):
    decision = evaluate(make_event(action), make_config(), ACTOR, CREATOR)

    assert decision.eligible
    assert decision.amount == amount
    assert decision.token_address == USDC


def test_missing_or_inactive_config_is_ineligible():
    assert evaluate(make_event(), None, ACTOR).reason == "creator has no active reward config"
    decision = evaluate(make_event(), make_config(is_active=False), ACTOR)
    assert not decision.eligible
    assert decision.reason == "creator has no active reward config"


def test_disabled_action_is_ineligible():
    decision = evaluate(make_event(EngagementAction.RECAST), make_config(recast_enabled=False), ACTOR)

    assert not decision.eligible
    assert decision.reason == "recast rewards disabled"


def test_zero_amount_is_ineligible():
    decision = evaluate(make_event(), make_config(like_amount=0), ACTOR)

    assert not decision.eligible
    assert decision.reason == "no like amount set"


def test_actor_without_address_is_ineligible():
    decision = evaluate(make_event(), make_config(), None)

    assert not decision.eligible
    assert decision.reason == "actor has no verified address"


def test_self_engagement_by_fid():
    event = make_event(actor_fid=CREATOR_FID)
    decision = evaluate(event, make_config(), ACTOR, CREATOR)

    assert not decision.eligible
    assert decision.reason == "self engagement"


def test_self_engagement_by_address_with_different_fid():
    decision = evaluate(make_event(), make_config(), CREATOR.upper().replace("0X", "0x"), CREATOR)

    assert not decision.eligible
    assert decision.reason == "self engagement"


def test_self_engagement_policy_modes():
    # Same address, different fids
    event = make_event()
    assert is_self_engagement(event, CREATOR, CREATOR, RewardPolicy(self_engagement_check="address"))
    assert not is_self_engagement(event, CREATOR, CREATOR, RewardPolicy(self_engagement_check="fid"))

    # Same fid, different addresses
    same_fid = make_event(actor_fid=CREATOR_FID)
    assert is_self_engagement(same_fid, ACTOR, CREATOR, RewardPolicy(self_engagement_check="fid"))
    assert not is_self_engagement(same_fid, ACTOR, CREATOR, RewardPolicy(self_engagement_check="address"))


def test_follow_without_cast_context_policy():
    event = make_event(EngagementAction.FOLLOW)

    assert evaluate(event, make_config(), ACTOR, CREATOR).eligible

    strict = RewardPolicy(follow_requires_cast_context=True)
    decision = evaluate(event, make_config(), ACTOR, CREATOR, strict)
    assert not decision.eligible
    assert decision.reason == "follow without cast context"


def test_interaction_keys():
    assert make_event(EngagementAction.LIKE).interaction_key == "like:0xcafe"
    assert make_event(EngagementAction.FOLLOW).interaction_key == f"follow:{CREATOR_FID}"


def test_notification_amounts_use_token_decimals():
    assert format_token_amount(1_500_000, USDC) == "1.5 USDC"
    assert format_token_amount(100, USDC) == "0.0001 USDC"
    assert format_token_amount(10 ** 18, OTHER_TOKEN) == f"{10 ** 18} units"
