"""
scrapegate/features/budget/service.py

Budget ladder: keep, downgrade or deny a requested action against the tier's
daily caps and the remaining USD budget. Never substitutes an action more
expensive than the one requested.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from scrapegate.features.economics.model import CostModelTable
from scrapegate.features.economics.service import action_cost_usd, action_proxy_gb
from scrapegate.features.entitlements.service import get_tier_guardrail
from scrapegate.models.tier import ActionKind, Marketplace, TierKey


class BudgetDecision(str, Enum):
    ALLOW = "ALLOW"
    DOWNGRADE = "DOWNGRADE"
    DENY = "DENY"


@dataclass(frozen=True)
class BudgetUsage:
    full_scrapes_today: int = 0
    proxy_gb_today: float = 0.0
    signal_checks_today: int = 0
    cost_usd_today: float = 0.0


@dataclass(frozen=True)
class ProjectedAction:
    kind: ActionKind
    current_usage: BudgetUsage
    budget_remaining_usd: float = math.inf


def downgrade_action(action: ActionKind) -> ActionKind:
    return ActionKind(action).downgrade()


def walk_budget_ladder(
    tier: Union[str, TierKey],
    marketplace: Union[str, Marketplace],
    projected_action: ProjectedAction,
    table: Optional[CostModelTable] = None,
):
    """Return ``(decision, effective_action)`` for the requested action."""
    limits = get_tier_guardrail(tier)
    usage = projected_action.current_usage

    effective = ActionKind(projected_action.kind)
    decision = BudgetDecision.ALLOW

    if effective is ActionKind.FULL_SCRAPE and usage.full_scrapes_today + 1 > limits.max_full_scrapes_per_day:
        effective = ActionKind.PARTIAL_FETCH
        decision = BudgetDecision.DOWNGRADE

    projected_proxy = usage.proxy_gb_today + action_proxy_gb(marketplace, effective, table=table)
    if projected_proxy > limits.max_proxy_gb_per_day:
        effective = ActionKind.SIGNAL_CHECK
        decision = BudgetDecision.DOWNGRADE

    remaining = projected_action.budget_remaining_usd
    if remaining < action_cost_usd(marketplace, ActionKind.SIGNAL_CHECK, table=table):
        return BudgetDecision.DENY, None
    if remaining < action_cost_usd(marketplace, effective, table=table):
        # The caller picks the rung the remaining budget covers
        return BudgetDecision.DOWNGRADE, effective

    return decision, effective


def enforce_budget(
    tier: Union[str, TierKey],
    marketplace: Union[str, Marketplace],
    projected_action: ProjectedAction,
    table: Optional[CostModelTable] = None,
) -> BudgetDecision:
    decision, _ = walk_budget_ladder(tier, marketplace, projected_action, table)
    return decision
