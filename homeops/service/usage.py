from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional

from homeops.config import Settings
from homeops.logging import get_logger
from homeops.service.errors import BudgetExceeded, ForbiddenError
from homeops.service.roles import AccountRole, Principal
from homeops.service.tenants import TenantService
from homeops.storage.common import HomeOpsStore
from homeops.storage.models import UsageEvent, utcnow

logger = get_logger(__name__)

COST_QUANTUM = Decimal("0.000001")

# USD per token
MODEL_PRICING: Dict[str, Dict[str, Decimal]] = {
    "gpt-4o": {"input": Decimal("0.0000025"), "output": Decimal("0.00001")},
    "gpt-4o-mini": {"input": Decimal("0.00000015"), "output": Decimal("0.0000006")},
}
DEFAULT_PRICING_MODEL = "gpt-4o-mini"


def quantize_cost(value: Decimal) -> Decimal:
    return value.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


def cost_for(model: Optional[str], prompt_tokens: int, completion_tokens: int) -> Decimal:
    pricing = MODEL_PRICING.get(model or "", MODEL_PRICING[DEFAULT_PRICING_MODEL])
    raw = pricing["input"] * max(0, prompt_tokens) + pricing["output"] * max(0, completion_tokens)
    return quantize_cost(raw)


def month_start(now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


@dataclass
class BudgetStatus:
    spent: Decimal
    remaining: Decimal
    cap: Decimal
    allowed: bool

    def as_response(self) -> dict:
        return {
            "allowed": self.allowed,
            "spent": float(self.spent),
            "remaining": float(self.remaining),
            "cap": float(self.cap),
        }


class UsageMeter:
    """Monthly AI spend per account.

    Budget checks and event writes are separate statements, so two concurrent
    calls can both pass the check; at most one call lands over the cap.
    """

    def __init__(self, store: HomeOpsStore, settings: Settings, tenants: TenantService) -> None:
        self.store = store
        self.settings = settings
        self.tenants = tenants

    @property
    def default_cap(self) -> Decimal:
        return Decimal(str(self.settings.ai_monthly_cap))

    def log_event(
        self,
        account_id: int,
        *,
        user_id: Optional[int],
        category: str,
        model: Optional[str],
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        total_cost: Optional[Decimal] = None,
    ) -> UsageEvent:
        cost = (
            cost_for(model, prompt_tokens, completion_tokens)
            if total_cost is None
            else quantize_cost(Decimal(str(total_cost)))
        )
        event = self.store.log_usage_event(
            account_id,
            user_id=user_id,
            category=category,
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_cost=cost,
        )
        logger.info(
            "usage_event_logged",
            account_id=account_id,
            category=category,
            model=model,
            total_cost=str(cost),
        )
        return event

    def monthly_spend(self, account_id: int, now: Optional[datetime] = None) -> Decimal:
        return quantize_cost(self.store.sum_usage_since(account_id, month_start(now)))

    def check_budget(self, account_id: int, cap: Optional[Decimal] = None) -> BudgetStatus:
        cap = self.default_cap if cap is None else Decimal(str(cap))
        spent = self.monthly_spend(account_id)
        remaining = max(Decimal("0"), cap - spent)
        return BudgetStatus(spent=spent, remaining=remaining, cap=cap, allowed=remaining > 0)

    def ensure_budget(self, account_id: int, cap: Optional[Decimal] = None) -> BudgetStatus:
        """Pre-flight gate; raises BudgetExceeded once spend is past the cap."""
        status = self.check_budget(account_id, cap)
        if not status.allowed:
            logger.warning(
                "ai_budget_exceeded",
                account_id=account_id,
                spent=str(status.spent),
                cap=str(status.cap),
            )
            raise BudgetExceeded(status.spent, status.cap)
        return status

    def history(self, account_id: int, *, limit: int = 50, offset: int = 0) -> List[UsageEvent]:
        return self.store.list_usage_events(account_id, limit=limit, offset=offset)

    def billing_account_for(self, principal: Principal, requested: Optional[int] = None) -> int:
        """The account AI spend is charged to.

        An explicitly requested account is honored when the caller belongs to
        it; otherwise the first account the caller owns, then the first one
        they belong to.
        """
        if requested is not None and (
            principal.is_platform_admin or self.tenants.is_user_in_account(principal.id, requested)
        ):
            return requested
        accounts = self.tenants.accounts_for_user(principal.id)
        for account in accounts:
            member = self.store.get_account_member(account.id, principal.id)
            if member and member.role == AccountRole.OWNER.value:
                return account.id
        if accounts:
            return accounts[0].id
        raise ForbiddenError("No billing account is associated with this user")


__all__ = [
    "UsageMeter",
    "BudgetStatus",
    "MODEL_PRICING",
    "cost_for",
    "month_start",
    "quantize_cost",
]
