from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schema_engine.errors import NoActiveRuleError
from schema_engine.models import Rule, scope_key

logger = logging.getLogger(__name__)

TIER_CATEGORY = "category"
TIER_PAGE_TYPE = "page_type"
TIER_DOMAIN = "domain"
TIER_GLOBAL = "global"


def _clean(v: Optional[str]) -> Optional[str]:
    v = (v or "").strip()
    return v or None


def candidate_scopes(
    domain: Optional[str], page_type: Optional[str], category: Optional[str]
) -> List[Tuple[str, str]]:
    """(tier, scope_key) pairs from most to least specific, without repeats."""
    domain, page_type, category = _clean(domain), _clean(page_type), _clean(category)
    tiers = [
        (TIER_CATEGORY, scope_key(domain, page_type, category)),
        (TIER_PAGE_TYPE, scope_key(domain, page_type, None)),
        (TIER_DOMAIN, scope_key(domain, None, None)),
        (TIER_GLOBAL, scope_key(None, None, None)),
    ]
    out, seen = [], set()
    for tier, key in tiers:
        if key not in seen:
            seen.add(key)
            out.append((tier, key))
    return out


def describe_tier(rule: Rule) -> str:
    if rule.category:
        return TIER_CATEGORY
    if rule.page_type:
        return TIER_PAGE_TYPE
    if rule.domain:
        return TIER_DOMAIN
    return TIER_GLOBAL


class RuleResolver:
    """Picks the single active rule for a page from the four specificity tiers."""

    async def resolve(
        self,
        session: AsyncSession,
        domain: Optional[str],
        page_type: Optional[str],
        category: Optional[str],
    ) -> Optional[Rule]:
        for tier, key in candidate_scopes(domain, page_type, category):
            res = await session.execute(
                select(Rule).where(Rule.active_scope == key, Rule.is_active == True)  # noqa: E712
            )
            rule = res.scalars().first()
            if rule is not None:
                logger.debug("Resolved %s rule %s (%s) for %s", tier, rule.id, rule.name, key)
                return rule
        logger.info("No active rule for domain=%s page_type=%s category=%s", domain, page_type, category)
        return None

    async def resolve_required(
        self,
        session: AsyncSession,
        domain: Optional[str],
        page_type: Optional[str],
        category: Optional[str],
    ) -> Rule:
        rule = await self.resolve(session, domain, page_type, category)
        if rule is None:
            raise NoActiveRuleError(domain, page_type, category)
        return rule
