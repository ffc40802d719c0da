from __future__ import annotations
from typing import Optional, Dict, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from schema_engine.settings_models import Settings, DEFAULT_DOMAINS

async def get_settings(session: AsyncSession) -> Settings:
    res = await session.execute(select(Settings).limit(1))
    s = res.scalars().first()
    if s is None:
        s = Settings()
        session.add(s)
        await session.commit()
        await session.refresh(s)

    # Rows written before the domain list existed come back without one
    if not s.domains:
        s.domains = list(DEFAULT_DOMAINS)
        session.add(s)
        await session.commit()
        await session.refresh(s)
    return s

async def update_settings(
    session: AsyncSession,
    provider: Optional[str] = None,
    provider_model: Optional[str] = None,
    provider_host: Optional[str] = None,
    domains: Optional[List[str]] = None,
    domain_hosts: Optional[Dict[str, str]] = None,
    overwrite_existing: Optional[bool] = None,
    required: Optional[List[str]] = None,
    recommended: Optional[List[str]] = None,
) -> Settings:
    s = await get_settings(session)
    if provider is not None:
        s.provider = provider
    if provider_model is not None:
        s.provider_model = provider_model
    if provider_host is not None:
        s.provider_host = provider_host
    if domains is not None:
        # keep order, drop blanks and case-insensitive repeats
        seen, cleaned = set(), []
        for d in domains:
            d = (d or "").strip()
            if d and d.lower() not in seen:
                seen.add(d.lower())
                cleaned.append(d)
        s.domains = cleaned
    if domain_hosts is not None:
        s.domain_hosts = {k: v.rstrip("/") for k, v in domain_hosts.items() if v}
    if overwrite_existing is not None:
        s.overwrite_existing = overwrite_existing
    if required is not None:
        s.required_fields = required
    if recommended is not None:
        s.recommended_fields = recommended
    session.add(s)
    await session.commit()
    await session.refresh(s)
    return s
