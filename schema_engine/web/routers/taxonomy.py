from __future__ import annotations
from typing import Dict, List, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from schema_engine.db import get_session
from schema_engine.engine import Engine, get_engine
from schema_engine.services.settings import get_settings, update_settings

router = APIRouter()

class SettingsUpdate(BaseModel):
    provider: Optional[str] = None
    provider_model: Optional[str] = None
    provider_host: Optional[str] = None
    domains: Optional[List[str]] = None
    domain_hosts: Optional[Dict[str, str]] = None
    overwrite_existing: Optional[bool] = None
    required_fields: Optional[List[str]] = None
    recommended_fields: Optional[List[str]] = None

def _settings_dict(s) -> dict:
    return s.model_dump() if hasattr(s, "model_dump") else dict(s)

@router.get("/taxonomy")
async def taxonomy_get(session: AsyncSession = Depends(get_session), engine: Engine = Depends(get_engine)):
    snap = await engine.taxonomy.get(session)
    return snap.to_dict()

@router.post("/taxonomy/reload")
async def taxonomy_reload(session: AsyncSession = Depends(get_session), engine: Engine = Depends(get_engine)):
    snap = await engine.taxonomy.reload(session)
    return snap.to_dict()

@router.get("/admin/settings")
async def settings_get(session: AsyncSession = Depends(get_session)):
    return _settings_dict(await get_settings(session))

@router.post("/admin/settings")
async def settings_save(payload: SettingsUpdate, session: AsyncSession = Depends(get_session),
                        engine: Engine = Depends(get_engine)):
    s = await update_settings(
        session,
        provider=payload.provider,
        provider_model=payload.provider_model,
        provider_host=payload.provider_host,
        domains=payload.domains,
        domain_hosts=payload.domain_hosts,
        overwrite_existing=payload.overwrite_existing,
        required=payload.required_fields,
        recommended=payload.recommended_fields,
    )
    if payload.domains is not None:
        # the domain list is part of the taxonomy snapshot
        await engine.taxonomy.reload(session)
    return _settings_dict(s)
