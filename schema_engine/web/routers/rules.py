from __future__ import annotations
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import JSONResponse

from schema_engine.db import get_session
from schema_engine.engine import Engine, get_engine
from schema_engine.services import rules as store
from schema_engine.services.resolver import describe_tier
from schema_engine.services.rules import rule_to_dict

router = APIRouter()

class RuleCreate(BaseModel):
    name: str
    body: str = ""
    domain: Optional[str] = None
    page_type: Optional[str] = None
    category: Optional[str] = None
    activate: bool = False

class RuleBody(BaseModel):
    body: str

class RuleName(BaseModel):
    name: str

@router.get("/rules")
async def rules_list(domain: Optional[str] = None, active: bool = False,
                     session: AsyncSession = Depends(get_session)):
    rules = await store.list_rules(session, domain=domain, active_only=active)
    return {"rules": [rule_to_dict(r) for r in rules]}

@router.post("/rules")
async def rules_create(payload: RuleCreate, session: AsyncSession = Depends(get_session),
                       engine: Engine = Depends(get_engine)):
    rule = await store.create_rule(session, payload.name, payload.body,
                                   payload.domain, payload.page_type, payload.category)
    if payload.activate:
        rule = await store.activate_rule(session, rule.id, engine.rule_locks)
    return JSONResponse(rule_to_dict(rule), status_code=201)

# declared before /rules/{rule_id} so "resolve" is not parsed as an id
@router.get("/rules/resolve")
async def rules_resolve(domain: Optional[str] = Query(None), page_type: Optional[str] = Query(None),
                        category: Optional[str] = Query(None),
                        session: AsyncSession = Depends(get_session), engine: Engine = Depends(get_engine)):
    rule = await engine.resolver.resolve_required(session, domain, page_type, category)
    return {"tier": describe_tier(rule), "rule": rule_to_dict(rule)}

@router.get("/rules/{rule_id}")
async def rules_get(rule_id: int, session: AsyncSession = Depends(get_session)):
    return rule_to_dict(await store.get_rule(session, rule_id))

@router.patch("/rules/{rule_id}")
async def rules_update(rule_id: int, payload: RuleBody, session: AsyncSession = Depends(get_session)):
    return rule_to_dict(await store.update_rule_body(session, rule_id, payload.body))

@router.post("/rules/{rule_id}/restore/{index}")
async def rules_restore(rule_id: int, index: int, session: AsyncSession = Depends(get_session)):
    return rule_to_dict(await store.restore_backup(session, rule_id, index))

@router.post("/rules/{rule_id}/activate")
async def rules_activate(rule_id: int, session: AsyncSession = Depends(get_session),
                         engine: Engine = Depends(get_engine)):
    return rule_to_dict(await store.activate_rule(session, rule_id, engine.rule_locks))

@router.post("/rules/{rule_id}/deactivate")
async def rules_deactivate(rule_id: int, session: AsyncSession = Depends(get_session)):
    return rule_to_dict(await store.deactivate_rule(session, rule_id))

@router.post("/rules/{rule_id}/rename")
async def rules_rename(rule_id: int, payload: RuleName, session: AsyncSession = Depends(get_session)):
    return rule_to_dict(await store.rename_rule(session, rule_id, payload.name))

@router.post("/rules/{rule_id}/duplicate")
async def rules_duplicate(rule_id: int, session: AsyncSession = Depends(get_session)):
    return JSONResponse(rule_to_dict(await store.duplicate_rule(session, rule_id)), status_code=201)

@router.delete("/rules/{rule_id}")
async def rules_delete(rule_id: int, session: AsyncSession = Depends(get_session)):
    await store.delete_rule(session, rule_id)
    return {"ok": True, "deleted": rule_id}
