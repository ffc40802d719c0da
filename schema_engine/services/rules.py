from __future__ import annotations

import asyncio
import logging
import weakref
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from schema_engine.errors import (
    ActivationConflictError,
    ActiveRuleDeleteError,
    BackupIndexError,
    RuleNotFoundError,
)
from schema_engine.models import Rule, iso_utc, scope_key, utcnow

logger = logging.getLogger(__name__)

MAX_BACKUPS = 3

class ScopeLocks:
    """Per-scope activation locks for one process.

    A lock lives only while some activation holds a reference to it. Other
    workers are covered by the unique active_scope column instead.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


def _clean(v: Optional[str]) -> Optional[str]:
    v = (v or "").strip()
    return v or None


def rotate_backups(backups: List[dict], old_body: str, timestamp: Optional[str] = None) -> List[dict]:
    """Push the previous body onto the front of the history, keep the newest MAX_BACKUPS."""
    entry = {"content": old_body, "timestamp": timestamp or utcnow().isoformat()}
    return ([entry] + list(backups or []))[:MAX_BACKUPS]


async def get_rule(session: AsyncSession, rule_id: int) -> Rule:
    rule = await session.get(Rule, rule_id)
    if rule is None:
        raise RuleNotFoundError(rule_id)
    return rule


async def list_rules(session: AsyncSession, domain: Optional[str] = None, active_only: bool = False) -> List[Rule]:
    stmt = select(Rule).order_by(Rule.domain, Rule.page_type, Rule.category, Rule.created_at.desc())
    if domain:
        stmt = stmt.where(Rule.domain == domain)
    if active_only:
        stmt = stmt.where(Rule.is_active == True)  # noqa: E712
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def create_rule(
    session: AsyncSession,
    name: str,
    body: str,
    domain: Optional[str] = None,
    page_type: Optional[str] = None,
    category: Optional[str] = None,
) -> Rule:
    """New rules start inactive; activation is a separate, explicit step."""
    domain, page_type, category = _clean(domain), _clean(page_type), _clean(category)
    rule = Rule(
        name=(name or "").strip() or "Untitled rule",
        body=body or "",
        domain=domain,
        page_type=page_type,
        category=category,
        scope_key=scope_key(domain, page_type, category),
        is_active=False,
        backups=[],
    )
    session.add(rule)
    await session.commit()
    await session.refresh(rule)
    logger.info("Created rule %s (%s) for scope %s", rule.id, rule.name, rule.scope_key)
    return rule


async def update_rule_body(session: AsyncSession, rule_id: int, new_body: str) -> Rule:
    rule = await get_rule(session, rule_id)
    rule.backups = rotate_backups(rule.backups, rule.body)
    rule.body = new_body
    rule.updated_at = utcnow()
    session.add(rule)
    await session.commit()
    await session.refresh(rule)
    return rule


async def restore_backup(session: AsyncSession, rule_id: int, index: int) -> Rule:
    """Set the body to a stored backup. The backup list itself is left as is."""
    rule = await get_rule(session, rule_id)
    backups = list(rule.backups or [])
    if index < 0 or index >= len(backups):
        raise BackupIndexError(rule_id, index, len(backups))
    rule.body = backups[index].get("content") or ""
    rule.updated_at = utcnow()
    session.add(rule)
    await session.commit()
    await session.refresh(rule)
    return rule


async def rename_rule(session: AsyncSession, rule_id: int, name: str) -> Rule:
    rule = await get_rule(session, rule_id)
    rule.name = (name or "").strip() or rule.name
    rule.updated_at = utcnow()
    session.add(rule)
    await session.commit()
    await session.refresh(rule)
    return rule


async def duplicate_rule(session: AsyncSession, rule_id: int) -> Rule:
    src = await get_rule(session, rule_id)
    return await create_rule(
        session,
        name=f"{src.name} (Copy)",
        body=src.body,
        domain=src.domain,
        page_type=src.page_type,
        category=src.category,
    )


async def activate_rule(session: AsyncSession, rule_id: int, locks: Optional[ScopeLocks] = None) -> Rule:
    """Make `rule_id` the only active rule for its (domain, page_type, category).

    Deactivating the others and activating the target commit together; if
    another activation for the same scope wins, everything rolls back.
    """
    rule = await get_rule(session, rule_id)
    key = rule.scope_key
    lock = locks.lock(key) if locks is not None else asyncio.Lock()
    async with lock:
        try:
            res = await session.execute(
                select(Rule).where(Rule.scope_key == key, Rule.id != rule.id, Rule.is_active == True)  # noqa: E712
            )
            others = list(res.scalars().all())
            for other in others:
                other.is_active = False
                other.active_scope = None
                other.updated_at = utcnow()
                session.add(other)
            # release the unique slot before claiming it
            await session.flush()

            rule.is_active = True
            rule.active_scope = key
            rule.updated_at = utcnow()
            session.add(rule)
            await session.commit()
        except IntegrityError:
            await session.rollback()
            logger.warning("Activation of rule %s lost the race for scope %s", rule_id, key)
            raise ActivationConflictError(rule_id, key)
    await session.refresh(rule)
    logger.info("Activated rule %s for scope %s (deactivated %d)", rule.id, key, len(others))
    return rule


async def deactivate_rule(session: AsyncSession, rule_id: int) -> Rule:
    rule = await get_rule(session, rule_id)
    rule.is_active = False
    rule.active_scope = None
    rule.updated_at = utcnow()
    session.add(rule)
    await session.commit()
    await session.refresh(rule)
    return rule


async def delete_rule(session: AsyncSession, rule_id: int) -> None:
    """Irreversible. Active rules must be deactivated first."""
    rule = await get_rule(session, rule_id)
    if rule.is_active:
        raise ActiveRuleDeleteError(rule_id)
    await session.delete(rule)
    await session.commit()
    logger.info("Deleted rule %s (%s)", rule_id, rule.name)


def rule_to_dict(rule: Rule) -> dict:
    return {
        "id": rule.id,
        "name": rule.name,
        "body": rule.body,
        "domain": rule.domain,
        "page_type": rule.page_type,
        "category": rule.category,
        "is_active": rule.is_active,
        "backups": list(rule.backups or []),
        "created_at": iso_utc(rule.created_at),
        "updated_at": iso_utc(rule.updated_at),
    }
