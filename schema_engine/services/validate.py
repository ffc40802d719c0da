from __future__ import annotations
from typing import Tuple, List, Any, Dict
from jsonschema import Draft7Validator
from sqlalchemy.ext.asyncio import AsyncSession

from schema_engine.models import ValidationStatus, utcnow
from schema_engine.services.collaborators import ValidationOutcome
from schema_engine.services.pages import get_page
from schema_engine.services.settings import get_settings

def root_node(jsonld: Any) -> Dict[str, Any]:
    """The node validation is anchored on: first @graph entry, or the object itself."""
    if isinstance(jsonld, dict) and isinstance(jsonld.get("@graph"), list):
        nodes = [n for n in jsonld["@graph"] if isinstance(n, dict)]
        if nodes:
            node = dict(nodes[0])
            node.setdefault("@context", jsonld.get("@context"))
            return node
        return {}
    return jsonld if isinstance(jsonld, dict) else {}

def build_schema(required: List[str]) -> Dict[str, Any]:
    return {
        "type": "object",
        "required": list(required),
        "properties": {
            "@context": {"type": ["string", "object", "array"]},
            "@type": {"type": ["string", "array"]},
            "name": {"type": "string", "minLength": 1},
            "url": {"type": "string", "minLength": 1},
            "sameAs": {"type": ["string", "array"]},
        },
    }

def validate_against_schema(instance: Dict[str, Any], schema: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Validate a JSON object against a JSON Schema. Returns (is_valid, error_messages)."""
    v = Draft7Validator(schema)
    errs = sorted(v.iter_errors(instance), key=lambda e: list(e.path))
    def fmt(e):
        path = ".".join(map(str, e.path)) or "$"
        return f"{path}: {e.message}"
    return (len(errs) == 0, [fmt(e) for e in errs])

def check_jsonld(jsonld: Any, required: List[str], recommended: List[str]) -> ValidationOutcome:
    if not jsonld:
        return ValidationOutcome(status=ValidationStatus.SKIPPED.value,
                                 issues=[{"severity": "info", "message": "No schema to validate"}])
    node = root_node(jsonld)
    _, errors = validate_against_schema(node, build_schema(required))
    missing = [k for k in recommended if node.get(k) in (None, "", [])]

    issues = [{"severity": "error", "message": e} for e in errors]
    issues += [{"severity": "warning", "message": f"Consider adding: {k}"} for k in missing]
    return ValidationOutcome(
        status=(ValidationStatus.INVALID if errors else ValidationStatus.VALID).value,
        error_count=len(errors),
        warning_count=len(missing),
        issues=issues,
    )

class JsonLdValidator:
    """Checks a page's stored JSON-LD against the required/recommended fields in Settings."""

    async def validate(self, session: AsyncSession, page_id: int) -> ValidationOutcome:
        page = await get_page(session, page_id)
        s = await get_settings(session)
        outcome = check_jsonld(page.jsonld, s.required_fields or [], s.recommended_fields or [])
        if outcome.status != ValidationStatus.SKIPPED:
            page.validation_issues = outcome.issues
            page.status = "validated" if outcome.status == ValidationStatus.VALID else "needs_review"
            page.updated_at = utcnow()
            session.add(page)
            await session.commit()
        return outcome
