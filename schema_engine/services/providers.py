from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Dict, Any
import datetime as dt
import json
import logging
import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from schema_engine.errors import CollaboratorError
from schema_engine.models import Rule, utcnow
from schema_engine.services.extract import page_lang, page_text, page_title
from schema_engine.services.pages import get_page
from schema_engine.services.settings import get_settings

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_HOST = "http://localhost:11434"

@dataclass
class GenerationInputs:
    url: str
    cleaned_text: str
    rules: str
    domain: str
    page_type: Optional[str] = None
    category: Optional[str] = None
    title: Optional[str] = None
    language: Optional[str] = None

class LLMProvider:
    name: str = "base"
    async def generate_jsonld(self, inputs: GenerationInputs) -> Dict[str, Any]:
        raise NotImplementedError

class DummyLLM(LLMProvider):
    """Heuristic generator so the pipeline works without an external model."""
    name = "dummy"

    async def generate_jsonld(self, inputs: GenerationInputs) -> Dict[str, Any]:
        title = (inputs.title or inputs.page_type or "Page").strip()
        description = inputs.cleaned_text.split("\n", 1)[0][:280] if inputs.cleaned_text else f"{title} page."
        node: Dict[str, Any] = {
            "@type": "WebPage",
            "@id": inputs.url + "#webpage",
            "name": title,
            "description": description,
            "url": inputs.url,
            "dateModified": dt.datetime.now(dt.timezone.utc).isoformat(),
        }
        if inputs.language:
            node["inLanguage"] = inputs.language
        return {"@context": "https://schema.org", "@graph": [node]}

class OllamaLLM(LLMProvider):
    name = "ollama"
    def __init__(self, model: str = "llama3", host: Optional[str] = None):
        self.model = model or "llama3"
        self.host = (host or DEFAULT_OLLAMA_HOST).rstrip("/")

    def build_prompt(self, inputs: GenerationInputs) -> str:
        return f"""{inputs.rules}

Produce ONLY valid schema.org JSON-LD (a single JSON object, "@graph" allowed) for this page.
URL: {inputs.url}
Domain: {inputs.domain}
Page type: {inputs.page_type or ''}
Category: {inputs.category or ''}
Title: {inputs.title or ''}
Cleaned text (may be truncated):
{inputs.cleaned_text[:4000]}
Return ONLY the JSON object, nothing else.
"""

    async def generate_jsonld(self, inputs: GenerationInputs) -> Dict[str, Any]:
        payload = {"model": self.model, "prompt": self.build_prompt(inputs), "stream": False,
                   "options": {"temperature": 0.2}}
        try:
            async with httpx.AsyncClient(timeout=120) as client:
                r = await client.post(f"{self.host}/api/generate", json=payload)
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Ollama request failed: {e}", {"model": self.model})
        text = (data.get("response") or "").strip()
        start, end = text.find("{"), text.rfind("}")
        if start != -1 and end != -1 and end > start:
            text = text[start:end+1]
        try:
            return json.loads(text)
        except ValueError:
            raise CollaboratorError("Model did not return valid JSON", {"model": self.model, "response": text[:500]})

def get_provider(provider_name: str = "dummy", model: Optional[str] = None, host: Optional[str] = None) -> LLMProvider:
    if (provider_name or "").lower() == "ollama":
        return OllamaLLM(model=model or "llama3", host=host)
    return DummyLLM()

class ProviderSchemaGenerator:
    """Generates JSON-LD for a stored page with the configured provider, prompted by the resolved rule."""

    def __init__(self, provider: Optional[LLMProvider] = None):
        self.provider = provider

    async def generate_schema(self, session: AsyncSession, page_id: int, rule: Rule) -> None:
        page = await get_page(session, page_id)
        if not page.html:
            raise CollaboratorError("HTML has not been fetched for this page yet", {"page_id": page_id})

        s = await get_settings(session)
        provider = self.provider or get_provider(s.provider or "dummy", model=s.provider_model, host=s.provider_host)
        base = (s.domain_hosts or {}).get(page.domain) or ""
        inputs = GenerationInputs(
            url=base.rstrip("/") + page.path,
            cleaned_text=page_text(page.html),
            rules=rule.body,
            domain=page.domain,
            page_type=page.page_type,
            category=page.category,
            title=page_title(page.html),
            language=page_lang(page.html),
        )
        jsonld = await provider.generate_jsonld(inputs)
        if not isinstance(jsonld, dict) or not jsonld:
            raise CollaboratorError("Provider returned an empty schema", {"provider": provider.name})

        page.jsonld = jsonld
        page.rule_id = rule.id
        page.status = "schema_generated"
        page.updated_at = utcnow()
        session.add(page)
        await session.commit()
        logger.info("Generated schema for page %s with rule %s via %s", page_id, rule.id, provider.name)
