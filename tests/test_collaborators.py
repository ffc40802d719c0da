# tests/test_collaborators.py
import httpx
import pytest

from schema_engine.errors import CollaboratorError, DuplicatePageError
from schema_engine.services import rules as store
from schema_engine.services.pages import SqlPageUpserter, find_page_by_path, get_page
from schema_engine.services.providers import DummyLLM, GenerationInputs, ProviderSchemaGenerator, get_provider, OllamaLLM
from schema_engine.services.settings import update_settings
from schema_engine.services.validate import JsonLdValidator, check_jsonld, root_node
from schema_engine.services.fetch import HttpHtmlFetcher

HTML = """<html lang="en-GB"><head><title>Spitfire Amber Ale</title></head>
<body><nav>Menu</nav><article><h1>Spitfire</h1>
<p>A well balanced Kentish ale brewed with three varieties of hops since 1990 for the Battle of Britain.</p>
<p>Pair it with a Sunday roast or a ploughman's lunch.</p></article><footer>Shepherd Neame</footer></body></html>"""

REQUIRED = ["@context", "@type", "name", "url"]
RECOMMENDED = ["description", "inLanguage"]

def test_root_node_prefers_first_graph_entry():
    doc = {"@context": "https://schema.org", "@graph": [{"@type": "WebPage", "name": "A"}, {"@type": "Organization"}]}
    node = root_node(doc)
    assert node["@type"] == "WebPage"
    assert node["@context"] == "https://schema.org"

def test_check_jsonld_outcomes():
    assert check_jsonld({}, REQUIRED, RECOMMENDED).status == "skipped"

    bad = check_jsonld({"@context": "https://schema.org", "@type": "WebPage"}, REQUIRED, RECOMMENDED)
    assert bad.status == "invalid"
    assert bad.error_count == 2
    assert bad.warning_count == 2

    good = check_jsonld({"@context": "https://schema.org", "@type": "WebPage", "name": "A", "url": "https://x/a",
                         "description": "d"}, REQUIRED, RECOMMENDED)
    assert good.status == "valid"
    assert good.error_count == 0
    assert [i["message"] for i in good.issues] == ["Consider adding: inLanguage"]

@pytest.mark.asyncio
async def test_page_upsert_dedupes_by_normalized_path(session):
    pages = SqlPageUpserter()
    first = await pages.upsert_page(session, "Beer", "/Beers/Spitfire/", "beers", "drink_brands", False)
    assert first.was_created
    assert (await find_page_by_path(session, "/beers/spitfire")).id == first.page_id

    with pytest.raises(DuplicatePageError) as exc:
        await pages.upsert_page(session, "Beer", "/beers/spitfire", "beers", "drink_brands", False)
    assert exc.value.details["page_id"] == first.page_id

    again = await pages.upsert_page(session, "Beer", "/beers/spitfire", "beers", "seasonal", True)
    assert again.page_id == first.page_id
    assert not again.was_created
    assert (await get_page(session, first.page_id)).category == "seasonal"

@pytest.mark.asyncio
async def test_fetch_builds_url_from_domain_host(session):
    seen = []

    def handler(request):
        seen.append(str(request.url))
        if request.url.path == "/missing":
            return httpx.Response(404, text="nope")
        return httpx.Response(200, text=HTML)

    await update_settings(session, domain_hosts={"Beer": "https://www.example.com/"})
    pages = SqlPageUpserter()
    ok = await pages.upsert_page(session, "Beer", "/beers/spitfire", "beers", "drink_brands", True)
    missing = await pages.upsert_page(session, "Beer", "/missing", "beers", "drink_brands", True)
    no_host = await pages.upsert_page(session, "Pub", "/pubs/x", "pubs", "local", True)

    fetcher = HttpHtmlFetcher(transport=httpx.MockTransport(handler))
    await fetcher.fetch_html(session, ok.page_id)
    page = await get_page(session, ok.page_id)
    assert page.html == HTML
    assert page.html_fetched_at is not None
    assert seen == ["https://www.example.com/beers/spitfire"]

    with pytest.raises(CollaboratorError) as exc:
        await fetcher.fetch_html(session, missing.page_id)
    assert exc.value.details["status_code"] == 404

    with pytest.raises(CollaboratorError):
        await fetcher.fetch_html(session, no_host.page_id)

def test_get_provider_and_prompt():
    assert isinstance(get_provider("dummy"), DummyLLM)
    llm = get_provider("ollama", model="mistral", host="http://ollama:11434/")
    assert isinstance(llm, OllamaLLM)
    assert llm.host == "http://ollama:11434"
    prompt = llm.build_prompt(GenerationInputs(url="https://x/a", cleaned_text="text", rules="Always add a Brand node.",
                                               domain="Beer", page_type="beers"))
    assert prompt.startswith("Always add a Brand node.")
    assert "URL: https://x/a" in prompt

@pytest.mark.asyncio
async def test_generate_then_validate_with_dummy_provider(session):
    await update_settings(session, domain_hosts={"Beer": "https://www.example.com"})
    rule = await store.create_rule(session, "Beer", "Describe the beer.", domain="Beer")
    up = await SqlPageUpserter().upsert_page(session, "Beer", "/beers/spitfire", "beers", "drink_brands", True)
    generator = ProviderSchemaGenerator(provider=DummyLLM())

    with pytest.raises(CollaboratorError):
        await generator.generate_schema(session, up.page_id, rule)

    page = await get_page(session, up.page_id)
    page.html = HTML
    session.add(page)
    await session.commit()

    await generator.generate_schema(session, up.page_id, rule)
    page = await get_page(session, up.page_id)
    node = page.jsonld["@graph"][0]
    assert node["name"] == "Spitfire Amber Ale"
    assert node["url"] == "https://www.example.com/beers/spitfire"
    assert node["inLanguage"] == "en-GB"
    assert page.rule_id == rule.id

    outcome = await JsonLdValidator().validate(session, up.page_id)
    assert outcome.status == "valid"
    assert outcome.error_count == 0
    assert (await get_page(session, up.page_id)).status == "validated"
