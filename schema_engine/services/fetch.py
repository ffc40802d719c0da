from __future__ import annotations
from typing import Optional
import logging
import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from schema_engine.config import FETCH_TIMEOUT
from schema_engine.errors import CollaboratorError
from schema_engine.models import utcnow
from schema_engine.services.pages import get_page
from schema_engine.services.settings import get_settings

logger = logging.getLogger(__name__)

DEFAULT_UA = (
    "Mozilla/5.0 (Macintosh; Apple Silicon Mac OS X 15_0) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125 Safari/537.36"
)

async def fetch_url(url: str, timeout: float = FETCH_TIMEOUT,
                    transport: Optional[httpx.AsyncBaseTransport] = None) -> str:
    """
    GET a URL and return the response body as text. Raises CollaboratorError on any failure.
    """
    try:
        async with httpx.AsyncClient(follow_redirects=True, timeout=timeout, transport=transport,
                                     headers={"User-Agent": DEFAULT_UA}) as client:
            r = await client.get(url)
            r.raise_for_status()
            return r.text
    except httpx.HTTPStatusError as e:
        raise CollaboratorError(f"HTML fetch failed for {url}: HTTP {e.response.status_code}",
                                {"url": url, "status_code": e.response.status_code})
    except httpx.HTTPError as e:
        raise CollaboratorError(f"HTML fetch failed for {url}: {e}", {"url": url})

class HttpHtmlFetcher:
    """Fetches {domain base URL}{page path} and stores the HTML on the page."""

    def __init__(self, timeout: float = FETCH_TIMEOUT, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    async def fetch_html(self, session: AsyncSession, page_id: int) -> None:
        page = await get_page(session, page_id)
        s = await get_settings(session)
        base = (s.domain_hosts or {}).get(page.domain)
        if not base:
            raise CollaboratorError(f'No base URL configured for domain "{page.domain}"',
                                    {"domain": page.domain})
        url = base.rstrip("/") + page.path
        html = await fetch_url(url, timeout=self.timeout, transport=self.transport)
        if not html.strip():
            raise CollaboratorError(f"Empty response from {url}", {"url": url})

        page.html = html
        page.html_fetched_at = utcnow()
        page.status = "html_fetched"
        page.updated_at = utcnow()
        session.add(page)
        await session.commit()
        logger.info("Fetched %d bytes of HTML for %s", len(html), url)
