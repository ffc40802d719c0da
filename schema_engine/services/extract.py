from typing import Optional
from bs4 import BeautifulSoup
from readability import Document

STRIP_TAGS = {"script", "style", "noscript", "form", "template", "nav", "footer", "header", "aside"}

def page_title(html: str) -> Optional[str]:
    soup = BeautifulSoup(html or "", "lxml")
    if soup.title and soup.title.string:
        return soup.title.string.strip() or None
    h1 = soup.find("h1")
    return h1.get_text(strip=True) if h1 else None

def page_lang(html: str) -> Optional[str]:
    soup = BeautifulSoup(html or "", "lxml")
    node = soup.find("html")
    lang = node.get("lang") if node else None
    return lang.strip() if isinstance(lang, str) and lang.strip() else None

def page_text(html: str, limit: int = 6000) -> str:
    """
    Main-content text of a page: readability summary with chrome and scripts removed.
    """
    if not html or not html.strip():
        return ""
    main_html = Document(html).summary(html_partial=True)
    soup = BeautifulSoup(main_html, "lxml")
    for tg in STRIP_TAGS:
        for el in soup.find_all(tg):
            el.decompose()
    lines = [ln.strip() for ln in soup.get_text(separator="\n").splitlines()]
    return "\n".join(ln for ln in lines if ln)[:limit]
