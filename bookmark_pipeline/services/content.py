"""HTML boilerplate stripping, text extraction and normalization."""

import hashlib
import re
from html import escape
from typing import Optional

import structlog
from bs4 import BeautifulSoup, Tag

from bookmark_pipeline.services.pdf_extractor import PDFBackend, extract_pdf_text, looks_like_pdf

logger = structlog.get_logger(__name__)

BOILERPLATE_SELECTORS = [
    "nav",
    "header",
    "footer",
    "aside",
    ".navigation",
    ".nav",
    ".menu",
    ".sidebar",
    ".advertisement",
    ".ad",
    ".ads",
    ".social-share",
    ".comments",
    ".related-posts",
    ".cookie-banner",
    ".popup",
    ".modal",
    "script",
    "style",
    "iframe",
    "noscript",
]

# Tried in order; the first non-empty match wins.
MAIN_CONTENT_SELECTORS = [
    "article",
    "main",
    '[role="main"]',
    ".content",
    ".main-content",
    ".article-content",
    ".post-content",
    "#content",
    "#main",
]

# Elements that are meaningful without text content.
_VOID_CONTENT_TAGS = ["img", "picture", "source", "video", "audio", "svg", "br", "hr", "canvas"]

_BLOCK_TAGS = [
    "p", "div", "section", "article", "main", "li", "ul", "ol", "table", "tr",
    "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "pre", "dt", "dd",
    "figcaption", "header", "footer", "aside", "nav", "form", "td", "th",
]

_HORIZONTAL_WS = re.compile(r"[^\S\n]+")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_ANY_WS = re.compile(r"\s+")


def _parse(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def _remove_empty_leaves(container: Tag) -> int:
    """Drop elements with no child elements and no text.

    Walks in reverse document order so a parent emptied by removing its
    children is itself removed.
    """
    removed = 0
    for el in reversed(container.find_all(True)):
        if el.name in _VOID_CONTENT_TAGS or el.find(_VOID_CONTENT_TAGS):
            continue
        if el.find(True) is None and not el.get_text(strip=True):
            el.decompose()
            removed += 1
    return removed


def extract_main_content(html: str) -> str:
    """Return a standalone, boilerplate-free HTML document for the page.

    Navigation, ads, scripts and similar chrome are removed. A semantic
    main-content container is preferred; otherwise the whole body is kept.
    """
    soup = _parse(html)
    title_tag = soup.find("title")
    title = title_tag.get_text(strip=True) if title_tag else ""

    for selector in BOILERPLATE_SELECTORS:
        for el in soup.select(selector):
            if not el.decomposed:
                el.decompose()

    container: Optional[Tag] = None
    for selector in MAIN_CONTENT_SELECTORS:
        candidate = soup.select_one(selector)
        if candidate is not None and candidate.get_text(strip=True):
            container = candidate
            break

    if container is None:
        container = soup.body or soup

    _remove_empty_leaves(container)

    if container.name in ("body", "[document]"):
        inner = container.decode_contents()
    else:
        inner = str(container)

    return (
        "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\">"
        f"<title>{escape(title)}</title></head>\n<body>{inner}</body></html>"
    )


def extract_html_text(html: str) -> str:
    """Visible body text of an HTML document, one block per line.

    Script and style contents never reach the output.
    """
    soup = _parse(html)
    for el in soup.find_all(["script", "style", "noscript", "template"]):
        el.decompose()

    container = soup.body or soup
    for br in container.find_all("br"):
        br.replace_with("\n")
    for el in container.find_all(_BLOCK_TAGS):
        el.insert_before("\n")
        el.insert_after("\n")

    return container.get_text()


def clean_text(text: str) -> str:
    """Normalize whitespace without dropping words.

    CR and CRLF become LF, runs of horizontal whitespace become one space,
    each line is trimmed, more than two consecutive newlines become two, and
    the result is trimmed. Idempotent.
    """
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _HORIZONTAL_WS.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = _EXCESS_NEWLINES.sub("\n\n", text)
    return text.strip()


def word_count(text: str) -> int:
    return len(text.split())


def compute_content_hash(text: str) -> str:
    """SHA-256 over lowercased, whitespace-collapsed text."""
    normalized = _ANY_WS.sub(" ", text.lower()).strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def snapshot_kind(data: bytes, content_type: Optional[str] = None, path: str = "") -> str:
    """Classify a stored snapshot as "pdf" or "html".

    Stored content type wins, then the file extension, then PDF magic bytes.
    """
    mime = (content_type or "").split(";")[0].strip().lower()
    if mime == "application/pdf":
        return "pdf"
    if mime in ("text/html", "application/xhtml+xml"):
        return "html"
    if path.lower().endswith(".pdf"):
        return "pdf"
    if looks_like_pdf(data):
        return "pdf"
    return "html"


def _charset(content_type: Optional[str]) -> str:
    for part in (content_type or "").split(";")[1:]:
        key, _, value = part.strip().partition("=")
        if key.lower() == "charset" and value:
            return value.strip("\"'")
    return "utf-8"


def extract_snapshot_text(
    data: bytes,
    content_type: Optional[str] = None,
    path: str = "",
    pdf_backend: PDFBackend | str = PDFBackend.PYMUPDF,
) -> tuple[str, str]:
    """Cleaned searchable text of a stored snapshot, plus its kind.

    Unreadable content yields empty text, never an exception.
    """
    kind = snapshot_kind(data, content_type, path)
    if kind == "pdf":
        raw = extract_pdf_text(data, backend=pdf_backend).text
    else:
        try:
            html = data.decode(_charset(content_type), errors="replace")
        except LookupError:
            html = data.decode("utf-8", errors="replace")
        raw = extract_html_text(html)
    return clean_text(raw), kind
