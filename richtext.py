"""Markdown/HTML rendering for question text and explanations."""

import os
import re
from functools import lru_cache
from typing import Optional

import bleach
import markdown
from markupsafe import Markup

ALLOW_RAW_HTML = os.getenv("ALLOW_RAW_HTML", "0").lower() in {"1", "true", "yes"}
SANITIZE_HTML = os.getenv("SANITIZE_HTML", "1").lower() in {"1", "true", "yes"}

BLEACH_ALLOWED_TAGS = [
    "a","abbr","acronym","b","blockquote","code","em","i","li","ol","strong","ul",
    "p","h1","h2","h3","h4","h5","h6","pre","hr","br","span","div","img","table",
    "thead","tbody","tr","th","td","caption","figure","figcaption","sub","sup",
]
BLEACH_ALLOWED_ATTRS = {
    "*": ["class","title"],
    "a": ["href","name","target","rel"],
    "img": ["src","alt","width","height","loading"],
}
BLEACH_ALLOWED_PROTOCOLS = ["http","https","mailto"]

_HTML_PATTERN = re.compile(r"</?\w+[^>]*>")


def sanitize(html: str, enabled: bool = True) -> str:
    if not enabled:
        return html
    return bleach.clean(
        html,
        tags=BLEACH_ALLOWED_TAGS,
        attributes=BLEACH_ALLOWED_ATTRS,
        protocols=BLEACH_ALLOWED_PROTOCOLS,
        strip=True,
    )


@lru_cache(maxsize=1024)
def _render_cached(text: str, allow_raw: bool, sanitize_flag: bool) -> str:
    if not text:
        return ""
    if allow_raw and _HTML_PATTERN.search(text):
        return sanitize(text, sanitize_flag)
    md = markdown.Markdown(
        extensions=["fenced_code", "tables", "sane_lists"],
        output_format="html5",
    )
    if not allow_raw:
        # authored HTML comes out as escaped text, Markdown still applies
        md.preprocessors.deregister("html_block")
        md.inlinePatterns.deregister("html")
    html = md.convert(text)
    return sanitize(html, sanitize_flag or not allow_raw)


def render_rich(text: Optional[str]) -> Markup:
    if text is None:
        return Markup("")
    text_str = text if isinstance(text, str) else str(text)
    return Markup(_render_cached(text_str, ALLOW_RAW_HTML, SANITIZE_HTML))
