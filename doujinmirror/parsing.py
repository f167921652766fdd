#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""HTML → record extraction for the doujindesu layout.

The browser only loads pages; everything structural lives here so it can be
checked against saved markup without a browser.
"""

from __future__ import annotations

import posixpath
import re
from typing import Dict, List, Optional
from urllib.parse import quote, unquote, urljoin, urlparse

from bs4 import BeautifulSoup

LISTING_MARKER = ".entries"
DETAIL_MARKER = ".bxcl"
COMIC_MARKER = "#anu img"

PAGINATION_SELECTOR = "nav.pagination ul li a strong"
LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")
MISSING_TITLE_HINT = "404"


def abs_url(u: Optional[str], base: str) -> str:
    if not u:
        return ""
    u = u.strip()
    if u.startswith("//"):
        return "https:" + u
    if u.startswith("http"):
        return u
    return urljoin(base, u)


def _host_from_url(u: str) -> str:
    try:
        netloc = urlparse(u).netloc
        return netloc.split(":")[0].lower()
    except Exception:
        return ""


def _text(node) -> Optional[str]:
    if node is None:
        return None
    return node.get_text(" ", strip=True)


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


# ----- URLs and slugs -----

def build_listing_url(base: str, page_number: str) -> str:
    return f"{base.rstrip('/')}/doujin/page/{page_number}/"


def is_valid_listing_url(url: str, base: str) -> bool:
    host = re.escape(_host_from_url(base).removeprefix("www."))
    pattern = rf"^(https?://)?(www\.)?{host}/doujin/page/\d+/$"
    return bool(re.match(pattern, url))


def build_search_url(base: str, query: str, page_number: int) -> str:
    return f"{base.rstrip('/')}/page/{page_number}/?s={quote(query, safe='')}"


def build_detail_url(base: str, slug_or_url: str) -> str:
    if slug_or_url.startswith("http"):
        return slug_or_url
    return f"{base.rstrip('/')}/manga/{slug_or_url.lstrip('/')}"


def build_comic_url(base: str, slug: str) -> str:
    return f"{base.rstrip('/')}/{slug}/"


def clean_slug(raw: Optional[str]) -> str:
    """Normalise a chapter reference (slug or absolute URL) to a bare slug."""
    if not raw:
        return ""
    value = raw.strip()
    if value.startswith("http"):
        value = urlparse(value).path
    return value.strip("/")


def slug_from_link(link: Optional[str]) -> str:
    if not link:
        return ""
    path = urlparse(link).path if link.startswith("http") else link
    parts = [p for p in path.split("/") if p]
    return parts[-1] if parts else ""


def filename_from_url(url: str) -> str:
    return posixpath.basename(unquote(urlparse(url).path))


def image_extension(url: str, default: str = ".jpg") -> str:
    ext = posixpath.splitext(urlparse(url).path)[1]
    return ext.lower() if ext else default


# ----- page extraction -----

def parse_total_pages(html: str) -> int:
    soup = _soup(html)
    max_page = 1
    for el in soup.select(PAGINATION_SELECTOR):
        m = LEADING_INT_RE.match(el.get_text())
        if m:
            max_page = max(max_page, int(m.group(1)))
    return max_page


def parse_listing(html: str, base: str) -> List[Dict[str, Optional[str]]]:
    soup = _soup(html)
    out: List[Dict[str, Optional[str]]] = []
    for entry in soup.select("article.entry"):
        anchor = entry.select_one("a")
        href = (anchor.get("href") if anchor else "") or ""
        slug = href.replace("/manga/", "", 1).strip("/")
        img = entry.select_one("img")
        out.append(
            {
                "title": _text(entry.select_one("h3.title span")),
                "thumbnail": abs_url(img.get("src"), base) if img and img.get("src") else None,
                "type": _text(entry.select_one(".type")),
                "chapter": _text(entry.select_one(".artists a span")),
                "time": _text(entry.select_one(".dtch")),
                "link": slug or None,
            }
        )
    return out


def parse_search(html: str, base: str) -> List[Dict[str, Optional[str]]]:
    soup = _soup(html)
    out: List[Dict[str, Optional[str]]] = []
    for article in soup.select(".entries article"):
        anchor = article.select_one("a")
        img = article.select_one("img")
        href = anchor.get("href") if anchor else None
        out.append(
            {
                "title": _text(article.select_one(".metadata .title span")) or "No title",
                "link": abs_url(href, base) if href else None,
                "thumbnail": abs_url(img.get("src"), base) if img and img.get("src") else None,
                "score": _text(article.select_one(".metadata .score")) or "N/A",
                "status": _text(article.select_one(".metadata .status")) or "Unknown",
            }
        )
    return out


def parse_chapters(html: str) -> List[Dict[str, Optional[str]]]:
    soup = _soup(html)
    chapters: List[Dict[str, Optional[str]]] = []
    for item in soup.select(".bxcl ul li"):
        link = item.select_one(".epsright .eps a")
        chapters.append(
            {
                "chapterTitle": _text(link),
                "chapterLink": link.get("href") if link else None,
                "chapterName": _text(item.select_one(".epsleft .lchx a")),
                "chapterDate": _text(item.select_one(".epsleft .date")),
            }
        )
    return chapters


def parse_detail_meta(html: str, base: str) -> Dict[str, object]:
    soup = _soup(html)
    img = soup.select_one(".thumbnail img")
    return {
        "title": _text(soup.select_one("h1.title")),
        "thumbnail": abs_url(img.get("src"), base) if img and img.get("src") else None,
        "rating": _text(soup.select_one(".rating-prc")),
        "genres": [t.get_text(strip=True) for t in soup.select(".tags a")],
    }


def parse_comic_images(html: str) -> List[str]:
    soup = _soup(html)
    urls: List[str] = []
    for img in soup.select(COMIC_MARKER):
        src = (img.get("data-src") or img.get("src") or "").strip()
        if src.startswith("http://") or src.startswith("https://"):
            urls.append(src)
    return urls


def is_missing_page(title: Optional[str]) -> bool:
    return MISSING_TITLE_HINT in (title or "")
