"""
Cross-system link markers.

No mapping table is kept: each side stores the other side's id.

- Calendar events carry a trailing description line naming the Notion page:
      Synced from Notion [synk:notion-page=<page id>] <page url>
- Notion pages carry the Google event id in the "Google Event ID" rich-text
  property.

This module is the only code that knows the marker format.
"""

import re
from typing import Optional

GOOGLE_EVENT_ID_PROPERTY = "Google Event ID"

MARKER_LABEL = "Synced from Notion"

_MARKER_RE = re.compile(r"\[synk:notion-page=([A-Za-z0-9_-]+)\]")
_MARKER_LINE_RE = re.compile(r"^[ \t]*" + re.escape(MARKER_LABEL) + r" \[synk:notion-page=[A-Za-z0-9_-]+\].*$", re.MULTILINE)


def build_notion_marker(page_id: str, url: Optional[str] = None) -> str:
    marker = f"{MARKER_LABEL} [synk:notion-page={page_id}]"
    return f"{marker} {url}" if url else marker


def extract_notion_page_id(text: Optional[str]) -> Optional[str]:
    """Return the Notion page id embedded in a description, or None."""
    if not text:
        return None
    match = _MARKER_RE.search(text)
    return match.group(1) if match else None


def strip_notion_marker(text: Optional[str]) -> str:
    """Remove marker lines and the whitespace left around them."""
    if not text:
        return ""
    return _MARKER_LINE_RE.sub("", text).strip()


def append_notion_marker(description: Optional[str], page_id: str, url: Optional[str] = None) -> str:
    """Description with exactly one marker line for `page_id` at the end."""
    base = strip_notion_marker(description)
    marker = build_notion_marker(page_id, url)
    return f"{base}\n\n{marker}" if base else marker
