import re
from itertools import combinations
from typing import List, Optional, Protocol

from bs4 import BeautifulSoup, Tag

# Attributes that survive re-renders; checked in this order
STABLE_DATA_ATTRS = (
    "data-testid",
    "data-test",
    "data-qa",
    "data-cy",
    "data-component-type",
    "data-asin",
    "data-id",
    "data-name",
)

NAMED_TAGS = {"input", "textarea", "select", "button"}

_PLAIN_IDENT = re.compile(r"^-?[A-Za-z_][A-Za-z0-9_-]*$")
# Framework hashes, state modifiers, long digit runs
_DYNAMIC_CLASS = re.compile(
    r"^(css|sc|jsx|emotion|svelte)-|[a-z0-9]{6,}__|\d{3,}|"
    r"(^|[-_])(active|hover|focus|focused|selected|open|visible|hidden|disabled|loading)$"
)
_GENERATED_ID = re.compile(r"\d{4,}|^(:r|react-|ember|ext-gen|yui_)")


class DomQuery(Protocol):
    def count(self, selector: str) -> int:
        ...


class SoupDom:
    """DomQuery over a parsed HTML snapshot."""

    def __init__(self, soup: BeautifulSoup):
        self.soup = soup

    def count(self, selector: str) -> int:
        try:
            return len(self.soup.select(selector))
        except Exception:
            return 0


class PageDom:
    """DomQuery over a live Playwright page."""

    def __init__(self, page):
        self.page = page

    def count(self, selector: str) -> int:
        try:
            return self.page.locator(selector).count()
        except Exception:
            return 0


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def is_stable_class(name: str) -> bool:
    return bool(_PLAIN_IDENT.match(name)) and not _DYNAMIC_CLASS.search(name)


def id_selector(el: Tag) -> Optional[str]:
    el_id = el.get("id")
    if not el_id or not isinstance(el_id, str) or _GENERATED_ID.search(el_id):
        return None
    if _PLAIN_IDENT.match(el_id):
        return f"#{el_id}"
    return f'{el.name}[id="{_quote(el_id)}"]'


def nth_of_type_path(el: Tag) -> str:
    """tag:nth-of-type(k) chain up to an id-anchored ancestor or <body>."""
    parts: List[str] = []
    node: Optional[Tag] = el
    while node is not None and isinstance(node, Tag) and node.name not in ("body", "html", "[document]"):
        anchor = id_selector(node) if node is not el else None
        if anchor:
            parts.append(anchor)
            break
        parent = node.parent
        if parent is None or not isinstance(parent, Tag):
            parts.append(node.name)
            break
        same_type = [s for s in parent.find_all(node.name, recursive=False)]
        position = next((i for i, s in enumerate(same_type, start=1) if s is node), 1)
        parts.append(f"{node.name}:nth-of-type({position})")
        node = parent
    else:
        if node is not None and getattr(node, "name", None) == "body":
            parts.append("body")
    return " > ".join(reversed(parts))


def build_selector(el: Tag, dom: DomQuery) -> Optional[str]:
    """
    Most stable selector that resolves to this element:
    id -> stable data attribute -> name (form controls) -> minimal class combo -> nth-of-type path.
    The first four must be unique on the page; the path only has to resolve.
    """
    tag = el.name

    sel = id_selector(el)
    if sel and dom.count(sel) == 1:
        return sel

    for attr in STABLE_DATA_ATTRS:
        value = el.get(attr)
        if isinstance(value, str) and value.strip():
            sel = f'{tag}[{attr}="{_quote(value)}"]'
            if dom.count(sel) == 1:
                return sel

    name = el.get("name")
    if tag in NAMED_TAGS and isinstance(name, str) and name.strip():
        sel = f'{tag}[name="{_quote(name)}"]'
        if dom.count(sel) == 1:
            return sel

    classes = [c for c in (el.get("class") or []) if is_stable_class(c)][:6]
    for size in range(1, min(3, len(classes)) + 1):
        for combo in combinations(classes, size):
            sel = tag + "".join(f".{c}" for c in combo)
            if dom.count(sel) == 1:
                return sel

    sel = nth_of_type_path(el)
    if sel and dom.count(sel) >= 1:
        return sel
    return None
