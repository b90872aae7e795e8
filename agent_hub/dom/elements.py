import re
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup, Tag

from .extraction import CONTAINER_SELECTORS
from .ranker import rank_elements
from .selectors import DomQuery, PageDom, SoupDom, build_selector
from ..core.config import INTERACTIVE_SELECTORS
from ..core.types import ElementDescriptor, PageSnapshot

DEBUG_PERCEPTION = False

MAX_ELEMENTS = 40
MAX_HEADINGS = 20
MAX_FORMS = 5
MAX_CONTAINERS = 15
BODY_TEXT_CHARS = 3000

LOADING_SELECTORS = [
    "[aria-busy='true']",
    "[class*='loading']",
    "[class*='spinner']",
    "[class*='skeleton']",
]

_HIDDEN_STYLE = re.compile(r"display\s*:\s*none|visibility\s*:\s*hidden", re.IGNORECASE)

LANDMARKS = {
    "nav": "navigation",
    "header": "banner",
    "main": "main",
    "footer": "contentinfo",
    "aside": "complementary",
    "form": "form",
}


def _debug(msg: str) -> None:
    if DEBUG_PERCEPTION:
        print(msg)


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "lxml")


def _squash(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def is_visible(el: Tag) -> bool:
    """Static visibility: hidden attributes, inline styles, hidden inputs, on the element or any ancestor."""
    if el.name == "input" and (el.get("type") or "").lower() == "hidden":
        return False
    node: Optional[Tag] = el
    while node is not None and isinstance(node, Tag):
        if node.name in ("script", "style", "noscript", "template", "head"):
            return False
        if node.has_attr("hidden") or node.get("aria-hidden") == "true":
            return False
        style = node.get("style")
        if isinstance(style, str) and _HIDDEN_STYLE.search(style):
            return False
        node = node.parent
    return True


def infer_role(el: Tag) -> str:
    role = el.get("role")
    if isinstance(role, str) and role.strip():
        return role.strip().lower()
    tag = el.name
    if tag == "a":
        return "link"
    if tag == "button":
        return "button"
    if tag == "select":
        return "combobox"
    if tag == "textarea":
        return "textbox"
    if tag == "input":
        kind = (el.get("type") or "text").lower()
        if kind in ("submit", "button", "reset", "image"):
            return "button"
        if kind in ("checkbox", "radio"):
            return kind
        if kind == "search" or "search" in (el.get("name") or "").lower():
            return "searchbox"
        return "textbox"
    return tag


def nearest_landmark(el: Tag) -> str:
    for parent in el.parents:
        if not isinstance(parent, Tag):
            continue
        role = parent.get("role")
        if isinstance(role, str) and role in ("navigation", "banner", "main", "contentinfo", "search", "complementary"):
            return role
        if parent.name in LANDMARKS:
            return LANDMARKS[parent.name]
    return ""


def element_label(el: Tag) -> str:
    """Text a user would associate with the control."""
    for attr in ("aria-label", "title"):
        value = el.get(attr)
        if isinstance(value, str) and value.strip():
            return _squash(value)[:100]
    text = _squash(el.get_text(" "))
    if not text and el.name == "input":
        text = _squash(el.get("value") or "")
    if not text:
        img = el.find("img")
        if img is not None and img.get("alt"):
            text = _squash(img.get("alt"))
    return text[:100]


def _describe(el: Tag, selector: str) -> ElementDescriptor:
    href = el.get("href")
    return {
        "tag": el.name,
        "role": infer_role(el),
        "type": (el.get("type") or None) if el.name in ("input", "button") else None,
        "text": element_label(el),
        "selector": selector,
        "href": href if isinstance(href, str) else "",
        "name": el.get("name") or "",
        "placeholder": el.get("placeholder") or "",
        "landmark": nearest_landmark(el),
    }


def collect_interactive_elements(soup: BeautifulSoup, dom: Optional[DomQuery] = None,
                                 limit: int = MAX_ELEMENTS) -> List[ElementDescriptor]:
    """Visible controls in priority order (inputs, buttons, role=button, links), deduplicated by selector."""
    dom = dom or SoupDom(soup)
    seen_nodes = set()
    seen_selectors = set()
    elements: List[ElementDescriptor] = []

    for css in INTERACTIVE_SELECTORS:
        for el in soup.select(css):
            if len(elements) >= limit:
                return elements
            if id(el) in seen_nodes:
                continue
            seen_nodes.add(id(el))
            if not is_visible(el):
                continue
            descriptor_text = element_label(el)
            if not descriptor_text and el.name not in ("input", "textarea", "select", "button"):
                continue
            selector = build_selector(el, dom)
            if not selector or selector in seen_selectors:
                _debug(f"[Perception] Skipping <{el.name}> without a usable selector")
                continue
            seen_selectors.add(selector)
            elements.append(_describe(el, selector))
    return elements


def collect_headings(soup: BeautifulSoup, dom: Optional[DomQuery] = None) -> List[Dict[str, Any]]:
    dom = dom or SoupDom(soup)
    headings = []
    for el in soup.select("h1, h2, h3"):
        if len(headings) >= MAX_HEADINGS:
            break
        text = _squash(el.get_text(" "))
        if not text or not is_visible(el):
            continue
        headings.append({"level": int(el.name[1]), "text": text[:200], "selector": build_selector(el, dom)})
    return headings


def collect_forms(soup: BeautifulSoup, dom: Optional[DomQuery] = None) -> List[Dict[str, Any]]:
    dom = dom or SoupDom(soup)
    forms = []
    for form in soup.find_all("form")[:MAX_FORMS]:
        inputs = []
        for inp in form.select("input, textarea, select"):
            if not is_visible(inp):
                continue
            inputs.append({
                "type": inp.get("type") or inp.name,
                "name": inp.get("name") or "",
                "placeholder": inp.get("placeholder") or "",
                "selector": build_selector(inp, dom),
            })
        forms.append({
            "selector": build_selector(form, dom),
            "action": form.get("action") or "",
            "method": (form.get("method") or "get").lower(),
            "inputs": inputs,
        })
    return forms


def collect_containers(soup: BeautifulSoup, dom: Optional[DomQuery] = None) -> List[Dict[str, Any]]:
    """Repeating content blocks worth showing the model (likely result items)."""
    dom = dom or SoupDom(soup)
    containers = []
    for css in CONTAINER_SELECTORS:
        try:
            matches = soup.select(css)
        except Exception:
            continue
        if len(matches) < 2:
            continue
        for el in matches:
            if len(containers) >= MAX_CONTAINERS:
                return containers
            text = _squash(el.get_text(" "))
            if not text:
                continue
            containers.append({
                "selector": build_selector(el, dom),
                "group_selector": css,
                "tag": el.name,
                "text": text[:300],
                "link_count": len(el.find_all("a")),
                "image_count": len(el.find_all("img")),
            })
        if containers:
            break
    return containers


def page_metrics(soup: BeautifulSoup, interactive: List[ElementDescriptor]) -> Dict[str, Any]:
    loading = False
    for css in LOADING_SELECTORS:
        if any(is_visible(el) for el in soup.select(css)):
            loading = True
            break
    return {
        "element_count": len(soup.find_all(True)),
        "interactive_count": len(interactive),
        "link_count": len(soup.select("a[href]")),
        "form_count": len(soup.find_all("form")),
        "button_count": len(soup.select("button, [role='button'], input[type='submit']")),
        "has_loading_indicator": loading,
    }


def body_text(soup: BeautifulSoup) -> str:
    body = soup.body or soup
    for el in body.find_all(["script", "style", "noscript", "template"]):
        el.decompose()
    return _squash(body.get_text(" "))[:BODY_TEXT_CHARS]


def snapshot_from_html(
    html: str,
    url: str = "",
    title: Optional[str] = None,
    ready_state: str = "complete",
    task: str = "",
    tried_selectors: Optional[List[str]] = None,
    page_unchanged: bool = False,
) -> PageSnapshot:
    """Pure perception over an HTML string."""
    soup = parse_html(html)
    dom = SoupDom(soup)
    elements = collect_interactive_elements(soup, dom)
    ranked = rank_elements(elements, task, tried_selectors, page_unchanged) if task else elements
    if title is None:
        title = _squash(soup.title.get_text()) if soup.title else ""
    snapshot: PageSnapshot = {
        "url": url,
        "title": title,
        "ready_state": ready_state,
        "elements": ranked,
        "headings": collect_headings(soup, dom),
        "forms": collect_forms(soup, dom),
        "containers": collect_containers(soup, dom),
        "metrics": page_metrics(soup, elements),
        "body_text": body_text(soup),
        "error": None,
    }
    return snapshot


def validate_on_page(page, elements: List[ElementDescriptor]) -> List[ElementDescriptor]:
    """Drop elements whose selector the live page cannot resolve."""
    live = PageDom(page)
    kept = [e for e in elements if live.count(e["selector"]) >= 1]
    if len(kept) != len(elements):
        print(f"[Perception] Dropped {len(elements) - len(kept)} selectors that did not resolve on the live page")
    return kept


def query_page(page, task: str = "", tried_selectors: Optional[List[str]] = None,
               page_unchanged: bool = False) -> PageSnapshot:
    """Snapshot the live page; never raises."""
    try:
        html = page.content()
        title = page.title()
        try:
            ready_state = page.evaluate("document.readyState")
        except Exception:
            ready_state = "unknown"
        snapshot = snapshot_from_html(html, page.url, title, ready_state, task, tried_selectors, page_unchanged)
        snapshot["elements"] = validate_on_page(page, snapshot["elements"])
        for i, e in enumerate(snapshot["elements"]):
            e["index"] = i
        print(f"[Perception] {len(snapshot['elements'])} elements, {len(snapshot['headings'])} headings, "
              f"{len(snapshot['forms'])} forms on {snapshot['url']}")
        return snapshot
    except Exception as e:
        print(f"[Perception] Error extracting DOM: {e}")
        url = ""
        try:
            url = page.url
        except Exception:
            pass
        return {"url": url, "title": "Error", "ready_state": "unknown", "elements": [], "headings": [],
                "forms": [], "containers": [], "metrics": {}, "body_text": "", "error": str(e)}
