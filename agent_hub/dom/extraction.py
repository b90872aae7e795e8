"""
Generic list extraction over an HTML snapshot.

Finds repeating item containers (known selectors first, then a price/title
heuristic) and pulls title, link, price, rating and review count out of each.
Everything here is a pure function of the HTML, so running it twice over the
same snapshot gives the same items.
"""

import json
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

DEBUG_EXTRACTION = False

# Checked in order; the first selector with any visible match wins
CONTAINER_SELECTORS = [
    "[data-component-type='s-search-result']",
    "[data-testid*='product']",
    "[itemtype*='schema.org/Product']",
    ".product-card",
    ".product-item",
    "li.product",
    ".product",
    ".search-result",
    ".s-result-item",
    "tr.athing",
    "article",
    ".card",
    ".result",
]

HEURISTIC_TAGS = ["div", "li", "article", "section", "tr"]
MAX_ITEMS = 50

PRICE_RE = re.compile(
    r"(?P<cur>[$€£₹¥]|Rs\.?|INR|USD|EUR)\s?(?P<num>\d{1,3}(?:,\d{2,3})+(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?)"
)
RATING_RE = re.compile(r"(?P<val>\d(?:\.\d)?)\s*(?:out of\s*5|/\s*5|★|stars?)", re.IGNORECASE)
REVIEWS_RE = re.compile(r"(?P<num>\d{1,3}(?:,\d{3})+|\d+)\s*(?:reviews?|ratings?)", re.IGNORECASE)

LINK_FIELDS = {"link", "url", "href"}
PRICE_FIELDS = {"price", "cost"}


def _debug(msg: str) -> None:
    if DEBUG_EXTRACTION:
        print(msg)


def _squash(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def parse_field_mapping(raw: Union[None, str, Mapping[str, Any]]) -> Dict[str, str]:
    """Accepts a dict, a JSON object string, or "field: selector; field: selector"."""
    if not raw:
        return {}
    if isinstance(raw, Mapping):
        return {str(k).strip(): str(v).strip() for k, v in raw.items() if str(v).strip()}
    text = str(raw).strip()
    if text.startswith("{"):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            return parse_field_mapping(parsed)
    mapping: Dict[str, str] = {}
    for part in re.split(r"[;\n]", text):
        if ":" not in part:
            continue
        field, selector = part.split(":", 1)
        field, selector = field.strip(), selector.strip()
        if field and selector:
            mapping[field] = selector
    return mapping


def parse_price(text: str) -> Optional[Tuple[str, float]]:
    m = PRICE_RE.search(text or "")
    if not m:
        return None
    try:
        value = float(m.group("num").replace(",", ""))
    except ValueError:
        return None
    return _squash(m.group(0)), value


def parse_rating(text: str) -> Optional[float]:
    m = RATING_RE.search(text or "")
    if not m:
        return None
    value = float(m.group("val"))
    return value if 0 <= value <= 5 else None


def parse_review_count(text: str) -> Optional[int]:
    m = REVIEWS_RE.search(text or "")
    if not m:
        return None
    return int(m.group("num").replace(",", ""))


def _visible(el: Tag) -> bool:
    for node in [el] + list(el.parents):
        if not isinstance(node, Tag):
            continue
        if node.has_attr("hidden") or node.get("aria-hidden") == "true":
            return False
        style = node.get("style")
        if isinstance(style, str) and re.search(r"display\s*:\s*none", style, re.IGNORECASE):
            return False
    return True


def _looks_like_item(el: Tag) -> bool:
    text = _squash(el.get_text(" "))
    if len(text) < 15:
        return False
    has_price = PRICE_RE.search(text) is not None
    has_link = el.find("a", href=True) is not None
    has_heading = el.find(["h2", "h3", "h4"]) is not None
    return (has_price and (has_link or has_heading)) or (has_heading and has_link)


def find_containers(soup: BeautifulSoup, container_selector: Optional[str] = None) -> Tuple[str, List[Tag]]:
    if container_selector:
        try:
            matches = [el for el in soup.select(container_selector) if _visible(el)]
        except Exception as e:
            print(f"[Extractor] Invalid container selector '{container_selector}': {e}")
            matches = []
        if matches:
            return container_selector, matches
        print(f"[Extractor] No containers for '{container_selector}'; detecting automatically")

    for css in CONTAINER_SELECTORS:
        matches = [el for el in soup.select(css) if _visible(el) and _squash(el.get_text(" "))]
        if matches:
            _debug(f"[Extractor] Container selector matched: {css} ({len(matches)})")
            return css, matches

    candidates = [el for el in soup.find_all(HEURISTIC_TAGS) if _visible(el) and _looks_like_item(el)]
    candidate_ids = {id(el) for el in candidates}
    # Innermost only: a candidate that wraps another candidate is a list wrapper
    innermost = [
        el for el in candidates
        if not any(id(d) in candidate_ids for d in el.find_all(HEURISTIC_TAGS))
    ]
    return "heuristic", innermost


def _title(container: Tag) -> str:
    for el in container.select("h1, h2, h3, h4, [class*='title'], [class*='name']"):
        text = _squash(el.get_text(" "))
        if len(text) > 2:
            return text
    anchors = sorted(
        (_squash(a.get_text(" ")) for a in container.find_all("a")),
        key=len,
        reverse=True,
    )
    if anchors and len(anchors[0]) > 2:
        return anchors[0]
    img = container.find("img", alt=True)
    return _squash(img["alt"]) if img is not None else ""


def _link(container: Tag, base_url: str) -> str:
    anchor = None
    heading = container.find(["h1", "h2", "h3", "h4"])
    if heading is not None:
        anchor = heading.find("a", href=True) or heading.find_parent("a", href=True)
    if anchor is None:
        anchor = container.find("a", href=True)
    if anchor is None and container.name == "a" and container.get("href"):
        anchor = container
    if anchor is None:
        return ""
    href = anchor.get("href") or ""
    if href.startswith(("javascript:", "#")):
        return ""
    return urljoin(base_url, href) if base_url else href


def _price(container: Tag) -> Optional[Tuple[str, float]]:
    for el in container.select("[class*='price'], [itemprop='price']"):
        parsed = parse_price(el.get_text(" "))
        if parsed:
            return parsed
    return parse_price(container.get_text(" "))


def _rating(container: Tag) -> Optional[float]:
    for el in container.select("[aria-label], [title]"):
        label = el.get("aria-label") or el.get("title") or ""
        rating = parse_rating(label)
        if rating is not None:
            return rating
    return parse_rating(container.get_text(" "))


def _mapped_value(container: Tag, field: str, selector: str, base_url: str) -> Any:
    try:
        el = container.select_one(selector)
    except Exception as e:
        _debug(f"[Extractor] Bad selector for {field}: {selector} ({e})")
        return None
    if el is None:
        return None
    if field.lower() in LINK_FIELDS:
        href = el.get("href") or ""
        return urljoin(base_url, href) if (href and base_url) else href
    return _squash(el.get_text(" ")) or _squash(el.get("content") or el.get("alt") or "")


def extract_item(container: Tag, mapping: Optional[Dict[str, str]] = None, base_url: str = "") -> Dict[str, Any]:
    item: Dict[str, Any] = {}
    for field, selector in (mapping or {}).items():
        value = _mapped_value(container, field, selector, base_url)
        if value:
            item[field] = value
            if field.lower() in PRICE_FIELDS:
                parsed = parse_price(str(value))
                if parsed:
                    item["price_value"] = parsed[1]

    if "title" not in item:
        title = _title(container)
        if title:
            item["title"] = title[:300]
    if "link" not in item:
        link = _link(container, base_url)
        if link:
            item["link"] = link
    if "price" not in item:
        price = _price(container)
        if price:
            item["price"], item["price_value"] = price
    if "rating" not in item:
        rating = _rating(container)
        if rating is not None:
            item["rating"] = rating
    if "review_count" not in item:
        reviews = parse_review_count(container.get_text(" "))
        if reviews is not None:
            item["review_count"] = reviews
    return item


def is_meaningful(item: Mapping[str, Any]) -> bool:
    """At least one real field besides the link with non-trivial content."""
    for key, value in item.items():
        if key in LINK_FIELDS or key == "price_value":
            continue
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return True
        if isinstance(value, str) and len(value.strip()) > 1:
            return True
    return False


def extract_items(
    html: Union[str, BeautifulSoup],
    field_mapping: Union[None, str, Mapping[str, Any]] = None,
    page_url: str = "",
    limit: int = MAX_ITEMS,
) -> Dict[str, Any]:
    """Run extraction over a snapshot; returns items plus where they came from."""
    soup = html if isinstance(html, BeautifulSoup) else BeautifulSoup(html or "", "lxml")
    mapping = parse_field_mapping(field_mapping)
    container_selector = mapping.pop("container", None)

    selector, containers = find_containers(soup, container_selector)
    items: List[Dict[str, Any]] = []
    seen = set()
    for container in containers:
        if len(items) >= limit:
            break
        item = extract_item(container, mapping, page_url)
        if not is_meaningful(item):
            continue
        key = (item.get("title"), item.get("link"), item.get("price"))
        if key in seen:
            continue
        seen.add(key)
        items.append(item)

    print(f"[Extractor] {len(items)} items from {len(containers)} containers (selector={selector})")
    return {
        "items": items,
        "item_count": len(items),
        "container_selector": selector,
        "page_url": page_url,
    }
