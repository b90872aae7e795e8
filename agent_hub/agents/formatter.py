import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Tuple

from ..core.types import ExecutionResult

DEBUG_FORMATTER = False

FORMAT_FAILURE_MESSAGE = (
    "I found some information for your query, but I'm having trouble formatting it properly. "
    "Please try rephrasing your question or contact support if this issue persists."
)

FORMATTER_SYSTEM_PROMPT = (
    "You are a professional response formatter. Your job is to take raw data from web agents and "
    "format it into clean, user-friendly responses.\n"
    "\n"
    "FORMATTING RULES:\n"
    "1. Write in a conversational, helpful tone\n"
    "2. Use simple bullet points (•) for lists, no complex tables\n"
    "3. Include all important details (names, prices, ratings, links)\n"
    "4. Use clear headings with ## for main sections\n"
    "5. Use ₹ for Indian prices and $ for USD prices, as given in the data\n"
    "6. Format ratings as \"X.X★\" and include review counts when available\n"
    "7. Make product links clickable with [text](url) format\n"
    "8. List EVERY item in the data, one bullet per item. Never truncate to a sample.\n"
    "9. Always include source information at the end\n"
    "\n"
    "RESPONSE STRUCTURE:\n"
    "- Start with a brief summary\n"
    "- List items with key details\n"
    "- End with source and date information\n"
    "- NO tables, NO JSON\n"
    "\n"
    "SAMPLE FORMAT:\n"
    "## [Query Topic]\n"
    "\n"
    "I found [X] great options for you:\n"
    "\n"
    "• **Product Name** - $XX.XX\n"
    "  Rating: X.X★ (X,XXX reviews)\n"
    "  Key features: [brief description]\n"
    "  [View Product](link)\n"
    "\n"
    "---\n"
    "*Source: [site] | Updated: [date]*"
)

_BULLET_LINE = re.compile(r"^(?:[•\-\*]|\d+[.)])\s+\S")

FEATURE_KEYWORDS = [
    ("wireless", "Wireless"),
    ("bluetooth", "Bluetooth"),
    ("noise cancel", "Noise Cancelling"),
    ("waterproof", "Waterproof"),
    ("water resistant", "Water Resistant"),
    ("ipx", "Water Resistant"),
    ("fast charg", "Fast Charging"),
    ("usb-c", "USB-C"),
    ("type-c", "USB-C"),
    ("5g", "5G"),
    ("gaming", "Gaming"),
    ("portable", "Portable"),
    ("rechargeable", "Rechargeable"),
    ("4k", "4K"),
    ("oled", "OLED"),
    ("smart", "Smart"),
    ("touch", "Touch Controls"),
    ("microphone", "Built-in Mic"),
]


def _debug(msg: str) -> None:
    if DEBUG_FORMATTER:
        print(msg)


def count_list_entries(text: str) -> int:
    """Top-level bullet or numbered entries; indented detail lines are not items."""
    return sum(1 for line in (text or "").splitlines() if _BULLET_LINE.match(line))


def infer_features(name: str, limit: int = 4) -> List[str]:
    lowered = f" {(name or '').lower()} "
    tags: List[str] = []
    for keyword, tag in FEATURE_KEYWORDS:
        if re.search(rf"\b{re.escape(keyword)}", lowered) and tag not in tags:
            tags.append(tag)
        if len(tags) >= limit:
            break
    return tags


def items_of(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, Mapping):
        for key in ("items", "products", "results"):
            value = payload.get(key)
            if isinstance(value, list):
                return [v for v in value if isinstance(v, Mapping)]
        return []
    if isinstance(payload, list):
        return [v for v in payload if isinstance(v, Mapping)]
    return []


def normalize_result(raw: Any) -> Tuple[Any, str]:
    """(data to format, source label) from any executor result shape."""
    if isinstance(raw, ExecutionResult):
        raw = {"result": raw.result}
    if isinstance(raw, Mapping):
        inner = raw.get("result")
        url = raw.get("url")
        if isinstance(inner, Mapping) and inner.get("extracted_data") is not None:
            data = inner["extracted_data"]
            return data, url or (data.get("page_url") if isinstance(data, Mapping) else None) or "Web"
        if raw.get("extracted_data") is not None:
            data = raw["extracted_data"]
            return data, url or (data.get("page_url") if isinstance(data, Mapping) else None) or "Web"
        if inner is not None:
            return inner, url or "Web"
    return raw, "Agent"


def _entry(index: int, item: Mapping[str, Any]) -> str:
    name = item.get("title") or item.get("name") or f"Item {index}"
    line = f"• **{name}**"
    if item.get("price"):
        line += f" - {item['price']}"
    if item.get("rating") is not None:
        line += f" | Rating: {item['rating']}★"
        if item.get("review_count") is not None:
            line += f" ({item['review_count']:,} reviews)" if isinstance(item["review_count"], int) \
                else f" ({item['review_count']} reviews)"
    elif item.get("review_count") is not None:
        line += f" | {item['review_count']} reviews"

    extras = []
    for key, value in item.items():
        if key in ("title", "name", "price", "price_value", "rating", "review_count", "link", "url", "href"):
            continue
        if isinstance(value, (str, int, float)) and str(value).strip():
            extras.append(f"{key.replace('_', ' ').title()}: {value}")
    if extras:
        line += "\n  " + " | ".join(extras)

    features = infer_features(str(name))
    if features:
        line += f"\n  Features: {', '.join(features)}"
    link = item.get("link") or item.get("url") or item.get("href")
    if link:
        line += f"\n  [View Product]({link})"
    return line


def deterministic_format(user_prompt: str, payload: Any, source: str = "Web") -> str:
    """Code-driven write-up; one bullet per item, no model involved."""
    items = items_of(payload)
    out = f"## Results for: {user_prompt}\n\n"
    if items:
        out += f"I found {len(items)} items:\n\n"
        out += "\n\n".join(_entry(i, item) for i, item in enumerate(items, start=1))
        page_url = payload.get("page_url") if isinstance(payload, Mapping) else None
        out += f"\n\n---\n*Source: {page_url or source}*"
        return out

    if isinstance(payload, Mapping):
        for key in ("final_answer", "summary", "message"):
            if isinstance(payload.get(key), str) and payload[key].strip():
                return out + payload[key].strip()
    if isinstance(payload, str) and payload.strip():
        return out + payload.strip()
    return out + (
        "I processed your request successfully, but the detailed results are in a format "
        "that's difficult to display. Please try a more specific query."
    )


class ResultFormatter:
    """Turns raw executor output into the user-facing answer."""

    def __init__(self, gateway, completeness_ratio: float = 0.8):
        self.gateway = gateway
        self.completeness_ratio = completeness_ratio

    def format(self, user_prompt: str, raw_result: Any, source_executor: str = "Agent") -> str:
        try:
            payload, source = normalize_result(raw_result)
            items = items_of(payload)
            print(f"[Formatter] Formatting {len(items)} items from {source_executor} for '{user_prompt[:80]}'")

            try:
                text = self._model_format(user_prompt, payload, source, source_executor, len(items))
            except Exception as e:
                print(f"[Formatter] Model formatting failed: {e}; using deterministic formatter")
                return deterministic_format(user_prompt, payload, source)

            if items:
                entries = count_list_entries(text)
                _debug(f"[Formatter] Model produced {entries} entries for {len(items)} items")
                if entries < self.completeness_ratio * len(items):
                    print(f"[Formatter] Model listed {entries}/{len(items)} items; using deterministic formatter")
                    return deterministic_format(user_prompt, payload, source)
            if not text.strip():
                return deterministic_format(user_prompt, payload, source)
            return text.strip()
        except Exception as e:
            print(f"[Formatter] Error formatting response: {e}")
            return FORMAT_FAILURE_MESSAGE

    def _model_format(self, user_prompt: str, payload: Any, source: str, source_executor: str, item_count: int) -> str:
        data = json.dumps(payload, indent=2, default=str, ensure_ascii=False)
        prompt = (
            f"Please format this data into a user-friendly response for the query: \"{user_prompt}\"\n\n"
            f"Raw Data:\n{data}\n\n"
            f"Data Source: {source}\n"
            f"Source Agent: {source_executor}\n"
            f"Item Count: {item_count} (list all {item_count} items)\n"
            f"Date: {datetime.now(timezone.utc).date().isoformat()}"
        )
        max_tokens = min(6000, 1000 + 150 * item_count)
        return self.gateway.complete(
            FORMATTER_SYSTEM_PROMPT,
            prompt,
            {
                "max_tokens": max_tokens,
                "temperature": 0.2,
                "max_content_length": max(len(prompt), self.gateway.governor.max_content_length),
                "max_input_tokens": max(self.gateway.governor.max_tokens_per_request, 8000),
            },
        )
