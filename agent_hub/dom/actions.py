import time
from typing import Any, Dict, Optional
from urllib.parse import urljoin

from .extraction import extract_items, parse_field_mapping
from ..core import config
from ..core.types import ActionOutcome, BrowserAction

ACTION_TYPES = ("click", "fill", "navigate", "scroll", "wait", "extract")
FATAL_MARKERS = ("target closed", "has been closed", "browser has disconnected", "target page, context or browser")
MAX_WAIT_MS = 10000


def _first(page, selector: str):
    locator = page.locator(selector)
    try:
        if locator.count() > 1:
            print(f"[Actions] Locator matched {locator.count()} elements; using the first.")
            locator = locator.nth(0)
    except Exception:
        pass
    return locator


def _safe_click(page, selector: str, timeout_ms: int) -> None:
    locator = _first(page, selector)
    locator.wait_for(state="visible", timeout=timeout_ms)
    locator.click(timeout=timeout_ms)


def _safe_fill(page, selector: str, text: str, timeout_ms: int) -> None:
    locator = _first(page, selector)
    locator.wait_for(state="visible", timeout=timeout_ms)
    locator.click(timeout=timeout_ms)
    locator.fill(text, timeout=timeout_ms)


def _wait_ms(value: Any) -> int:
    try:
        ms = int(float(value))
    except (TypeError, ValueError):
        return 2000
    return max(0, min(ms, MAX_WAIT_MS))


def _is_fatal(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in FATAL_MARKERS)


def execute_action(
    page,
    action: BrowserAction,
    action_timeout_ms: int = config.ACTION_TIMEOUT_MS,
    navigation_timeout_ms: int = config.NAVIGATION_TIMEOUT_MS,
) -> ActionOutcome:
    """Run one action against the page; failures come back as an outcome, never raised."""
    kind = (action.get("type") or "").lower()
    target = action.get("target") or ""
    value = action.get("value")
    start = time.time()

    try:
        page.wait_for_timeout(500)
        data: Optional[Dict[str, Any]] = None
        if kind == "click":
            if not target:
                raise RuntimeError("Click action missing target selector")
            _safe_click(page, target, action_timeout_ms)
        elif kind == "fill":
            if not target:
                raise RuntimeError("Fill action missing target selector")
            if value is None or str(value) == "":
                raise RuntimeError("Fill action missing value")
            _safe_fill(page, target, str(value), action_timeout_ms)
        elif kind == "navigate":
            destination = target or (str(value) if value else "")
            if not destination:
                raise RuntimeError("Navigate action missing URL")
            page.goto(urljoin(page.url, destination), wait_until="domcontentloaded", timeout=navigation_timeout_ms)
        elif kind == "scroll":
            page.evaluate("() => window.scrollBy(0, window.innerHeight)")
        elif kind == "wait":
            page.wait_for_timeout(_wait_ms(value))
        elif kind == "extract":
            mapping = parse_field_mapping(value)
            if target and target.strip().lower() not in ("body", "html", "page") and "container" not in mapping:
                mapping["container"] = target
            data = extract_items(page.content(), mapping, page.url)
        else:
            raise RuntimeError(f"Unsupported action type: {kind or '<missing>'}")

        duration = time.time() - start
        print(f"[Actions] {kind} succeeded in {duration:.2f}s")
        outcome: ActionOutcome = {"success": True, "error": None, "fatal": False}
        if data is not None:
            outcome["data"] = data
        return outcome
    except Exception as e:
        duration = time.time() - start
        print(f"[Actions] {kind or 'action'} failed in {duration:.2f}s: {e}")
        return {"success": False, "error": str(e), "fatal": _is_fatal(e)}
