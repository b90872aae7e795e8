import re
from typing import Dict, List, Optional, Set

# --- Weights ---

BASE_ROLE_WEIGHTS = {
    "searchbox": 1.2,
    "textbox": 1.0,
    "combobox": 1.0,
    "button": 1.0,
    "link": 0.8,
    "checkbox": 0.6,
    "radio": 0.6,
}

# Checked in order; the first intent with a keyword hit wins
INTENT_KEYWORDS = {
    "search": {"search", "find", "look for", "query", "lookup"},
    "sort_filter": {"sort", "filter", "cheapest", "lowest", "highest", "under", "below", "above", "price range"},
    "form_fill": {"fill", "enter", "type", "submit", "sign in", "log in", "login", "subscribe", "register"},
    "navigate": {"go to", "open", "next page", "tab", "section", "navigate"},
    "extract_list": {"list", "top", "all", "compare", "show", "get", "prices", "products", "items"},
}

# Tokens that pull an element away from the task intent,
# unless the task itself mentions them
NEGATIVE_SIGNALS = {
    "search": {"login", "signin", "sign", "account", "cart", "checkout", "help", "careers"},
    "sort_filter": {"login", "sign", "account", "cart", "checkout"},
    "extract_list": {"login", "sign", "account", "cart", "checkout", "privacy", "terms", "cookie"},
    "navigate": {"cart", "checkout", "logout"},
}

# Page chrome tokens (slight penalty if nothing else matches)
GENERIC_TOKENS = {"menu", "skip", "sidebar", "navigation", "footer", "language", "feedback"}

DESTRUCTIVE_TOKENS = {"delete", "remove", "discard", "close", "dismiss", "trash", "logout", "unsubscribe"}

INPUT_ROLES = {"textbox", "searchbox", "combobox"}


def tokenize(text: str) -> List[str]:
    return [t for t in re.findall(r"[a-zA-Z0-9]+", text.lower()) if t]


def _classify_intent(task: str) -> str:
    """Classify a task into a high-level intent."""
    task_lower = task.lower()
    for intent, keywords in INTENT_KEYWORDS.items():
        for kw in keywords:
            if re.search(rf"\b{re.escape(kw)}\b", task_lower):
                return intent
    return "generic"


def _score_lexical_match(task: str, label: str, task_tokens: List[str], label_tokens: List[str]) -> float:
    """Exact label containment plus shared tokens; the main signal."""
    score = 0.0

    if label and label.lower() in task.lower():
        score += 5.0 if len(label) > 3 else 2.0

    if not task_tokens or not label_tokens:
        return score

    overlap = set(task_tokens) & set(label_tokens)
    if overlap:
        score += 3.0 * len(overlap)
    return score


def _score_role_bias(role: str, landmark: str, intent: str, label_tokens: Set[str]) -> float:
    """Role weight, boosted for roles that suit the task intent."""
    score = BASE_ROLE_WEIGHTS.get(role, 0.5)

    if intent == "search":
        if role in INPUT_ROLES:
            score += 2.0
        if label_tokens & {"search", "go", "submit", "find"}:
            score += 2.0
        if landmark in {"banner", "search"}:
            score += 1.0

    elif intent == "sort_filter":
        if label_tokens & {"sort", "filter", "price", "low", "high", "refine"}:
            score += 2.0
        if role == "combobox":
            score += 1.0

    elif intent == "form_fill":
        if role in INPUT_ROLES | {"checkbox", "radio"}:
            score += 1.5
        if label_tokens & {"submit", "continue", "send", "sign", "login"}:
            score += 1.0

    elif intent == "navigate":
        if role == "link":
            score += 1.0
        if label_tokens & {"next", "more"}:
            score += 1.0

    elif intent == "extract_list":
        if role == "link" and landmark == "main":
            score += 1.0
        if label_tokens & {"next", "more", "results"}:
            score += 1.0

    return score


def _score_negative_signals(intent: str, label_tokens: Set[str], task_tokens: Set[str]) -> float:
    """Penalties for off-intent, page-chrome and destructive labels."""
    penalty = 0.0

    conflict = NEGATIVE_SIGNALS.get(intent, set())
    if conflict & label_tokens and not (conflict & task_tokens):
        penalty -= 2.0

    if label_tokens & GENERIC_TOKENS:
        penalty -= 0.5

    if label_tokens & DESTRUCTIVE_TOKENS and not (task_tokens & DESTRUCTIVE_TOKENS):
        penalty -= 3.0

    return penalty


def is_garbage_label(label: str) -> bool:
    """Return True if an element label carries no meaning."""
    if not label:
        return False
    if label.isdigit():
        return len(label) > 2
    if len(label) < 3 and label.lower() not in {"ok", "go", "up", "to", "at", "in", "on", "by"}:
        return True
    return False


def score_element(elem: Dict, task: str, tried_selectors: Optional[List[str]] = None,
                  page_unchanged: bool = False) -> float:
    """
    Relevance of one interactive element to the task. Higher is better.

    Selectors already tried lose 1.5 points, or 5 when the last action
    left the page unchanged.
    """
    text = (elem.get("text") or "").strip()
    role = elem.get("role") or ""
    landmark = elem.get("landmark") or ""
    placeholder = (elem.get("placeholder") or "").strip()
    selector = elem.get("selector") or ""

    label = (text + " " + placeholder).strip()

    task_tokens = tokenize(task)
    label_tokens = tokenize(label)
    intent = _classify_intent(task)

    score = 0.0
    score += _score_lexical_match(task, label, task_tokens, label_tokens)
    score += _score_role_bias(role, landmark, intent, set(label_tokens))
    score += _score_negative_signals(intent, set(label_tokens), set(task_tokens))

    # Retry penalty
    if tried_selectors and selector in tried_selectors:
        score -= 5.0 if page_unchanged else 1.5

    if is_garbage_label(text) and not placeholder:
        score -= 5.0

    return score
