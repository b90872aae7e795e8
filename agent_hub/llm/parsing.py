import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Union


@dataclass(frozen=True)
class Ok:
    value: Dict[str, Any]


@dataclass(frozen=True)
class Malformed:
    raw: str
    reason: str = ""


ParseResult = Union[Ok, Malformed]


def as_bool(value: Any, default: bool = False) -> bool:
    """Model flags arrive as booleans, quoted booleans or 0/1."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1"):
            return True
        if lowered in ("false", "no", "0", ""):
            return False
    return default


def flatten_content(content: Any) -> str:
    """Flatten OpenAI-style mixed content into a single string."""
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
            elif isinstance(block, str):
                parts.append(block)
        return "\n".join(parts).strip()
    return "" if content is None else str(content)


def strip_code_fences(text: str) -> str:
    if "```json" in text:
        return text.split("```json")[1].split("```")[0].strip()
    if "```" in text:
        parts = text.split("```")
        if len(parts) >= 3:
            return parts[1].strip()
    return text.strip()


def _balanced_object(text: str) -> Optional[str]:
    """The {...} span opened by the first brace, ignoring braces inside strings."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def parse_json_object(raw: Any) -> ParseResult:
    """Fences stripped, direct parse, then the first balanced object in the text."""
    text = flatten_content(raw)
    if not text:
        return Malformed(text, "empty response")

    body = strip_code_fences(text)
    candidates = [body]
    snippet = _balanced_object(body)
    if snippet and snippet != body:
        candidates.append(snippet)

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        # Unwrap a single-item list the way models sometimes answer
        if isinstance(parsed, list):
            parsed = next((p for p in parsed if isinstance(p, dict)), None)
        if isinstance(parsed, dict):
            return Ok(parsed)
    return Malformed(text, "no JSON object found")


_STRING_FIELD = r'"{name}"\s*:\s*"((?:[^"\\]|\\.)*)"'
_NUMBER_FIELD = r'"{name}"\s*:\s*(-?\d+(?:\.\d+)?)'
_BOOL_FIELD = r'"{name}"\s*:\s*(true|false)'


def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except ValueError:
        return value


def recover_fields(raw: str, strings: Iterable[str] = (), numbers: Iterable[str] = (),
                   booleans: Iterable[str] = ()) -> Dict[str, Any]:
    """Regex pull of individual fields out of almost-JSON text."""
    found: Dict[str, Any] = {}
    for name in strings:
        m = re.search(_STRING_FIELD.format(name=re.escape(name)), raw)
        if m:
            found[name] = _unescape(m.group(1))
    for name in numbers:
        m = re.search(_NUMBER_FIELD.format(name=re.escape(name)), raw)
        if m:
            found[name] = float(m.group(1))
    for name in booleans:
        m = re.search(_BOOL_FIELD.format(name=re.escape(name)), raw, re.IGNORECASE)
        if m:
            found[name] = m.group(1).lower() == "true"
    return found


def recover_browser_decision(raw: str) -> ParseResult:
    """Field-by-field recovery of {action:{type,target,value,reasoning}, isCompleted, confidence, finalAnswer}."""
    fields = recover_fields(
        raw,
        strings=("type", "target", "value", "reasoning", "finalAnswer"),
        numbers=("confidence",),
        booleans=("isCompleted",),
    )
    if "type" not in fields and "isCompleted" not in fields:
        return Malformed(raw, "no recoverable fields")
    action = {k: fields[k] for k in ("type", "target", "value", "reasoning") if k in fields}
    return Ok({
        "action": action,
        "isCompleted": fields.get("isCompleted", False),
        "confidence": fields.get("confidence", 0.0),
        "finalAnswer": fields.get("finalAnswer"),
    })
