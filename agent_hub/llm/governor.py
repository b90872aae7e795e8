import json
import math
import re
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup, Comment

from ..core import config

TRUNCATION_MARKER = "\n... [Content truncated for token limits]"

CHROME_TAGS = ["script", "style", "noscript", "nav", "header", "footer", "meta", "link"]


def _tokens(text: str) -> List[str]:
    return [t for t in re.findall(r"[a-z0-9]+", text.lower()) if len(t) > 2]


class ContentGovernor:
    """Keeps prompts inside the model's input budget."""

    def __init__(
        self,
        max_content_length: int = config.MAX_CONTENT_LENGTH,
        max_tokens_per_request: int = config.MAX_TOKENS_PER_REQUEST,
        enable_chunking: bool = config.ENABLE_CONTENT_CHUNKING,
    ):
        self.max_content_length = max_content_length
        self.max_tokens_per_request = max_tokens_per_request
        self.enable_chunking = enable_chunking

    # --- Sizing ---

    def estimate_tokens(self, text: Any) -> int:
        """Average of a word-based (x1.3) and a char-based (/4) estimate, rounded up."""
        if not text or not isinstance(text, str):
            return 0
        words = len(text.split())
        return math.ceil((words * 1.3 + len(text) / 4) / 2)

    def validate_size(self, system_prompt: str, content: str, max_tokens: Optional[int] = None) -> Dict[str, Any]:
        limit = max_tokens if max_tokens is not None else self.max_tokens_per_request
        prompt_tokens = self.estimate_tokens(system_prompt)
        content_tokens = self.estimate_tokens(content)
        total = prompt_tokens + content_tokens
        return {
            "is_valid": total <= limit,
            "total_tokens": total,
            "prompt_tokens": prompt_tokens,
            "content_tokens": content_tokens,
            "max_tokens": limit,
            "exceeds_by": max(0, total - limit),
        }

    # --- Cutting ---

    def truncate(self, content: Any, target_length: Optional[int] = None) -> str:
        """Cut at the last sentence end, newline or space past 80% of the target."""
        if not content or not isinstance(content, str):
            return ""
        target = target_length if target_length is not None else self.max_content_length
        if len(content) <= target:
            return content

        head = content[:target]
        floor = target * 0.8
        sentence_end = max(head.rfind("."), head.rfind("!"), head.rfind("?"))
        newline = head.rfind("\n")
        space = head.rfind(" ")

        cut = target
        if sentence_end > floor:
            cut = sentence_end + 1
        elif newline > floor:
            cut = newline
        elif space > floor:
            cut = space

        return content[:cut].rstrip() + TRUNCATION_MARKER

    def chunk(self, content: Any, chunk_size: int = 3000) -> List[str]:
        """Split near chunk_size boundaries, preferring a period or newline."""
        if not content or not isinstance(content, str):
            return []
        chunk_size = max(1, int(chunk_size))
        if len(content) <= chunk_size:
            return [content] if content.strip() else []

        chunks: List[str] = []
        pos = 0
        while pos < len(content):
            end = min(pos + chunk_size, len(content))
            if end < len(content):
                floor = pos + chunk_size * 0.8
                last_period = content.rfind(".", pos, end)
                last_newline = content.rfind("\n", pos, end)
                if last_period > floor:
                    end = last_period + 1
                elif last_newline > floor:
                    end = last_newline
            chunks.append(content[pos:end].strip())
            pos = end
        return [c for c in chunks if c]

    # --- Structured page data ---

    def optimize_page_data(self, page_data: Any, task: str = "") -> Dict[str, Any]:
        """Reduce a page snapshot to the fields a decision needs."""
        if not isinstance(page_data, dict):
            return {"error": "Invalid page data"}

        optimized: Dict[str, Any] = {
            "title": page_data.get("title") or "",
            "url": page_data.get("url") or "",
            "readyState": page_data.get("ready_state") or "",
        }

        headings = page_data.get("headings")
        if isinstance(headings, list):
            optimized["headings"] = [
                {"level": h.get("level"), "text": self.truncate(h.get("text") or "", 200)}
                for h in headings[:15]
            ]

        elements = page_data.get("elements")
        if isinstance(elements, list):
            usable = [
                el for el in elements
                if (el.get("text") or "").strip() or el.get("tag") in ("input", "textarea", "select")
            ]
            task_tokens = set(_tokens(task))
            if task_tokens:
                # stable sort keeps perception order among equally relevant elements
                usable = sorted(usable, key=lambda el: -len(task_tokens & set(_tokens(el.get("text") or ""))))
            optimized["interactiveElements"] = [
                {
                    "text": self.truncate(el.get("text") or "", 100),
                    "tag": el.get("tag"),
                    "type": el.get("type"),
                    "role": el.get("role"),
                    "selector": el.get("selector"),
                    "href": el.get("href") or "",
                    "placeholder": el.get("placeholder") or "",
                }
                for el in usable[:30]
            ]

        forms = page_data.get("forms")
        if isinstance(forms, list):
            optimized["forms"] = [
                {
                    "selector": form.get("selector"),
                    "action": form.get("action"),
                    "method": form.get("method"),
                    "inputs": [
                        {
                            "type": inp.get("type"),
                            "name": inp.get("name"),
                            "selector": inp.get("selector"),
                            "placeholder": self.truncate(inp.get("placeholder") or "", 50),
                        }
                        for inp in (form.get("inputs") or [])[:10]
                    ],
                }
                for form in forms
            ]

        containers = page_data.get("containers")
        if isinstance(containers, list):
            optimized["contentContainers"] = [
                {
                    "selector": c.get("selector"),
                    "tag": c.get("tag"),
                    "text": self.truncate(c.get("text") or "", 300),
                    "linkCount": c.get("link_count"),
                    "imageCount": c.get("image_count"),
                }
                for c in containers
                if (c.get("text") or "").strip()
            ][:10]

        body_text = page_data.get("body_text")
        if body_text:
            optimized["pageText"] = self.truncate(body_text, 2000)

        metrics = page_data.get("metrics")
        if isinstance(metrics, dict):
            optimized["pageMetrics"] = {
                "elements": metrics.get("element_count"),
                "interactive": metrics.get("interactive_count"),
                "links": metrics.get("link_count"),
                "forms": metrics.get("form_count"),
                "buttons": metrics.get("button_count"),
                "loading": metrics.get("has_loading_indicator"),
            }

        return optimized

    # --- Request preparation ---

    def prepare_for_model(
        self,
        system_prompt: str,
        content: Any,
        max_content_length: Optional[int] = None,
        max_tokens: Optional[int] = None,
        task: str = "",
    ) -> Dict[str, Any]:
        """Pass through, truncate, then truncate hard. Never raises."""
        max_len = max_content_length if max_content_length is not None else self.max_content_length
        if isinstance(content, (dict, list)):
            data = self.optimize_page_data(content, task) if isinstance(content, dict) else content
            text = json.dumps(data, indent=2, default=str)
        else:
            text = content if isinstance(content, str) else ("" if content is None else str(content))

        validation = self.validate_size(system_prompt, text, max_tokens)
        if validation["is_valid"]:
            return {
                "system_prompt": system_prompt,
                "content": text,
                "token_info": validation,
                "was_optimized": False,
                "stage": "passthrough",
                "warning": None,
            }

        print(f"[Governor] Content too large ({validation['total_tokens']} tokens), optimizing...")

        dropped_chunks = 0
        if self.enable_chunking and len(text) > max_len:
            chunks = self.chunk(text, max_len)
            if chunks:
                dropped_chunks = len(chunks) - 1
                text = chunks[0] + (TRUNCATION_MARKER if dropped_chunks else "")
                if dropped_chunks:
                    print(f"[Governor] Chunked content; sending 1 of {len(chunks)} chunks")

        optimized = self.truncate(text, max_len) if len(text) > max_len else text
        second = self.validate_size(system_prompt, optimized, max_tokens)
        if second["is_valid"]:
            return {
                "system_prompt": system_prompt,
                "content": optimized,
                "token_info": second,
                "was_optimized": True,
                "stage": "truncated",
                "warning": None,
                "dropped_chunks": dropped_chunks,
            }

        optimized = self.truncate(text, int(max_len * 0.5))
        final = self.validate_size(system_prompt, optimized, max_tokens)
        warning = None if final["is_valid"] else "Content may still exceed token limits"
        if warning:
            print(f"[Governor] Warning: {warning} ({final['total_tokens']} tokens)")
        return {
            "system_prompt": system_prompt,
            "content": optimized,
            "token_info": final,
            "was_optimized": True,
            "stage": "aggressive",
            "warning": warning,
            "dropped_chunks": dropped_chunks,
        }

    # --- Misc helpers ---

    def clean_html(self, html: Any) -> str:
        if not html or not isinstance(html, str):
            return ""
        soup = BeautifulSoup(html, "lxml")
        for el in soup.find_all(CHROME_TAGS):
            if not el.decomposed:
                el.decompose()
        for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
            comment.extract()
        # lxml wraps fragments in html/body; return the fragment as given
        if "<html" not in html.lower() and soup.body is not None:
            cleaned = "".join(str(node) for node in soup.body.contents)
        else:
            cleaned = str(soup)
        return re.sub(r"\s+", " ", cleaned).strip()

    def content_stats(self, content: Any) -> Dict[str, int]:
        if not content or not isinstance(content, str):
            return {"length": 0, "tokens": 0, "words": 0, "lines": 0, "avg_words_per_line": 0}
        words = content.split()
        lines = [line for line in content.split("\n") if line.strip()]
        return {
            "length": len(content),
            "tokens": self.estimate_tokens(content),
            "words": len(words),
            "lines": len(lines),
            "avg_words_per_line": round(len(words) / max(1, len(lines))),
        }
