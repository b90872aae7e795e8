import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.runnables import RunnableLambda
from langchain_openai import ChatOpenAI

from ..core import config
from ..core.errors import ModelGatewayError
from .governor import ContentGovernor
from .parsing import flatten_content

RATE_LIMIT_MARKERS = ("quota", "rate", "limit")

LLMFactory = Callable[..., Any]


def is_rate_limit_error(error: BaseException) -> bool:
    """429 status (openai/httpx style attributes) or a quota/rate/limit message."""
    for attr in ("status_code", "status", "code"):
        if getattr(error, attr, None) == 429:
            return True
    response = getattr(error, "response", None)
    if response is not None and getattr(response, "status_code", None) == 429:
        return True
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def _messages(system_prompt: str, user_prompt: str) -> list:
    return [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]


class KeyRotator:
    """Round-robin over a fixed key pool; the index wraps modulo the pool size."""

    def __init__(self, keys: List[str]):
        if not keys:
            raise ValueError("KeyRotator needs at least one key")
        self.keys = list(keys)
        self.index = 0

    def next_key(self) -> Tuple[int, str]:
        position = self.index
        self.index = (self.index + 1) % len(self.keys)
        return position, self.keys[position]

    def peek_suffix(self) -> str:
        return self.keys[self.index][-4:]

    def __len__(self) -> int:
        return len(self.keys)


class LocalBackend:
    """Single OpenAI-compatible endpoint with fixed credentials."""

    name = "local"

    def __init__(
        self,
        model: str = config.LOCAL_MODEL,
        base_url: str = config.LOCAL_BASE_URL,
        api_key: str = config.LOCAL_API_KEY,
        max_tokens: int = config.LOCAL_MAX_TOKENS,
        temperature: float = config.LOCAL_TEMPERATURE,
        context_length: int = config.LOCAL_CONTEXT_LENGTH,
        timeout: float = config.MODEL_TIMEOUT_S,
        llm_factory: Optional[LLMFactory] = None,
    ):
        self.model = model
        self.base_url = base_url
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.context_length = context_length
        self.timeout = timeout
        self.llm_factory = llm_factory or ChatOpenAI
        self.calls = 0

    def complete(self, system_prompt: str, user_prompt: str, options: Dict[str, Any]) -> str:
        llm = self.llm_factory(
            model=self.model,
            base_url=self.base_url,
            api_key=self.api_key,
            temperature=options.get("temperature", self.temperature),
            max_tokens=options.get("max_tokens", self.max_tokens),
            timeout=self.timeout,
            max_retries=0,
            extra_body={"options": {"num_ctx": options.get("context_length", self.context_length)}},
        )
        try:
            result = llm.invoke(_messages(system_prompt, user_prompt))
        except Exception as e:
            print(f"[ModelGateway] Local model call failed: {e}")
            raise ModelGatewayError(f"Failed to generate response from local model: {e}") from e
        self.calls += 1
        return flatten_content(result.content)

    def stats(self) -> Dict[str, Any]:
        return {"backend": self.name, "model": self.model, "baseUrl": self.base_url, "calls": self.calls}


class CloudBackend:
    """Hosted endpoint behind a rotating pool of API keys."""

    name = "cloud"

    def __init__(
        self,
        keys: List[str],
        model: str = config.CLOUD_MODEL,
        base_url: Optional[str] = config.CLOUD_BASE_URL,
        max_tokens: int = config.CLOUD_MAX_TOKENS,
        temperature: float = config.CLOUD_TEMPERATURE,
        timeout: float = config.MODEL_TIMEOUT_S,
        llm_factory: Optional[LLMFactory] = None,
    ):
        self.rotator = KeyRotator(keys)
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.llm_factory = llm_factory or ChatOpenAI
        self.usage_log: List[Dict[str, Any]] = []

    @property
    def max_attempts(self) -> int:
        return min(3, len(self.rotator))

    def _llm(self, api_key: str, options: Dict[str, Any]):
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "api_key": api_key,
            "temperature": options.get("temperature", self.temperature),
            "max_tokens": options.get("max_tokens", self.max_tokens),
            "timeout": self.timeout,
            "max_retries": 0,
        }
        if self.base_url:
            kwargs["base_url"] = self.base_url
        return self.llm_factory(**kwargs)

    def complete(self, system_prompt: str, user_prompt: str, options: Dict[str, Any]) -> str:
        last_error: Optional[BaseException] = None
        attempts = 0
        for attempt in range(1, self.max_attempts + 1):
            attempts = attempt
            position, key = self.rotator.next_key()
            try:
                result = self._llm(key, options).invoke(_messages(system_prompt, user_prompt))
            except Exception as e:
                last_error = e
                if is_rate_limit_error(e):
                    print(f"[ModelGateway] Key ...{key[-4:]} rate limited (attempt {attempt}); rotating")
                    continue
                print(f"[ModelGateway] Key ...{key[-4:]} failed with non-retryable error: {e}")
                break

            text = flatten_content(result.content)
            entry = {
                "backend": self.name,
                "model": self.model,
                "key_index": position + 1,
                "key_suffix": key[-4:],
                "attempt": attempt,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            self.usage_log.append(entry)
            print(f"[ModelGateway] key=...{entry['key_suffix']} (#{entry['key_index']}) attempt={attempt}")
            return text

        raise ModelGatewayError(f"Failed to generate response after {attempts} attempts: {last_error}")

    def stats(self) -> Dict[str, Any]:
        return {
            "backend": self.name,
            "model": self.model,
            "totalKeys": len(self.rotator),
            "currentKeyIndex": self.rotator.index,
            "nextKeyPreview": f"...{self.rotator.peek_suffix()}",
            "successfulCalls": len(self.usage_log),
        }


class ModelGateway:
    """Uniform complete(system, user, options) over either backend, governed for size."""

    def __init__(self, backend, governor: Optional[ContentGovernor] = None):
        self.backend = backend
        self.governor = governor or ContentGovernor()

    @classmethod
    def from_env(cls, governor: Optional[ContentGovernor] = None,
                 llm_factory: Optional[LLMFactory] = None) -> "ModelGateway":
        if config.MODEL_BACKEND == "local":
            backend = LocalBackend(llm_factory=llm_factory)
        else:
            keys = config.load_cloud_keys()
            if not keys:
                raise ModelGatewayError(
                    "No cloud API keys configured; set CLOUD_API_KEY_1..CLOUD_API_KEY_12 or MODEL_BACKEND=local")
            backend = CloudBackend(keys, llm_factory=llm_factory)
        print(f"[ModelGateway] Using {backend.name} backend ({backend.model})")
        return cls(backend, governor)

    def complete(self, system_prompt: str, user_prompt: Any, options: Optional[Dict[str, Any]] = None) -> str:
        options = dict(options or {})
        prepared = self.governor.prepare_for_model(
            system_prompt,
            user_prompt,
            max_content_length=options.get("max_content_length"),
            max_tokens=options.get("max_input_tokens"),
            task=options.get("task", ""),
        )
        if prepared["warning"]:
            print(f"[ModelGateway] Proceeding with oversized payload: {prepared['warning']}")
        start = time.time()
        text = self.backend.complete(prepared["system_prompt"], prepared["content"], options)
        print(f"[ModelGateway] Completed in {time.time() - start:.2f}s ({len(text)} chars)")
        return text

    def batch_complete(self, requests: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Run every request concurrently; one failure never cancels the others."""
        if not requests:
            return []
        runner = RunnableLambda(
            lambda req: self.complete(req.get("system_prompt", ""), req.get("user_prompt", ""), req.get("options"))
        )
        outcomes = runner.batch(list(requests), return_exceptions=True)
        settled: List[Dict[str, Any]] = []
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                settled.append({"success": False, "error": str(outcome)})
            else:
                settled.append({"success": True, "data": outcome})
        return settled

    def stats(self) -> Dict[str, Any]:
        stats = dict(self.backend.stats())
        stats["governor"] = {
            "maxContentLength": self.governor.max_content_length,
            "maxTokensPerRequest": self.governor.max_tokens_per_request,
            "chunkingEnabled": self.governor.enable_chunking,
        }
        return stats
