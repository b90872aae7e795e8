import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Protocol, Tuple, TypedDict, Union


# --- Browser agent data ---

class ElementDescriptor(TypedDict, total=False):
    index: int
    tag: str
    role: Optional[str]
    type: Optional[str]
    text: str
    selector: str
    href: str
    name: str
    placeholder: str
    landmark: str
    score: float


class PageSnapshot(TypedDict, total=False):
    url: str
    title: str
    ready_state: str
    elements: List[ElementDescriptor]
    headings: List[Dict[str, Any]]
    forms: List[Dict[str, Any]]
    containers: List[Dict[str, Any]]
    body_text: str
    metrics: Dict[str, Any]
    error: Optional[str]


class BrowserAction(TypedDict, total=False):
    type: str  # click | fill | navigate | scroll | wait | extract
    target: str
    value: str
    reasoning: str


class ActionOutcome(TypedDict, total=False):
    success: bool
    error: Optional[str]
    data: Any
    fatal: bool


class BrowserStep(TypedDict, total=False):
    iteration: int
    action: BrowserAction
    outcome: ActionOutcome
    page_url_after: str
    navigated: bool
    page_changed: bool
    decided_by: str  # "model" | "recovered" | "fallback"


class WebAgentState(TypedDict, total=False):
    run_id: str
    url: str
    task: str
    session: Any
    page: Any
    iteration: int
    max_iterations: int
    snapshot: Optional[PageSnapshot]
    decision: Optional[Dict[str, Any]]
    outcome: Optional[ActionOutcome]
    steps: List[BrowserStep]
    parse_failures: int
    last_image_hash: Optional[int]
    tried_selectors: List[str]
    done: bool
    completed: bool
    final_result: Any
    stop_reason: Optional[str]


# --- Executors and routing ---

class ExecutorStatus(str, Enum):
    IMPLEMENTED = "implemented"
    PLANNED = "planned"


@dataclass(frozen=True)
class ExecutorDescriptor:
    name: str
    description: str
    required_params: Tuple[str, ...]
    optional_params: Tuple[str, ...] = ()
    capabilities: Tuple[str, ...] = ()
    examples: Tuple[str, ...] = ()
    status: ExecutorStatus = ExecutorStatus.IMPLEMENTED

    def missing_params(self, params: Mapping[str, Any]) -> List[str]:
        """Required params that are absent, None, or blank strings."""
        missing = []
        for name in self.required_params:
            value = params.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        return missing

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "requiredParams": list(self.required_params),
            "optionalParams": list(self.optional_params),
            "capabilities": list(self.capabilities),
            "examples": list(self.examples),
            "status": self.status.value,
        }


@dataclass
class ExecutionResult:
    is_completed: bool
    result: Any = None
    error: bool = False
    message: Optional[str] = None
    execution_time_ms: int = 0
    agent: Optional[str] = None
    partial: bool = False
    already_formatted: bool = False
    original_result: Any = None

    @property
    def needs_continuation(self) -> bool:
        """Incomplete without failing: the executor asks for another routing step."""
        return not self.is_completed and not self.error and not self.partial

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "isCompleted": self.is_completed,
            "result": self.result,
            "executionTimeMs": self.execution_time_ms,
        }
        if self.error:
            payload["error"] = True
        if self.message:
            payload["message"] = self.message
        if self.agent:
            payload["agent"] = self.agent
        if self.partial:
            payload["partial"] = True
        if self.already_formatted:
            payload["alreadyFormatted"] = True
        if self.original_result is not None:
            payload["originalResult"] = self.original_result
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExecutionResult":
        return cls(
            is_completed=bool(data.get("isCompleted", data.get("is_completed", False))),
            result=data.get("result"),
            error=bool(data.get("error", False)),
            message=data.get("message"),
            execution_time_ms=int(data.get("executionTimeMs", data.get("execution_time_ms", 0)) or 0),
            agent=data.get("agent"),
            partial=bool(data.get("partial", False)),
            already_formatted=bool(data.get("alreadyFormatted", data.get("already_formatted", False))),
            original_result=data.get("originalResult", data.get("original_result")),
        )


class Executor(Protocol):
    descriptor: ExecutorDescriptor

    def invoke(self, params: Dict[str, Any]) -> ExecutionResult:
        ...


@dataclass(frozen=True)
class Direct:
    response: str
    forced: bool = False
    fallback: bool = False

    @property
    def is_completed(self) -> bool:
        return True


@dataclass(frozen=True)
class Route:
    next_agent: str
    params: Dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""

    @property
    def is_completed(self) -> bool:
        return False


RoutingDecision = Union[Direct, Route]


@dataclass(frozen=True)
class RoutingContext:
    """Progress carried between dispatcher and router; rebuilt, never mutated."""

    failed_agents: FrozenSet[str] = frozenset()
    step: int = 0
    final_formulation: bool = False
    last_agent: Optional[str] = None
    last_agent_result: Optional[ExecutionResult] = None
    original_prompt: Optional[str] = None

    def with_failed(self, agent: str) -> "RoutingContext":
        return replace(self, failed_agents=self.failed_agents | {agent})

    def after_agent(self, agent: str, result: ExecutionResult) -> "RoutingContext":
        return replace(self, last_agent=agent, last_agent_result=result, step=self.step + 1)

    def for_final_formulation(self, agent: str, result: ExecutionResult) -> "RoutingContext":
        return replace(self, final_formulation=True, last_agent=agent, last_agent_result=result)

    def summary(self) -> Dict[str, Any]:
        """Compact view for prompts."""
        return {
            "failedAgents": sorted(self.failed_agents),
            "step": self.step,
            "finalFormulation": self.final_formulation,
            "lastAgent": self.last_agent,
        }

    @classmethod
    def from_progress(cls, progress: Optional[Mapping[str, Any]]) -> "RoutingContext":
        """Build from the wire `progress` object of a task submission."""
        if not progress:
            return cls()
        last = progress.get("lastAgentResult")
        return cls(
            failed_agents=frozenset(progress.get("failedAgents") or []),
            step=int(progress.get("step") or 0),
            final_formulation=bool(progress.get("finalFormulation", False)),
            last_agent=progress.get("lastAgent"),
            last_agent_result=ExecutionResult.from_dict(last) if isinstance(last, Mapping) else None,
        )


@dataclass
class Task:
    user_prompt: str
    id: str = field(default_factory=lambda: f"task_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}")
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    agent_chain: List[str] = field(default_factory=list)
    result: Optional[ExecutionResult] = None
    processing_time_ms: int = 0

    def summary(self, prompt_chars: int = 100) -> Dict[str, Any]:
        prompt = self.user_prompt
        if len(prompt) > prompt_chars:
            prompt = prompt[:prompt_chars] + "..."
        return {
            "id": self.id,
            "userPrompt": prompt,
            "createdAt": self.created_at,
            "processingTimeMs": self.processing_time_ms,
            "agentChain": list(self.agent_chain),
            "isCompleted": bool(self.result and self.result.is_completed),
        }
