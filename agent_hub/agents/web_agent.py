import json
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse
from uuid import uuid4

from langgraph.graph import END, StateGraph

from ..core import config
from ..core.registry import WEB_AGENT
from ..core.types import BrowserAction, BrowserStep, ExecutionResult, ExecutorDescriptor, WebAgentState
from ..dom.actions import ACTION_TYPES, execute_action
from ..dom.elements import query_page
from ..dom.extraction import extract_items
from ..dom.session import BrowserSession
from ..llm.parsing import Malformed, Ok, as_bool, parse_json_object, recover_browser_decision
from ..utils.imaging import compute_dhash, page_changed

MAX_PARSE_FAILURES = 3
PARTIAL_SUMMARY_FALLBACK = "Failed to generate a summary. The task could not be completed."

DECISION_SYSTEM_PROMPT = (
    "You are a web automation expert driving a real browser one action at a time.\n"
    "You see the task, a filtered snapshot of the current page and the last actions taken.\n"
    "\n"
    "Available actions:\n"
    "- click: target = CSS selector copied exactly from the element list\n"
    "- fill: target = CSS selector of an input, value = text to type\n"
    "- navigate: target = absolute or relative URL\n"
    "- scroll: scroll one screen down (target may be 'body')\n"
    "- wait: value = milliseconds to wait while the page loads\n"
    "- extract: collect repeating items (products, results, stories). Optional target = container "
    "selector; optional value = \"field: selector; field: selector\"\n"
    "\n"
    "Rules:\n"
    "- Only use selectors that appear in the element list.\n"
    "- Do not repeat an action that did not change the page; try something else.\n"
    "- When the page shows the items the task asks for, use extract.\n"
    "- Set isCompleted=true only when the task is actually done and put the answer in finalAnswer.\n"
    "\n"
    "RESPONSE FORMAT (JSON only):\n"
    "{\n"
    '  "action": {"type": "click|fill|navigate|scroll|wait|extract", "target": "CSS_SELECTOR", '
    '"value": "optional", "reasoning": "why"},\n'
    '  "isCompleted": true|false,\n'
    '  "confidence": 0-1,\n'
    '  "finalAnswer": "result summary if completed, else empty string"\n'
    "}"
)

SUMMARY_SYSTEM_PROMPT = "You are a task summarizer. Provide a concise summary of the task's status."


def normalize_url(url: Any) -> str:
    if not isinstance(url, str) or not url.strip():
        raise ValueError("Invalid URL: empty")
    url = url.strip()
    if "://" not in url:
        url = "https://" + url
    parsed = urlparse(url)
    host = parsed.hostname or ""
    if (
        parsed.scheme not in ("http", "https")
        or not parsed.netloc
        or " " in parsed.netloc
        or not host
        or ("." not in host and host != "localhost")
    ):
        raise ValueError(f"Invalid URL: {url}")
    return url


def fallback_action(steps: List[BrowserStep], snapshot: Optional[Dict[str, Any]], reason: str) -> BrowserAction:
    """Deterministic next move when the model gives nothing usable."""
    recent = steps[-2:]
    if len(recent) == 2 and all((s.get("action") or {}).get("type") == "scroll" for s in recent):
        return {"type": "extract", "target": "", "value": "", "reasoning": f"Fallback after repeated scrolling ({reason})"}
    metrics = (snapshot or {}).get("metrics") or {}
    if metrics.get("has_loading_indicator"):
        return {"type": "wait", "target": "", "value": "2000", "reasoning": f"Fallback while the page is loading ({reason})"}
    return {"type": "scroll", "target": "body", "value": "", "reasoning": f"Fallback action ({reason})"}


def _step_digest(step: BrowserStep) -> Dict[str, Any]:
    outcome = step.get("outcome") or {}
    data = outcome.get("data") or {}
    digest = {
        "iteration": step.get("iteration"),
        "action": step.get("action"),
        "success": outcome.get("success"),
        "error": outcome.get("error"),
        "urlAfter": step.get("page_url_after"),
        "pageChanged": step.get("page_changed"),
    }
    if isinstance(data, dict) and "item_count" in data:
        digest["itemsExtracted"] = data["item_count"]
    return digest


def best_extraction(steps: List[BrowserStep]) -> Optional[Dict[str, Any]]:
    best = None
    for step in steps:
        data = (step.get("outcome") or {}).get("data")
        if isinstance(data, dict) and data.get("item_count", 0) > 0:
            if best is None or data["item_count"] > best["item_count"]:
                best = data
    return best


class WebAgent:
    """Bounded perceive -> decide -> act loop over one browser session."""

    def __init__(
        self,
        gateway,
        session_factory: Callable[[], Any] = BrowserSession,
        max_iterations: int = config.WEB_AGENT_MAX_ITERATIONS,
        confidence_threshold: float = config.COMPLETION_CONFIDENCE,
        complete_on_extract: bool = True,
        action_timeout_ms: int = config.ACTION_TIMEOUT_MS,
        navigation_timeout_ms: int = config.NAVIGATION_TIMEOUT_MS,
    ):
        self.gateway = gateway
        self.session_factory = session_factory
        self.max_iterations = max_iterations
        self.confidence_threshold = confidence_threshold
        self.complete_on_extract = complete_on_extract
        self.action_timeout_ms = action_timeout_ms
        self.navigation_timeout_ms = navigation_timeout_ms
        self.app = self._build_graph()

    # --- Graph ---

    def _build_graph(self):
        graph = StateGraph(WebAgentState)
        graph.add_node("perceive", self.perceive)
        graph.add_node("decide", self.decide)
        graph.add_node("act", self.act)
        graph.add_node("record", self.record)

        graph.set_entry_point("perceive")
        graph.add_edge("perceive", "decide")
        graph.add_conditional_edges("decide", self._after_decide, {END: END, "act": "act"})
        graph.add_edge("act", "record")
        graph.add_conditional_edges("record", self._after_record, {END: END, "perceive": "perceive"})
        return graph.compile()

    @staticmethod
    def _after_decide(state: WebAgentState) -> str:
        return END if state.get("done") else "act"

    @staticmethod
    def _after_record(state: WebAgentState) -> str:
        return END if state.get("done") else "perceive"

    # --- Nodes ---

    def perceive(self, state: WebAgentState) -> WebAgentState:
        steps = state.get("steps") or []
        unchanged = bool(steps) and not steps[-1].get("page_changed", True)
        snapshot = query_page(state["page"], state["task"], state.get("tried_selectors"), unchanged)
        state["snapshot"] = snapshot
        print(f"[WebAgent] Iteration {state['iteration'] + 1}/{state['max_iterations']} on {snapshot.get('url')}")
        return state

    def _decision_prompt(self, state: WebAgentState) -> str:
        snapshot = state.get("snapshot") or {}
        page_state = self.gateway.governor.optimize_page_data(snapshot, state["task"])
        recent = [_step_digest(s) for s in (state.get("steps") or [])[-2:]]
        return (
            f"Task: \"{state['task']}\"\n\n"
            "Page Analysis:\n"
            f"- URL: {snapshot.get('url') or 'Unknown'}\n"
            f"- Title: {snapshot.get('title') or 'Unknown'}\n"
            f"- Interactive Elements: {len(snapshot.get('elements') or [])}\n"
            f"- Has Forms: {bool(snapshot.get('forms'))}\n"
            f"- Loading: {bool((snapshot.get('metrics') or {}).get('has_loading_indicator'))}\n\n"
            f"Page State:\n{json.dumps(page_state, indent=2)}\n\n"
            f"Recent Actions: {json.dumps(recent, indent=2) if recent else 'None'}\n\n"
            "Choose the best next action to progress toward the task goal."
        )

    def _normalize_decision(self, parsed: Dict[str, Any]) -> Dict[str, Any]:
        action = parsed.get("action")
        if isinstance(action, str):
            action = {"type": action, "target": parsed.get("target"), "value": parsed.get("value")}
        if not isinstance(action, dict):
            action = {}
        try:
            confidence = float(parsed.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        value = action.get("value")
        return {
            "action": {
                "type": str(action.get("type") or "").strip().lower(),
                "target": str(action.get("target") or ""),
                "value": "" if value is None else str(value),
                "reasoning": str(action.get("reasoning") or ""),
            },
            "is_completed": as_bool(parsed.get("isCompleted", parsed.get("is_completed"))),
            "confidence": confidence,
            "final_answer": parsed.get("finalAnswer") or parsed.get("final_answer") or "",
        }

    def decide(self, state: WebAgentState) -> WebAgentState:
        snapshot = state.get("snapshot")
        steps = state.get("steps") or []
        decision: Optional[Dict[str, Any]] = None
        decided_by = "model"

        try:
            raw = self.gateway.complete(
                DECISION_SYSTEM_PROMPT,
                self._decision_prompt(state),
                {"task": state["task"], "temperature": 0.1},
            )
        except Exception as e:
            print(f"[WebAgent] Model call failed: {e}")
            raw = None

        if raw is not None:
            parsed = parse_json_object(raw)
            if isinstance(parsed, Malformed):
                parsed = recover_browser_decision(parsed.raw)
                decided_by = "recovered"
            if isinstance(parsed, Ok):
                decision = self._normalize_decision(parsed.value)
                state["parse_failures"] = 0
            else:
                state["parse_failures"] = state.get("parse_failures", 0) + 1
                print(f"[WebAgent] Unparseable model output ({state['parse_failures']} in a row): {parsed.reason}")
                if state["parse_failures"] >= MAX_PARSE_FAILURES:
                    state["done"] = True
                    state["stop_reason"] = "unparseable_model_output"
                    state["decision"] = None
                    return state

        if decision is not None and decision["is_completed"] and decision["confidence"] > self.confidence_threshold:
            print(f"[WebAgent] Model reports completion (confidence={decision['confidence']:.2f})")
            state["decision"] = decision
            state["done"] = True
            state["completed"] = True
            answer = decision["final_answer"]
            prior = best_extraction(steps)
            state["final_result"] = {"final_answer": answer, "extracted_data": prior} if prior else answer
            state["stop_reason"] = "model_completed"
            return state

        if decision is None or decision["action"]["type"] not in ACTION_TYPES:
            reason = "model error" if raw is None else ("invalid action" if decision else "unparseable output")
            decision = {
                "action": fallback_action(steps, snapshot, reason),
                "is_completed": False,
                "confidence": 0.0,
                "final_answer": "",
            }
            decided_by = "fallback"

        decision["decided_by"] = decided_by
        action = decision["action"]
        print(f"[WebAgent] Next action ({decided_by}): {action['type']} target='{action.get('target', '')[:60]}' "
              f"reason='{action.get('reasoning', '')[:80]}'")
        state["decision"] = decision
        return state

    def act(self, state: WebAgentState) -> WebAgentState:
        action = state["decision"]["action"]
        state["outcome"] = execute_action(
            state["page"], action, self.action_timeout_ms, self.navigation_timeout_ms)
        if action["type"] in ("click", "fill") and action.get("target"):
            tried = state.get("tried_selectors") or []
            tried.append(action["target"])
            state["tried_selectors"] = tried
        return state

    def record(self, state: WebAgentState) -> WebAgentState:
        page = state["page"]
        snapshot = state.get("snapshot") or {}
        outcome = state.get("outcome") or {}
        decision = state.get("decision") or {}

        try:
            url_after = page.url
        except Exception:
            url_after = snapshot.get("url", "")
        navigated = bool(url_after) and url_after != snapshot.get("url")
        if navigated:
            print(f"[WebAgent] Navigated: {snapshot.get('url')} -> {url_after}")

        current_hash = compute_dhash(state["session"].screenshot()) if not outcome.get("fatal") else 0
        changed = navigated or page_changed(state.get("last_image_hash"), current_hash)
        if current_hash:
            state["last_image_hash"] = current_hash

        step: BrowserStep = {
            "iteration": state["iteration"] + 1,
            "action": decision.get("action"),
            "outcome": outcome,
            "page_url_after": url_after,
            "navigated": navigated,
            "page_changed": changed,
            "decided_by": decision.get("decided_by", "model"),
        }
        steps = state.get("steps") or []
        steps.append(step)
        state["steps"] = steps
        state["iteration"] = state["iteration"] + 1

        data = outcome.get("data")
        if outcome.get("fatal"):
            print(f"[WebAgent] Fatal action failure: {outcome.get('error')}")
            state["done"] = True
            state["stop_reason"] = "fatal_action_error"
        elif (self.complete_on_extract and outcome.get("success")
              and isinstance(data, dict) and data.get("item_count", 0) > 0):
            print(f"[WebAgent] Extraction returned {data['item_count']} items; completing")
            state["done"] = True
            state["completed"] = True
            state["final_result"] = {
                "extracted_data": data,
                "summary": f"Extracted {data['item_count']} items from {data.get('page_url') or url_after}",
            }
            state["stop_reason"] = "extracted"
        elif state["iteration"] >= state["max_iterations"]:
            print(f"[WebAgent] Iteration budget ({state['max_iterations']}) exhausted")
            state["done"] = True
            state["stop_reason"] = "max_iterations"
        return state

    # --- Exit paths ---

    def _summarize(self, task: str, steps: List[BrowserStep]) -> str:
        prompt = (
            "Based on the following actions, summarize what was achieved and why the task "
            "was not fully completed.\n"
            f"Task: \"{task}\"\n"
            f"Actions Performed: {json.dumps([_step_digest(s) for s in steps], indent=2)}"
        )
        try:
            return self.gateway.complete(SUMMARY_SYSTEM_PROMPT, prompt, {"temperature": 0.2})
        except Exception as e:
            print(f"[WebAgent] Summary generation failed: {e}")
            return PARTIAL_SUMMARY_FALLBACK

    def _partial(self, state: WebAgentState) -> Dict[str, Any]:
        steps = state.get("steps") or []
        page = state.get("page")
        if state.get("stop_reason") != "fatal_action_error" and page is not None:
            try:
                final = extract_items(page.content(), None, page.url)
            except Exception as e:
                print(f"[WebAgent] Final extraction failed: {e}")
                final = None
            if final and final["item_count"] > 0:
                print(f"[WebAgent] Final extraction pass found {final['item_count']} items")
                return {
                    "is_completed": True,
                    "result": {
                        "extracted_data": final,
                        "summary": f"Extracted {final['item_count']} items from {final.get('page_url')}",
                    },
                }

        prior = best_extraction(steps)
        if prior:
            print(f"[WebAgent] Returning best prior extraction ({prior['item_count']} items)")
            return {
                "is_completed": False,
                "result": {
                    "status": "Incomplete",
                    "summary": f"Task not fully completed; returning {prior['item_count']} items extracted earlier.",
                    "extracted_data": prior,
                    "steps": len(steps),
                },
            }

        return {
            "is_completed": False,
            "result": {
                "status": "Incomplete",
                "summary": self._summarize(state["task"], steps),
                "steps": len(steps),
            },
        }

    # --- Entry point ---

    def run(self, url: str, task: str, max_iterations: Optional[int] = None) -> Dict[str, Any]:
        budget = max(1, min(int(max_iterations or self.max_iterations), 20))
        session = None
        try:
            target = normalize_url(url)
            if not task or not str(task).strip():
                raise ValueError("task is required")
            print(f"[WebAgent] Starting: url={target} task='{task}' max_iterations={budget}")
            session = self.session_factory()
            session.goto(target)

            state: WebAgentState = {
                "run_id": str(uuid4()),
                "url": target,
                "task": task,
                "session": session,
                "page": session.page,
                "iteration": 0,
                "max_iterations": budget,
                "snapshot": None,
                "decision": None,
                "outcome": None,
                "steps": [],
                "parse_failures": 0,
                "last_image_hash": compute_dhash(session.screenshot()) or None,
                "tried_selectors": [],
                "done": False,
                "completed": False,
                "final_result": None,
                "stop_reason": None,
            }
            final_state = self.app.invoke(
                state, config={"run_name": "web_agent", "recursion_limit": 4 * budget + 10})

            if final_state.get("completed"):
                outcome = {"is_completed": True, "result": final_state.get("final_result")}
            else:
                print(f"[WebAgent] Stopped without completion ({final_state.get('stop_reason')}); building partial result")
                outcome = self._partial(final_state)
            outcome.update({
                "total_iterations": final_state.get("iteration", 0),
                "url": url,
                "task": task,
                "stop_reason": final_state.get("stop_reason"),
            })
            print(f"[WebAgent] Finished: completed={outcome['is_completed']} iterations={outcome['total_iterations']}")
            return outcome
        except Exception as e:
            print(f"[WebAgent] Run failed: {e}")
            return {
                "is_completed": False,
                "error": True,
                "message": f"WebAgent failed: {e}",
                "url": url,
                "task": task,
            }
        finally:
            if session is not None:
                session.close()


class WebAgentExecutor:
    """Executor adapter: dispatcher params in, ExecutionResult out."""

    def __init__(self, agent: WebAgent, descriptor: ExecutorDescriptor = WEB_AGENT):
        self.agent = agent
        self.descriptor = descriptor

    def invoke(self, params: Dict[str, Any]) -> ExecutionResult:
        start = time.time()
        outcome = self.agent.run(params.get("url"), params.get("task"), params.get("maxIterations"))
        elapsed = int((time.time() - start) * 1000)
        if outcome.get("error"):
            return ExecutionResult(
                is_completed=False,
                result=outcome,
                error=True,
                message=outcome.get("message"),
                execution_time_ms=elapsed,
                agent=self.descriptor.name,
            )
        completed = bool(outcome.get("is_completed"))
        return ExecutionResult(
            is_completed=completed,
            result=outcome.get("result"),
            execution_time_ms=elapsed,
            agent=self.descriptor.name,
            partial=not completed,
            message=None if completed else f"Stopped after {outcome.get('total_iterations', 0)} iterations",
        )
