from typing import Callable, Optional

from dotenv import load_dotenv

from .dispatcher import Dispatcher
from .registry import ExecutorRegistry
from .types import ExecutionResult
from ..agents.web_agent import WebAgent, WebAgentExecutor
from ..dom.session import BrowserSession
from ..llm.gateway import ModelGateway

load_dotenv()


def build_dispatcher(gateway: Optional[ModelGateway] = None,
                     session_factory: Callable = BrowserSession) -> Dispatcher:
    """Wire gateway, registry, web agent and dispatcher once at process start."""
    gateway = gateway or ModelGateway.from_env()
    registry = ExecutorRegistry()
    registry.register(WebAgentExecutor(WebAgent(gateway, session_factory=session_factory)))
    return Dispatcher(gateway, registry)


def run(user_prompt: str, dispatcher: Optional[Dispatcher] = None) -> ExecutionResult:
    dispatcher = dispatcher or build_dispatcher()
    print(f"[Orchestrator] Starting run with prompt: {user_prompt}")
    result = dispatcher.execute_task(user_prompt)
    print("[Orchestrator] Run completed")
    return result


def print_summary(user_prompt: str, result: ExecutionResult, dispatcher: Optional[Dispatcher] = None) -> None:
    print("\n=== Agent hub result ===")
    print("Prompt:", user_prompt)
    print("Completed:", result.is_completed)
    print("Handled by:", result.agent or "Router")
    print("Execution time (ms):", result.execution_time_ms)
    if result.error:
        print("Error:", result.message)
    print("\n" + str(result.result))
    if dispatcher is not None:
        recent = dispatcher.recent_tasks(1)
        if recent:
            print("\nAgent chain:", " -> ".join(recent[-1].agent_chain) or "(direct answer)")
        print("Stats:", dispatcher.stats())
