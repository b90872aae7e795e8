import json

import pytest

from agent_hub.agents.formatter import FORMATTER_SYSTEM_PROMPT, count_list_entries
from agent_hub.core.dispatcher import Dispatcher
from agent_hub.core.errors import RoutingDepthExceeded
from agent_hub.core.registry import ExecutorRegistry
from agent_hub.core.types import Direct, ExecutionResult, Route
from conftest import FakeGateway, ScriptedExecutor, named_descriptor

ROUTE_TO_WEB = json.dumps({
    "isCompleted": False,
    "nextAgent": "WebAgent",
    "params": {"url": "https://shop.example.com/s?k=earbuds", "task": "find wireless earbuds"},
    "reasoning": "needs live product data",
})


def _items(count):
    return [{"title": f"Earbuds {i}", "price": f"${10 + i}.00", "link": f"https://shop.example.com/{i}"}
            for i in range(1, count + 1)]


def _extracted(count):
    return {"extracted_data": {"items": _items(count), "item_count": count,
                               "page_url": "https://shop.example.com/s?k=earbuds"}}


def _routing_responder(route_reply, format_reply=None, final_reply=None):
    def respond(system, user, options):
        if system == FORMATTER_SYSTEM_PROMPT:
            return format_reply
        if "FINAL FORMULATION MODE" in user:
            return final_reply
        if system.startswith("You are a parameter enhancement specialist"):
            return '{"url": ""}'
        return route_reply
    return respond


def _dispatcher(gateway, *executors, **kwargs):
    registry = ExecutorRegistry()
    for executor in executors:
        registry.register(executor)
    return Dispatcher(gateway, registry, **kwargs)


def test_direct_answer_never_invokes_executors():
    gateway = FakeGateway(['{"isCompleted": true, "response": "Paris"}'])
    web = ScriptedExecutor([ExecutionResult(is_completed=True, result="unused")])
    dispatcher = _dispatcher(gateway, web)

    result = dispatcher.execute_task("What is the capital of France?")
    assert result.is_completed
    assert result.result == "Paris"
    assert result.agent == "Router"
    assert web.calls == []
    assert len(gateway.calls) == 1

    task = dispatcher.recent_tasks(1)[0]
    assert task.agent_chain == []
    assert task.id.startswith("task_")
    assert dispatcher.stats()["totalTasks"] == 1


def test_routed_task_is_formatted_once_and_returned_as_is():
    bullets = "## Earbuds\n\n" + "\n".join(f"• **Earbuds {i}**" for i in range(1, 13))
    gateway = FakeGateway(responder=_routing_responder(ROUTE_TO_WEB, format_reply=bullets))
    web = ScriptedExecutor([ExecutionResult(is_completed=True, result=_extracted(12))])
    dispatcher = _dispatcher(gateway, web)

    result = dispatcher.execute_task("Find wireless earbuds on shop.example.com")
    assert result.is_completed
    assert result.result == bullets
    assert count_list_entries(result.result) == 12
    assert result.already_formatted
    assert result.original_result == _extracted(12)
    assert result.agent == "WebAgent"
    assert web.calls == [{"url": "https://shop.example.com/s?k=earbuds", "task": "find wireless earbuds"}]
    # one routing call and one formatter call; the final formulation step needs no model call
    assert len(gateway.calls) == 2
    assert dispatcher.recent_tasks(1)[0].agent_chain == ["WebAgent"]


def test_failed_executor_gets_final_formulation_and_no_retry():
    gateway = FakeGateway(responder=_routing_responder(ROUTE_TO_WEB, final_reply=ROUTE_TO_WEB))
    web = ScriptedExecutor([ExecutionResult(is_completed=False, error=True,
                                            message="WebAgent failed: net::ERR_NAME_NOT_RESOLVED")])
    dispatcher = _dispatcher(gateway, web)

    result = dispatcher.execute_task("Find earbuds on shop.example.com")
    assert result.is_completed
    assert len(web.calls) == 1
    assert "ERR_NAME_NOT_RESOLVED" in result.result
    assert result.result.startswith("## Results for: Find earbuds on shop.example.com")


def test_partial_result_is_synthesized_by_router():
    gateway = FakeGateway(responder=_routing_responder(
        ROUTE_TO_WEB, final_reply='{"isCompleted": true, "response": "' + "Here is what I found so far. " * 10 + '"}'))
    web = ScriptedExecutor([ExecutionResult(is_completed=False, partial=True,
                                            result={"status": "Incomplete", "summary": "Reached the search page"})])
    dispatcher = _dispatcher(gateway, web)

    result = dispatcher.execute_task("Find earbuds on shop.example.com")
    assert result.is_completed
    assert result.result.startswith("Here is what I found so far.")
    final_call = gateway.calls[-1]
    assert "partial/failed results from WebAgent" in final_call["user"]
    assert "Reached the search page" in final_call["user"]


def test_executor_exception_is_treated_as_failure():
    gateway = FakeGateway(responder=_routing_responder(
        ROUTE_TO_WEB, final_reply='{"isCompleted": true, "response": "The site could not be reached."}'))
    web = ScriptedExecutor([RuntimeError("browser crashed")])
    dispatcher = _dispatcher(gateway, web)

    result = dispatcher.execute_task("Find earbuds on shop.example.com")
    assert result.is_completed
    assert result.result == "The site could not be reached."
    assert dispatcher.history.active == set()


def test_executor_marked_active_only_while_running():
    gateway = FakeGateway(responder=_routing_responder(ROUTE_TO_WEB, format_reply="• one"))
    seen = []
    holder = {}

    def check(params):
        seen.append(set(holder["dispatcher"].history.active))

    web = ScriptedExecutor([ExecutionResult(is_completed=True, result={"summary": "done"})], on_invoke=check)
    dispatcher = _dispatcher(gateway, web)
    holder["dispatcher"] = dispatcher
    dispatcher.execute_task("Find earbuds on shop.example.com")
    assert seen == [{"WebAgent"}]
    assert dispatcher.history.active == set()
    assert [a["isActive"] for a in dispatcher.available_agents() if a["name"] == "WebAgent"] == [False]


def test_missing_params_are_reported_without_invoking():
    route = json.dumps({"isCompleted": False, "nextAgent": "WebAgent", "params": {"task": "find earbuds"}})
    gateway = FakeGateway(responder=_routing_responder(route))
    web = ScriptedExecutor([ExecutionResult(is_completed=True, result="unused")])
    dispatcher = _dispatcher(gateway, web)

    result = dispatcher.execute_task("find me some earbuds")
    assert result.is_completed and result.error
    assert result.message == "Failed to route to WebAgent: Missing required parameters for WebAgent: url"
    assert web.calls == []


def test_missing_params_recovered_by_enhancement():
    route = json.dumps({"isCompleted": False, "nextAgent": "WebAgent", "params": {"task": "find earbuds"}})

    def respond(system, user, options):
        if system.startswith("You are a parameter enhancement specialist"):
            return '```json\n{"url": "https://shop.example.com"}\n```'
        if system == FORMATTER_SYSTEM_PROMPT:
            return "• one"
        return route

    web = ScriptedExecutor([ExecutionResult(is_completed=True, result={"summary": "done"})])
    dispatcher = _dispatcher(FakeGateway(responder=respond), web)
    dispatcher.execute_task("find earbuds on shop.example.com")
    assert web.calls == [{"task": "find earbuds", "url": "https://shop.example.com"}]


class CyclingRouter:
    """Routes to each name in turn; never calls a model."""

    def __init__(self, names):
        self.names = list(names)
        self.decisions = 0

    def decide(self, user_prompt, last_executor=None, context=None):
        if context is not None and context.final_formulation:
            return Direct("final")
        name = self.names[self.decisions % len(self.names)]
        self.decisions += 1
        return Route(name, {"task": user_prompt})

    def fallback_response(self, user_prompt, ctx):
        return "fallback"


def test_depth_guard_trips_after_exactly_k_continuations():
    k = 3
    names = [f"Loop{i}" for i in range(1, k + 2)]
    executors = [ScriptedExecutor([ExecutionResult(is_completed=False)], descriptor=named_descriptor(n))
                 for n in names]
    registry = ExecutorRegistry([])
    for executor in executors:
        registry.register(executor)
    dispatcher = Dispatcher(FakeGateway(), registry, router=CyclingRouter(names), max_depth=k)

    with pytest.raises(RoutingDepthExceeded):
        dispatcher.execute_task("loop forever")
    assert sum(len(e.calls) for e in executors) == k
    assert dispatcher.stats()["totalTasks"] == 1
    assert dispatcher.history.active == set()


def test_continuation_never_reinvokes_the_same_executor():
    executor = ScriptedExecutor([ExecutionResult(is_completed=False)], descriptor=named_descriptor("Looper"))
    registry = ExecutorRegistry([])
    registry.register(executor)
    dispatcher = Dispatcher(FakeGateway(), registry, router=CyclingRouter(["Looper"]))

    result = dispatcher.execute_task("keep going")
    assert len(executor.calls) == 1
    assert result.is_completed
    assert result.result == "fallback"


def test_continuation_passes_context_forward():
    first = ScriptedExecutor([ExecutionResult(is_completed=False, result={"step": 1})],
                             descriptor=named_descriptor("First"))
    second = ScriptedExecutor([ExecutionResult(is_completed=True, result={"summary": "all done"})],
                              descriptor=named_descriptor("Second"))
    registry = ExecutorRegistry([])
    registry.register(first)
    registry.register(second)

    seen_contexts = []

    class Router(CyclingRouter):
        def decide(self, user_prompt, last_executor=None, context=None):
            seen_contexts.append(context)
            return super().decide(user_prompt, last_executor, context)

    gateway = FakeGateway(["• all done"])
    dispatcher = Dispatcher(gateway, registry, router=Router(["First", "Second"]))
    result = dispatcher.execute_task("two steps")
    assert result.result == "final"
    second_ctx = seen_contexts[1]
    assert second_ctx.failed_agents == frozenset({"First"})
    assert second_ctx.last_agent == "First"
    assert second_ctx.step == 1
    assert dispatcher.recent_tasks(1)[0].agent_chain == ["First", "Second"]


def test_empty_prompt_rejected():
    dispatcher = _dispatcher(FakeGateway())
    with pytest.raises(ValueError):
        dispatcher.execute_task("   ")


def test_available_agents_stats_and_reset():
    gateway = FakeGateway(['{"isCompleted": true, "response": "4"}'])
    dispatcher = _dispatcher(gateway, ScriptedExecutor([ExecutionResult(is_completed=True)]))
    agents = {a["name"]: a for a in dispatcher.available_agents()}
    assert set(agents) == {"WebAgent", "SearchAgent", "AnalysisAgent", "CodeAgent"}
    assert agents["WebAgent"]["isImplemented"]
    assert agents["WebAgent"]["requiredParams"] == ["url", "task"]
    assert not agents["CodeAgent"]["isImplemented"]
    assert agents["CodeAgent"]["status"] == "planned"

    dispatcher.execute_task("2 + 2?")
    stats = dispatcher.stats()
    assert stats["totalTasks"] == 1
    assert stats["implementedAgents"] == 1
    assert stats["activeAgents"] == 0

    dispatcher.reset()
    assert dispatcher.stats()["totalTasks"] == 0
    assert dispatcher.recent_tasks() == []
