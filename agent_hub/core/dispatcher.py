import json
import time
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional

from . import config
from .errors import MissingParamsError, RoutingDepthExceeded
from .history import TaskHistory
from .registry import ExecutorRegistry
from .types import Direct, ExecutionResult, ExecutorDescriptor, Route, RoutingContext, Task
from ..agents.formatter import ResultFormatter
from ..agents.router import DecisionRouter
from ..llm.parsing import Ok, parse_json_object


class Dispatcher:
    """
    Owns the executor registry and runs the router -> executor -> formatter cycle.

    Every executor outcome ends in one more router call in final-formulation
    mode, so raw executor output never reaches the caller. Continuations
    recurse with one less unit of depth; reaching zero raises RoutingDepthExceeded.
    """

    def __init__(
        self,
        gateway,
        registry: ExecutorRegistry,
        router: Optional[DecisionRouter] = None,
        formatter: Optional[ResultFormatter] = None,
        history: Optional[TaskHistory] = None,
        max_depth: int = config.MAX_ROUTING_DEPTH,
    ):
        self.gateway = gateway
        self.registry = registry
        self.router = router or DecisionRouter(gateway, registry)
        self.formatter = formatter or ResultFormatter(gateway)
        self.history = history or TaskHistory()
        self.max_depth = max_depth

    # --- Public API ---

    def execute_task(
        self,
        user_prompt: str,
        last_executor: Optional[str] = None,
        context: Optional[RoutingContext] = None,
        max_depth: Optional[int] = None,
    ) -> ExecutionResult:
        if not isinstance(user_prompt, str) or not user_prompt.strip():
            raise ValueError("Valid user prompt is required")
        depth = self.max_depth if max_depth is None else max_depth
        ctx = context or RoutingContext()
        if not ctx.original_prompt:
            ctx = replace(ctx, original_prompt=user_prompt)

        task = Task(user_prompt)
        start = time.time()
        print(f"[Dispatcher] Task {task.id}: '{user_prompt[:100]}' (max depth {depth})")
        try:
            result = self._execute(user_prompt, last_executor, ctx, depth, task)
            task.result = result
            return result
        finally:
            task.processing_time_ms = int((time.time() - start) * 1000)
            self.history.append(task)
            print(f"[Dispatcher] Task {task.id} finished in {task.processing_time_ms}ms "
                  f"chain={task.agent_chain or ['Router']}")

    def available_agents(self) -> List[Dict[str, Any]]:
        agents = []
        for d in self.registry.descriptors():
            entry = d.to_dict()
            entry["isImplemented"] = self.registry.is_routable(d.name)
            entry["isActive"] = d.name in self.history.active
            agents.append(entry)
        return agents

    def stats(self) -> Dict[str, Any]:
        stats = self.history.stats()
        stats["implementedAgents"] = len(self.registry.implemented())
        return stats

    def recent_tasks(self, limit: int = config.RECENT_TASKS_LIMIT) -> List[Task]:
        return self.history.recent(limit)

    def reset(self) -> None:
        self.history.reset()

    # --- Routing cycle ---

    def _execute(self, user_prompt: str, last_executor: Optional[str], ctx: RoutingContext,
                 depth: int, task: Task) -> ExecutionResult:
        if depth <= 0:
            print("[Dispatcher] Maximum routing depth reached")
            raise RoutingDepthExceeded()

        start = time.time()
        decision = self.router.decide(user_prompt, last_executor, ctx)
        if isinstance(decision, Direct):
            return ExecutionResult(
                is_completed=True,
                result=decision.response,
                execution_time_ms=int((time.time() - start) * 1000),
                agent="Router",
            )
        return self._route(decision, user_prompt, ctx, depth, task)

    def _route(self, decision: Route, user_prompt: str, ctx: RoutingContext,
               depth: int, task: Task) -> ExecutionResult:
        name = decision.next_agent

        if name in ctx.failed_agents or not self.registry.is_routable(name):
            why = "already failed" if name in ctx.failed_agents else "not routable"
            print(f"[Dispatcher] Ignoring route to {name} ({why})")
            return ExecutionResult(
                is_completed=True,
                result=self.router.fallback_response(user_prompt, ctx),
                agent="Router",
            )

        executor = self.registry.executor(name)
        descriptor = executor.descriptor
        try:
            params = self._prepare_params(descriptor, decision.params, ctx.original_prompt or user_prompt)
        except MissingParamsError as e:
            print(f"[Dispatcher] {e}")
            message = f"Failed to route to {name}: {e}"
            return ExecutionResult(is_completed=True, result=message, error=True, message=message, agent=name)

        task.agent_chain.append(name)
        self.history.mark_active(name)
        print(f"[Dispatcher] Calling {name} with params: {json.dumps(params, default=str)}")
        start = time.time()
        try:
            result = executor.invoke(params)
        except Exception as e:
            print(f"[Dispatcher] {name} raised: {e}")
            result = ExecutionResult(is_completed=False, error=True, message=f"{name} failed: {e}", agent=name)
        finally:
            self.history.mark_idle(name)
        if not result.execution_time_ms:
            result.execution_time_ms = int((time.time() - start) * 1000)
        result.agent = result.agent or name

        if result.error or result.partial:
            state = "failed" if result.error else "partially completed"
            print(f"[Dispatcher] {name} {state}; formulating final response")
            return self._formulate_final(user_prompt, name, ctx.with_failed(name), result)

        if result.needs_continuation:
            print(f"[Dispatcher] {name} needs another step; continuing with depth {depth - 1}")
            next_ctx = ctx.with_failed(name).after_agent(name, result)
            return self._execute(user_prompt, name, next_ctx, depth - 1, task)

        formatted = self.formatter.format(ctx.original_prompt or user_prompt, result, name)
        formatted_result = ExecutionResult(
            is_completed=True,
            result=formatted,
            execution_time_ms=result.execution_time_ms,
            agent=name,
            already_formatted=True,
            original_result=result.result,
        )
        return self._formulate_final(user_prompt, name, ctx, formatted_result)

    def _formulate_final(self, user_prompt: str, name: str, ctx: RoutingContext,
                         result: ExecutionResult) -> ExecutionResult:
        final_ctx = ctx.for_final_formulation(name, result)
        prompt = user_prompt
        if result.error or result.partial:
            prompt = (
                f"Provide a comprehensive response based on the partial/failed results from {name}. "
                "Present any useful information found.\n\n"
                f"Original user query: \"{ctx.original_prompt or user_prompt}\"\n\n"
                "Instructions:\n"
                "- Extract and present any partial data that was found\n"
                "- Explain briefly what went wrong if the agent failed\n"
                "- Focus on the actual data returned, not generic advice"
            )

        decision = self.router.decide(prompt, name, final_ctx)
        if isinstance(decision, Route):
            print("[Dispatcher] Router tried to route during final formulation; overriding")
            response = self.router.fallback_response(ctx.original_prompt or user_prompt, final_ctx)
        else:
            response = decision.response

        return ExecutionResult(
            is_completed=True,
            result=response,
            execution_time_ms=result.execution_time_ms,
            agent=name,
            already_formatted=result.already_formatted,
            original_result=result.original_result if result.original_result is not None else result.result,
        )

    # --- Parameters ---

    def _prepare_params(self, descriptor: ExecutorDescriptor, params: Mapping[str, Any],
                        original_prompt: str) -> Dict[str, Any]:
        prepared = dict(params or {})
        missing = descriptor.missing_params(prepared)
        if not missing:
            return prepared

        print(f"[Dispatcher] Missing params for {descriptor.name}: {', '.join(missing)}; enhancing")
        prepared.update(self._enhance_params(descriptor, prepared, missing, original_prompt))
        still_missing = descriptor.missing_params(prepared)
        if still_missing:
            raise MissingParamsError(descriptor.name, still_missing)
        return prepared

    def _enhance_params(self, descriptor: ExecutorDescriptor, current: Mapping[str, Any],
                        missing: List[str], original_prompt: str) -> Dict[str, Any]:
        system_prompt = (
            f"You are a parameter enhancement specialist. Extract missing parameters for the {descriptor.name} agent.\n\n"
            f"Agent Info:\n{json.dumps(descriptor.to_dict(), indent=2)}\n\n"
            f"Current Parameters:\n{json.dumps(dict(current), indent=2, default=str)}\n\n"
            f"Missing Parameters: {', '.join(missing)}\n\n"
            f"Original User Prompt: \"{original_prompt}\"\n\n"
            "Extract and provide the missing parameters from the user prompt. "
            "Respond with JSON containing only the missing parameters."
        )
        try:
            raw = self.gateway.complete(system_prompt, f"Extract the missing parameters: {', '.join(missing)}")
        except Exception as e:
            print(f"[Dispatcher] Failed to enhance parameters for {descriptor.name}: {e}")
            return {}
        parsed = parse_json_object(raw)
        if not isinstance(parsed, Ok):
            print(f"[Dispatcher] Parameter enhancement returned no JSON for {descriptor.name}")
            return {}
        enhanced = {k: v for k, v in parsed.value.items() if k in missing and v not in (None, "")}
        print(f"[Dispatcher] Enhanced parameters for {descriptor.name}: {enhanced}")
        return enhanced
