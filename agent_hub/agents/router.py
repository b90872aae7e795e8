import json
from typing import Any, Dict, Optional

from .formatter import deterministic_format, items_of, normalize_result
from ..core.registry import ExecutorRegistry
from ..core.types import Direct, ExecutionResult, Route, RoutingContext, RoutingDecision
from ..llm.parsing import Malformed, as_bool, parse_json_object

NO_RESULT_MESSAGE = (
    "I couldn't gather enough information to answer that reliably. "
    "Please try rephrasing the request or adding more detail, such as a specific website."
)


def _describe_registry(registry: ExecutorRegistry) -> str:
    blocks = []
    for d in registry.descriptors():
        blocks.append(
            f"- {d.name}: {d.description}\n"
            f"  Status: {d.status.value}\n"
            f"  Required params: {', '.join(d.required_params) or 'none'}\n"
            f"  Optional params: {', '.join(d.optional_params) or 'none'}\n"
            f"  Capabilities: {', '.join(d.capabilities) or 'none'}\n"
            f"  Examples: {'; '.join(d.examples) or 'none'}"
        )
    return "\n\n".join(blocks)


def build_system_prompt(registry: ExecutorRegistry, last_executor: Optional[str], ctx: RoutingContext) -> str:
    failed = ", ".join(sorted(ctx.failed_agents)) or "None"
    mode = "YES - Provide comprehensive final response" if ctx.final_formulation else "NO"
    return (
        "You are a smart routing agent that decides whether to:\n"
        "1. Provide a direct answer if you have sufficient knowledge and the question doesn't require real-time data\n"
        "2. Route to a specialized agent if additional processing is needed\n"
        "3. Formulate the final response when called to synthesize results from other agents\n"
        "\n"
        f"Available Agents:\n{_describe_registry(registry)}\n"
        "\n"
        "Current Context:\n"
        f"- Last Agent Used: {last_executor or 'None'}\n"
        f"- Failed Agents: {failed}\n"
        f"- Final Formulation Mode: {mode}\n"
        "\n"
        "Response Rules:\n"
        "1. FINAL FORMULATION MODE: if it is YES, ALWAYS respond with "
        "{\"isCompleted\": true, \"response\": \"...\"}. Do NOT route. The response goes to the end user "
        "directly, so never include internal instructions or context.\n"
        "2. If you can answer directly (facts, general knowledge, calculations), respond with "
        "{\"isCompleted\": true, \"response\": \"your direct answer\"}\n"
        "3. To route, respond with {\"isCompleted\": false, \"nextAgent\": \"AgentName\", "
        "\"params\": {\"param\": \"value\"}, \"reasoning\": \"why this agent is needed\"}\n"
        "4. Never route to agents listed in Failed Agents.\n"
        "5. Only route to agents with status 'implemented'. Never route to 'planned' agents.\n"
        "6. Include every required parameter in params. For WebAgent, url must be a full URL "
        "(build a search URL when the user names a site and a query).\n"
        "7. Be conservative about routing: if previous agents gathered useful information, synthesize it.\n"
        "8. In final responses use clear headings and bullet points, keep every item and number from the "
        "data, and do not dwell on what could not be done.\n"
        "9. Use plain text with light markdown; no tables.\n"
        "Respond with JSON only."
    )


def build_user_prompt(user_prompt: str, last_executor: Optional[str], ctx: RoutingContext) -> str:
    lines = [
        f"User Query: \"{user_prompt}\"",
        "",
        "Previous Context:",
        f"- Last Agent: {last_executor or 'None'}",
        f"- Failed Agents: {', '.join(sorted(ctx.failed_agents)) or 'None'}",
        f"- Progress Summary: {json.dumps(ctx.summary())}",
    ]
    if ctx.last_agent_result is not None:
        lines.append(f"- Last Agent Result: {json.dumps(ctx.last_agent_result.to_dict(), default=str)}")
    lines.append("")
    if ctx.final_formulation:
        lines.append("IMPORTANT: You are in FINAL FORMULATION MODE. Provide a comprehensive, well-structured "
                     "final response based on all available information. Do NOT route to other agents.")
    else:
        lines.append("Please analyze this request and decide whether to provide a direct answer or route "
                     "to a specialized agent.")
    return "\n".join(lines)


class DecisionRouter:
    """Answer directly, route to an executor, or synthesize a final answer."""

    def __init__(self, gateway, registry: ExecutorRegistry):
        self.gateway = gateway
        self.registry = registry

    def fallback_response(self, user_prompt: str, ctx: RoutingContext) -> str:
        """Deterministic answer built from whatever the last executor produced."""
        user_prompt = ctx.original_prompt or user_prompt
        last: Optional[ExecutionResult] = ctx.last_agent_result
        if last is None:
            return NO_RESULT_MESSAGE
        if last.already_formatted and isinstance(last.result, str) and last.result.strip():
            return last.result
        payload, source = normalize_result(last)
        has_content = bool(items_of(payload)) or (isinstance(payload, str) and payload.strip()) or (
            isinstance(payload, dict) and any(payload.get(k) for k in ("summary", "final_answer", "message")))
        if has_content:
            return deterministic_format(user_prompt, payload, source)
        if last.message:
            return f"## Results for: {user_prompt}\n\nI couldn't complete this request: {last.message}"
        return NO_RESULT_MESSAGE

    def decide(self, user_prompt: str, last_executor: Optional[str] = None,
               context: Optional[RoutingContext] = None) -> RoutingDecision:
        ctx = context or RoutingContext()
        last = ctx.last_agent_result

        if ctx.final_formulation and last is not None and last.already_formatted and isinstance(last.result, str):
            print("[Router] Final formulation: result already formatted, returning it as-is")
            return Direct(last.result)

        mode = "final formulation" if ctx.final_formulation else "routing"
        print(f"[Router] Deciding ({mode}) for '{user_prompt[:80]}' last={last_executor or 'None'} "
              f"failed={sorted(ctx.failed_agents)}")

        try:
            raw = self.gateway.complete(
                build_system_prompt(self.registry, last_executor, ctx),
                build_user_prompt(user_prompt, last_executor, ctx),
                {"temperature": 0.2},
            )
        except Exception as e:
            print(f"[Router] Model call failed: {e}")
            return Direct(self.fallback_response(user_prompt, ctx), fallback=True)

        parsed = parse_json_object(raw)
        if isinstance(parsed, Malformed):
            print("[Router] Failed to parse model response as JSON, treating as direct response")
            text = parsed.raw.strip()
            if not text:
                return Direct(self.fallback_response(user_prompt, ctx), fallback=True)
            return Direct(text)
        return self._interpret(parsed.value, user_prompt, ctx)

    def _interpret(self, parsed: Dict[str, Any], user_prompt: str, ctx: RoutingContext) -> RoutingDecision:
        next_agent = parsed.get("nextAgent") or parsed.get("next_agent")
        completed = as_bool(parsed.get("isCompleted", parsed.get("is_completed")), default=not next_agent)

        if completed or not next_agent:
            response = parsed.get("response")
            if not isinstance(response, str) or not response.strip():
                response = self.fallback_response(user_prompt, ctx)
                return Direct(response, fallback=True)
            last = ctx.last_agent_result
            if ctx.final_formulation and last is not None and len(response) < 200 \
                    and items_of(normalize_result(last)[0]):
                detailed = self.fallback_response(user_prompt, ctx)
                if len(detailed) > len(response):
                    print("[Router] Final response too thin; using detailed response from prior results")
                    return Direct(detailed, fallback=True)
            return Direct(response.strip())

        if ctx.final_formulation:
            print(f"[Router] Model tried to route to {next_agent} in final formulation mode; forcing direct response")
            return Direct(self.fallback_response(user_prompt, ctx), forced=True)

        if next_agent in ctx.failed_agents:
            print(f"[Router] Refusing to route to failed agent {next_agent}")
            return Direct(self.fallback_response(user_prompt, ctx), fallback=True)

        if not self.registry.is_routable(next_agent):
            descriptor = self.registry.descriptor(next_agent)
            why = "not implemented" if descriptor is not None else "unknown"
            print(f"[Router] Refusing to route to {why} agent {next_agent}")
            return Direct(self.fallback_response(user_prompt, ctx), fallback=True)

        params = parsed.get("params")
        if not isinstance(params, dict):
            params = {}
        reasoning = str(parsed.get("reasoning") or "")
        print(f"[Router] Routing to {next_agent}: {reasoning[:120]}")
        return Route(next_agent, params, reasoning)
