"""
Transport-facing entry points.

An HTTP layer calls submit_task() and describe_agents() and serializes the
returned dicts as-is; field names follow the camelCase wire format.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from .core import config
from .core.dispatcher import Dispatcher
from .core.errors import RoutingDepthExceeded
from .core.types import RoutingContext


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def submit_task(dispatcher: Dispatcher, payload: Optional[Mapping[str, Any]]) -> Tuple[int, Dict[str, Any]]:
    """Run one task submission; returns (HTTP status, envelope)."""
    payload = payload or {}
    user_prompt = payload.get("userPrompt")
    if not isinstance(user_prompt, str) or not user_prompt.strip():
        return 400, {
            "success": False,
            "error": "Invalid request",
            "message": "userPrompt is required and must be a non-empty string",
        }

    progress = payload.get("progress")
    last_agent = payload.get("lastAgentUsed")
    if progress is not None and not isinstance(progress, Mapping):
        return 400, {"success": False, "error": "Invalid request", "message": "progress must be an object"}
    if last_agent is not None and not isinstance(last_agent, str):
        return 400, {"success": False, "error": "Invalid request", "message": "lastAgentUsed must be a string"}
    try:
        context = RoutingContext.from_progress(progress)
    except (TypeError, ValueError) as e:
        return 400, {"success": False, "error": "Invalid request", "message": f"Invalid progress: {e}"}

    job_id = str(uuid.uuid4())
    start = time.time()
    try:
        result = dispatcher.execute_task(user_prompt, last_agent, context)
        body = result.to_dict()
    except RoutingDepthExceeded as e:
        print(f"[API] Job {job_id}: {e}")
        body = {"isCompleted": True, "error": True, "message": str(e), "result": None}
    except Exception as e:
        print(f"[API] Job {job_id} failed: {e}")
        return 500, {"success": False, "error": "Task execution failed", "message": str(e)}

    return 200, {
        "success": True,
        "jobId": job_id,
        "result": body,
        "processingTimeMs": int((time.time() - start) * 1000),
        "timestamp": _now(),
    }


def describe_agents(dispatcher: Dispatcher, recent_limit: int = config.RECENT_TASKS_LIMIT) -> Dict[str, Any]:
    stats = dispatcher.stats()
    return {
        "availableAgents": dispatcher.available_agents(),
        "statistics": {
            "totalTasks": stats["totalTasks"],
            "implementedAgents": stats["implementedAgents"],
            "activeAgents": stats["activeAgents"],
            "avgProcessingTimeMs": stats["avgProcessingTimeMs"],
        },
        "recentTasks": [t.summary() for t in dispatcher.recent_tasks(recent_limit)],
    }


def reset_agents(dispatcher: Dispatcher) -> Dict[str, Any]:
    dispatcher.reset()
    return {"success": True, "message": "Agent history reset", "timestamp": _now()}
