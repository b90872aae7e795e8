from typing import Any, Dict, List, Set

from .types import Task


class TaskHistory:
    """
    Process-lifetime task log and active-executor set.
    Tasks are appended once finished; reset() is the only way to clear them.
    """

    def __init__(self):
        self.tasks: List[Task] = []
        self.active: Set[str] = set()

    def append(self, task: Task) -> None:
        self.tasks.append(task)

    def recent(self, limit: int = 5) -> List[Task]:
        if limit <= 0:
            return []
        return self.tasks[-limit:]

    def mark_active(self, name: str) -> None:
        self.active.add(name)

    def mark_idle(self, name: str) -> None:
        self.active.discard(name)

    def stats(self) -> Dict[str, Any]:
        total = len(self.tasks)
        avg = round(sum(t.processing_time_ms for t in self.tasks) / total) if total else 0
        return {
            "totalTasks": total,
            "activeAgents": len(self.active),
            "avgProcessingTimeMs": avg,
        }

    def reset(self) -> None:
        self.tasks = []
        self.active = set()
        print("[History] Task history cleared")
