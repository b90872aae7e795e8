from typing import List, Optional

from .scoring import score_element
from ..core.types import ElementDescriptor

DEFAULT_TOP_K = 30


def rank_elements(
    elements: List[ElementDescriptor],
    task: str,
    tried_selectors: Optional[List[str]] = None,
    page_unchanged: bool = False,
    top_k: int = DEFAULT_TOP_K,
) -> List[ElementDescriptor]:
    """Score elements against the task and keep the best top_k, best first."""
    tried = tried_selectors or []
    scored = []
    for position, e in enumerate(elements):
        e_copy = dict(e)
        e_copy["score"] = round(score_element(e, task, tried, page_unchanged), 2)
        scored.append((position, e_copy))

    # Ties keep perception order (inputs before buttons before links)
    scored.sort(key=lambda pair: (-pair[1]["score"], pair[0]))
    selected = [e for _, e in scored[:top_k]]

    task_lc = task.lower()
    # Make sure a text field is offered for search/fill tasks even if it scored low
    if any(tok in task_lc for tok in ("search", "find", "fill", "enter", "type")):
        chosen = {e.get("selector") for e in selected}
        inputs = [e for _, e in scored if e.get("role") in ("searchbox", "textbox") and e.get("selector") not in chosen]
        for e in inputs[:2]:
            selected.append(e)

    for i, e in enumerate(selected):
        e["index"] = i

    if selected:
        best = selected[0]
        print(f"[Ranker] Ranked {len(elements)} elements; top='{(best.get('text') or '')[:40]}' score={best['score']:.2f}")
    return selected
