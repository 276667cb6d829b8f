"""
Hybrid business-process matching: local token overlap + LLM nomination.

Scoring:
    tokens(text) = lowercase alphanumeric words longer than 2 chars, as a set
    score(bp)    = |tokens(doc) ∩ tokens(bp)| / max(1, |tokens(bp)|)

Merge rules:
    - LLM items map to known processes by id, then by case-insensitive name;
      mapped entries are tagged "openai" and take precedence
    - remaining processes with score > 0 are tagged "local_score"
    - unmappable LLM items are dropped
    - result sorted by score, descending (stable)
"""

import re

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")


def tokenize(text: str | None) -> set[str]:
    cleaned = _NON_ALNUM_RE.sub(" ", (text or "").lower())
    return {w for w in cleaned.split() if len(w) > 2}


def score_overlap(doc_tokens: set[str], process_text: str) -> float:
    bp_tokens = tokenize(process_text)
    common = len(doc_tokens & bp_tokens)
    return common / max(1, len(bp_tokens))


def process_text(bp: dict) -> str:
    return f"{bp.get('name') or ''} {bp.get('description') or ''}"


def merge_matches(processes: list[dict], doc_tokens: set[str], llm_items: list | None) -> list[dict]:
    """Combine LLM-nominated and locally scored processes.

    ``processes`` are dicts with at least id, name, description, priority.
    Returns dicts with the process fields plus ``score`` and ``source``.
    """
    scores = {bp["id"]: score_overlap(doc_tokens, process_text(bp)) for bp in processes}
    by_id = {str(bp["id"]): bp for bp in processes}
    by_name = {}
    for bp in processes:
        by_name.setdefault((bp.get("name") or "").lower(), bp)

    merged = []
    taken = set()
    for item in llm_items or []:
        if not isinstance(item, dict):
            continue
        ident = item.get("id", item.get("_id"))
        bp = by_id.get(str(ident)) if ident is not None else None
        if bp is None and item.get("name"):
            bp = by_name.get(str(item["name"]).lower())
        if bp is None or bp["id"] in taken:
            continue
        taken.add(bp["id"])
        merged.append({**bp, "score": scores[bp["id"]], "source": "openai"})

    for bp in processes:
        if bp["id"] in taken or scores[bp["id"]] <= 0:
            continue
        merged.append({**bp, "score": scores[bp["id"]], "source": "local_score"})

    merged.sort(key=lambda m: m["score"], reverse=True)
    return merged
