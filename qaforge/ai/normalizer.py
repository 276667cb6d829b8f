"""
Artifact normalizer — parsed, untyped model output → fixed record schemas.

Rules applied per artifact type:
    - every field coerced to a trimmed string (lists joined, None → default)
    - enumerated fields validated; unrecognised values are defaulted, never
      rejected, and the raw value is logged at WARNING
    - minimum-content filters drop degenerate entries
    - case-insensitive de-duplication by primary label within one batch

Output dicts use model attribute names (snake_case) so the reconciler can
pass them straight into the ORM constructors.
"""

import logging
import re

from qaforge.models.business_process import BP_PRIORITIES, BP_WIRE_FIELDS, DEFAULT_PRIORITY
from qaforge.models.testing import (
    BLOCKING_TYPES,
    CRITICALITIES,
    DEFAULT_BLOCKING,
    DEFAULT_CRITICALITY,
    DEFAULT_TYPE,
    TEST_CASE_TYPES,
)

logger = logging.getLogger(__name__)

MIN_BP_NAME_LEN = 3
MIN_BP_DESCRIPTION_LEN = 8
DEFAULT_SCENARIO_TITLE = "Untitled scenario"

_LABEL_PREFIX_RE = re.compile(
    r"^(happy\s*path|validation|invalid\s*input|edge\s*case|security|performance)\s*[-:]\s*",
    re.IGNORECASE,
)


# ── Coercion helpers ─────────────────────────────────────────────────────────

def as_text(value, default: str = "") -> str:
    """Coerce any JSON value to a trimmed string."""
    if value is None:
        return default
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (list, tuple)):
        parts = [as_text(v) for v in value]
        text = "; ".join(p for p in parts if p)
    elif isinstance(value, dict):
        text = "; ".join(f"{k}: {as_text(v)}" for k, v in value.items())
    else:
        text = str(value)
    text = text.strip()
    return text if text else default


def as_text_list(value) -> list[str]:
    """Coerce a JSON value to an ordered list of non-empty strings."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [s for s in (as_text(v) for v in value) if s]
    text = as_text(value)
    return [text] if text else []


def _first(item: dict, *keys):
    """First present, non-empty value among alias keys."""
    for key in keys:
        val = item.get(key)
        if val not in (None, "", []):
            return val
    return None


def _canonical(value: str, allowed: set[str], default: str, *, field: str) -> str:
    if not value:
        return default
    by_lower = {a.lower(): a for a in allowed}
    match = by_lower.get(value.lower().replace("_", "-"))
    if match:
        return match
    logger.warning("Unrecognised %s value %r from model; defaulting to %r", field, value, default)
    return default


def normalize_priority(value) -> str:
    return _canonical(as_text(value), BP_PRIORITIES, DEFAULT_PRIORITY, field="priority")


def normalize_criticality(value) -> str:
    return _canonical(as_text(value), CRITICALITIES, DEFAULT_CRITICALITY, field="criticality")


def normalize_blocking(value) -> str:
    text = as_text(value)
    if text.lower().replace(" ", "-") in ("non-blocking", "nonblocking"):
        return "Non-Blocking"
    return _canonical(text, BLOCKING_TYPES, DEFAULT_BLOCKING, field="blocking")


def normalize_case_type(value) -> str:
    return _canonical(as_text(value), TEST_CASE_TYPES, DEFAULT_TYPE, field="type")


def strip_label_prefix(title, fallback_title="") -> str:
    """Remove generic coverage labels ("Happy path -", "Validation:") from a title."""
    cleaned = _LABEL_PREFIX_RE.sub("", as_text(title)).strip()
    if cleaned:
        return cleaned
    base = as_text(fallback_title, "Business test case")
    return f"{base} case"


def _dedupe(items: list[dict], key) -> list[dict]:
    seen = set()
    result = []
    for item in items:
        k = key(item)
        if k in seen:
            continue
        seen.add(k)
        result.append(item)
    return result


# ═════════════════════════════════════════════════════════════════════════════
# BUSINESS PROCESSES
# ═════════════════════════════════════════════════════════════════════════════

def normalize_business_processes(raw) -> list[dict]:
    """Normalise a parsed business-process array.

    Drops entries whose name is shorter than 3 chars or whose description
    is shorter than 8 chars; first occurrence wins on duplicate names.
    """
    if not isinstance(raw, list):
        return []

    items = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        bp = {}
        for attr, wire in BP_WIRE_FIELDS.items():
            bp[attr] = as_text(_first(entry, wire, attr))
        bp["priority"] = normalize_priority(bp["priority"])
        if len(bp["name"]) < MIN_BP_NAME_LEN or len(bp["description"]) < MIN_BP_DESCRIPTION_LEN:
            logger.debug("Dropping degenerate business process: %r", bp["name"])
            continue
        items.append(bp)

    return _dedupe(items, key=lambda bp: bp["name"].lower())


# ═════════════════════════════════════════════════════════════════════════════
# SCENARIOS
# ═════════════════════════════════════════════════════════════════════════════

_SCENARIO_ALIASES = {
    "scenario_ref": ("scenarioId", "id", "scenario_id"),
    "title": ("title", "name"),
    "description": ("description", "summary"),
    "expected_result": ("expected_result", "expectedResult", "expected"),
    "persona": ("persona",),
    "objective": ("objective",),
    "trigger_precondition": ("triggerPrecondition", "trigger_event_pre_condition", "trigger_precondition"),
    "scope": ("scope",),
    "out_of_scope": ("outOfScope", "out_of_scope"),
    "expected_business_outcome": ("expectedBusinessOutcome", "expected_business_outcome"),
    "customer_impact": ("customerImpact", "customer_impact"),
    "regulatory_sensitivity": ("regulatorySensitivity", "regulatory_sensitivity"),
}


def normalize_scenarios(raw) -> list[dict]:
    """Normalise parsed scenario entries (alias keys accepted)."""
    if not isinstance(raw, list):
        return []

    items = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        sc = {attr: as_text(_first(entry, *aliases)) for attr, aliases in _SCENARIO_ALIASES.items()}
        if not sc["title"] and not sc["description"]:
            continue
        sc["title"] = sc["title"] or DEFAULT_SCENARIO_TITLE
        sc["steps"] = as_text_list(entry.get("steps"))
        items.append(sc)

    return _dedupe(items, key=lambda sc: sc["title"].lower())


# ═════════════════════════════════════════════════════════════════════════════
# REQUEST ITEMS (scenarios / test cases posted back by the UI)
# ═════════════════════════════════════════════════════════════════════════════

def _as_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_request_item(item: dict) -> dict:
    """Coerce one scenario or test-case object from a request body.

    Accepts both ``id`` and ``_id`` for the record id.
    """
    item = item if isinstance(item, dict) else {}
    return {
        "id": _as_int(_first(item, "id", "_id")),
        "title": as_text(item.get("title")),
        "description": as_text(item.get("description")),
        "steps": as_text_list(item.get("steps")),
        "expected_result": as_text(_first(item, "expected_result", "expectedResult")),
        "persona": as_text(item.get("persona")),
        "business_process_id": _as_int(item.get("businessProcessId")),
        "business_process_name": as_text(item.get("businessProcessName")),
        # scenarioId is the free-text label on scenarios and the parent id on test cases
        "scenario_ref": as_text(item.get("scenarioId")),
        "scenario_id": _as_int(item.get("scenarioId")),
        "scenario_title": as_text(item.get("scenarioTitle")),
        "objective": as_text(item.get("objective")),
        "trigger_precondition": as_text(item.get("triggerPrecondition")),
        "scope": as_text(item.get("scope")),
        "out_of_scope": as_text(item.get("outOfScope")),
        "expected_business_outcome": as_text(item.get("expectedBusinessOutcome")),
        "customer_impact": as_text(item.get("customerImpact")),
        "regulatory_sensitivity": as_text(item.get("regulatorySensitivity")),
        "test_case_ref": as_text(item.get("testCaseId")),
        "pre_requisites": as_text(_first(item, "preRequisites", "preconditions")),
        "criticality": as_text(_first(item, "criticality", "type")),
        "blocking_type": as_text(item.get("blockingType")),
    }


# ═════════════════════════════════════════════════════════════════════════════
# TEST CASES
# ═════════════════════════════════════════════════════════════════════════════

def resolve_parent(entry: dict, scenarios: list[dict]) -> dict | None:
    """Find the owning request scenario: by id first, then by index."""
    wanted = as_text(entry.get("scenarioId"))
    if wanted:
        for sc in scenarios:
            if sc.get("id") is not None and str(sc["id"]) == wanted:
                return sc
    idx = _as_int(entry.get("scenarioIndex"))
    if idx is not None and 0 <= idx < len(scenarios):
        return scenarios[idx]
    return None


def build_case(parent: dict, *, title: str, source: str, **fields) -> dict:
    """Assemble a test-case record dict bound to ``parent``."""
    case = {
        "scenario_id": parent["id"],
        "scenario_title": parent.get("title", ""),
        "business_process_id": parent.get("business_process_id"),
        "business_process_name": parent.get("business_process_name", ""),
        "title": title,
        "test_case_ref": "",
        "description": "",
        "persona": parent.get("persona", ""),
        "pre_requisites": "",
        "steps": [],
        "expected_result": "",
        "criticality": DEFAULT_CRITICALITY,
        "blocking_type": DEFAULT_BLOCKING,
        "customer_impact": "",
        "regulatory_sensitivity": "",
        "type": DEFAULT_TYPE,
        "source": source,
    }
    case.update(fields)
    return case


def normalize_test_cases(raw, scenarios: list[dict]) -> list[dict]:
    """Normalise parsed test cases against the request's scenario set.

    Entries that resolve to no scenario with a persisted id are dropped.
    Duplicate titles within one scenario keep the first occurrence.
    """
    if not isinstance(raw, list):
        return []

    items = []
    dropped = 0
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        parent = resolve_parent(entry, scenarios)
        if parent is None or parent.get("id") is None:
            dropped += 1
            continue
        items.append(build_case(
            parent,
            title=strip_label_prefix(entry.get("title"), parent.get("title")),
            source="ai",
            test_case_ref=as_text(entry.get("testCaseId")),
            description=as_text(entry.get("description")),
            persona=as_text(entry.get("persona")) or parent.get("persona", ""),
            pre_requisites="; ".join(as_text_list(_first(entry, "preRequisites", "preconditions"))),
            steps=as_text_list(_first(entry, "testSteps", "steps")),
            expected_result=as_text(_first(entry, "expectedResult", "expected_result")),
            criticality=normalize_criticality(entry.get("criticality")),
            blocking_type=normalize_blocking(_first(entry, "blocking", "blockingType")),
            customer_impact=as_text(entry.get("customerImpact")),
            regulatory_sensitivity=as_text(entry.get("regulatorySensitivity")),
            type=normalize_case_type(entry.get("type")),
        ))

    if dropped:
        logger.info("Dropped %d generated test cases with no resolvable scenario", dropped)

    return _dedupe(items, key=lambda tc: (tc["scenario_id"], tc["title"].lower()))
