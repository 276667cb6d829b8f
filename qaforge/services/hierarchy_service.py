"""
Hierarchy reconciler — BusinessProcess → Scenario → TestCase consistency.

Every state transition is a named event implemented as explicit bulk
statements against the three tables. Events are not transactional across
calls; each step commits on its own. Bookkeeping steps that must not fail
the surrounding request return a ``StepResult`` instead of raising.

Events:
    upload          → replace_business_process_batch
    selection       → select_business_processes
    scenario run    → clear_scenarios + insert_scenarios (per process)
    test-case run   → replace_test_cases + reset_after_test_case_generation
    code run        → apply_code_generation_results + recompute_success_flags
    record edit     → update_business_process / update_scenario / update_test_case
    match refresh   → upsert_matched_processes
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from qaforge.ai.normalizer import as_text, as_text_list
from qaforge.core.exceptions import NotFoundError, ValidationError
from qaforge.models import db
from qaforge.models.business_process import BP_PRIORITIES, BP_WIRE_FIELDS, BusinessProcess
from qaforge.models.scenario import SCENARIO_WIRE_FIELDS, Scenario
from qaforge.models.testing import (
    BLOCKING_TYPES,
    CRITICALITIES,
    TEST_CASE_TYPES,
    TEST_CASE_WIRE_FIELDS,
    TestCase,
)

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    ok: bool = True
    error: str | None = None


# ── Per-project serialisation ───────────────────────────────────────────────

# project id -> [lock, holders]; holders counts owners and waiters
_locks: dict[str, list] = {}
_locks_guard = threading.Lock()


@contextmanager
def project_lock(project_id: str):
    """Serialise regeneration events for one project within this process.

    The entry for a project is dropped once nobody holds or waits on it.
    """
    key = str(project_id)
    with _locks_guard:
        entry = _locks.setdefault(key, [threading.RLock(), 0])
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                del _locks[key]


# ── Upload / selection ──────────────────────────────────────────────────────

def _delete_scenarios_and_cases(project_id: str) -> None:
    # test cases first: both FKs are SET NULL
    TestCase.query.filter_by(project_id=project_id).delete(synchronize_session=False)
    Scenario.query.filter_by(project_id=project_id).delete(synchronize_session=False)


def replace_business_process_batch(project_id: str, items: list[dict],
                                   source: str = "openai_upload") -> list[BusinessProcess]:
    """Upload event: new batch becomes the only matched one; downstream artifacts cleared."""
    BusinessProcess.query.filter_by(project_id=project_id).update(
        {"matched": False, "selected": False, "edited": False},
        synchronize_session=False,
    )

    records = []
    for item in items:
        bp = BusinessProcess(project_id=project_id, matched=True, selected=False,
                             edited=False, source=source)
        for attr in BP_WIRE_FIELDS:
            if attr in item:
                setattr(bp, attr, item[attr])
        db.session.add(bp)
        records.append(bp)

    _delete_scenarios_and_cases(project_id)
    db.session.commit()
    logger.info("Stored %d business processes", len(records), extra={"project_id": project_id})
    return records


def select_business_processes(project_id: str, ids) -> list[BusinessProcess]:
    """Selection event: exactly the given matched ids become selected."""
    wanted = [int(i) for i in ids if str(i).strip().lstrip("-").isdigit()]
    if not wanted:
        raise ValidationError("bpIds array required")

    BusinessProcess.query.filter_by(project_id=project_id).update(
        {"selected": False, "edited": False}, synchronize_session=False,
    )
    BusinessProcess.query.filter(
        BusinessProcess.project_id == project_id,
        BusinessProcess.id.in_(wanted),
        BusinessProcess.matched.is_(True),
    ).update({"selected": True}, synchronize_session=False)
    db.session.commit()

    selected = (
        BusinessProcess.query
        .filter_by(project_id=project_id, matched=True, selected=True)
        .order_by(BusinessProcess.id)
        .all()
    )
    if not selected:
        raise ValidationError("No business processes found for given ids")
    return selected


# ── Scenarios ───────────────────────────────────────────────────────────────

def clear_scenarios(project_id: str) -> None:
    """Drop every scenario of the project, and the test cases hanging off them."""
    _delete_scenarios_and_cases(project_id)
    db.session.commit()


def insert_scenarios(project_id: str, bp: BusinessProcess, items: list[dict]) -> list[Scenario]:
    records = []
    for item in items:
        sc = Scenario(
            project_id=project_id,
            business_process_id=bp.id,
            business_process_name=bp.name,
            edited=False,
            test_run_success=False,
            source="ai",
        )
        for attr in SCENARIO_WIRE_FIELDS:
            if attr in item:
                setattr(sc, attr, item[attr])
        sc.steps = list(item.get("steps") or [])
        db.session.add(sc)
        records.append(sc)
    db.session.commit()
    return records


# ── Test cases ──────────────────────────────────────────────────────────────

_CASE_COLUMNS = (
    "business_process_id", "business_process_name", "scenario_id", "scenario_title",
    "title", "test_case_ref", "description", "persona", "pre_requisites", "steps",
    "expected_result", "criticality", "blocking_type", "customer_impact",
    "regulatory_sensitivity", "type", "source",
)


def replace_test_cases(project_id: str, cases: list[dict]) -> list[TestCase]:
    """Delete-then-insert: the project's test cases become exactly ``cases``."""
    TestCase.query.filter_by(project_id=project_id).delete(synchronize_session=False)
    records = []
    for case in cases:
        tc = TestCase(project_id=project_id, edited=False, test_run_success=False,
                      code_generated=False)
        for col in _CASE_COLUMNS:
            if col in case:
                setattr(tc, col, case[col])
        db.session.add(tc)
        records.append(tc)
    db.session.commit()
    logger.info("Stored %d test cases", len(records), extra={"project_id": project_id})
    return records


def reset_after_test_case_generation(project_id: str) -> StepResult:
    """Scenarios and processes lose edited/testRunSuccess after a test-case run."""
    try:
        reset = {"edited": False, "test_run_success": False}
        Scenario.query.filter_by(project_id=project_id).update(reset, synchronize_session=False)
        BusinessProcess.query.filter_by(project_id=project_id).update(reset, synchronize_session=False)
        db.session.commit()
        return StepResult()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Post-generation reset failed: %s", exc, extra={"project_id": project_id})
        return StepResult(ok=False, error=str(exc))


def apply_code_generation_results(project_id: str, selected_ids, succeeded_ids) -> None:
    """Code run in test-case mode: only the succeeded subset ends up successful."""
    selected_ids = [int(i) for i in selected_ids if i is not None]
    succeeded_ids = [int(i) for i in succeeded_ids if i is not None]

    if selected_ids:
        TestCase.query.filter(
            TestCase.project_id == project_id, TestCase.id.in_(selected_ids),
        ).update({"test_run_success": False, "code_generated": False}, synchronize_session=False)
    if succeeded_ids:
        TestCase.query.filter(
            TestCase.project_id == project_id, TestCase.id.in_(succeeded_ids),
        ).update(
            {"edited": False, "test_run_success": True, "code_generated": True},
            synchronize_session=False,
        )
    db.session.commit()


def recompute_success_flags(project_id: str) -> StepResult:
    """Derive scenario and process success bottom-up from test cases."""
    try:
        scenario_ids = [
            row[0] for row in
            db.session.query(TestCase.scenario_id)
            .filter(TestCase.project_id == project_id, TestCase.test_run_success.is_(True),
                    TestCase.scenario_id.isnot(None))
            .distinct()
            .all()
        ]
        bp_ids = [
            row[0] for row in
            db.session.query(TestCase.business_process_id)
            .filter(TestCase.project_id == project_id, TestCase.test_run_success.is_(True),
                    TestCase.business_process_id.isnot(None))
            .distinct()
            .all()
        ]

        Scenario.query.filter_by(project_id=project_id).update(
            {"test_run_success": False}, synchronize_session=False,
        )
        if scenario_ids:
            Scenario.query.filter(
                Scenario.project_id == project_id, Scenario.id.in_(scenario_ids),
            ).update({"test_run_success": True}, synchronize_session=False)

        BusinessProcess.query.filter_by(project_id=project_id).update(
            {"test_run_success": False}, synchronize_session=False,
        )
        if bp_ids:
            BusinessProcess.query.filter(
                BusinessProcess.project_id == project_id, BusinessProcess.id.in_(bp_ids),
            ).update({"test_run_success": True}, synchronize_session=False)

        db.session.commit()
        return StepResult()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Success recomputation failed: %s", exc, extra={"project_id": project_id})
        return StepResult(ok=False, error=str(exc))


# ── Record edits ────────────────────────────────────────────────────────────

def propagate_rename(project_id: str, record, new_label: str) -> None:
    """Copy a renamed label into every denormalised descendant copy."""
    if isinstance(record, BusinessProcess):
        for model in (Scenario, TestCase):
            model.query.filter_by(project_id=project_id, business_process_id=record.id).update(
                {"business_process_name": new_label}, synchronize_session=False,
            )
    elif isinstance(record, Scenario):
        TestCase.query.filter_by(project_id=project_id, scenario_id=record.id).update(
            {"scenario_title": new_label}, synchronize_session=False,
        )


def _collect_updates(data: dict, wire_fields: dict, *, with_steps: bool = False) -> dict:
    """Map wire (or attribute) keys in ``data`` to a column → value dict."""
    data = data or {}
    updates = {}
    for attr, wire in wire_fields.items():
        for key in (wire, attr):
            if key in data:
                updates[attr] = as_text(data[key])
                break
    if with_steps and "steps" in data:
        updates["steps"] = as_text_list(data["steps"])
    if "businessProcessName" in data and wire_fields is not BP_WIRE_FIELDS:
        updates["business_process_name"] = as_text(data["businessProcessName"])
    return updates


def _require_label(updates: dict, key: str) -> None:
    if key in updates:
        updates[key] = updates[key].strip()
        if not updates[key]:
            raise ValidationError(f"{key} must not be empty")


def _check_choice(updates: dict, key: str, allowed: set) -> None:
    if key in updates and updates[key] not in allowed:
        raise ValidationError(
            f"Invalid {key}: {updates[key]}",
            details={key: sorted(allowed)},
        )


def _load(model, project_id: str, record_id, label: str):
    record = model.query.filter_by(id=record_id, project_id=project_id).first()
    if record is None:
        raise NotFoundError(label, record_id, project_id)
    return record


def update_business_process(project_id: str, record_id, data: dict) -> BusinessProcess:
    updates = _collect_updates(data, BP_WIRE_FIELDS)
    if not updates:
        raise ValidationError("No fields provided to update")
    _require_label(updates, "name")
    _check_choice(updates, "priority", BP_PRIORITIES)

    bp = _load(BusinessProcess, project_id, record_id, "Business process")
    for attr, value in updates.items():
        setattr(bp, attr, value)
    bp.edited = True
    bp.test_run_success = False

    if "name" in updates:
        propagate_rename(project_id, bp, updates["name"])
    for model in (Scenario, TestCase):
        model.query.filter_by(project_id=project_id, business_process_id=bp.id).update(
            {"test_run_success": False}, synchronize_session=False,
        )
    db.session.commit()
    recompute_success_flags(project_id)
    db.session.refresh(bp)
    return bp


def update_scenario(project_id: str, record_id, data: dict) -> Scenario:
    updates = _collect_updates(data, SCENARIO_WIRE_FIELDS, with_steps=True)
    if not updates:
        raise ValidationError("No fields provided to update")
    _require_label(updates, "title")

    sc = _load(Scenario, project_id, record_id, "Scenario")
    for attr, value in updates.items():
        setattr(sc, attr, value)
    sc.edited = True
    sc.test_run_success = False

    if "title" in updates:
        propagate_rename(project_id, sc, updates["title"])
    TestCase.query.filter_by(project_id=project_id, scenario_id=sc.id).update(
        {"test_run_success": False}, synchronize_session=False,
    )
    db.session.commit()
    recompute_success_flags(project_id)
    db.session.refresh(sc)
    return sc


def update_test_case(project_id: str, record_id, data: dict) -> TestCase:
    updates = _collect_updates(data, TEST_CASE_WIRE_FIELDS, with_steps=True)
    if not updates:
        raise ValidationError("No fields provided to update")
    _require_label(updates, "title")
    _check_choice(updates, "criticality", CRITICALITIES)
    _check_choice(updates, "blocking_type", BLOCKING_TYPES)
    _check_choice(updates, "type", TEST_CASE_TYPES)

    tc = _load(TestCase, project_id, record_id, "Test case")
    for attr, value in updates.items():
        setattr(tc, attr, value)
    tc.edited = True
    tc.test_run_success = False
    db.session.commit()
    recompute_success_flags(project_id)
    db.session.refresh(tc)
    return tc


# ── Match regeneration ──────────────────────────────────────────────────────

def upsert_matched_processes(project_id: str, items: list[dict]) -> int:
    """Unmark the project's matches, then upsert ``items`` by (project, name).

    Existing records with the same name are updated in place (newest first);
    selected processes that are not matched again lose their selection;
    description and priority are only written on insert.
    Returns the number of processes marked matched.
    """
    BusinessProcess.query.filter_by(project_id=project_id).update(
        {"matched": False, "edited": False}, synchronize_session=False,
    )

    seen = set()
    count = 0
    for item in items:
        name = (item.get("name") or "").strip()
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())

        bp = (
            BusinessProcess.query
            .filter_by(project_id=project_id, name=name)
            .order_by(BusinessProcess.id.desc())
            .populate_existing()
            .first()
        )
        if bp is None:
            bp = BusinessProcess(
                project_id=project_id,
                name=name,
                description=item.get("description") or "",
                priority=item.get("priority") or "Medium",
            )
            db.session.add(bp)
        bp.matched = True
        bp.edited = False
        bp.score = float(item.get("score") or 0.0)
        bp.source = item.get("source") or "local_score"
        count += 1

    # A process that is no longer matched cannot stay selected
    db.session.flush()
    BusinessProcess.query.filter_by(project_id=project_id, matched=False, selected=True).update(
        {"selected": False}, synchronize_session=False,
    )
    db.session.commit()
    return count
