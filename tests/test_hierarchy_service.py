"""
QAForge
Tests — hierarchy reconciliation events.

Covers:
    - upload batch replacement and downstream clearing
    - selection semantics
    - test-case replacement and post-generation reset
    - code-generation results and bottom-up success recomputation
    - record edits with rename propagation
    - match upsert
"""

import threading
import time

import pytest

from qaforge.core.exceptions import NotFoundError, ValidationError
from qaforge.models import db
from qaforge.models.business_process import BusinessProcess
from qaforge.models.scenario import Scenario
from qaforge.models.testing import TestCase
from qaforge.services import hierarchy_service as hs


PROJECT_ID = "proj-1"


# ── Helpers ──────────────────────────────────────────────────────────────────

def _create_bp(name="Loan Origination", **kw):
    defaults = {"project_id": PROJECT_ID, "name": name, "description": f"{name} description",
                "matched": True}
    defaults.update(kw)
    bp = BusinessProcess(**defaults)
    db.session.add(bp)
    db.session.commit()
    return bp


def _create_scenario(bp, title="Apply online", **kw):
    defaults = {"project_id": PROJECT_ID, "business_process_id": bp.id,
                "business_process_name": bp.name, "title": title, "steps": ["Open", "Apply"]}
    defaults.update(kw)
    sc = Scenario(**defaults)
    db.session.add(sc)
    db.session.commit()
    return sc


def _create_case(sc, title="Valid application", **kw):
    defaults = {"project_id": PROJECT_ID, "business_process_id": sc.business_process_id,
                "business_process_name": sc.business_process_name, "scenario_id": sc.id,
                "scenario_title": sc.title, "title": title}
    defaults.update(kw)
    tc = TestCase(**defaults)
    db.session.add(tc)
    db.session.commit()
    return tc


# ═════════════════════════════════════════════════════════════════════════════
# UPLOAD & SELECTION
# ═════════════════════════════════════════════════════════════════════════════

class TestReplaceBusinessProcessBatch:
    def test_new_batch_is_only_matched_set(self):
        old = _create_bp("Old Process", selected=True, edited=True)
        sc = _create_scenario(old)
        _create_case(sc)

        new = hs.replace_business_process_batch(PROJECT_ID, [
            {"name": "Card Issuance", "description": "Issue cards", "priority": "High",
             "business_rules": "One card per account"},
            {"name": "Card Blocking", "description": "Block lost cards"},
        ])

        assert len(new) == 2
        old = db.session.get(BusinessProcess, old.id)
        assert (old.matched, old.selected, old.edited) == (False, False, False)
        matched = BusinessProcess.query.filter_by(project_id=PROJECT_ID, matched=True).all()
        assert {bp.name for bp in matched} == {"Card Issuance", "Card Blocking"}
        card = next(bp for bp in matched if bp.name == "Card Issuance")
        assert card.business_rules == "One card per account"
        assert card.source == "openai_upload"
        assert Scenario.query.count() == 0
        assert TestCase.query.count() == 0

    def test_other_projects_untouched(self):
        other = _create_bp("Foreign", project_id="proj-2")
        hs.replace_business_process_batch(PROJECT_ID, [])
        assert db.session.get(BusinessProcess, other.id).matched is True


class TestSelectBusinessProcesses:
    def test_exact_selection(self):
        a = _create_bp("A process", selected=True, edited=True)
        b = _create_bp("B process")
        c = _create_bp("C process")

        selected = hs.select_business_processes(PROJECT_ID, [b.id, str(c.id)])

        assert [bp.id for bp in selected] == [b.id, c.id]
        a = db.session.get(BusinessProcess, a.id)
        assert a.selected is False
        assert a.edited is False

    def test_unmatched_ids_ignored(self):
        a = _create_bp("A process")
        stale = _create_bp("Stale", matched=False)
        selected = hs.select_business_processes(PROJECT_ID, [a.id, stale.id])
        assert [bp.id for bp in selected] == [a.id]
        assert db.session.get(BusinessProcess, stale.id).selected is False

    def test_empty_ids_rejected(self):
        with pytest.raises(ValidationError, match="bpIds array required"):
            hs.select_business_processes(PROJECT_ID, ["abc", None])

    def test_nothing_selectable(self):
        stale = _create_bp("Stale", matched=False)
        with pytest.raises(ValidationError, match="No business processes found"):
            hs.select_business_processes(PROJECT_ID, [stale.id])


# ═════════════════════════════════════════════════════════════════════════════
# SCENARIOS & TEST CASES
# ═════════════════════════════════════════════════════════════════════════════

class TestScenarioEvents:
    def test_insert_binds_parent(self):
        bp = _create_bp()
        records = hs.insert_scenarios(PROJECT_ID, bp, [
            {"title": "Apply in branch", "scenario_ref": "SC-1", "steps": ["Visit", "Apply"],
             "persona": "Walk-in customer"},
        ])
        sc = db.session.get(Scenario, records[0].id)
        assert sc.business_process_id == bp.id
        assert sc.business_process_name == "Loan Origination"
        assert sc.scenario_ref == "SC-1"
        assert sc.steps == ["Visit", "Apply"]
        assert (sc.edited, sc.test_run_success, sc.source) == (False, False, "ai")

    def test_clear_removes_cases(self):
        sc = _create_scenario(_create_bp())
        _create_case(sc)
        hs.clear_scenarios(PROJECT_ID)
        assert Scenario.query.count() == 0
        assert TestCase.query.count() == 0


class TestTestCaseEvents:
    def test_replace_is_delete_then_insert(self):
        sc = _create_scenario(_create_bp())
        _create_case(sc, "Old case")
        hs.replace_test_cases(PROJECT_ID, [
            {"scenario_id": sc.id, "title": "New case", "steps": ["Do it"], "source": "fallback"},
        ])
        cases = TestCase.query.all()
        assert [c.title for c in cases] == ["New case"]
        assert cases[0].source == "fallback"
        assert cases[0].code_generated is False

    def test_reset_after_generation(self):
        bp = _create_bp(edited=True, test_run_success=True)
        sc = _create_scenario(bp, edited=True, test_run_success=True)
        result = hs.reset_after_test_case_generation(PROJECT_ID)
        assert result.ok is True
        sc = db.session.get(Scenario, sc.id)
        bp = db.session.get(BusinessProcess, bp.id)
        assert (sc.edited, sc.test_run_success) == (False, False)
        assert (bp.edited, bp.test_run_success) == (False, False)


# ═════════════════════════════════════════════════════════════════════════════
# CODE GENERATION RESULTS
# ═════════════════════════════════════════════════════════════════════════════

class TestCodeGenerationResults:
    def test_only_succeeded_subset_marked(self):
        bp = _create_bp()
        sc1 = _create_scenario(bp, "First")
        sc2 = _create_scenario(bp, "Second")
        ok = _create_case(sc1, "Succeeds", edited=True)
        failed = _create_case(sc1, "Fails", test_run_success=True, code_generated=True)
        untouched = _create_case(sc2, "Earlier success", test_run_success=True, code_generated=True)

        hs.apply_code_generation_results(PROJECT_ID, [ok.id, failed.id], [ok.id])

        ok = db.session.get(TestCase, ok.id)
        failed = db.session.get(TestCase, failed.id)
        untouched = db.session.get(TestCase, untouched.id)
        assert (ok.edited, ok.test_run_success, ok.code_generated) == (False, True, True)
        assert (failed.test_run_success, failed.code_generated) == (False, False)
        assert (untouched.test_run_success, untouched.code_generated) == (True, True)

    def test_recompute_is_bottom_up(self):
        bp_ok = _create_bp("Has success")
        bp_none = _create_bp("No success", test_run_success=True)
        sc_ok = _create_scenario(bp_ok, "Green")
        sc_none = _create_scenario(bp_none, "Red", test_run_success=True)
        _create_case(sc_ok, test_run_success=True)
        _create_case(sc_none, test_run_success=False)

        result = hs.recompute_success_flags(PROJECT_ID)

        assert result.ok is True
        assert db.session.get(Scenario, sc_ok.id).test_run_success is True
        assert db.session.get(Scenario, sc_none.id).test_run_success is False
        assert db.session.get(BusinessProcess, bp_ok.id).test_run_success is True
        assert db.session.get(BusinessProcess, bp_none.id).test_run_success is False


# ═════════════════════════════════════════════════════════════════════════════
# RECORD EDITS
# ═════════════════════════════════════════════════════════════════════════════

class TestUpdateBusinessProcess:
    def test_rename_propagates(self):
        bp = _create_bp()
        sc = _create_scenario(bp)
        tc = _create_case(sc, test_run_success=True)

        updated = hs.update_business_process(PROJECT_ID, bp.id, {"name": "  Loan Booking ",
                                                                  "priority": "High"})

        assert updated.name == "Loan Booking"
        assert updated.priority == "High"
        assert updated.edited is True
        assert db.session.get(Scenario, sc.id).business_process_name == "Loan Booking"
        tc = db.session.get(TestCase, tc.id)
        assert tc.business_process_name == "Loan Booking"
        assert tc.test_run_success is False

    def test_wire_keys_accepted(self):
        bp = _create_bp()
        updated = hs.update_business_process(PROJECT_ID, bp.id, {"keyBusinessSteps": ["A", "B"]})
        assert updated.key_business_steps == "A; B"

    def test_invalid_priority(self):
        bp = _create_bp()
        with pytest.raises(ValidationError) as exc_info:
            hs.update_business_process(PROJECT_ID, bp.id, {"priority": "Urgent"})
        assert exc_info.value.details == {"priority": ["Critical", "High", "Low", "Medium"]}

    def test_empty_name_rejected(self):
        bp = _create_bp()
        with pytest.raises(ValidationError):
            hs.update_business_process(PROJECT_ID, bp.id, {"name": "   "})

    def test_no_fields(self):
        bp = _create_bp()
        with pytest.raises(ValidationError, match="No fields provided to update"):
            hs.update_business_process(PROJECT_ID, bp.id, {"unknown": 1})

    def test_wrong_project_is_not_found(self):
        bp = _create_bp(project_id="proj-2")
        with pytest.raises(NotFoundError):
            hs.update_business_process(PROJECT_ID, bp.id, {"name": "X process"})


class TestUpdateScenario:
    def test_title_propagates_to_cases(self):
        sc = _create_scenario(_create_bp())
        tc = _create_case(sc)
        updated = hs.update_scenario(PROJECT_ID, sc.id, {"title": "Apply via app",
                                                         "steps": ["Launch", "Apply"]})
        assert updated.steps == ["Launch", "Apply"]
        assert updated.edited is True
        assert db.session.get(TestCase, tc.id).scenario_title == "Apply via app"

    def test_missing(self):
        with pytest.raises(NotFoundError) as exc_info:
            hs.update_scenario(PROJECT_ID, 404, {"title": "x"})
        assert exc_info.value.resource == "Scenario"


class TestUpdateTestCase:
    def test_edit_clears_success_upwards(self):
        bp = _create_bp(test_run_success=True)
        sc = _create_scenario(bp, test_run_success=True)
        tc = _create_case(sc, test_run_success=True)

        updated = hs.update_test_case(PROJECT_ID, tc.id, {"criticality": "Critical",
                                                          "blockingType": "Blocking"})

        assert updated.criticality == "Critical"
        assert updated.blocking_type == "Blocking"
        assert (updated.edited, updated.test_run_success) == (True, False)
        assert db.session.get(Scenario, sc.id).test_run_success is False
        assert db.session.get(BusinessProcess, bp.id).test_run_success is False

    def test_invalid_blocking(self):
        tc = _create_case(_create_scenario(_create_bp()))
        with pytest.raises(ValidationError):
            hs.update_test_case(PROJECT_ID, tc.id, {"blockingType": "Sometimes"})


# ═════════════════════════════════════════════════════════════════════════════
# MATCH UPSERT
# ═════════════════════════════════════════════════════════════════════════════

class TestUpsertMatchedProcesses:
    def test_update_newest_insert_missing(self):
        older = _create_bp("Loan Origination", matched=False)
        newer = _create_bp("Loan Origination", matched=False)
        previous = _create_bp("Previously matched", edited=True)

        count = hs.upsert_matched_processes(PROJECT_ID, [
            {"name": "Loan Origination", "score": 0.8, "source": "openai"},
            {"name": "loan origination", "score": 0.1},
            {"name": "Fraud Monitoring", "description": "Monitor", "priority": "Critical", "score": 0.2},
        ])

        assert count == 2
        assert db.session.get(BusinessProcess, older.id).matched is False
        newer = db.session.get(BusinessProcess, newer.id)
        assert (newer.matched, newer.score, newer.source) == (True, 0.8, "openai")
        previous = db.session.get(BusinessProcess, previous.id)
        assert (previous.matched, previous.edited) == (False, False)
        fraud = BusinessProcess.query.filter_by(name="Fraud Monitoring").one()
        assert (fraud.priority, fraud.source, fraud.matched) == ("Critical", "local_score", True)


    def test_unmatched_process_loses_selection(self):
        kept = _create_bp("Card Issuance", selected=True)
        dropped = _create_bp("Loan Origination", selected=True)
        # rows already loaded in the session must not mask the re-match
        assert kept.matched is True and dropped.selected is True

        hs.upsert_matched_processes(PROJECT_ID, [{"name": "Card Issuance", "score": 0.5}])

        db.session.expire_all()
        kept = db.session.get(BusinessProcess, kept.id)
        dropped = db.session.get(BusinessProcess, dropped.id)
        assert (kept.matched, kept.selected) == (True, True)
        assert (dropped.matched, dropped.selected) == (False, False)


class TestProjectLock:
    def test_reentrant(self):
        with hs.project_lock(PROJECT_ID):
            with hs.project_lock(PROJECT_ID):
                pass

    def test_entry_released_after_use(self):
        with hs.project_lock("proj-lock"):
            with hs.project_lock("proj-lock"):
                assert hs._locks["proj-lock"][1] == 2
            assert "proj-lock" in hs._locks
        assert "proj-lock" not in hs._locks

    def test_second_holder_waits(self):
        order = []
        started = threading.Event()

        def _worker():
            started.set()
            with hs.project_lock("proj-lock"):
                order.append("worker")

        with hs.project_lock("proj-lock"):
            worker = threading.Thread(target=_worker)
            worker.start()
            started.wait(5)
            time.sleep(0.05)
            order.append("main")
        worker.join(timeout=5)

        assert order == ["main", "worker"]
        assert "proj-lock" not in hs._locks
