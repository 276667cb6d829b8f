"""
QAForge
Tests — Project API.

Covers:
    - file upload, listing, download, delete, overview
    - business-process generation, regeneration, listing, edits
    - scenario generation, listing, edits
    - test generation (both modes), listing, edits
    - error envelope for validation, not-found, upstream and parse failures
    - full flow against the built-in local stub provider
"""

import io
import json

from sqlalchemy.exc import IntegrityError

from qaforge.models import db as _db
from qaforge.models.business_process import BusinessProcess
from qaforge.models.project_file import ProjectFile
from qaforge.models.scenario import Scenario
from qaforge.models.testing import TestCase

PID = "proj-1"
BASE = f"/api/v1/projects/{PID}"

BP_OUTPUT = json.dumps([
    {"name": "Account Opening", "description": "Customer opens a current account", "priority": "High"},
    {"name": "Account Closure", "description": "Customer closes a current account", "priority": "Low"},
])
SCENARIO_OUTPUT = json.dumps([
    {"scenarioId": "SC-1", "title": "Open account online", "steps": ["Apply", "Verify"],
     "expected_result": "Account opened"},
])


def _upload(client, path="upload", body=b"Current account opening specification",
            filename="spec.txt", **form):
    data = {"file": (io.BytesIO(body), filename)}
    data.update(form)
    return client.post(f"{BASE}/{path}", data=data, content_type="multipart/form-data")


def _create_bp(name="Account Opening", **kw):
    defaults = {"project_id": PID, "name": name, "description": f"{name} flow", "matched": True}
    defaults.update(kw)
    bp = BusinessProcess(**defaults)
    _db.session.add(bp)
    _db.session.commit()
    return bp


def _create_scenario(bp, title="Open account online", **kw):
    defaults = {"project_id": PID, "business_process_id": bp.id,
                "business_process_name": bp.name, "title": title, "steps": ["Apply"]}
    defaults.update(kw)
    sc = Scenario(**defaults)
    _db.session.add(sc)
    _db.session.commit()
    return sc


def _create_case(sc, title="Valid applicant", **kw):
    defaults = {"project_id": PID, "business_process_id": sc.business_process_id,
                "business_process_name": sc.business_process_name, "scenario_id": sc.id,
                "scenario_title": sc.title, "title": title}
    defaults.update(kw)
    tc = TestCase(**defaults)
    _db.session.add(tc)
    _db.session.commit()
    return tc


# ═════════════════════════════════════════════════════════════════════════════
# FILES
# ═════════════════════════════════════════════════════════════════════════════

class TestFiles:
    def test_upload(self, client, fake_gateway):
        fake_gateway.queue(BP_OUTPUT)
        res = _upload(client)
        assert res.status_code == 201
        body = res.get_json()
        assert body["ok"] is True
        assert body["filename"] == "spec.txt"
        assert body["version"] == "v1.0"
        assert body["matchedCount"] == 2

        res = client.get(f"{BASE}/files")
        items = res.get_json()["items"]
        assert len(items) == 1
        assert items[0]["processCount"] == 2
        assert "data" not in items[0]

    def test_upload_requires_file(self, client, fake_gateway):
        res = client.post(f"{BASE}/upload", data={}, content_type="multipart/form-data")
        assert res.status_code == 400
        body = res.get_json()
        assert body == {"ok": False, "message": "file is required", "code": "ERR_VALIDATION_REQUIRED"}
        assert fake_gateway.calls == []

    def test_upload_generation_failure(self, client, fake_gateway):
        fake_gateway.queue(TimeoutError("upstream timeout"))
        res = _upload(client)
        assert res.status_code == 502
        body = res.get_json()
        assert body["ok"] is False
        assert body["code"] == "ERR_GENERATION_FAILED"
        assert body["message"] == "File uploaded but failed to generate business processes"
        assert body["error"] == "upstream timeout"
        assert _db.session.get(ProjectFile, body["fileId"]) is not None

    def test_download_and_delete(self, client, fake_gateway):
        fake_gateway.queue(BP_OUTPUT)
        file_id = _upload(client, body=b"raw bytes").get_json()["fileId"]

        res = client.get(f"{BASE}/files/{file_id}")
        assert res.status_code == 200
        assert res.data == b"raw bytes"
        assert "spec.txt" in res.headers["Content-Disposition"]

        res = client.delete(f"{BASE}/files/{file_id}")
        assert res.get_json() == {"ok": True, "id": file_id}
        res = client.get(f"{BASE}/files/{file_id}")
        assert res.status_code == 404
        assert res.get_json()["message"] == "File not found"

    def test_files_scoped_to_project(self, client, fake_gateway):
        fake_gateway.queue(BP_OUTPUT)
        file_id = _upload(client).get_json()["fileId"]
        res = client.get(f"/api/v1/projects/other/files/{file_id}")
        assert res.status_code == 404

    def test_overview(self, client):
        bp = _create_bp()
        sc = _create_scenario(bp)
        _create_case(sc, code_generated=True)
        _create_case(sc, "Second")
        _db.session.add(ProjectFile(project_id=PID, filename="a.txt", data=b"a"))
        _db.session.commit()

        res = client.get(f"{BASE}/overview")
        body = res.get_json()
        assert body["metrics"] == {
            "businessProcessCount": 1,
            "scenarioCount": 1,
            "testCaseCount": 2,
            "testCodeCount": 1,
        }
        assert [f["filename"] for f in body["files"]] == ["a.txt"]


# ═════════════════════════════════════════════════════════════════════════════
# BUSINESS PROCESSES
# ═════════════════════════════════════════════════════════════════════════════

class TestBusinessProcesses:
    def test_generate_bp_with_prompt(self, client, fake_gateway):
        fake_gateway.queue(BP_OUTPUT)
        res = _upload(client, path="generate-bp", prompt="Only retail processes")
        assert res.status_code == 200
        body = res.get_json()
        assert body["count"] == 2
        assert body["items"][0]["name"] == "Account Opening"
        assert body["items"][0]["matched"] is True
        assert "Only retail processes" in fake_gateway.calls[0]["prompt"]
        assert ProjectFile.query.count() == 0

    def test_regenerate_without_processes(self, client, fake_gateway):
        res = _upload(client, path="regenerate")
        assert res.get_json() == {"ok": True, "matchedCount": 0, "items": [],
                                  "note": "No business processes found"}

    def test_regenerate(self, client, fake_gateway):
        _create_bp("Account Opening", matched=False)
        fake_gateway.queue("[]")
        res = _upload(client, path="regenerate", body=b"account opening rules")
        assert res.get_json() == {"ok": True, "branch": "openai_plus_local", "matchedCount": 1}

    def test_listing_sorted_by_score(self, client):
        _create_bp("Low score", score=0.1)
        _create_bp("High score", score=0.9)
        _create_bp("Not matched", matched=False, score=1.0)
        res = client.get(f"{BASE}/business-processes")
        body = res.get_json()
        assert body["total"] == 2
        assert [i["name"] for i in body["items"]] == ["High score", "Low score"]

    def test_listing_pagination(self, client):
        for n in range(3):
            _create_bp(f"Process {n}")
        res = client.get(f"{BASE}/business-processes?limit=2&offset=2")
        body = res.get_json()
        assert body["total"] == 3
        assert len(body["items"]) == 1

    def test_selected_listing(self, client):
        _create_bp("Chosen", selected=True)
        _create_bp("Ignored")
        res = client.get(f"{BASE}/business-processes/selected")
        assert [i["name"] for i in res.get_json()["items"]] == ["Chosen"]

    def test_update(self, client):
        bp = _create_bp()
        sc = _create_scenario(bp)
        res = client.put(f"{BASE}/business-processes/{bp.id}",
                         json={"name": "Account Onboarding", "regulatoryImpact": "KYC"})
        assert res.status_code == 200
        item = res.get_json()["item"]
        assert item["name"] == "Account Onboarding"
        assert item["regulatoryImpact"] == "KYC"
        assert item["edited"] is True
        _db.session.expire_all()
        assert _db.session.get(Scenario, sc.id).business_process_name == "Account Onboarding"

    def test_update_invalid_priority(self, client):
        bp = _create_bp()
        res = client.put(f"{BASE}/business-processes/{bp.id}", json={"priority": "Urgent"})
        assert res.status_code == 400
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_INVALID"
        assert body["details"]["priority"] == ["Critical", "High", "Low", "Medium"]

    def test_update_missing(self, client):
        res = client.put(f"{BASE}/business-processes/9999", json={"name": "X"})
        assert res.status_code == 404
        assert res.get_json() == {"ok": False, "message": "Business process not found",
                                  "code": "ERR_NOT_FOUND"}


# ═════════════════════════════════════════════════════════════════════════════
# SCENARIOS
# ═════════════════════════════════════════════════════════════════════════════

class TestScenarios:
    def test_generate(self, client, fake_gateway):
        bp = _create_bp()
        fake_gateway.queue(SCENARIO_OUTPUT)
        res = client.post(f"{BASE}/generate-scenarios", json={"bpIds": [bp.id]})
        assert res.status_code == 200
        body = res.get_json()
        assert body["count"] == 1
        assert body["businessProcessCount"] == 1
        assert body["sourceFiles"] == []
        sc = body["scenarios"][0]
        assert sc["title"] == "Open account online"
        assert sc["scenarioId"] == "SC-1"
        assert sc["businessProcessId"] == bp.id

    def test_generate_requires_ids(self, client):
        res = client.post(f"{BASE}/generate-scenarios", json={})
        assert res.status_code == 400
        assert res.get_json()["message"] == "bpIds array required"

    def test_generate_unknown_ids(self, client):
        res = client.post(f"{BASE}/generate-scenarios", json={"bpIds": [12345]})
        assert res.status_code == 400
        assert res.get_json()["message"] == "No business processes found for given ids"

    def test_generate_parse_failure(self, client, fake_gateway):
        bp = _create_bp()
        fake_gateway.queue("nothing useful")
        res = client.post(f"{BASE}/generate-scenarios", json={"bpIds": [bp.id]})
        assert res.status_code == 500
        body = res.get_json()
        assert body["code"] == "ERR_PARSE_FAILED"
        assert body["raw"] == "nothing useful"

    def test_generate_upstream_failure(self, client, fake_gateway):
        bp = _create_bp()
        fake_gateway.queue(RuntimeError("429 from provider"))
        res = client.post(f"{BASE}/generate-scenarios", json={"bpIds": [bp.id]})
        assert res.status_code == 502
        body = res.get_json()
        assert body["message"] == "OpenAI call failed while generating scenarios"
        assert body["error"] == "429 from provider"

    def test_wrong_content_type(self, client):
        res = client.post(f"{BASE}/generate-scenarios", data="bpIds=1", content_type="text/plain")
        assert res.status_code == 415
        assert res.get_json()["code"] == "ERR_UNSUPPORTED_MEDIA"

    def test_list_and_update(self, client):
        bp = _create_bp()
        sc = _create_scenario(bp)
        tc = _create_case(sc)
        res = client.get(f"{BASE}/scenarios")
        assert res.get_json()["total"] == 1

        res = client.put(f"{BASE}/scenarios/{sc.id}",
                         json={"title": "Open account in app", "steps": ["Launch", "Apply"]})
        item = res.get_json()["item"]
        assert item["title"] == "Open account in app"
        assert item["steps"] == ["Launch", "Apply"]
        _db.session.expire_all()
        assert _db.session.get(TestCase, tc.id).scenario_title == "Open account in app"

    def test_update_without_fields(self, client):
        sc = _create_scenario(_create_bp())
        res = client.put(f"{BASE}/scenarios/{sc.id}", json={})
        assert res.status_code == 400
        assert res.get_json()["message"] == "No fields provided to update"


# ═════════════════════════════════════════════════════════════════════════════
# TESTS & TEST CASES
# ═════════════════════════════════════════════════════════════════════════════

class TestTests:
    def test_generate_scenario_mode(self, client, fake_gateway):
        sc = _create_scenario(_create_bp())
        fake_gateway.queue("def test_x():\n    pass\n", "[]")
        res = client.post(f"{BASE}/generate-tests", json={
            "framework": "pytest", "language": "python",
            "scenarios": [{"id": sc.id, "title": sc.title}],
        })
        assert res.status_code == 200
        body = res.get_json()
        assert body["ok"] is True
        assert body["codes"][0]["code"].startswith("# Business Process: Account Opening")
        assert len(body["testCases"]) == 6
        assert body["raw"] == "[]"

    def test_generate_with_deleted_scenario_id(self, client, fake_gateway):
        sc = _create_scenario(_create_bp())
        stale_id = sc.id
        _db.session.delete(sc)
        _db.session.commit()
        fake_gateway.queue("code", "[]")
        res = client.post(f"{BASE}/generate-tests", json={
            "framework": "pytest", "language": "python",
            "scenarios": [{"_id": stale_id, "title": "Open account online"}],
        })
        assert res.status_code == 200
        assert res.get_json()["testCases"] == []

    def test_unexpected_error_hides_internals(self, client, monkeypatch):
        def _boom(project_id, payload):
            raise RuntimeError("(sqlite3.IntegrityError) [SQL: INSERT INTO test_cases] [parameters: ('proj-1',)]")

        monkeypatch.setattr("qaforge.services.generation_service.generate_tests", _boom)
        res = client.post(f"{BASE}/generate-tests", json={
            "framework": "pytest", "language": "python", "scenarios": [{"title": "x"}],
        })
        assert res.status_code == 500
        body = res.get_json()
        assert body == {"ok": False, "code": "ERR_INTERNAL", "message": "Internal server error"}
        assert "INSERT INTO" not in res.get_data(as_text=True)

    def test_database_error_hides_statement(self, client, monkeypatch):
        def _boom(project_id, payload):
            raise IntegrityError("INSERT INTO test_cases (project_id) VALUES (?)", ("proj-1",),
                                 Exception("FOREIGN KEY constraint failed"))

        monkeypatch.setattr("qaforge.services.generation_service.generate_tests", _boom)
        res = client.post(f"{BASE}/generate-tests", json={
            "framework": "pytest", "language": "python", "scenarios": [{"title": "x"}],
        })
        assert res.status_code == 500
        assert res.get_json() == {"ok": False, "code": "ERR_DATABASE", "message": "Database error"}

    def test_generate_test_case_mode(self, client, fake_gateway):
        tc = _create_case(_create_scenario(_create_bp()))
        fake_gateway.queue("code")
        res = client.post(f"{BASE}/generate-tests", json={
            "mode": "test-cases", "framework": "jest", "language": "javascript",
            "scenarios": [{"id": tc.id, "title": tc.title}],
        })
        body = res.get_json()
        assert body["mode"] == "test-cases"
        assert body["codes"][0]["testCaseId"] == tc.id
        _db.session.expire_all()
        assert _db.session.get(TestCase, tc.id).code_generated is True

    def test_generate_requires_fields(self, client):
        res = client.post(f"{BASE}/generate-tests", json={"framework": "pytest"})
        assert res.status_code == 400
        assert res.get_json()["message"] == "framework, language and scenarios are required"

    def test_list_and_update(self, client):
        tc = _create_case(_create_scenario(_create_bp()))
        res = client.get(f"{BASE}/test-cases")
        assert res.get_json()["items"][0]["title"] == "Valid applicant"

        res = client.put(f"{BASE}/test-cases/{tc.id}",
                         json={"criticality": "Critical", "preRequisites": "Customer exists"})
        item = res.get_json()["item"]
        assert item["criticality"] == "Critical"
        assert item["preRequisites"] == "Customer exists"
        assert item["edited"] is True

    def test_update_invalid_criticality(self, client):
        tc = _create_case(_create_scenario(_create_bp()))
        res = client.put(f"{BASE}/test-cases/{tc.id}", json={"criticality": "Extreme"})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"


# ═════════════════════════════════════════════════════════════════════════════
# APP-LEVEL
# ═════════════════════════════════════════════════════════════════════════════

def test_unknown_route(client):
    res = client.get("/api/v1/nope")
    assert res.status_code == 404
    assert res.get_json()["path"] == "/api/v1/nope"


def test_health(client):
    assert client.get("/api/v1/health/ready").get_json() == {"status": "ok"}
    body = client.get("/api/v1/health/live").get_json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["status"] == "ok"
    assert body["checks"]["prompts"]["missing"] == []
    assert body["checks"]["prompts"]["active"]["scenario_generation"] == "v1"


def test_full_flow_with_local_stub(client):
    """Upload → select → scenarios → tests using the deterministic stub provider."""
    res = _upload(client, body=b"Payments functional specification")
    assert res.status_code == 201
    assert res.get_json()["matchedCount"] == 2

    bps = client.get(f"{BASE}/business-processes").get_json()["items"]
    res = client.post(f"{BASE}/generate-scenarios", json={"bpIds": [bps[0]["id"]]})
    scenarios = res.get_json()["scenarios"]
    assert len(scenarios) == 2

    res = client.post(f"{BASE}/generate-tests", json={
        "framework": "pytest", "language": "python", "scenarios": scenarios,
    })
    body = res.get_json()
    assert len(body["codes"]) == 2
    assert all(c["code"] for c in body["codes"])
    # stub emits two cases per scenario; coverage floor tops each up to four
    assert len(body["testCases"]) == 8
    assert {tc["source"] for tc in body["testCases"]} == {"ai", "ai_augmented"}

    overview = client.get(f"{BASE}/overview").get_json()["metrics"]
    assert overview["testCaseCount"] == 8
