"""
QAForge
Test case model — concrete, steppable validations per scenario.

Each test-case generation run deletes every test case of the project and
re-inserts. Every stored test case resolves to a scenario of the request
that produced it.
"""

from datetime import datetime, timezone

from qaforge.models import db


# ── Constants ────────────────────────────────────────────────────────────────

TEST_CASE_TYPES = {
    "Unit", "Integration", "System", "Other",
    "Positive", "Negative", "Edge", "Security", "Performance", "Usability",
}
CRITICALITIES = {"Critical", "High", "Medium", "Low"}
BLOCKING_TYPES = {"Blocking", "Non-Blocking"}

DEFAULT_TYPE = "Other"
DEFAULT_CRITICALITY = "Medium"
DEFAULT_BLOCKING = "Non-Blocking"

TEST_CASE_WIRE_FIELDS = {
    "title": "title",
    "test_case_ref": "testCaseId",
    "description": "description",
    "persona": "persona",
    "pre_requisites": "preRequisites",
    "expected_result": "expected_result",
    "criticality": "criticality",
    "blocking_type": "blockingType",
    "customer_impact": "customerImpact",
    "regulatory_sensitivity": "regulatorySensitivity",
    "type": "type",
}


class TestCase(db.Model):
    """
    Generated test case.

    Chain: BusinessProcess → Scenario → TestCase
    ``code_generated`` and ``test_run_success`` are set by the code-generation
    pass and feed the bottom-up success recomputation.
    """

    __tablename__ = "test_cases"
    __test__ = False  # keep pytest from collecting the model

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.String(64), nullable=False, index=True)
    business_process_id = db.Column(
        db.Integer, db.ForeignKey("business_processes.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    business_process_name = db.Column(db.String(300), default="")
    scenario_id = db.Column(
        db.Integer, db.ForeignKey("scenarios.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    scenario_title = db.Column(db.String(500), default="", comment="Denormalized copy of Scenario.title")

    title = db.Column(db.String(500), nullable=False)
    test_case_ref = db.Column(db.String(100), default="", comment="Model-assigned label, e.g. TC-001")
    description = db.Column(db.Text, default="")
    persona = db.Column(db.Text, default="")
    pre_requisites = db.Column(db.Text, default="", comment="Preconditions joined with '; '")
    steps = db.Column(db.JSON, default=list)
    expected_result = db.Column(db.Text, default="")
    criticality = db.Column(db.String(20), default=DEFAULT_CRITICALITY)
    blocking_type = db.Column(db.String(20), default=DEFAULT_BLOCKING)
    customer_impact = db.Column(db.Text, default="")
    regulatory_sensitivity = db.Column(db.Text, default="")
    type = db.Column(db.String(20), default=DEFAULT_TYPE)

    edited = db.Column(db.Boolean, default=False, nullable=False)
    test_run_success = db.Column(db.Boolean, default=False, nullable=False)
    code_generated = db.Column(db.Boolean, default=False, nullable=False)
    source = db.Column(db.String(30), default="ai", comment="ai | ai_augmented | fallback")

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        result = {
            "id": self.id,
            "projectId": self.project_id,
            "businessProcessId": self.business_process_id,
            "businessProcessName": self.business_process_name or "",
            "scenarioId": self.scenario_id,
            "scenarioTitle": self.scenario_title or "",
            "steps": list(self.steps or []),
            "edited": self.edited,
            "testRunSuccess": self.test_run_success,
            "codeGenerated": self.code_generated,
            "source": self.source,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
        for attr, wire in TEST_CASE_WIRE_FIELDS.items():
            result[wire] = getattr(self, attr) or ""
        return result

    def __repr__(self):
        return f"<TestCase {self.id}: {self.title}>"
