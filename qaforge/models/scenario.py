"""
QAForge
Scenario model — manual test narratives generated per selected business process.

Scenarios are never created directly by users. A new scenario-generation
run deletes every scenario of the project before inserting the new batch.
"""

from datetime import datetime, timezone

from qaforge.models import db


# Wire (camelCase / legacy snake) name for every editable attribute
SCENARIO_WIRE_FIELDS = {
    "scenario_ref": "scenarioId",
    "title": "title",
    "description": "description",
    "expected_result": "expected_result",
    "persona": "persona",
    "objective": "objective",
    "trigger_precondition": "triggerPrecondition",
    "scope": "scope",
    "out_of_scope": "outOfScope",
    "expected_business_outcome": "expectedBusinessOutcome",
    "customer_impact": "customerImpact",
    "regulatory_sensitivity": "regulatorySensitivity",
}


class Scenario(db.Model):
    """
    Test scenario derived from one business process.

    Chain: BusinessProcess → Scenario → TestCase
    """

    __tablename__ = "scenarios"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.String(64), nullable=False, index=True)
    business_process_id = db.Column(
        db.Integer, db.ForeignKey("business_processes.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    business_process_name = db.Column(
        db.String(300), default="",
        comment="Denormalized copy of BusinessProcess.name, kept in sync on rename",
    )
    scenario_ref = db.Column(db.String(100), default="", comment="Free-text external label, e.g. SC-001")
    title = db.Column(db.String(500), nullable=False, default="Untitled scenario")
    description = db.Column(db.Text, default="")
    steps = db.Column(db.JSON, default=list)
    expected_result = db.Column(db.Text, default="")
    persona = db.Column(db.Text, default="")
    objective = db.Column(db.Text, default="")
    trigger_precondition = db.Column(db.Text, default="")
    scope = db.Column(db.Text, default="")
    out_of_scope = db.Column(db.Text, default="")
    expected_business_outcome = db.Column(db.Text, default="")
    customer_impact = db.Column(db.Text, default="")
    regulatory_sensitivity = db.Column(db.Text, default="")

    edited = db.Column(db.Boolean, default=False, nullable=False)
    test_run_success = db.Column(db.Boolean, default=False, nullable=False)
    source = db.Column(db.String(30), default="ai")

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
            "steps": list(self.steps or []),
            "edited": self.edited,
            "testRunSuccess": self.test_run_success,
            "source": self.source,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
        for attr, wire in SCENARIO_WIRE_FIELDS.items():
            result[wire] = getattr(self, attr) or ""
        return result

    def __repr__(self):
        return f"<Scenario {self.id}: {self.title}>"
