"""
QAForge
Business process model — root of the BusinessProcess → Scenario → TestCase hierarchy.

A business process is extracted from an uploaded functional-specification
document. Each upload produces a new "generation batch"; only the latest
batch of a project is ``matched``. Older batches are kept as history.
"""

from datetime import datetime, timezone

from qaforge.models import db


# ── Constants ────────────────────────────────────────────────────────────────

BP_PRIORITIES = {"Critical", "High", "Medium", "Low"}
DEFAULT_PRIORITY = "Medium"

# Wire (camelCase) name for every editable attribute
BP_WIRE_FIELDS = {
    "name": "name",
    "description": "description",
    "priority": "priority",
    "process_objective": "processObjective",
    "trigger_event": "triggerEvent",
    "primary_actors": "primaryActors",
    "key_business_steps": "keyBusinessSteps",
    "business_rules": "businessRules",
    "upstream_systems": "upstreamSystems",
    "downstream_systems": "downstreamSystems",
    "regulatory_impact": "regulatoryImpact",
    "risk_control_considerations": "riskControlConsiderations",
}


class BusinessProcess(db.Model):
    """
    Banking business process derived from a source document.

    Flags:
        matched  — belongs to the project's most recent generation batch
        selected — chosen by the user to drive scenario generation (implies matched)
        edited   — manually changed since the last generation run
        test_run_success — derived: true when any descendant test case succeeded
    """

    __tablename__ = "business_processes"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    priority = db.Column(
        db.String(20), default=DEFAULT_PRIORITY,
        comment="Critical | High | Medium | Low",
    )

    matched = db.Column(db.Boolean, default=False, nullable=False, index=True)
    selected = db.Column(db.Boolean, default=False, nullable=False)
    edited = db.Column(db.Boolean, default=False, nullable=False)
    test_run_success = db.Column(db.Boolean, default=False, nullable=False)
    score = db.Column(db.Float, default=0.0, comment="Token-overlap score from match regeneration")

    process_objective = db.Column(db.Text, default="")
    trigger_event = db.Column(db.Text, default="")
    primary_actors = db.Column(db.Text, default="")
    key_business_steps = db.Column(db.Text, default="")
    business_rules = db.Column(db.Text, default="")
    upstream_systems = db.Column(db.Text, default="")
    downstream_systems = db.Column(db.Text, default="")
    regulatory_impact = db.Column(db.Text, default="")
    risk_control_considerations = db.Column(db.Text, default="")

    source = db.Column(
        db.String(30), default="openai_upload",
        comment="openai_upload | openai | local_score",
    )

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        result = {
            "id": self.id,
            "projectId": self.project_id,
            "matched": self.matched,
            "selected": self.selected,
            "edited": self.edited,
            "testRunSuccess": self.test_run_success,
            "score": self.score or 0.0,
            "source": self.source,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
        for attr, wire in BP_WIRE_FIELDS.items():
            result[wire] = getattr(self, attr) or ""
        return result

    def __repr__(self):
        return f"<BusinessProcess {self.id}: {self.name}>"
