"""
QAForge
Uploaded source documents.

Projects themselves live outside this service; files are keyed by the
opaque project id only.
"""

from datetime import datetime, timezone

from qaforge.models import db


class ProjectFile(db.Model):
    """Binary upload plus metadata. The generation pipeline only reads ``data``."""

    __tablename__ = "project_files"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.String(64), nullable=False, index=True)
    filename = db.Column(db.String(255), nullable=False)
    mimetype = db.Column(db.String(150), default="application/octet-stream")
    size = db.Column(db.Integer, default=0)
    data = db.Column(db.LargeBinary, nullable=False)
    version = db.Column(db.String(20), default="v1.0", comment="v<n>.0, incremented per upload")
    process_count = db.Column(db.Integer, default=0, comment="Business processes generated from this file")
    uploaded_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "projectId": self.project_id,
            "filename": self.filename,
            "mimetype": self.mimetype,
            "size": self.size,
            "version": self.version,
            "processCount": self.process_count,
            "uploadedAt": self.uploaded_at.isoformat() if self.uploaded_at else None,
        }

    def __repr__(self):
        return f"<ProjectFile {self.id}: {self.filename} {self.version}>"
