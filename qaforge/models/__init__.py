"""
QAForge
Database models package.

Models:
    - business_process: BusinessProcess (root of the artifact hierarchy)
    - scenario: Scenario (manual test narrative per business process)
    - testing: TestCase (steppable validation per scenario)
    - project_file: ProjectFile (uploaded source documents)
    - ai: AIUsageLog (token / cost tracking per LLM call)
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
