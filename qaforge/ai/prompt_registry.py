"""
QAForge
Prompt Registry.

YAML-based prompt template management with:
    - Built-in default templates for every generation stage
    - Optional overrides loaded from PROMPTS_DIR/*.yaml
    - {{variable}} substitution (single pass; substituted values are never re-expanded)
    - Version tracking; the active version per template is configurable

Every template restates its output contract (JSON shape, field names,
allowed values, formatting rules) in full on each call.

Usage:
    from qaforge.ai.prompt_registry import PromptRegistry
    registry = PromptRegistry()
    text = registry.render_text("scenario_generation", project_label="P-1", ...)
"""

import logging
import os
import re
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_PROMPTS_DIR = os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(__file__))),
    "prompts",
)

_PLACEHOLDER_RE = re.compile(r"\{\{(\s*\w+\s*)\}\}")


class PromptTemplate:
    """A single prompt template with metadata."""

    def __init__(self, name: str, version: str, system: str, user: str,
                 description: str = "", metadata: dict | None = None):
        self.name = name
        self.version = version
        self.system = system
        self.user = user
        self.description = description
        self.metadata = metadata or {}

    def render(self, **variables) -> list[dict]:
        """
        Render template with variables, returning chat messages.

        Variables are replaced using {{variable_name}} syntax.

        Returns:
            List of message dicts: [{"role": "system", "content": "..."}, ...]
        """
        system_rendered = self._substitute(self.system, variables)
        user_rendered = self._substitute(self.user, variables)

        messages = []
        if system_rendered.strip():
            messages.append({"role": "system", "content": system_rendered})
        if user_rendered.strip():
            messages.append({"role": "user", "content": user_rendered})
        return messages

    def render_text(self, **variables) -> str:
        """Render as one prompt string (system block, blank line, user block)."""
        parts = [m["content"].strip() for m in self.render(**variables)]
        return "\n\n".join(p for p in parts if p)

    @staticmethod
    def _substitute(template: str, variables: dict) -> str:
        """Replace {{var}} placeholders with values."""
        def replacer(match):
            key = match.group(1).strip()
            return str(variables.get(key, f"{{{{{key}}}}}"))
        return _PLACEHOLDER_RE.sub(replacer, template)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "system_preview": self.system[:200],
            "user_preview": self.user[:200],
        }


class PromptRegistry:
    """
    Registry for loading and managing prompt templates.

    Built-in defaults are registered first; YAML files in the prompts
    directory override them by (name, version).
    """

    def __init__(self, prompts_dir: str | None = None, active_versions: dict | None = None):
        self._prompts_dir = prompts_dir or _PROMPTS_DIR
        self._active = dict(active_versions or {})  # name → version used when none is requested
        self._templates: dict[str, dict[str, PromptTemplate]] = {}  # name → {version → template}
        self._load_defaults()
        self._load_from_dir()

    def _load_defaults(self):
        """Register built-in default prompt templates."""
        for tpl in _DEFAULT_TEMPLATES:
            self._register(tpl)

    def _load_from_dir(self):
        """Load prompt templates from YAML files."""
        prompts_path = Path(self._prompts_dir)
        if not prompts_path.exists():
            logger.info("Prompts directory not found: %s. Using defaults only.", self._prompts_dir)
            return

        for yaml_file in sorted(prompts_path.glob("*.yaml")):
            try:
                with open(yaml_file, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f)
                if not data or not isinstance(data, dict):
                    continue

                tpl = PromptTemplate(
                    name=data.get("name", yaml_file.stem),
                    version=str(data.get("version", "v1")),
                    system=data.get("system", ""),
                    user=data.get("user", ""),
                    description=data.get("description", ""),
                    metadata=data.get("metadata", {}),
                )
                self._register(tpl)
                logger.info("Loaded prompt template: %s (%s) from %s",
                            tpl.name, tpl.version, yaml_file.name)
            except (OSError, yaml.YAMLError) as e:
                logger.error("Failed to load prompt %s: %s", yaml_file.name, e)

    def _register(self, template: PromptTemplate):
        """Add template to registry."""
        if template.name not in self._templates:
            self._templates[template.name] = {}
        self._templates[template.name][template.version] = template

    def get(self, name: str, version: str = "v1") -> PromptTemplate | None:
        """Get a prompt template by name and version."""
        versions = self._templates.get(name, {})
        return versions.get(version)

    def active_version(self, name: str) -> str:
        """Configured version for ``name``; "v1" when unset or not registered."""
        version = self._active.get(name, "v1")
        if version not in self._templates.get(name, {}):
            logger.warning("Prompt %s %s not registered; using v1", name, version)
            return "v1"
        return version

    def _require(self, name: str, version: str | None) -> PromptTemplate:
        version = version or self.active_version(name)
        tpl = self.get(name, version)
        if not tpl:
            raise KeyError(f"Prompt template not found: {name} {version}")
        return tpl

    def render(self, name: str, version: str | None = None, **variables) -> list[dict]:
        """
        Render a prompt template with variables.

        Raises:
            KeyError: If template not found.
        """
        return self._require(name, version).render(**variables)

    def render_text(self, name: str, version: str | None = None, **variables) -> str:
        """Render a template as a single prompt string."""
        return self._require(name, version).render_text(**variables)

    def list_templates(self) -> list[dict]:
        """List all registered templates."""
        result = []
        for versions in self._templates.values():
            for tpl in versions.values():
                result.append(tpl.to_dict())
        return result

    def get_versions(self, name: str) -> list[str]:
        """Get available versions for a template."""
        return list(self._templates.get(name, {}).keys())


# ── Built-in Default Templates ────────────────────────────────────────────────

_DEFAULT_TEMPLATES = [
    PromptTemplate(
        name="business_process_extraction",
        version="v1",
        description="Extract banking business processes with priority from a functional specification",
        system=(
            "You are a senior banking business architect with deep experience in retail banking, "
            "corporate banking, payments, lending, treasury, regulatory reporting, and risk management.\n\n"
            "Your task is to analyze the following Functional Specification document and extract "
            "BUSINESS PROCESSES from a bank's perspective.\n\n"
            "Important:\n"
            "- Focus on business processes, not UI screens or technical implementation steps.\n"
            "- Consolidate related steps into meaningful end-to-end processes.\n"
            "- Use banking domain language.\n"
            "- Avoid repeating technical details unless they materially affect business logic.\n\n"
            "In addition, assign a Priority Rating to each business process.\n\n"
            "Priority must be determined using the following hierarchy of impact:\n"
            "1. End Customer Impact (highest weight)\n"
            "2. Legal / Regulatory Impact\n"
            "3. Operational Impact\n\n"
            "Definitions:\n"
            "- Critical: direct financial impact to customers; risk of customer harm or regulatory breach; "
            "impacts financial postings or customer balances; regulatory reporting or compliance failure risk; "
            "high reputational risk.\n"
            "- High: significant operational disruption; indirect customer impact; control or risk process "
            "failure; impacts multiple downstream systems.\n"
            "- Medium: limited operational impact; internal process inefficiencies; no direct customer or "
            "regulatory risk.\n"
            "- Low: cosmetic or non-material process updates; reporting or informational processes with no "
            "control impact.\n\n"
            "OUTPUT CONTRACT:\n"
            "Return only a valid JSON array. Each object must have:\n"
            "{\n"
            '  "name": string,\n'
            '  "description": string,\n'
            '  "priority": "Critical" | "High" | "Medium" | "Low",\n'
            '  "processObjective": string,\n'
            '  "triggerEvent": string,\n'
            '  "primaryActors": string,\n'
            '  "keyBusinessSteps": string,\n'
            '  "businessRules": string,\n'
            '  "upstreamSystems": string,\n'
            '  "downstreamSystems": string,\n'
            '  "regulatoryImpact": string,\n'
            '  "riskControlConsiderations": string\n'
            "}\n\n"
            "Rules:\n"
            "- Include only real, testable business processes from the document.\n"
            "- Do not include UI elements, modules, pages, buttons, or technical implementation details as processes.\n"
            "- If uncertain, exclude the item.\n"
            "- Do not wrap the output in markdown code fences.\n"
            "- No trailing commas.\n"
            "- Return JSON only."
        ),
        user='Document:\n"""{{document}}"""\n\n{{additional_instructions}}',
    ),
    PromptTemplate(
        name="process_matching",
        version="v1",
        description="Select the business processes relevant to a document",
        system=(
            "You are a precise assistant. Given the document below and a list of BUSINESS PROCESSES, "
            "RETURN A JSON ARRAY OF THE RELEVANT PROCESSES (by id).\n\n"
            "OUTPUT CONTRACT:\n"
            "- Strict JSON only. Do not wrap the output in markdown code fences.\n"
            '- Each object: "id", "name", "description", "priority".\n'
            '- "priority" is one of "Critical" | "High" | "Medium" | "Low".\n'
            '- Copy "id" and "name" exactly as listed.\n'
            "- If none clearly match, return the top 3 likely matches instead.\n"
            "- No trailing commas."
        ),
        user='DOCUMENT:\n"""{{document}}"""\n\nBUSINESS PROCESSES:\n{{process_list}}',
    ),
    PromptTemplate(
        name="scenario_generation",
        version="v1",
        description="Generate manual test scenarios for one business process",
        system=(
            "You are an expert QA engineer.\n"
            "Generate manual test scenarios only for the provided business process.\n"
            "Use only the provided business process details as source context.\n"
            "Every scenario must be practical, testable, and aligned to that business process only.\n\n"
            "OUTPUT CONTRACT:\n"
            "Output a JSON array only.\n"
            'Each item must include: "scenarioId" (string), "title" (string), "description" (string), '
            '"steps" (string[]), "expected_result" (string), "persona" (string), "objective" (string), '
            '"triggerPrecondition" (string), "scope" (string), "outOfScope" (string), '
            '"expectedBusinessOutcome" (string), "customerImpact" (string), "regulatorySensitivity" (string).\n'
            "Do not include markdown, code fences, or commentary.\n"
            "Each string must be <= 500 characters.\n"
            "No trailing commas."
        ),
        user=(
            "Project: {{project_label}}\n\n"
            "Selected business process (full details):\n\n"
            "{{process_details}}\n\n"
            "{{additional_instructions}}"
        ),
    ),
    PromptTemplate(
        name="test_case_generation",
        version="v1",
        description="Generate structured business test cases across scenarios",
        system=(
            "You are a senior banking QA specialist.\n\n"
            "You will receive structured input containing one or more Business Scenarios, each derived "
            "from a Business Process.\n\n"
            "Your task is to generate structured, human-readable, business-focused test cases strictly "
            "based on the provided scenarios.\n\n"
            "CRITICAL CONSTRAINTS:\n"
            "- Use only information explicitly provided in the Process and Scenario input.\n"
            "- Do NOT assume missing rules.\n"
            "- Do NOT introduce new business flows.\n"
            "- Do NOT reference UI elements, APIs, databases, or technical implementation.\n"
            "- Use clear business language only.\n"
            "- If a validation rule is not provided, do not invent one.\n"
            "- Each step must represent one clear business action.\n"
            "- Keep wording precise and professional.\n\n"
            "OUTPUT CONTRACT:\n"
            "RETURN ONLY valid JSON. Output must be a single flat JSON array.\n"
            "Do NOT include markdown, code fences, commentary, or extra text.\n\n"
            "Each test case object MUST follow this exact schema:\n"
            "{\n"
            '  "testCaseId": "<unique id>",\n'
            '  "scenarioIndex": <number>,\n'
            '  "scenarioId": "<SCENARIO_ID value or empty>",\n'
            '  "scenarioTitle": "<original scenario title>",\n'
            '  "businessProcess": "<BUSINESS_PROCESS value>",\n'
            '  "persona": "<business role>",\n'
            '  "title": "<short business-focused title>",\n'
            '  "description": "<brief explanation of what is being validated>",\n'
            '  "preRequisites": ["<business precondition>", "..."],\n'
            '  "testSteps": ["Step 1", "Step 2", "..."],\n'
            '  "expectedResult": "<clear business outcome including financial or state impact>",\n'
            '  "criticality": "Critical | High | Medium | Low",\n'
            '  "blocking": "Blocking | Non-Blocking",\n'
            '  "customerImpact": "<Yes/No with short explanation>",\n'
            '  "regulatorySensitivity": "<Yes/No with short explanation>"\n'
            "}\n\n"
            "COVERAGE RULES:\n"
            "- Minimum 4 test cases per scenario.\n"
            "- Maximum 10 test cases per scenario.\n"
            "- Include varied scenario-relevant coverage without using labels such as "
            '"happy path", "validation case", or "invalid input case" in test case titles.\n'
            "- Include at least one standard successful-flow case where applicable.\n"
            "- Include exception/negative coverage only when supported by provided business rules.\n"
            "- Include boundary coverage only when limits or thresholds are provided.\n"
            "- Generate Security or Performance cases only if explicitly implied in input.\n"
            "- Do not fabricate compliance checks unless Regulatory Impact is specified.\n\n"
            "ALIGNMENT RULES:\n"
            "- All test cases must strictly align with the scenario's BUSINESS_PROCESS.\n"
            "- Do not introduce new business functionality.\n"
            "- Derive validations only from the scenario's stated rules.\n"
            "- Ensure expectedResult reflects business impact (balance change, approval trigger, "
            "status change, notification, compliance action, etc.).\n\n"
            "FORMATTING RULES:\n"
            "- Each string must be <= 200 characters.\n"
            "- Steps must be action-oriented and sequential.\n"
            "- No trailing commas.\n"
            "- No additional fields.\n"
            "- Output must be valid parsable JSON."
        ),
        user="INPUT SCENARIOS:\n{{scenario_blocks}}\n\n{{additional_instructions}}",
    ),
    PromptTemplate(
        name="test_code_generation",
        version="v1",
        description="Generate runnable test code for one scenario or test case",
        system=(
            "You are an expert QA engineer. Generate runnable test code.\n\n"
            "OUTPUT CONTRACT:\n"
            "- Return the generated test code only.\n"
            "- Do NOT include commentary or explanations outside code comments.\n"
            "- Do NOT wrap the code in markdown code fences.\n"
            "- Use only the framework and language given below."
        ),
        user=(
            "Project ID: {{project_id}}\n"
            "Framework: {{framework}}\n"
            "Language: {{language}}\n"
            "Business Process: {{business_process}}\n"
            "{{subject_block}}\n\n"
            "{{file_context}}\n\n"
            "{{additional_instructions}}"
        ),
    ),
]
