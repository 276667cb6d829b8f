"""
Prompt builders — deterministic, size-bounded prompt strings per stage.

Each builder takes plain data (document text, record dicts, request
items) and returns a string. Document text is cut to a fixed prefix;
every record field is capped independently so an earlier stage's
verbose output cannot blow up a later prompt. Caller "additional
instructions" are appended verbatim at the end.
"""

from qaforge.ai.prompt_registry import PromptRegistry

# Document size caps (characters)
BP_DOC_CHARS = 8000
MATCH_DOC_CHARS = 9000

# Per-field caps for process details
FIELD_CAP = 2000
LONG_FIELD_CAP = 3000
_LONG_FIELDS = {"key_business_steps", "business_rules"}

MATCH_DESCRIPTION_CHARS = 200

# Business-process fields rendered into scenario prompts, in order
_PROCESS_PROMPT_FIELDS = (
    ("name", "name"),
    ("description", "description"),
    ("priority", "priority"),
    ("process_objective", "processObjective"),
    ("trigger_event", "triggerEvent"),
    ("primary_actors", "primaryActors"),
    ("key_business_steps", "keyBusinessSteps"),
    ("business_rules", "businessRules"),
    ("upstream_systems", "upstreamSystems"),
    ("downstream_systems", "downstreamSystems"),
    ("regulatory_impact", "regulatoryImpact"),
    ("risk_control_considerations", "riskControlConsiderations"),
)

# Scenario fields rendered into the batched test-case prompt, in order
_SCENARIO_PROMPT_FIELDS = (
    ("business_process_name", "BUSINESS_PROCESS"),
    ("scenario_ref", "SCENARIO_CODE"),
    ("title", "TITLE"),
    ("description", "DESCRIPTION"),
    ("persona", "PERSONA"),
    ("objective", "OBJECTIVE"),
    ("trigger_precondition", "TRIGGER_PRECONDITION"),
    ("scope", "SCOPE"),
    ("out_of_scope", "OUT_OF_SCOPE"),
    ("expected_business_outcome", "EXPECTED_BUSINESS_OUTCOME"),
    ("customer_impact", "CUSTOMER_IMPACT"),
    ("regulatory_sensitivity", "REGULATORY_SENSITIVITY"),
)

def truncate(text, limit: int) -> str:
    text = text or ""
    return text[:limit] if len(text) > limit else text


def _one_line(value) -> str:
    return str(value or "").replace("\r", " ").replace("\n", " ")


def _additional(instructions, heading: str = "Additional instructions:") -> str:
    if not instructions or not str(instructions).strip():
        return ""
    return f"{heading}\n{instructions}"


# ── Stage 1: business processes ─────────────────────────────────────────────

def build_business_process_prompt(document: str, additional_instructions: str | None = None,
                                  *, registry: PromptRegistry) -> str:
    return registry.render_text(
        "business_process_extraction",
        document=truncate(document, BP_DOC_CHARS),
        additional_instructions=_additional(additional_instructions),
    )


# ── Match regeneration ───────────────────────────────────────────────────────

def format_process_list(processes: list[dict]) -> str:
    """``1. id=.. name=".." desc=".." priority=..`` lines for the matching prompt."""
    lines = []
    for i, bp in enumerate(processes, start=1):
        desc = truncate(_one_line(bp.get("description")), MATCH_DESCRIPTION_CHARS)
        lines.append(
            f'{i}. id={bp.get("id")} name="{_one_line(bp.get("name"))}" '
            f'desc="{desc}" priority={bp.get("priority") or "Medium"}'
        )
    return "\n".join(lines)


def build_matching_prompt(document: str, processes: list[dict],
                          *, registry: PromptRegistry) -> str:
    return registry.render_text(
        "process_matching",
        document=truncate(document, MATCH_DOC_CHARS),
        process_list=format_process_list(processes),
    )


# ── Stage 2: scenarios ──────────────────────────────────────────────────────

def format_process_details(bp: dict) -> str:
    """Every business-process field as ``field="value"``, each independently capped."""
    lines = []
    for attr, label in _PROCESS_PROMPT_FIELDS:
        cap = LONG_FIELD_CAP if attr in _LONG_FIELDS else FIELD_CAP
        value = bp.get(attr) or ("Medium" if attr == "priority" else "")
        lines.append(f'{label}="{truncate(str(value), cap)}"')
    return "\n".join(lines)


def build_scenario_prompt(bp: dict, project_label: str, additional_instructions: str | None = None,
                          *, registry: PromptRegistry) -> str:
    return registry.render_text(
        "scenario_generation",
        project_label=project_label,
        process_details=format_process_details(bp),
        additional_instructions=_additional(additional_instructions),
    )


# ── Stage 3: test cases ─────────────────────────────────────────────────────

def format_scenario_block(index: int, scenario: dict) -> str:
    """One ``SCENARIO_INDEX:i::SCENARIO_ID:..::...`` record for the test-case prompt."""
    parts = [f"SCENARIO_INDEX:{index}", f"SCENARIO_ID:{scenario.get('id') or ''}"]
    for attr, label in _SCENARIO_PROMPT_FIELDS:
        parts.append(f"{label}:{truncate(_one_line(scenario.get(attr)), FIELD_CAP)}")
    steps = "\n".join(
        f"{n}. {truncate(str(step), FIELD_CAP)}"
        for n, step in enumerate(scenario.get("steps") or [], start=1)
    )
    parts.append(f"STEPS:{steps}")
    parts.append(f"EXPECTED:{truncate(_one_line(scenario.get('expected_result')), FIELD_CAP)}")
    return "::".join(parts)


def build_test_case_prompt(scenarios: list[dict], additional_instructions: str | None = None,
                           *, registry: PromptRegistry) -> str:
    blocks = "\n\n---\n\n".join(format_scenario_block(i, s) for i, s in enumerate(scenarios))
    return registry.render_text(
        "test_case_generation",
        scenario_blocks=blocks,
        additional_instructions=_additional(additional_instructions, "ADDITIONAL USER INSTRUCTIONS:"),
    )


# ── Stage 4: test code ──────────────────────────────────────────────────────

def format_test_case_subject(item: dict, scenario_title: str, bp_name: str) -> str:
    steps = " -> ".join(item.get("steps") or [])
    return (
        f"Test Scenario: {scenario_title}\n"
        "Selected Test Case (full details):\n"
        f"- Test Case ID: {item.get('test_case_ref', '')}\n"
        f"- Title: {item.get('title', '')}\n"
        f"- Business Process: {bp_name}\n"
        f"- Description: {truncate(item.get('description'), FIELD_CAP)}\n"
        f"- Persona: {truncate(item.get('persona'), FIELD_CAP)}\n"
        f"- Pre-Requisites: {truncate(item.get('pre_requisites'), FIELD_CAP)}\n"
        f"- Steps: {truncate(steps, LONG_FIELD_CAP)}\n"
        f"- Expected Result: {truncate(item.get('expected_result'), FIELD_CAP)}\n"
        f"- Criticality: {item.get('criticality', '')}\n"
        f"- Blocking Type: {item.get('blocking_type', '')}\n"
        f"- Customer Impact: {truncate(item.get('customer_impact'), FIELD_CAP)}\n"
        f"- Regulatory Sensitivity: {truncate(item.get('regulatory_sensitivity'), FIELD_CAP)}\n"
        "Use ONLY the above selected test-case details for code generation. "
        "Do NOT use uploaded documents/files."
    )


def format_scenario_subject(item: dict) -> str:
    steps = " -> ".join(item.get("steps") or [])
    return (
        f"Scenario: {item.get('title', '')}\n"
        f"Description: {truncate(item.get('description'), FIELD_CAP)}\n"
        f"Steps: {truncate(steps, LONG_FIELD_CAP)}\n"
        f"Expected: {truncate(item.get('expected_result'), FIELD_CAP)}"
    )


def build_test_code_prompt(item: dict, *, project_id: str, framework: str, language: str,
                           test_case_mode: bool, scenario_title: str, bp_name: str,
                           file_context: str = "", additional_instructions: str | None = None,
                           registry: PromptRegistry) -> str:
    if test_case_mode:
        subject = format_test_case_subject(item, scenario_title, bp_name)
        file_context = ""
    else:
        subject = format_scenario_subject(item)
    return registry.render_text(
        "test_code_generation",
        project_id=project_id,
        framework=framework,
        language=language,
        business_process=bp_name,
        subject_block=subject,
        file_context=f"Reference documents:\n{file_context}" if file_context else "",
        additional_instructions=_additional(additional_instructions, "Additional user prompt:"),
    )
