"""
Generation pipelines — extractor → prompt builder → gateway → parser →
normalizer → hierarchy reconciler.

Each pipeline runs inside the project's lock and calls the generation
client sequentially. Failure policy per stage:

    business processes   call failure → GenerationError
    match regeneration   call failure → local-only scoring; persistence errors logged
    scenarios            call failure → GenerationError; empty parse → ArtifactParseError
    test code            call failure captured per item, never raised
    test cases           call failure or empty parse → templated fallback cases
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from qaforge.ai import get_gateway, get_registry
from qaforge.ai import prompt_builder
from qaforge.ai.coverage import ensure_minimum_coverage, synthesize_fallback_cases
from qaforge.ai.normalizer import (
    normalize_business_processes,
    normalize_request_item,
    normalize_scenarios,
    normalize_test_cases,
)
from qaforge.ai.response_parser import coerce_list, parse_llm_json
from qaforge.core.exceptions import ArtifactParseError, GenerationError, ValidationError
from qaforge.models import db
from qaforge.models.business_process import BP_WIRE_FIELDS, BusinessProcess
from qaforge.models.project_file import ProjectFile
from qaforge.models.scenario import Scenario
from qaforge.services import hierarchy_service as hierarchy
from qaforge.services.process_matcher import merge_matches, tokenize
from qaforge.services.text_extractor import build_file_context, extract_text

logger = logging.getLogger(__name__)

RECENT_FILES_LIMIT = 20

# Per-stage sampling settings: (temperature, max_tokens)
BP_SETTINGS = (0.0, 1500)
MATCH_SETTINGS = (0.0, 1500)
SCENARIO_SETTINGS = (0.1, 1800)
TEST_CASE_SETTINGS = (0.0, 8000)
CODE_SETTINGS = (0.2, 2000)

_HASH_COMMENT_LANGUAGES = {"python", "ruby"}


def _gateway(gateway):
    return gateway if gateway is not None else get_gateway()


def _registry(registry):
    return registry if registry is not None else get_registry()


# ═════════════════════════════════════════════════════════════════════════════
# Uploads
# ═════════════════════════════════════════════════════════════════════════════

def store_upload(project_id: str, data: bytes, filename: str, mimetype: str) -> ProjectFile:
    """Persist an uploaded document as the project's next version."""
    count = ProjectFile.query.filter_by(project_id=project_id).count()
    record = ProjectFile(
        project_id=project_id,
        filename=filename,
        mimetype=mimetype or "application/octet-stream",
        size=len(data),
        data=data,
        version=f"v{count + 1}.0",
        process_count=0,
    )
    db.session.add(record)
    db.session.commit()
    logger.info("Stored upload %s %s", record.filename, record.version, extra={"project_id": project_id})
    return record


def list_files(project_id: str) -> list[ProjectFile]:
    return (
        ProjectFile.query
        .filter_by(project_id=project_id)
        .order_by(ProjectFile.uploaded_at.asc(), ProjectFile.id.asc())
        .all()
    )


def _recent_files(project_id: str, limit: int | None = None):
    query = (
        ProjectFile.query
        .filter_by(project_id=project_id)
        .order_by(ProjectFile.uploaded_at.desc(), ProjectFile.id.desc())
    )
    if limit:
        query = query.limit(limit)
    return query.all()


# ═════════════════════════════════════════════════════════════════════════════
# Stage 1: business processes
# ═════════════════════════════════════════════════════════════════════════════

def generate_business_processes(project_id: str, data: bytes, mimetype: str = "", filename: str = "",
                                additional_instructions: str | None = None,
                                *, gateway=None, registry=None) -> list[BusinessProcess]:
    """Upload event: extract processes from ``data`` and make them the matched batch.

    Raises:
        GenerationError: the generation call failed.
    """
    document = extract_text(data, mimetype, filename)
    prompt = prompt_builder.build_business_process_prompt(
        document, additional_instructions, registry=_registry(registry),
    )
    temperature, max_tokens = BP_SETTINGS

    with hierarchy.project_lock(project_id):
        text = _gateway(gateway).generate(
            prompt, temperature=temperature, max_tokens=max_tokens,
            purpose="business_process_extraction", project_id=project_id,
        )
        items = normalize_business_processes(coerce_list(parse_llm_json(text), ("processes", "items")))
        return hierarchy.replace_business_process_batch(project_id, items, source="openai_upload")


def upload_document(project_id: str, data: bytes, filename: str, mimetype: str,
                    *, gateway=None, registry=None) -> tuple[ProjectFile, list[BusinessProcess]]:
    """Store the file, then run business-process generation from it.

    The stored file survives a generation failure; the raised
    ``GenerationError`` carries it as ``file_record``.
    """
    record = store_upload(project_id, data, filename, mimetype)
    try:
        processes = generate_business_processes(
            project_id, data, mimetype, filename, gateway=gateway, registry=registry,
        )
    except GenerationError as exc:
        error = GenerationError("File uploaded but failed to generate business processes", cause=exc.cause)
        error.file_record = record
        raise error from exc
    record.process_count = len(processes)
    db.session.commit()
    return record, processes


# ═════════════════════════════════════════════════════════════════════════════
# Match regeneration
# ═════════════════════════════════════════════════════════════════════════════

def regenerate_matches(project_id: str, data: bytes, mimetype: str = "", filename: str = "",
                       *, gateway=None, registry=None) -> dict:
    """Re-score the project's processes against a new document.

    Returns ``{"branch", "matchedCount", "items"}``; ``note`` is set when the
    project has no processes to match.
    """
    document = extract_text(data, mimetype, filename)

    with hierarchy.project_lock(project_id):
        candidates = [
            {"id": bp.id, "name": bp.name, "description": bp.description or "",
             "priority": bp.priority or "Medium"}
            for bp in (
                BusinessProcess.query
                .filter_by(project_id=project_id)
                .order_by(BusinessProcess.id.desc())
                .all()
            )
        ]
        if not candidates:
            return {"branch": "local_only", "matchedCount": 0, "items": [],
                    "note": "No business processes found"}

        prompt = prompt_builder.build_matching_prompt(document, candidates, registry=_registry(registry))
        temperature, max_tokens = MATCH_SETTINGS
        llm_items = None
        try:
            text = _gateway(gateway).generate(
                prompt, temperature=temperature, max_tokens=max_tokens,
                purpose="process_matching", project_id=project_id,
            )
            parsed = parse_llm_json(text)
            if isinstance(parsed, list):
                llm_items = parsed
        except GenerationError as exc:
            logger.warning("Match regeneration falling back to local scoring: %s", exc,
                           extra={"project_id": project_id})

        merged = merge_matches(candidates, tokenize(document), llm_items)
        branch = "openai_plus_local" if llm_items is not None else "local_only"

        matched_count = len(merged)
        try:
            matched_count = hierarchy.upsert_matched_processes(project_id, merged)
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Persisting regenerated matches failed: %s", exc, extra={"project_id": project_id})

    return {"branch": branch, "matchedCount": matched_count, "items": merged}


# ═════════════════════════════════════════════════════════════════════════════
# Stage 2: scenarios
# ═════════════════════════════════════════════════════════════════════════════

def _process_prompt_fields(bp: BusinessProcess) -> dict:
    fields = {attr: getattr(bp, attr) or "" for attr in BP_WIRE_FIELDS}
    fields["id"] = bp.id
    return fields


def generate_scenarios(project_id: str, bp_ids, prompt: str | None = None,
                       *, gateway=None, registry=None) -> dict:
    """Selection event plus one scenario-generation call per selected process.

    Processes are handled strictly in sequence. Scenarios of processes
    finished before a failure stay committed.

    Raises:
        ValidationError: no ids given, or none of them is a matched process.
        GenerationError: a generation call failed.
        ArtifactParseError: a call returned no usable scenarios.
    """
    if not isinstance(bp_ids, list) or not bp_ids:
        raise ValidationError("bpIds array required")

    gateway = _gateway(gateway)
    registry = _registry(registry)
    temperature, max_tokens = SCENARIO_SETTINGS

    with hierarchy.project_lock(project_id):
        processes = hierarchy.select_business_processes(project_id, bp_ids)
        source_files = [f.filename for f in _recent_files(project_id, RECENT_FILES_LIMIT) if f.filename]
        hierarchy.clear_scenarios(project_id)

        inserted: list[Scenario] = []
        for bp in processes:
            text_prompt = prompt_builder.build_scenario_prompt(
                _process_prompt_fields(bp), project_id, prompt, registry=registry,
            )
            logger.info("Generating scenarios for process %s", bp.id, extra={"project_id": project_id})
            try:
                text = gateway.generate(
                    text_prompt, temperature=temperature, max_tokens=max_tokens,
                    purpose="scenario_generation", project_id=project_id,
                )
            except GenerationError as exc:
                raise GenerationError("OpenAI call failed while generating scenarios", cause=exc.cause) from exc

            items = normalize_scenarios(coerce_list(parse_llm_json(text), ("scenarios", "items")))
            if not items:
                raise ArtifactParseError(
                    f"Failed to parse scenarios from OpenAI for BP: {bp.name or bp.id}", raw=text,
                )
            inserted.extend(hierarchy.insert_scenarios(project_id, bp, items))

        if not inserted:
            raise ArtifactParseError("No scenarios generated for selected business processes")

    return {
        "count": len(inserted),
        "scenarioCount": len(inserted),
        "businessProcessCount": len(processes),
        "sourceFiles": source_files,
        "scenarios": inserted,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Stage 3/4: test code and test cases
# ═════════════════════════════════════════════════════════════════════════════

def _comment_prefix(language: str) -> str:
    return "#" if (language or "").strip().lower() in _HASH_COMMENT_LANGUAGES else "//"


def _code_header(language: str, bp_name: str, scenario_title: str, case_title: str) -> str:
    return (
        f"{_comment_prefix(language)} Business Process: {bp_name or 'N/A'}, "
        f"Test Scenario: {scenario_title or 'N/A'}, Test Case: {case_title or 'N/A'}"
    )


def _enrich_from_store(project_id: str, items: list[dict]) -> list[dict]:
    """Bind request scenarios to the project's stored rows.

    Ids that are not a stored Scenario of ``project_id`` (deleted by a newer
    scenario run, or owned by another project) are cleared, so no test case
    is generated for them. Process linkage always comes from the stored row.
    """
    ids = [item["id"] for item in items if item.get("id") is not None]
    stored = {}
    if ids:
        stored = {
            sc.id: sc for sc in
            Scenario.query.filter(Scenario.project_id == project_id, Scenario.id.in_(ids)).all()
        }
    for item in items:
        if item.get("id") is None:
            continue
        sc = stored.get(item["id"])
        if sc is None:
            logger.info("Ignoring unknown scenario id %s", item["id"], extra={"project_id": project_id})
            item["id"] = None
            continue
        item["business_process_id"] = sc.business_process_id
        if not item.get("business_process_name"):
            item["business_process_name"] = sc.business_process_name or ""
        if not item.get("title"):
            item["title"] = sc.title
    return items


def generate_code(project_id: str, items: list[dict], *, framework: str, language: str,
                  test_case_mode: bool, file_context: str = "", prompt: str | None = None,
                  gateway=None, registry=None) -> list[dict]:
    """One code-generation call per item; failures are recorded on the item's output."""
    gateway = _gateway(gateway)
    registry = _registry(registry)
    temperature, max_tokens = CODE_SETTINGS

    outputs = []
    for item in items:
        bp_name = item.get("business_process_name") or "Unknown business process"
        scenario_title = item.get("scenario_title") or item.get("title") or "Untitled Scenario"
        case_title = (item.get("title") or "Untitled Test Case") if test_case_mode else ""

        output = {
            "scenarioId": item.get("id"),
            "testCaseId": item.get("id") if test_case_mode else None,
            "scenarioTitle": scenario_title,
            "title": case_title if test_case_mode else item.get("title"),
        }
        if test_case_mode:
            output["testCaseTitle"] = case_title

        text_prompt = prompt_builder.build_test_code_prompt(
            item,
            project_id=project_id,
            framework=framework,
            language=language,
            test_case_mode=test_case_mode,
            scenario_title=scenario_title,
            bp_name=bp_name,
            file_context=file_context,
            additional_instructions=prompt,
            registry=registry,
        )
        try:
            raw_code = gateway.generate(
                text_prompt, temperature=temperature, max_tokens=max_tokens,
                purpose="test_code_generation", project_id=project_id,
            )
            header = _code_header(language, bp_name, scenario_title, case_title)
            output["code"] = f"{header}\n{raw_code}"
        except GenerationError as exc:
            logger.warning("Code generation failed for %r: %s", output["title"], exc.cause,
                           extra={"project_id": project_id})
            output["code"] = None
            output["error"] = exc.cause
        outputs.append(output)
    return outputs


def generate_test_cases(project_id: str, scenarios: list[dict], prompt: str | None = None,
                        *, gateway=None, registry=None) -> tuple[list[dict], str]:
    """Batched test-case generation with fallback and coverage floor.

    Returns the case dicts to persist and the raw model output (or the
    error message when the call failed).
    """
    text_prompt = prompt_builder.build_test_case_prompt(scenarios, prompt, registry=_registry(registry))
    temperature, max_tokens = TEST_CASE_SETTINGS
    try:
        raw = _gateway(gateway).generate(
            text_prompt, temperature=temperature, max_tokens=max_tokens,
            purpose="test_case_generation", project_id=project_id,
        )
        parsed = coerce_list(parse_llm_json(raw), ("testCases", "items"))
    except GenerationError as exc:
        logger.error("Test-case generation failed: %s", exc.cause, extra={"project_id": project_id})
        raw, parsed = exc.cause, []

    cases = normalize_test_cases(parsed, scenarios)
    if not cases:
        logger.info("No usable generated test cases; using fallback templates",
                    extra={"project_id": project_id})
        return synthesize_fallback_cases(scenarios), raw
    return ensure_minimum_coverage(cases, scenarios), raw


def generate_tests(project_id: str, payload: dict, *, gateway=None, registry=None) -> dict:
    """Code generation for scenarios or test cases.

    Test-case mode (``mode == "test-cases"``) only reconciles success flags
    of the selected test cases. Scenario mode additionally replaces the
    project's test cases with a freshly generated set.

    Raises:
        ValidationError: framework, language or scenarios missing.
    """
    payload = payload or {}
    framework = payload.get("framework")
    language = payload.get("language")
    raw_items = payload.get("scenarios")
    if not framework or not language or not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("framework, language and scenarios are required")

    prompt = payload.get("prompt")
    test_case_mode = str(payload.get("mode") or "").lower() == "test-cases"
    items = [normalize_request_item(item) for item in raw_items]

    with hierarchy.project_lock(project_id):
        if test_case_mode:
            codes = generate_code(
                project_id, items, framework=str(framework), language=str(language),
                test_case_mode=True, prompt=prompt, gateway=gateway, registry=registry,
            )
            selected = [item["id"] for item in items if item.get("id") is not None]
            succeeded = [
                out["testCaseId"] for out in codes
                if out.get("testCaseId") is not None and out.get("code") and not out.get("error")
            ]
            hierarchy.apply_code_generation_results(project_id, selected, succeeded)
            hierarchy.recompute_success_flags(project_id)
            return {"mode": "test-cases", "codes": codes}

        items = _enrich_from_store(project_id, items)
        file_context = build_file_context(_recent_files(project_id))
        codes = generate_code(
            project_id, items, framework=str(framework), language=str(language),
            test_case_mode=False, file_context=file_context, prompt=prompt,
            gateway=gateway, registry=registry,
        )

        cases, raw = generate_test_cases(project_id, items, prompt, gateway=gateway, registry=registry)
        inserted = hierarchy.replace_test_cases(project_id, cases)
        hierarchy.reset_after_test_case_generation(project_id)

    return {"codes": codes, "testCases": [tc.to_dict() for tc in inserted], "raw": raw}
