"""
Test-case coverage floor.

Every scenario of a test-case generation run ends up with at least
``MIN_CASES_PER_SCENARIO`` cases:

    - model returned some cases → top each scenario up from the four
      augmentation templates (source="ai_augmented")
    - model returned nothing usable → six fixed templates per scenario
      (source="fallback")

Synthesised cases are seeded from the scenario's own steps and expected
result so they stay recognisably tied to it.
"""

import logging

from qaforge.ai.normalizer import build_case, strip_label_prefix

logger = logging.getLogger(__name__)

MIN_CASES_PER_SCENARIO = 4

_NOT_SPECIFIED = "No - not explicitly specified."


def _scenario_title(scenario: dict, index: int) -> str:
    return scenario.get("title") or f"Scenario {index + 1}"


def _base_steps(scenario: dict) -> list[str]:
    steps = list(scenario.get("steps") or [])
    return steps if steps else ["Perform the main user flow described in the scenario"]


def _leading_steps(scenario: dict) -> list[str]:
    """All but the last scenario step (at least one), used before a deviation."""
    steps = list(scenario.get("steps") or [])
    if not steps:
        return ["Start the flow"]
    return steps[: max(1, len(steps) - 1)]


def _augment_templates(scenario: dict, title: str) -> list[dict]:
    return [
        {
            "title": f"{title} - standard business flow",
            "steps": _base_steps(scenario),
            "expected_result": scenario.get("expected_result") or "Expected outcome occurs",
        },
        {
            "title": f"{title} - missing mandatory information",
            "steps": _leading_steps(scenario) + ["Leave a required field empty", "Submit the form"],
            "expected_result": "Validation error shown and submission prevented",
        },
        {
            "title": f"{title} - malformed business input",
            "steps": _leading_steps(scenario) + ["Enter malformed/invalid data", "Submit"],
            "expected_result": "Appropriate error message shown and no success condition",
        },
        {
            "title": f"{title} - boundary business limits",
            "steps": _leading_steps(scenario) + ["Enter maximum length values or boundary numbers", "Submit"],
            "expected_result": "System handles boundary values without error",
        },
    ]


def ensure_minimum_coverage(cases: list[dict], scenarios: list[dict],
                            minimum: int = MIN_CASES_PER_SCENARIO) -> list[dict]:
    """Return ``cases`` plus augmentation cases for under-covered scenarios."""
    counts: dict[int, int] = {}
    titles: dict[int, set[str]] = {}
    for case in cases:
        sid = case["scenario_id"]
        counts[sid] = counts.get(sid, 0) + 1
        titles.setdefault(sid, set()).add(case["title"].lower())

    additional = []
    seen_ids = set()
    for i, scenario in enumerate(scenarios):
        sid = scenario.get("id")
        if sid is None or sid in seen_ids:
            continue
        seen_ids.add(sid)

        needed = minimum - counts.get(sid, 0)
        if needed <= 0:
            continue

        title = _scenario_title(scenario, i)
        templates = _augment_templates(scenario, title)
        existing = titles.setdefault(sid, set())
        k = 0
        while needed > 0:
            tpl = templates[k % len(templates)]
            case_title = strip_label_prefix(tpl["title"], title)
            if k >= len(templates):
                case_title = f"{case_title} ({k // len(templates) + 1})"
            k += 1
            if case_title.lower() in existing:
                continue
            existing.add(case_title.lower())
            additional.append(build_case(
                scenario,
                title=case_title,
                source="ai_augmented",
                description="Additional coverage case generated for minimum scenario completeness.",
                steps=tpl["steps"],
                expected_result=tpl["expected_result"],
                customer_impact="Yes - impacts business flow result.",
                regulatory_sensitivity=_NOT_SPECIFIED,
            ))
            needed -= 1

    if additional:
        logger.info("Augmented %d test cases to reach %d per scenario", len(additional), minimum)
    return cases + additional


def synthesize_fallback_cases(scenarios: list[dict]) -> list[dict]:
    """Six templated cases per scenario, used when the model produced none."""
    cases = []
    seen_ids = set()
    for i, scenario in enumerate(scenarios):
        sid = scenario.get("id")
        if sid is None or sid in seen_ids:
            continue
        seen_ids.add(sid)

        title = _scenario_title(scenario, i)
        leading = _leading_steps(scenario)

        def case(suffix, **fields):
            return build_case(scenario, title=f"{title} - {suffix}", source="fallback", **fields)

        cases.extend([
            case(
                "standard business flow",
                description="Validate end-to-end flow with valid business inputs.",
                steps=_base_steps(scenario),
                expected_result=scenario.get("expected_result") or "Expected business outcome occurs.",
                criticality="High",
                blocking_type="Blocking",
                customer_impact="Yes - impacts customer transaction outcome.",
                regulatory_sensitivity=_NOT_SPECIFIED,
            ),
            case(
                "missing mandatory information",
                description="Validate business rejection when required information is missing.",
                steps=leading + ["Leave required business information empty", "Submit for processing"],
                expected_result="Business validation fails and processing is prevented.",
                criticality="High",
                blocking_type="Blocking",
                customer_impact="Yes - request cannot proceed.",
                regulatory_sensitivity=_NOT_SPECIFIED,
            ),
            case(
                "malformed business input",
                description="Validate rejection of malformed business input values.",
                steps=leading + ["Provide malformed business data", "Submit for processing"],
                expected_result="Request is rejected and no business state change occurs.",
                customer_impact="Yes - request is rejected.",
                regulatory_sensitivity=_NOT_SPECIFIED,
            ),
            case(
                "boundary business limits",
                description="Validate correct handling of boundary business limits.",
                steps=leading + ["Use boundary business values", "Submit for processing"],
                expected_result="Boundary values are handled as per business rules.",
                customer_impact="Yes - may affect transaction acceptance.",
                regulatory_sensitivity=_NOT_SPECIFIED,
            ),
            case(
                "unauthorized attempt",
                description="Validate business controls for unauthorized attempt.",
                pre_requisites="Actor is not authorized for this process.",
                steps=["Attempt to perform the business action without required authorization."],
                expected_result="Action is denied and no business state changes.",
                criticality="High",
                blocking_type="Blocking",
                customer_impact="No - unauthorized request is blocked.",
                regulatory_sensitivity="Yes - control enforcement may be required.",
            ),
            case(
                "repeated execution stability",
                description="Validate business continuity under repeated valid requests.",
                steps=["Perform the core business action repeatedly within a short interval."],
                expected_result="Business outcomes remain consistent without processing failure.",
                customer_impact="Yes - poor performance can affect customer outcomes.",
                regulatory_sensitivity=_NOT_SPECIFIED,
            ),
        ])

    logger.info("Synthesised %d fallback test cases for %d scenarios", len(cases), len(seen_ids))
    return cases
