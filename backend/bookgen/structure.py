"""
BookGen V1.0 - Outline Generation
=================================
The one structured step. The model must answer with JSON matching
``BookStructure`` at the session's exact counts:

    1. ask for the outline
    2. if it does not parse/validate, ask once more with a corrective suffix
       naming the failing fields
    3. if it still fails, fill every missing or invalid field with a
       deterministic placeholder ("Unit N", "Subtopic N", ...) and carry on

Step 3 is logged as a warning listing the repaired fields; it never raises.
"""

from __future__ import annotations

import json

import regex as re

from bookgen import prompts
from bookgen.state import (
    BookStructure,
    Session,
    StructureIssue,
    StructureValidation,
    parse_outline,
    shape_context,
)
from bookgen.steps import call_llm

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def extract_json(raw: str):
    """Parse the first JSON object in a response, tolerating code fences and prose around it."""
    text = _FENCE_RE.sub("", raw.strip()).strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("no JSON object found in response")
    return json.loads(text[start : end + 1])


def validate_response(raw: str, config) -> tuple[object, StructureValidation]:
    try:
        data = extract_json(raw)
    except ValueError as e:
        # json.JSONDecodeError is a ValueError subclass
        return None, StructureValidation(issues=[StructureIssue("<json>", str(e))])
    return data, parse_outline(data, config)


def _clean(value) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _pick(data: dict, *keys):
    for key in keys:
        if key in data:
            return data[key]
    return None


def _as_list(value) -> list:
    return value if isinstance(value, list) else []


def _fill_titles(raw_items, count: int, placeholder: str, where: str, repaired: list[str]) -> list[str]:
    items = _as_list(raw_items)
    if len(items) > count:
        repaired.append(f"{where} (truncated {len(items)} → {count})")
    out = []
    for i in range(count):
        value = _clean(items[i]) if i < len(items) else None
        if value is None:
            value = f"{placeholder} {i + 1}"
            repaired.append(f"{where}[{i}]")
        out.append(value)
    return out


def repair_outline(data, topic: str, config) -> tuple[BookStructure, list[str]]:
    """Best-effort outline at exactly the configured counts. Returns it with the repaired field list."""
    data = data if isinstance(data, dict) else {}
    repaired: list[str] = []

    title = _clean(data.get("title"))
    if title is None:
        title = topic.strip() or "Untitled"
        repaired.append("title")

    raw_units = _as_list(data.get("units"))
    if len(raw_units) > config.unit_count:
        repaired.append(f"units (truncated {len(raw_units)} → {config.unit_count})")

    units = []
    for u in range(config.unit_count):
        raw_unit = raw_units[u] if u < len(raw_units) and isinstance(raw_units[u], dict) else {}
        unit_title = _clean(_pick(raw_unit, "unit_title", "unitTitle"))
        if unit_title is None:
            unit_title = f"Unit {u + 1}"
            repaired.append(f"units[{u}].unit_title")
        subtopics = _fill_titles(
            raw_unit.get("subtopics"),
            config.subtopics_per_unit,
            "Subtopic",
            f"units[{u}].subtopics",
            repaired,
        )
        units.append({"unit_title": unit_title, "subtopics": subtopics})

    capstones = _fill_titles(
        _pick(data, "capstone_topics", "capstoneTopics"),
        config.capstone_count,
        "Capstone Project",
        "capstone_topics",
        repaired,
    )
    case_studies = _fill_titles(
        _pick(data, "case_study_topics", "caseStudyTopics"),
        config.case_study_count,
        "Case Study",
        "case_study_topics",
        repaired,
    )

    structure = BookStructure.model_validate(
        {
            "title": title,
            "units": units,
            "capstone_topics": capstones,
            "case_study_topics": case_studies,
        },
        context=shape_context(config),
    )
    return structure, repaired


async def generate_structure(session: Session, llm) -> BookStructure:
    config = session.config
    user_prompt = prompts.build_structure_prompt(session.topic, config)

    raw = await call_llm(
        session,
        llm,
        label="structure",
        user_prompt=user_prompt,
        system_prompt=prompts.SYSTEM_PROMPT_STRUCTURE,
        max_tokens=2000,
        temperature=0.2,
    )
    data, validation = validate_response(raw, config)
    if validation.ok:
        return validation.structure

    issues = [str(i) for i in validation.issues]
    print(f"[Structure] ⚠️ Outline failed validation ({len(issues)} issues), retrying with corrective prompt")

    raw = await call_llm(
        session,
        llm,
        label="structure corrective",
        user_prompt=f"{user_prompt}\n\n{prompts.build_structure_retry_suffix(config, issues)}",
        system_prompt=prompts.SYSTEM_PROMPT_STRUCTURE,
        max_tokens=2000,
        temperature=0.2,
    )
    retry_data, validation = validate_response(raw, config)
    if validation.ok:
        return validation.structure

    best = retry_data if isinstance(retry_data, dict) else data
    structure, repaired = repair_outline(best, session.topic, config)
    print(f"[Structure] ⚠️ Outline repaired with placeholders: {', '.join(repaired) or 'none'}")
    return structure
