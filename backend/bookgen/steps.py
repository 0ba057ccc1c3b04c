"""
BookGen V1.0 - Generation Steps
===============================
Single-purpose async steps. Each builds a prompt, issues one rate-limited
call (two for a subtopic whose first draft lacks a visual), records the call
against the session budget and returns trimmed text.

Steps do not retry. The orchestrator wraps each one in ``retry``.
"""

from __future__ import annotations

import asyncio

from bookgen import prompts
from bookgen.budget import record_call
from bookgen.errors import AbortError
from bookgen.state import Session, touch
from bookgen.visual_validator import validate_visuals

MICRO_SUMMARY_EXCERPT_CHARS = 1000


async def call_llm(
    session: Session,
    llm,
    *,
    label: str,
    user_prompt: str,
    max_tokens: int,
    temperature: float,
    model: str | None = None,
    system_prompt: str = prompts.SYSTEM_PROMPT,
) -> str:
    """One budgeted call. Every attempt counts, successful or not."""
    if session.config.min_call_interval > 0:
        await asyncio.sleep(session.config.min_call_interval)

    try:
        result = await llm.generate(
            model=model or session.model,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            timeout=session.config.llm_timeout,
            label=label,
        )
    except Exception:
        record_call(session, 0)
        raise
    record_call(session, result.tokens_used)
    touch(session)
    return result.text.strip()


def ensure_heading(text: str, heading: str, prefix: str | None = None) -> str:
    """Prepend ``heading`` unless the text already opens with ``prefix`` (default: heading level)."""
    if prefix is None:
        prefix = heading.split(" ", 1)[0] + " "
    body = text.strip()
    if body.startswith(prefix):
        return body
    return f"{heading}\n\n{body}"


def _unit(session: Session, unit_index: int):
    return session.structure.units[unit_index]


def _light(session: Session) -> str:
    return session.config.light_model or session.model


# ──────────────────────────────────────────────
# FRONT MATTER / UNIT FRAMING
# ──────────────────────────────────────────────
async def generate_preface(session: Session, llm) -> str:
    unit_titles = [u.unit_title for u in session.structure.units]
    text = await call_llm(
        session,
        llm,
        label="preface",
        user_prompt=prompts.build_preface_prompt(session.topic, unit_titles, session.config),
        model=_light(session),
        max_tokens=900,
        temperature=0.3,
    )
    return ensure_heading(text, "## Preface")


async def generate_unit_intro(session: Session, llm, unit_index: int) -> str:
    unit = _unit(session, unit_index)
    return await call_llm(
        session,
        llm,
        label=f"unit-{unit_index + 1}-intro",
        user_prompt=prompts.build_unit_intro_prompt(
            session.topic, unit_index, unit.unit_title, unit.subtopics
        ),
        model=_light(session),
        max_tokens=600,
        temperature=0.3,
    )


# ──────────────────────────────────────────────
# SUBTOPICS
# ──────────────────────────────────────────────
def subtopic_heading(unit_index: int, subtopic_index: int, title: str) -> str:
    return f"## {unit_index + 1}.{subtopic_index + 1} {title}"


async def generate_subtopic(
    session: Session,
    llm,
    unit_index: int,
    subtopic_index: int,
    prev_unit_summary: str | None = None,
) -> str:
    """
    Subtopic body on the primary model.

    If the first draft has no table or diagram, one rewrite is requested and
    its output is kept whatever it contains. A failed rewrite leaves the first
    draft in place; only an abort propagates.
    """
    unit = _unit(session, unit_index)
    title = unit.subtopics[subtopic_index]
    heading = subtopic_heading(unit_index, subtopic_index, title)
    tag = f"U{unit_index + 1}/S{subtopic_index + 1}"

    user_prompt = prompts.build_subtopic_prompt(
        session.topic,
        unit_index,
        unit.unit_title,
        subtopic_index,
        title,
        session.config,
        prev_unit_summary=prev_unit_summary,
    )
    text = await call_llm(
        session,
        llm,
        label=f"subtopic {tag}",
        user_prompt=user_prompt,
        max_tokens=1800,
        temperature=0.4,
    )
    markdown = ensure_heading(text, heading, prefix="## ")

    if validate_visuals(markdown).passed:
        return markdown

    print(f"[Steps] ⚠️ {tag}: no table or diagram found, requesting one rewrite")
    try:
        retried = await call_llm(
            session,
            llm,
            label=f"subtopic {tag} visual-retry",
            user_prompt=f"{user_prompt}\n\n{prompts.build_visual_retry_instruction(heading)}",
            max_tokens=1800,
            temperature=0.4,
        )
    except AbortError:
        raise
    except Exception as e:
        print(f"[Steps] ⚠️ {tag}: visual rewrite failed ({e}), keeping first draft")
        return markdown
    return ensure_heading(retried, heading, prefix="## ")


def micro_summary_excerpt(markdown: str, limit: int = MICRO_SUMMARY_EXCERPT_CHARS) -> str:
    if len(markdown) <= limit:
        return markdown
    return markdown[:limit] + "..."


async def generate_micro_summary(
    session: Session, llm, unit_index: int, subtopic_index: int, markdown: str
) -> str:
    title = _unit(session, unit_index).subtopics[subtopic_index]
    return await call_llm(
        session,
        llm,
        label=f"micro U{unit_index + 1}/S{subtopic_index + 1}",
        user_prompt=prompts.build_micro_summary_prompt(title, micro_summary_excerpt(markdown)),
        model=_light(session),
        max_tokens=100,
        temperature=0.1,
    )


# ──────────────────────────────────────────────
# UNIT CLOSING
# ──────────────────────────────────────────────
async def combine_unit_summary(session: Session, llm, unit_index: int, micro_summaries: list[str]) -> str:
    unit = _unit(session, unit_index)
    return await call_llm(
        session,
        llm,
        label=f"unit-{unit_index + 1}-summary",
        user_prompt=prompts.build_unit_summary_prompt(
            unit.unit_title, [m or "" for m in micro_summaries]
        ),
        model=_light(session),
        max_tokens=150,
        temperature=0.2,
    )


async def generate_unit_end_summary(
    session: Session, llm, unit_index: int, micro_summaries: list[str]
) -> str:
    unit = _unit(session, unit_index)
    text = await call_llm(
        session,
        llm,
        label=f"unit-{unit_index + 1}-end-summary",
        user_prompt=prompts.build_unit_end_summary_prompt(
            session.topic,
            unit_index,
            unit.unit_title,
            unit.subtopics,
            [m or "" for m in micro_summaries],
            session.unit_summaries[unit_index],
        ),
        model=_light(session),
        max_tokens=500,
        temperature=0.3,
    )
    return ensure_heading(text, "## Summary")


async def generate_unit_exercises(session: Session, llm, unit_index: int, unit_summary: str) -> str:
    unit = _unit(session, unit_index)
    text = await call_llm(
        session,
        llm,
        label=f"unit-{unit_index + 1}-exercises",
        user_prompt=prompts.build_exercises_prompt(
            session.topic, unit_index, unit.unit_title, unit.subtopics, unit_summary or ""
        ),
        model=_light(session),
        max_tokens=1500,
        temperature=0.3,
    )
    return ensure_heading(text, "## Exercises")


# ──────────────────────────────────────────────
# REFERENCE SECTIONS
# ──────────────────────────────────────────────
async def generate_glossary(session: Session, llm) -> str:
    unit_titles = [u.unit_title for u in session.structure.units]
    text = await call_llm(
        session,
        llm,
        label="glossary",
        user_prompt=prompts.build_glossary_prompt(session.topic, unit_titles),
        model=_light(session),
        max_tokens=800,
        temperature=0.2,
    )
    return ensure_heading(text, "# Glossary")


async def generate_bibliography(session: Session, llm) -> str:
    unit_titles = [u.unit_title for u in session.structure.units]
    text = await call_llm(
        session,
        llm,
        label="bibliography",
        user_prompt=prompts.build_bibliography_prompt(session.topic, unit_titles),
        model=_light(session),
        max_tokens=1500,
        temperature=0.2,
    )
    return ensure_heading(text, "# Bibliography")


# ──────────────────────────────────────────────
# EDITING
# ──────────────────────────────────────────────
async def generate_section_edit(
    session: Session, llm, full_markdown: str, selected_text: str, action: str, label: str
) -> str:
    return await call_llm(
        session,
        llm,
        label=f"edit-section {label}",
        user_prompt=prompts.build_edit_section_prompt(full_markdown, selected_text, action),
        model=_light(session),
        max_tokens=2200,
        temperature=0.4,
    )
