"""
BookGen V1.0 - Per-Subtopic Operations
======================================
Read, span-edit, regenerate and undo one subtopic of a finished session.

Edits and regenerations push the current body onto the subtopic's version
stack *before* calling the model; if the call fails the pushed entry is
popped back and the error propagates. Every successful change marks the
assembled document stale (``final_markdown = None``).
"""

from __future__ import annotations

from dataclasses import dataclass

import regex as re

from bookgen import steps
from bookgen.errors import ContentNotFound, InvalidEditRequest, SessionStateError, SpanNotFound
from bookgen.prompts import EDIT_ACTIONS
from bookgen.state import (
    MARKDOWN_READY,
    Session,
    pop_version,
    push_version,
    subtopic_key,
    touch,
    versions_remaining,
)
from bookgen.text_mapping import find_markdown_span, splice

MIN_SELECTION_CHARS = 10
VALID_ACTIONS = tuple(EDIT_ACTIONS)

_SUBTOPIC_SPLIT_RE = re.compile(r"^(?=## )", re.MULTILINE)


@dataclass
class SubtopicContent:
    markdown: str
    versions_remaining: int

    def to_dict(self) -> dict:
        return {"markdown": self.markdown, "versions_remaining": self.versions_remaining}


def _check_indices(session: Session, unit_index: int, subtopic_index: int) -> None:
    if unit_index < 0 or subtopic_index < 0:
        raise InvalidEditRequest("Invalid unit or subtopic index")
    structure = session.structure
    if structure is None:
        return
    if unit_index >= len(structure.units):
        raise InvalidEditRequest("Unit index out of range")
    if subtopic_index >= len(structure.units[unit_index].subtopics):
        raise InvalidEditRequest("Subtopic index out of range")


def _require_ready(session: Session, verb: str) -> None:
    if session.status != MARKDOWN_READY:
        raise SessionStateError(f"Cannot {verb} in status: {session.status}")


def _current_body(session: Session, key: str) -> str:
    body = session.subtopic_markdowns.get(key)
    if not body:
        raise ContentNotFound("Subtopic not found")
    return body


def split_unit_markdown(unit_markdown: str) -> list[str]:
    segments = [s.strip() for s in _SUBTOPIC_SPLIT_RE.split(unit_markdown)]
    return [s for s in segments if s]


def get_subtopic_content(session: Session, unit_index: int, subtopic_index: int) -> SubtopicContent:
    touch(session)
    _check_indices(session, unit_index, subtopic_index)
    key = subtopic_key(unit_index, subtopic_index)
    remaining = versions_remaining(session, key)

    body = session.subtopic_markdowns.get(key)
    if body:
        return SubtopicContent(body, remaining)

    unit_md = session.unit_markdowns[unit_index] if unit_index < len(session.unit_markdowns) else None
    if not unit_md:
        raise ContentNotFound("Content not yet generated")
    segments = split_unit_markdown(unit_md)
    if subtopic_index >= len(segments):
        raise ContentNotFound("Subtopic segment not found")
    return SubtopicContent(segments[subtopic_index], remaining)


def _commit(session: Session, key: str, markdown: str) -> SubtopicContent:
    session.subtopic_markdowns[key] = markdown
    session.final_markdown = None
    session.edit_count += 1
    touch(session)
    return SubtopicContent(markdown, versions_remaining(session, key))


async def edit_subtopic_section(
    session: Session,
    unit_index: int,
    subtopic_index: int,
    selected_text: str,
    action: str,
    llm,
) -> SubtopicContent:
    _check_indices(session, unit_index, subtopic_index)
    if not isinstance(selected_text, str) or len(selected_text.strip()) < MIN_SELECTION_CHARS:
        raise InvalidEditRequest(f"Selected text too short (min {MIN_SELECTION_CHARS} chars)")
    if action not in VALID_ACTIONS:
        raise InvalidEditRequest(f"Invalid action. Must be one of: {', '.join(VALID_ACTIONS)}")
    _require_ready(session, "edit")

    key = subtopic_key(unit_index, subtopic_index)
    current = _current_body(session, key)

    span = find_markdown_span(current, selected_text.strip())
    if span is None:
        raise SpanNotFound("Selected text not found in subtopic")

    saved = list(session.subtopic_versions.get(key, []))
    push_version(session, key, current)
    try:
        replacement = await steps.generate_section_edit(
            session, llm, current, span.text, action, f"{action} {key}"
        )
    except Exception as e:
        print(f"[Edit] ❌ {action} failed for {key}: {e}")
        session.subtopic_versions[key] = saved
        raise
    return _commit(session, key, splice(current, span, replacement.strip()))


async def regenerate_subtopic(session: Session, unit_index: int, subtopic_index: int, llm) -> SubtopicContent:
    _check_indices(session, unit_index, subtopic_index)
    _require_ready(session, "regenerate")
    if session.structure is None:
        raise ContentNotFound("Session structure is missing")

    key = subtopic_key(unit_index, subtopic_index)
    current = _current_body(session, key)
    prev_summary = session.unit_summaries[unit_index - 1] if unit_index > 0 else None

    saved = list(session.subtopic_versions.get(key, []))
    push_version(session, key, current)
    try:
        fresh = await steps.generate_subtopic(session, llm, unit_index, subtopic_index, prev_summary)
    except Exception as e:
        print(f"[Regenerate] ❌ failed for {key}: {e}")
        session.subtopic_versions[key] = saved
        raise
    return _commit(session, key, fresh)


def undo_subtopic(session: Session, unit_index: int, subtopic_index: int) -> SubtopicContent:
    _check_indices(session, unit_index, subtopic_index)
    _require_ready(session, "undo")
    key = subtopic_key(unit_index, subtopic_index)
    restored = pop_version(session, key)
    session.subtopic_markdowns[key] = restored
    session.final_markdown = None
    touch(session)
    return SubtopicContent(restored, versions_remaining(session, key))
