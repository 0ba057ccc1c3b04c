"""
BookGen V1.0 - Batched Back Matter
==================================
Capstone projects and case studies. With two or more items the model is
asked for all of them in one call, separated by ``---`` lines. If the answer
cannot be split into exactly N items (first by delimiter, then by heading),
each item is generated on its own. Either way the section holds exactly N
items, each opening with a ``## <Label> N: Title`` heading.
"""

from __future__ import annotations

from dataclasses import dataclass

import regex as re

from bookgen import prompts
from bookgen.state import Session
from bookgen.steps import call_llm

_DELIMITER_RE = re.compile(r"\n---\n")


@dataclass(frozen=True)
class ItemKind:
    label: str  # item heading: "## <label> N: Title"
    section_title: str  # section heading: "# <section_title>"
    batch_label: str
    item_label: str


CAPSTONES = ItemKind("Capstone Project", "Capstone Projects", "capstones batched", "capstone")
CASE_STUDIES = ItemKind("Case Study", "Case Studies", "case-studies batched", "case-study")


def split_batched_output(raw: str, expected: int, label: str) -> list[str] | None:
    """Split a batched answer into ``expected`` items, or ``None`` if neither strategy fits."""
    parts = [p.strip() for p in _DELIMITER_RE.split(raw)]
    parts = [p for p in parts if p]
    if len(parts) == expected:
        return parts

    heading_re = re.compile(rf"(?=^## {re.escape(label)} \d)", re.MULTILINE)
    by_heading = [p.strip() for p in heading_re.split(raw)]
    by_heading = [p for p in by_heading if p]
    if len(by_heading) == expected:
        return by_heading
    return None


def with_item_heading(markdown: str, kind: ItemKind, index: int, title: str) -> str:
    body = markdown.strip()
    if body.startswith("## "):
        return body
    return f"## {kind.label} {index + 1}: {title}\n\n{body}"


def wrap_section(kind: ItemKind, items: list[str]) -> str:
    return f"# {kind.section_title}\n\n" + "\n\n---\n\n".join(items)


async def generate_items(session: Session, llm, kind: ItemKind, titles: list[str]) -> str:
    summaries = [s or "" for s in session.unit_summaries]
    expected = len(titles)

    if expected >= 2:
        raw = await call_llm(
            session,
            llm,
            label=f"{kind.batch_label} ({expected})",
            user_prompt=prompts.build_batched_items_prompt(kind.label, session.topic, titles, summaries),
            max_tokens=5000,
            temperature=0.35,
        )
        parts = split_batched_output(raw, expected, kind.label)
        if parts is not None:
            items = [with_item_heading(p, kind, i, titles[i]) for i, p in enumerate(parts)]
            return wrap_section(kind, items)
        print(f"[BackMatter] ⚠️ {kind.batch_label}: could not split into {expected} items, falling back to per-item calls")

    items = []
    for i, title in enumerate(titles):
        text = await call_llm(
            session,
            llm,
            label=f"{kind.item_label} {i + 1}",
            user_prompt=prompts.build_item_prompt(kind.label, session.topic, i, title, summaries),
            max_tokens=2600,
            temperature=0.35,
        )
        items.append(with_item_heading(text, kind, i, title))
    return wrap_section(kind, items)


async def generate_capstones(session: Session, llm) -> str:
    return await generate_items(session, llm, CAPSTONES, session.structure.capstone_topics)


async def generate_case_studies(session: Session, llm) -> str:
    return await generate_items(session, llm, CASE_STUDIES, session.structure.case_study_topics)
