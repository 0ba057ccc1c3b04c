"""
BookGen V1.0 - Prompt Builders
==============================
Plain string builders for every generation step. The orchestrator treats
their output as opaque; only the heading markers they request matter to
the post-processing in ``steps`` and ``back_matter``.
"""

from __future__ import annotations

import json

SYSTEM_PROMPT = """\
You are a senior academic textbook author. Output raw Markdown only.

Tone: formal, neutral, suitable for undergraduate learners. Avoid \
conversational or promotional language and vary sentence structure.

Numbering is limited to 2 levels: ## X.Y for the subtopic title. Use ### with \
descriptive text only (no numbering) for sub-sections. No # (h1).
Each subtopic: one ### subsection with a GFM table or ASCII diagram \
illustrating a technical relationship.
Fenced code blocks must be followed by their expected output in a block \
labelled `output`. Bold key terms on first use only.
No filler, greetings or meta-commentary. No conclusion section in subtopics."""

SYSTEM_PROMPT_STRUCTURE = "You output valid JSON only. No Markdown, no explanation, no trailing text."

VISUAL_SUBSECTIONS = ("Key Concepts", "Process Overview", "Diagram", "Reference Table")


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def _unit_outline(unit_titles: list[str]) -> str:
    return "\n".join(f"Unit {i + 1}: {t}" for i, t in enumerate(unit_titles))


def _summaries_block(unit_summaries: list[str]) -> str:
    return "\n".join(f"Unit {i + 1}: {s or '(no summary)'}" for i, s in enumerate(unit_summaries))


# ──────────────────────────────────────────────
# STRUCTURE
# ──────────────────────────────────────────────
def build_structure_prompt(topic: str, config) -> str:
    shape = {
        "title": "string",
        "units": [
            {
                "unit_title": "string",
                "subtopics": [f"s{i + 1}" for i in range(config.subtopics_per_unit)],
            }
        ],
        "capstone_topics": [f"c{i + 1}" for i in range(config.capstone_count)],
        "case_study_topics": [f"cs{i + 1}" for i in range(config.case_study_count)],
    }
    return f"""Book topic: "{topic}"

Output valid JSON only. Use this exact shape:
{json.dumps(shape)}

Required counts (do not deviate): exactly {_plural(config.unit_count, 'unit')}. \
Each unit has exactly {_plural(config.subtopics_per_unit, 'subtopic')}. \
Exactly {_plural(config.capstone_count, 'capstone topic')}. \
Exactly {_plural(config.case_study_count, 'case study topic')}. \
Every title must be a non-empty string. Titles are specific and technical. \
Order units from foundational to advanced. No duplicate subtopic titles."""


def build_structure_retry_suffix(config, issues=None) -> str:
    lines = [
        f"CRITICAL: Your JSON must have exactly {_plural(config.unit_count, 'unit')}.",
        f"Each unit must have exactly {_plural(config.subtopics_per_unit, 'subtopic')}.",
        f"capstone_topics must have exactly {_plural(config.capstone_count, 'string')}.",
        f"case_study_topics must have exactly {_plural(config.case_study_count, 'string')}.",
        "No empty strings. Output only the JSON object.",
    ]
    if issues:
        lines.append("Problems with your previous answer:")
        lines.extend(f"- {issue}" for issue in issues)
    return "\n".join(lines)


# ──────────────────────────────────────────────
# FRONT MATTER / UNIT FRAMING
# ──────────────────────────────────────────────
def build_preface_prompt(topic: str, unit_titles: list[str], config) -> str:
    return f"""Book: "{topic}"
Structure: {_plural(config.unit_count, 'unit')}, {config.subtopics_per_unit} subtopics each, \
plus capstone projects and case studies.

Unit outline:
{_unit_outline(unit_titles)}

Write a professional preface in 400-600 words. Start with ## Preface.
Cover the purpose and scope, the intended audience and prerequisites, how the \
book is organised, and how to get the most out of it. Write in first-person \
plural. No filler."""


def build_unit_intro_prompt(topic: str, unit_index: int, unit_title: str, subtopics: list[str]) -> str:
    outline = "\n".join(f"{unit_index + 1}.{i + 1} {t}" for i, t in enumerate(subtopics))
    return f"""Book: "{topic}"
Unit {unit_index + 1}: "{unit_title}"

Subtopics covered in this unit:
{outline}

Write a 2-3 paragraph introduction for this unit (300-400 words). Do NOT use a \
heading; the unit heading is already in place. End with 3-5 learning \
objectives as a numbered list prefixed with "By the end of this unit, \
learners will be able to:"."""


# ──────────────────────────────────────────────
# SUBTOPICS
# ──────────────────────────────────────────────
def build_subtopic_prompt(
    topic: str,
    unit_index: int,
    unit_title: str,
    subtopic_index: int,
    subtopic_title: str,
    config,
    prev_unit_summary: str | None = None,
) -> str:
    section_id = f"{unit_index + 1}.{subtopic_index + 1}"
    context = ""
    if prev_unit_summary:
        context = f"\nPrior unit context (build on this, do not repeat it):\n{prev_unit_summary}\n"

    position = ""
    if subtopic_index == 0:
        position = "\nThis is the unit opener: establish the unit's central theme."
    elif subtopic_index == config.subtopics_per_unit - 1:
        position = "\nThis is the unit closer: synthesise and point forward."

    return f"""Book: "{topic}"
Unit {unit_index + 1}/{config.unit_count}: "{unit_title}"
Subtopic {subtopic_index + 1}/{config.subtopics_per_unit}: "{subtopic_title}"{context}{position}

Write 1100-1300 words. Start with ## {section_id} {subtopic_title}. Use ### \
headings (descriptive, unnumbered) for sub-sections. Include a ### subsection \
titled one of {", ".join(VISUAL_SUBSECTIONS)} that contains a GFM table or an \
ASCII diagram carrying analytical weight. Use numbered lists for sequential \
steps. Do NOT include a conclusion section."""


def build_visual_retry_instruction(heading: str) -> str:
    return f"""Rewrite this subtopic in 1100-1300 words. Include a ### subsection \
(one of {", ".join(VISUAL_SUBSECTIONS)}) containing a GFM table with a \
separator row or an ASCII diagram that compares, contrasts or maps a technical \
relationship from this section. Start with {heading}. No conclusion section."""


def build_micro_summary_prompt(subtopic_title: str, excerpt: str) -> str:
    return f"""Subtopic: "{subtopic_title}"

Excerpt:
{excerpt}

In 50-80 words, state the central technical insight and how it connects to \
the unit's broader theme. Name specific mechanisms, not headings. No preamble."""


def build_unit_summary_prompt(unit_title: str, micro_summaries: list[str]) -> str:
    numbered = "\n".join(f"{i + 1}. {s}" for i, s in enumerate(micro_summaries))
    return f"""Unit: "{unit_title}"

Subtopic summaries:
{numbered}

Synthesise into one paragraph of 80-100 words. State the unit's unifying \
principle, its key techniques and how it connects to adjacent units. No preamble."""


def build_unit_end_summary_prompt(
    topic: str,
    unit_index: int,
    unit_title: str,
    subtopics: list[str],
    micro_summaries: list[str],
    unit_summary: str | None = None,
) -> str:
    context = "\n".join(
        f"{unit_index + 1}.{i + 1} {t}: {micro_summaries[i] if i < len(micro_summaries) else ''}"
        for i, t in enumerate(subtopics)
    )
    if unit_summary and not any(micro_summaries):
        context += f"\n\nUnit digest:\n{unit_summary}"
    return f"""Book: "{topic}"
Unit {unit_index + 1}: "{unit_title}"

Subtopic summaries:
{context}

Write a "Summary" section of 5-10 single-sentence bullet points recapping the \
key learning outcomes of this unit. Start with ## Summary. Do not introduce \
new material. 200-300 words."""


def build_exercises_prompt(
    topic: str,
    unit_index: int,
    unit_title: str,
    subtopics: list[str],
    unit_summary: str,
) -> str:
    listing = "\n".join(f"{unit_index + 1}.{i + 1} {t}" for i, t in enumerate(subtopics))
    return f"""Book: "{topic}"
Unit {unit_index + 1}: "{unit_title}"

Subtopics:
{listing}

Unit summary:
{unit_summary}

Generate an "Exercises" section with exactly 20 multiple-choice questions. \
Start with ## Exercises. Each question has options A-D and ends with \
**Answer: X**. Cover all subtopics evenly and mix recall, application and \
analysis questions. Number questions sequentially."""


# ──────────────────────────────────────────────
# BACK MATTER
# ──────────────────────────────────────────────
CAPSTONE_BRIEF = (
    "a concrete problem statement with measurable success criteria, architecture "
    "decisions with trade-off analysis, a phased implementation plan and an "
    "evaluation rubric"
)
CASE_STUDY_BRIEF = (
    "the technical challenge and its context, the initial approach and why it fell "
    "short, the revised design with implementation details, quantitative outcomes "
    "and lessons that generalise"
)


def build_item_prompt(
    label: str,
    topic: str,
    index: int,
    item_title: str,
    unit_summaries: list[str],
) -> str:
    brief = CAPSTONE_BRIEF if label.startswith("Capstone") else CASE_STUDY_BRIEF
    return f"""Book: "{topic}"
{label} {index + 1}: "{item_title}"

Book context (unit summaries):
{_summaries_block(unit_summaries)}

Write 1600-1900 words. Start with ## {label} {index + 1}: {item_title}. \
Use ### sub-sections. Include {brief}. Reference techniques from the book."""


def build_batched_items_prompt(
    label: str,
    topic: str,
    item_titles: list[str],
    unit_summaries: list[str],
) -> str:
    brief = CAPSTONE_BRIEF if label.startswith("Capstone") else CASE_STUDY_BRIEF
    titles = "\n".join(f'{i + 1}. "{t}"' for i, t in enumerate(item_titles))
    return f"""Book: "{topic}"

Book context (unit summaries):
{_summaries_block(unit_summaries)}

Write {len(item_titles)} items of type "{label}", each 1600-1900 words. \
Separate them with a line containing only "---".

Titles:
{titles}

For each item start with ## {label} N: Title and use ### sub-sections. \
Include {brief}."""


def build_glossary_prompt(topic: str, unit_titles: list[str]) -> str:
    return f"""Book: "{topic}"

Units covered:
{_unit_outline(unit_titles)}

Generate a Glossary section. Start with # Glossary. List 15-20 key technical \
terms in strict alphabetical order, each as **Term**: a concise 1-2 sentence \
definition relevant to "{topic}"."""


def build_bibliography_prompt(topic: str, unit_titles: list[str]) -> str:
    return f"""Book: "{topic}"

Units covered:
{_unit_outline(unit_titles)}

Generate a Bibliography and Recommended Reading section. Start with \
# Bibliography. List 5-10 references under ### Books, ### Research Papers & \
Standards and ### Online Resources, formatted as Author(s), "Title," \
Publisher/Source, Year. Prefer real, widely known works."""


# ──────────────────────────────────────────────
# EDITING
# ──────────────────────────────────────────────
EDIT_ACTIONS = {
    "expand": (
        "Expand the selected passage with more technical depth and examples. Double "
        "its length and keep the same heading level and formatting."
    ),
    "rewrite": (
        "Rewrite the selected passage to improve clarity and accuracy. Keep the same "
        "length and heading level."
    ),
    "add_example": (
        "Reproduce the selected passage exactly, then add a practical, runnable code "
        "example in a fenced block right after it."
    ),
    "add_table": (
        "Reproduce the selected passage exactly, then add a GFM comparison table "
        "(| col | col |) that organises its key concepts."
    ),
    "shorten": (
        "Condense the selected passage to half its length while preserving every key "
        "technical fact."
    ),
}


def build_edit_section_prompt(full_markdown: str, selected_text: str, action: str) -> str:
    return f"""You are editing one passage inside a larger technical ebook section. \
Output ONLY the result in raw Markdown, with no explanation.

FULL SECTION (context only, do NOT reproduce it):
---
{full_markdown}
---

SELECTED PASSAGE:
---
{selected_text}
---

INSTRUCTION: {EDIT_ACTIONS[action]}"""
