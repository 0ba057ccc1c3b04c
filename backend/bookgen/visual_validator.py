"""
BookGen V1.0 - Visual Validator
===============================
Content-quality gate for subtopic bodies: does the body carry a data table
or an ASCII diagram? A visual anywhere in the body is enough to pass; the
subsection-containment signal is reported but not required.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

import regex as re

TABLE_RE = re.compile(r"^\|.+\|", re.MULTILINE)
TABLE_SEPARATOR_RE = re.compile(r"^\|[\s:|\-]+\|", re.MULTILINE)
ASCII_DIAGRAM_RE = re.compile(
    r"\+[-+]{3,}\+"
    r"|\[[\w\s]+\]\s*-{1,2}>\s*\["
    r"|\[[\w\s]+\]\s*<-{1,2}\s*\["
    r"|[│┌└├┤─]"
)
SUBSECTION_RE = re.compile(
    r"^###\s+(Key Concepts|Process Overview|Diagram|Reference Table)[^\n]*",
    re.MULTILINE | re.IGNORECASE,
)
NEXT_HEADING_RE = re.compile(r"^#{1,3}\s", re.MULTILINE)


@dataclass
class VisualValidation:
    has_table: bool
    has_ascii_diagram: bool
    has_required_subsection: bool
    visual_in_subsection: bool
    passed: bool

    def to_dict(self) -> dict:
        return asdict(self)


def has_table(text: str) -> bool:
    return bool(TABLE_RE.search(text)) and bool(TABLE_SEPARATOR_RE.search(text))


def has_ascii_diagram(text: str) -> bool:
    return bool(ASCII_DIAGRAM_RE.search(text))


def extract_subsection_block(markdown: str) -> str | None:
    """Body of the first required ### subsection, up to the next #, ## or ### heading."""
    match = SUBSECTION_RE.search(markdown)
    if not match:
        return None
    rest = markdown[match.end():]
    nxt = NEXT_HEADING_RE.search(rest)
    return rest if nxt is None else rest[: nxt.start()]


def validate_visuals(markdown: str) -> VisualValidation:
    table = has_table(markdown)
    diagram = has_ascii_diagram(markdown)

    block = extract_subsection_block(markdown)
    in_subsection = block is not None and (has_table(block) or has_ascii_diagram(block))

    passed = (table or diagram) and (in_subsection or table or diagram)

    return VisualValidation(
        has_table=table,
        has_ascii_diagram=diagram,
        has_required_subsection=block is not None,
        visual_in_subsection=in_subsection,
        passed=passed,
    )
