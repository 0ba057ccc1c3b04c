"""
BookGen V1.0 - Markdown Assembler
=================================
Pure function of a session → one Markdown document:

    front matter → preface → table of contents →
    per unit: heading, introduction, subtopics, summary, exercises →
    capstones → case studies → glossary → bibliography

Missing pieces are skipped, so a half-generated session still assembles.
Nothing on the session is mutated; call it as often as you like.
"""

from __future__ import annotations

import datetime

import regex as re

from bookgen.state import Session, subtopic_key

COPYRIGHT_BLOCK = """\
**All rights reserved.**

No part of this publication may be reproduced, distributed, or transmitted in \
any form or by any means without the prior written permission of the \
publisher, except for brief quotations in critical reviews and other \
noncommercial uses permitted by copyright law.

**Limits of Liability / Disclaimer of Warranty:** The publisher and the author \
make no representations or warranties with respect to the accuracy or \
completeness of the contents of this book and specifically disclaim any \
implied warranties of merchantability or fitness for a particular purpose.

**Trademarks:** All brand names and product names used in this book are \
trademarks, registered trademarks, or trade names of their respective holders."""

BACK_MATTER_ENTRIES = (
    ("Capstone Projects", "capstones_markdown"),
    ("Case Studies", "case_studies_markdown"),
    ("Glossary", "glossary_markdown"),
    ("Bibliography", "bibliography_markdown"),
)


def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def unit_anchor(unit_number: int, unit_title: str) -> str:
    return slugify(f"unit-{unit_number}-{unit_title}")


def subtopic_anchor(unit_number: int, subtopic_number: int, title: str) -> str:
    return slugify(f"{unit_number}-{subtopic_number}-{title}")


def edition_year(session: Session) -> int:
    return datetime.datetime.fromtimestamp(session.created_at).year


def build_front_matter(session: Session) -> str:
    return "\n\n".join(
        [
            f"# {session.structure.title}",
            f"**Authored by:** {session.display_author}",
            f"**Edition:** {edition_year(session)}",
            COPYRIGHT_BLOCK,
        ]
    )


def build_toc(session: Session) -> str:
    lines = ["## Table of Contents", ""]
    for u, unit in enumerate(session.structure.units):
        n = u + 1
        lines.append(f"- [Unit {n}: {unit.unit_title}](#{unit_anchor(n, unit.unit_title)})")
        for s, title in enumerate(unit.subtopics):
            lines.append(f"    - [{n}.{s + 1} {title}](#{subtopic_anchor(n, s + 1, title)})")
        lines.append(f"    - [Summary](#summary-{n})")
        lines.append(f"    - [Exercises](#exercises-{n})")
    for title, _ in BACK_MATTER_ENTRIES:
        lines.append(f"- [{title}](#{slugify(title)})")
    return "\n".join(lines)


def rebuild_final_markdown(session: Session) -> str:
    structure = session.structure
    if structure is None:
        return ""

    parts = [build_front_matter(session)]
    if session.preface_markdown:
        parts.append(session.preface_markdown)
    parts.append(build_toc(session))

    for u, unit in enumerate(structure.units):
        parts.append(f"# Unit {u + 1}: {unit.unit_title}")

        intro = session.unit_introductions[u] if u < len(session.unit_introductions) else None
        if intro:
            parts.append(intro)

        for s in range(len(unit.subtopics)):
            body = session.subtopic_markdowns.get(subtopic_key(u, s))
            if body:
                parts.append(body)

        for field_name in ("unit_end_summaries", "unit_exercises"):
            values = getattr(session, field_name)
            if u < len(values) and values[u]:
                parts.append(values[u])

    for _, field_name in BACK_MATTER_ENTRIES:
        value = getattr(session, field_name)
        if value:
            parts.append(value)

    return "\n\n".join(p.strip() for p in parts) + "\n"


def ensure_final_markdown(session: Session) -> str:
    """Return the assembled document, rebuilding it if an edit left it stale."""
    if session.final_markdown is None:
        session.final_markdown = rebuild_final_markdown(session)
    return session.final_markdown
