"""
Unit tests for final Markdown assembly.
"""
import datetime

import regex as re

from bookgen.assembler import (
    build_toc,
    ensure_final_markdown,
    rebuild_final_markdown,
    slugify,
    subtopic_anchor,
    unit_anchor,
)
from bookgen.state import new_session, subtopic_key
from tests.fakes import ready_session


def test_slugify():
    assert slugify("Unit 1: Graphs & Trees!") == "unit-1-graphs-trees"
    assert unit_anchor(2, "Shortest Paths") == "unit-2-shortest-paths"
    assert subtopic_anchor(1, 3, "BFS vs. DFS") == "1-3-bfs-vs-dfs"


def test_document_order():
    session = ready_session()
    session.preface_markdown = "## Preface\n\nWhy."
    session.capstones_markdown = "# Capstone Projects\n\n## Capstone Project 1: X"
    session.glossary_markdown = "# Glossary\n\nTerms."
    md = rebuild_final_markdown(session)

    markers = [
        "# Graph Theory Basics",
        "**Authored by:**",
        "**All rights reserved.**",
        "## Preface",
        "## Table of Contents",
        "# Unit 1: Foundations 1",
        "Introduction to unit 1.",
        "## 1.1 Generated Topic 1.1",
        "## 1.2 Generated Topic 1.2",
        "## Summary",
        "## Exercises",
        "# Unit 2: Foundations 2",
        "# Capstone Projects",
        "# Glossary",
    ]
    positions = [md.index(m) for m in markers]
    assert positions == sorted(positions)
    assert md.endswith("\n")


def test_edition_year_from_creation_time():
    session = ready_session()
    session.created_at = datetime.datetime(2031, 6, 1).timestamp()
    assert "**Edition:** 2031" in rebuild_final_markdown(session)


def test_toc_links_units_subtopics_and_back_matter():
    toc = build_toc(ready_session())
    assert "- [Unit 1: Foundations 1](#unit-1-foundations-1)" in toc
    assert "    - [1.2 Topic 1.2](#1-2-topic-1-2)" in toc
    assert "    - [Summary](#summary-2)" in toc
    assert "- [Case Studies](#case-studies)" in toc


def test_missing_pieces_are_skipped():
    session = ready_session()
    del session.subtopic_markdowns[subtopic_key(1, 0)]
    session.unit_exercises[1] = None
    md = rebuild_final_markdown(session)
    assert len(re.findall(r"^## \d+\.\d+ ", md, flags=re.MULTILINE)) == 3
    assert md.count("## Exercises") == 1


def test_no_structure_gives_empty_document(config):
    assert rebuild_final_markdown(new_session("Graph Theory Basics", config=config)) == ""


def test_pure_and_idempotent():
    session = ready_session()
    before = session.to_dict()
    first = rebuild_final_markdown(session)
    assert rebuild_final_markdown(session) == first
    assert session.to_dict() == before


def test_reflects_current_subtopic_bodies():
    session = ready_session()
    session.final_markdown = rebuild_final_markdown(session)
    session.subtopic_markdowns[subtopic_key(0, 1)] = "## 1.2 Edited\n\nNew words."
    session.final_markdown = None
    md = ensure_final_markdown(session)
    assert "New words." in md
    assert session.final_markdown == md


def test_ensure_final_markdown_keeps_fresh_copy():
    session = ready_session()
    session.final_markdown = "cached"
    assert ensure_final_markdown(session) == "cached"
