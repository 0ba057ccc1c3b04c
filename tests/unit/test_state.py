"""
Unit tests for the session record, status machine and version stack.
"""
import pytest

from bookgen.config import MAX_VERSIONS
from bookgen.errors import InvalidStatusTransition, NoPreviousVersion
from bookgen.state import (
    COMPLETED,
    DOWNLOADED,
    EXPORTING_PDF,
    FAILED,
    GENERATING,
    MARKDOWN_READY,
    QUEUED,
    BookStructure,
    Session,
    advance_status,
    fail_session,
    new_session,
    parse_outline,
    pop_version,
    push_version,
    reset_for_resume,
    subtopic_key,
    versions_remaining,
)
from tests.fakes import outline_dict, ready_session, small_config


class TestStatusMachine:
    def test_happy_path_moves_forward(self, config):
        session = new_session("Graph Theory Basics", config=config)
        for status in (GENERATING, MARKDOWN_READY, EXPORTING_PDF, COMPLETED, DOWNLOADED):
            advance_status(session, status)
            assert session.status == status

    def test_backwards_move_is_rejected(self, config):
        session = new_session("Graph Theory Basics", config=config)
        advance_status(session, GENERATING)
        advance_status(session, MARKDOWN_READY)
        with pytest.raises(InvalidStatusTransition):
            advance_status(session, GENERATING)
        assert session.status == MARKDOWN_READY

    def test_same_status_is_a_no_op(self, config):
        session = new_session("Graph Theory Basics", config=config)
        advance_status(session, QUEUED)
        assert session.status == QUEUED

    @pytest.mark.parametrize("start", [QUEUED, GENERATING, MARKDOWN_READY, EXPORTING_PDF])
    def test_failed_reachable_from_non_terminal(self, config, start):
        session = new_session("Graph Theory Basics", config=config)
        session.status = start
        advance_status(session, FAILED)
        assert session.status == FAILED

    @pytest.mark.parametrize("terminal", [COMPLETED, DOWNLOADED])
    def test_terminal_cannot_fail(self, config, terminal):
        session = new_session("Graph Theory Basics", config=config)
        session.status = terminal
        with pytest.raises(InvalidStatusTransition):
            advance_status(session, FAILED)

    def test_failed_cannot_move_on(self, config):
        session = new_session("Graph Theory Basics", config=config)
        advance_status(session, FAILED)
        with pytest.raises(InvalidStatusTransition):
            advance_status(session, GENERATING)

    def test_unknown_status(self, config):
        session = new_session("Graph Theory Basics", config=config)
        with pytest.raises(InvalidStatusTransition):
            advance_status(session, "publishing")

    def test_reset_for_resume_goes_back_to_queued(self, config):
        session = new_session("Graph Theory Basics", config=config)
        session.phase, session.progress = "unit-2", 60.0
        fail_session(session, "boom")
        reset_for_resume(session)
        assert session.status == QUEUED
        assert session.error is None
        assert session.phase == "init"
        assert session.progress == 0


class TestFailSession:
    def test_purges_content_but_keeps_outline_and_counters(self):
        session = ready_session()
        session.status = GENERATING
        session.call_count, session.token_count = 12, 3400
        session.preface_markdown = "## Preface\n\nText"
        session.final_markdown = "# Book"

        fail_session(session, "ABORT: Call limit exceeded (251/250)")

        assert session.status == FAILED
        assert session.error.startswith("ABORT: Call limit exceeded")
        assert session.structure is not None
        assert session.subtopic_markdowns == {}
        assert session.preface_markdown is None
        assert session.final_markdown is None
        assert session.unit_summaries == [None, None]
        assert (session.call_count, session.token_count) == (12, 3400)


class TestOutlineSchema:
    def test_accepts_exact_counts_with_camel_case_keys(self, config):
        result = parse_outline(outline_dict(config), config)
        assert result.ok
        assert result.structure.units[0].unit_title == "Foundations 1"
        assert result.structure.capstone_topics == ["Build Project 1"]

    def test_reports_wrong_unit_count(self, config):
        result = parse_outline(outline_dict(config, units=1), config)
        assert not result.ok
        assert any("expected 2 units, got 1" in str(issue) for issue in result.issues)

    def test_reports_blank_titles(self, config):
        data = outline_dict(config)
        data["units"][1]["subtopics"][0] = "   "
        result = parse_outline(data, config)
        assert not result.ok
        assert any(issue.location.startswith("units.1.subtopics") for issue in result.issues)

    def test_missing_field(self, config):
        data = outline_dict(config)
        del data["caseStudyTopics"]
        result = BookStructure.parse_outline(data, config)
        assert not result.ok

    def test_plain_validation_skips_counts(self, config):
        data = outline_dict(config, units=5)
        structure = BookStructure.model_validate(data)
        assert len(structure.units) == 5


class TestSerialisation:
    def test_round_trip_keeps_content(self):
        session = ready_session()
        session.pdf_bytes = b"%PDF-1.7 fake"
        push_version(session, subtopic_key(0, 0), "older body")

        restored = Session.from_dict(session.to_dict())

        assert restored.id == session.id
        assert restored.config == session.config
        assert restored.structure == session.structure
        assert restored.subtopic_markdowns == session.subtopic_markdowns
        assert restored.subtopic_versions == {subtopic_key(0, 0): ["older body"]}
        assert restored.pdf_bytes == b"%PDF-1.7 fake"

    def test_unit_slots_are_presized(self):
        session = new_session("Graph Theory Basics", config=small_config(unit_count=4))
        assert session.unit_markdowns == [None] * 4
        assert session.micro_summaries == [None] * 4

    def test_default_author(self, config, monkeypatch):
        monkeypatch.setenv("BOOK_AUTHOR", "Press Team")
        assert new_session("Graph Theory Basics", config=config).display_author == "Press Team"
        assert new_session("Graph Theory Basics", author=" Ada ", config=config).display_author == "Ada"


class TestVersionStack:
    def test_push_is_bounded(self, config):
        session = new_session("Graph Theory Basics", config=config)
        key = subtopic_key(0, 0)
        for i in range(MAX_VERSIONS + 3):
            push_version(session, key, f"v{i}")
        assert versions_remaining(session, key) == MAX_VERSIONS
        assert session.subtopic_versions[key][0] == "v3"
        assert pop_version(session, key) == f"v{MAX_VERSIONS + 2}"

    def test_pop_empty_raises(self, config):
        session = new_session("Graph Theory Basics", config=config)
        with pytest.raises(NoPreviousVersion, match="No previous version available"):
            pop_version(session, subtopic_key(1, 1))
