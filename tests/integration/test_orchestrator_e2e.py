"""
End-to-end orchestration against the scripted text-generation fake.

Config for every scenario: 2 units × 2 subtopics, 1 capstone, 1 case study.
A clean run makes 22 calls:

    structure 1, preface 1,
    per unit: intro 1 + subtopics 2 + micro-summaries 2 + unit summary 1
              + end summary 1 + exercises 1 = 8 (× 2),
    capstone 1, case study 1, glossary 1, bibliography 1
"""
import asyncio
import json

import pytest
import regex as re

from bookgen.assembler import rebuild_final_markdown
from bookgen.orchestrator import Orchestrator
from bookgen.session_store import FileBlobStore, SessionRegistry
from bookgen.state import (
    COMPLETED,
    FAILED,
    MARKDOWN_READY,
    QUEUED,
    Session,
    new_session,
    reset_for_resume,
    subtopic_key,
)
from tests.fakes import FakeLLM, RateLimited, RecordingSleep, ServerError, outline_dict, small_config

CLEAN_RUN_CALLS = 22

pytestmark = pytest.mark.integration


def run(session, llm, sleep=None, store=None, on_progress=None):
    orchestrator = Orchestrator(llm, store=store, sleep=sleep or RecordingSleep(), on_progress=on_progress)
    asyncio.run(orchestrator.orchestrate(session))
    return session


@pytest.fixture
def session(config):
    return new_session("Graph Theory Basics", model="primary-model", config=config)


def test_graph_theory_basics_end_to_end(session, fake_llm):
    events = []
    run(session, fake_llm, on_progress=events.append)

    assert session.status == MARKDOWN_READY
    assert session.error is None
    assert session.progress == 100

    structure = session.structure
    assert len(structure.units) == 2
    assert all(len(u.subtopics) == 2 for u in structure.units)
    assert len(structure.capstone_topics) == 1
    assert len(structure.case_study_topics) == 1

    assert sorted(session.subtopic_markdowns) == [subtopic_key(u, s) for u in range(2) for s in range(2)]
    assert session.micro_summaries == [None, None]
    assert session.unit_markdowns == [None, None]
    assert all(session.unit_summaries)

    md = rebuild_final_markdown(session)
    assert md == session.final_markdown
    assert len(re.findall(r"^## \d+\.\d+ ", md, flags=re.MULTILINE)) == 4
    assert len(re.findall(r"^## Capstone Project \d", md, flags=re.MULTILINE)) == 1
    assert len(re.findall(r"^## Case Study \d", md, flags=re.MULTILINE)) == 1

    assert session.call_count == len(fake_llm.calls) == CLEAN_RUN_CALLS
    assert session.token_count == CLEAN_RUN_CALLS * fake_llm.tokens

    progress = [e["progress"] for e in events]
    assert progress == sorted(progress)
    assert events[-1]["status"] == MARKDOWN_READY


def test_call_order_respects_phases(session, fake_llm):
    run(session, fake_llm)
    calls = fake_llm.calls
    assert calls[:2] == ["structure", "preface"]
    last_unit_1 = max(i for i, c in enumerate(calls) if c.startswith(("unit-1", "subtopic U1", "micro U1")))
    first_unit_2 = min(i for i, c in enumerate(calls) if c.startswith(("unit-2", "subtopic U2", "micro U2")))
    assert last_unit_1 < first_unit_2
    assert calls.index("unit-1-summary") > calls.index("micro U1/S2")
    assert set(calls[-4:]) == {"capstone 1", "case-study 1", "glossary", "bibliography"}


def test_second_unit_prompts_carry_first_unit_summary(session, fake_llm):
    run(session, fake_llm)
    u2 = next(r for r in fake_llm.requests if r["label"] == "subtopic U2/S1")
    assert "Unit digest in a few sentences." in u2["user_prompt"]


def test_rate_limited_step_waits_retry_after(session, fake_llm, recording_sleep):
    fake_llm.fail_with("preface", RateLimited("2"), RateLimited("2"))
    run(session, fake_llm, sleep=recording_sleep)

    assert session.status == MARKDOWN_READY
    assert recording_sleep.delays == [2.0, 2.0]
    assert fake_llm.calls.count("preface") == 3
    assert session.call_count == CLEAN_RUN_CALLS + 2


def test_short_outline_is_repaired(session, config):
    short = json.dumps(outline_dict(config, units=1))
    llm = FakeLLM(config, responses={"structure": short, "structure corrective": short})
    run(session, llm)

    assert session.status == MARKDOWN_READY
    assert llm.calls[:2] == ["structure", "structure corrective"]
    assert session.structure.units[1].unit_title == "Unit 2"
    assert session.structure.units[1].subtopics == ["Subtopic 1", "Subtopic 2"]
    assert len(session.subtopic_markdowns) == 4


def test_call_budget_aborts_before_next_phase():
    session = new_session("Graph Theory Basics", config=small_config(max_calls=5))
    llm = FakeLLM(session.config)
    run(session, llm)

    assert session.status == FAILED
    assert session.error.startswith("ABORT: Call limit exceeded")
    assert session.structure is not None
    assert session.subtopic_markdowns == {}
    assert not any(c.startswith(("unit-2", "subtopic U2", "capstone", "glossary")) for c in llm.calls)
    assert session.call_count == len(llm.calls)


def test_call_budget_checked_before_unit_closing_steps():
    # intro + 2 subtopics + 2 micro-summaries bring unit 1 to exactly 7 calls;
    # the unit summary then pushes past the ceiling
    session = new_session("Graph Theory Basics", config=small_config(max_calls=7))
    llm = FakeLLM(session.config)
    run(session, llm)

    assert session.status == FAILED
    assert session.error.startswith("ABORT: Call limit exceeded (8/7)")
    assert llm.calls[-1] == "unit-1-summary"
    assert "unit-1-end-summary" not in llm.calls
    assert "unit-1-exercises" not in llm.calls


def test_token_budget_aborts():
    session = new_session("Graph Theory Basics", config=small_config(max_tokens=50))
    llm = FakeLLM(session.config, tokens=30)
    run(session, llm)

    assert session.status == FAILED
    assert "Token limit exceeded (60/50)" in session.error
    assert llm.calls == ["structure", "preface"]


def test_exhausted_retries_fail_the_session(session, fake_llm, recording_sleep):
    fake_llm.fail_always("structure", ValueError("model returned garbage"))
    run(session, fake_llm, sleep=recording_sleep)

    assert session.status == FAILED
    assert session.error == "model returned garbage"
    assert fake_llm.calls == ["structure"] * 4
    assert len(recording_sleep.delays) == 3
    assert session.call_count == 4


def test_failed_session_resumes_without_new_outline(session, fake_llm):
    fake_llm.fail_always("glossary", ServerError(503))
    run(session, fake_llm)
    assert session.status == FAILED
    outline = session.structure

    reset_for_resume(session)
    assert session.status == QUEUED
    retry_llm = FakeLLM(session.config)
    run(session, retry_llm)

    assert session.status == MARKDOWN_READY
    assert session.structure == outline
    assert "structure" not in retry_llm.calls
    assert len(retry_llm.calls) == CLEAN_RUN_CALLS - 1


def test_resume_skips_surviving_artifacts(session, fake_llm):
    run(session, fake_llm)
    snapshot = Session.from_dict(session.to_dict())
    snapshot.unit_exercises[1] = None
    snapshot.capstones_markdown = None
    snapshot.final_markdown = None
    reset_for_resume(snapshot)

    retry_llm = FakeLLM(snapshot.config)
    run(snapshot, retry_llm)

    assert snapshot.status == MARKDOWN_READY
    assert retry_llm.calls == ["unit-2-exercises", "capstone 1"]
    assert "## Capstone Project 1" in snapshot.final_markdown


def test_not_in_flight_is_left_alone(session, fake_llm):
    session.status = COMPLETED
    run(session, fake_llm)
    assert session.status == COMPLETED
    assert fake_llm.calls == []


def test_progress_is_persisted(tmp_path, session, fake_llm):
    store = FileBlobStore(tmp_path)
    registry = SessionRegistry(store)
    run(session, fake_llm, store=registry)

    saved = Session.from_dict(store.get(session.id))
    assert saved.status == MARKDOWN_READY
    assert saved.subtopic_markdowns == session.subtopic_markdowns
    assert saved.final_markdown == session.final_markdown
