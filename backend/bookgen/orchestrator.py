"""
BookGen V1.0 - Generation Orchestrator
======================================
Drives one session from a bare topic to assembled Markdown:

    structure → preface → unit[1..N] → back matter → assembly → markdown_ready

Per unit:
    1. check the outline gave this unit the configured subtopic count
    2. introduction ∥ subtopics (each followed by its micro-summary)
    3. keep the concatenated unit text as a secondary artifact
    4. combine micro-summaries into the unit summary, then drop them
    5. end-of-unit summary ∥ exercises
    6. persist

Every step goes through ``retry`` with a per-step attempt count, parallel
work goes through ``run_batch``, and the call budget is checked before and
after each phase. ``orchestrate`` never raises: any failure lands in the
session's ``failed`` status with the triggering message.
"""

from __future__ import annotations

import asyncio
import json

from bookgen import back_matter, steps
from bookgen.assembler import rebuild_final_markdown
from bookgen.batch import run_batch
from bookgen.budget import check_limits
from bookgen.config import DEBUG_ORCHESTRATOR
from bookgen.errors import AbortError
from bookgen.graph import build_phase_graph, initial_state, recursion_limit
from bookgen.retry import retry
from bookgen.state import (
    GENERATING,
    IN_FLIGHT_STATUSES,
    MARKDOWN_READY,
    Session,
    advance_status,
    fail_session,
    subtopic_key,
    touch,
)
from bookgen.structure import generate_structure

STRUCTURE_PROGRESS = 3
SUBTOPICS_PROGRESS_SPAN = 72
POST_UNITS_PROGRESS = 96
ASSEMBLY_PROGRESS = 98


def log_phase(session: Session, message: str, detail: dict | None = None, verbose: bool = False):
    if verbose and not DEBUG_ORCHESTRATOR:
        return
    suffix = f" {json.dumps(detail, default=str)}" if detail else ""
    print(f"[Orchestrator] [{session.id[:8]}] {message}{suffix}")


class Orchestrator:
    """
    Parameters
    ----------
    llm
        Anything with an async ``generate(**kwargs) -> LLMResult``.
    store
        Optional persistence collaborator with ``save(session)``.
    sleep
        Backoff sleeper handed to ``retry``.
    on_progress
        Optional callable receiving a progress event dict after each update.
    """

    def __init__(self, llm, store=None, sleep=asyncio.sleep, on_progress=None):
        self.llm = llm
        self.store = store
        self.sleep = sleep
        self.on_progress = on_progress

    # ──────────────────────────────────────────────
    # ENTRY POINT
    # ──────────────────────────────────────────────
    async def orchestrate(self, session: Session) -> None:
        if session.status not in IN_FLIGHT_STATUSES:
            log_phase(session, f"Not orchestrating: status is {session.status}")
            return

        try:
            advance_status(session, GENERATING)
            self._update(session, phase="init")
            log_phase(session, "Generation started", {"topic": session.topic, "model": session.model})

            graph = build_phase_graph(self, session)
            await graph.ainvoke(
                initial_state(session),
                {"recursion_limit": recursion_limit(session)},
            )

            advance_status(session, MARKDOWN_READY)
            self._update(session, phase="complete", progress=100)
            self._persist(session)
            log_phase(
                session,
                "✅ Markdown ready",
                {"calls": session.call_count, "tokens": session.token_count},
            )
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            log_phase(session, f"❌ Generation failed in phase {session.phase}: {message}")
            fail_session(session, message)
            self._emit(session)
            try:
                self._persist(session)
            except Exception as persist_exc:
                print(f"[Orchestrator] ⚠️ Could not persist failed session {session.id}: {persist_exc}")

    # ──────────────────────────────────────────────
    # PHASES
    # ──────────────────────────────────────────────
    async def run_structure(self, session: Session) -> None:
        if session.structure is not None:
            log_phase(session, "Structure exists, skipping")
            return
        check_limits(session)
        self._update(session, phase="structure")
        session.structure = await self._retry(
            session, "structure", "structure", lambda: generate_structure(session, self.llm)
        )
        session.ensure_unit_slots()
        self._update(session, progress=STRUCTURE_PROGRESS)
        log_phase(
            session,
            "Structure ready",
            {"title": session.structure.title, "units": len(session.structure.units)},
        )
        self._checkpoint(session)

    async def run_preface(self, session: Session) -> None:
        if session.preface_markdown:
            return
        check_limits(session)
        self._update(session, phase="preface")
        session.preface_markdown = await self._retry(
            session, "preface", "preface", lambda: steps.generate_preface(session, self.llm)
        )
        self._checkpoint(session)

    async def run_unit(self, session: Session, u: int) -> None:
        if session.unit_end_summaries[u] and session.unit_exercises[u]:
            log_phase(session, f"Unit {u + 1} complete, skipping", verbose=True)
            return

        config = session.config
        unit = session.structure.units[u]
        if len(unit.subtopics) != config.subtopics_per_unit:
            raise AbortError(
                f"Unit {u + 1} has {len(unit.subtopics)} subtopics, expected {config.subtopics_per_unit}"
            )

        check_limits(session)
        session.current_unit = u + 1
        session.current_subtopic = 0
        self._update(session, phase=f"unit-{u + 1}")
        log_phase(session, f"Unit {u + 1}/{config.unit_count}: {unit.unit_title}")

        prev_summary = session.unit_summaries[u - 1] if u > 0 else None

        if session.unit_summaries[u] is None:
            micro = session.micro_summaries[u] or [None] * config.subtopics_per_unit
            session.micro_summaries[u] = micro
            await self._run_unit_content(session, u, micro, prev_summary)

            session.unit_markdowns[u] = "\n\n".join(
                session.subtopic_markdowns[subtopic_key(u, s)] for s in range(config.subtopics_per_unit)
            )
            self._checkpoint(session)

            self._update(session, phase=f"unit-{u + 1}-summary")
            session.unit_summaries[u] = await self._retry(
                session,
                "unit_summary",
                f"unit-{u + 1}-summary",
                lambda: steps.combine_unit_summary(session, self.llm, u, micro),
            )
            # micro-summaries only feed the closing steps below
            session.micro_summaries[u] = None
            self._checkpoint(session)
        else:
            micro = []

        self._update(session, phase=f"unit-{u + 1}-closing")
        closing = []
        if not session.unit_end_summaries[u]:

            async def end_summary():
                session.unit_end_summaries[u] = await self._retry(
                    session,
                    "unit_end_summary",
                    f"unit-{u + 1}-end-summary",
                    lambda: steps.generate_unit_end_summary(session, self.llm, u, micro),
                )

            closing.append(end_summary)
        if not session.unit_exercises[u]:

            async def exercises():
                session.unit_exercises[u] = await self._retry(
                    session,
                    "exercises",
                    f"unit-{u + 1}-exercises",
                    lambda: steps.generate_unit_exercises(session, self.llm, u, session.unit_summaries[u]),
                )

            closing.append(exercises)
        await run_batch(closing, config.concurrency)

        log_phase(session, f"Unit {u + 1} done", {"calls": session.call_count, "tokens": session.token_count})
        self._checkpoint(session)

    async def _run_unit_content(self, session: Session, u: int, micro: list, prev_summary: str | None):
        config = session.config
        tasks = []

        if not session.unit_introductions[u]:

            async def intro():
                session.unit_introductions[u] = await self._retry(
                    session,
                    "unit_intro",
                    f"unit-{u + 1}-intro",
                    lambda: steps.generate_unit_intro(session, self.llm, u),
                )

            tasks.append(intro)

        def subtopic_task(s: int):
            async def run():
                key = subtopic_key(u, s)
                tag = f"U{u + 1}/S{s + 1}"
                body = session.subtopic_markdowns.get(key)
                if body is None:
                    body = await self._retry(
                        session,
                        "subtopic",
                        f"subtopic {tag}",
                        lambda: steps.generate_subtopic(session, self.llm, u, s, prev_summary),
                    )
                    session.subtopic_markdowns[key] = body
                    session.current_subtopic = s + 1
                    self._update(session, progress=self._subtopic_progress(session))
                    log_phase(session, f"Subtopic {tag} stored", {"chars": len(body)}, verbose=True)
                if micro[s] is None:
                    micro[s] = await self._retry(
                        session,
                        "micro_summary",
                        f"micro {tag}",
                        lambda: steps.generate_micro_summary(session, self.llm, u, s, body),
                    )

            return run

        tasks.extend(subtopic_task(s) for s in range(config.subtopics_per_unit))
        await run_batch(tasks, config.concurrency)
        check_limits(session)

    async def run_post_units(self, session: Session) -> None:
        check_limits(session)
        self._update(session, phase="post-units")
        session.current_subtopic = 0

        jobs = (
            ("capstones_markdown", "capstones", back_matter.generate_capstones),
            ("case_studies_markdown", "case_studies", back_matter.generate_case_studies),
            ("glossary_markdown", "glossary", steps.generate_glossary),
            ("bibliography_markdown", "bibliography", steps.generate_bibliography),
        )

        def job_task(field_name, step, fn):
            async def run():
                value = await self._retry(session, step, step, lambda: fn(session, self.llm))
                setattr(session, field_name, value)

            return run

        tasks = [job_task(*job) for job in jobs if not getattr(session, job[0])]
        await run_batch(tasks, session.config.concurrency)

        self._update(session, progress=POST_UNITS_PROGRESS)
        self._checkpoint(session)

    async def run_assembly(self, session: Session) -> None:
        check_limits(session)
        self._update(session, phase="assembly")
        session.final_markdown = rebuild_final_markdown(session)
        # the keyed subtopic map stays authoritative
        session.unit_markdowns = [None] * session.config.unit_count
        self._update(session, progress=ASSEMBLY_PROGRESS)
        log_phase(session, "Assembled", {"chars": len(session.final_markdown)})
        self._persist(session)

    # ──────────────────────────────────────────────
    # HELPERS
    # ──────────────────────────────────────────────
    async def _retry(self, session: Session, step: str, label: str, fn):
        config = session.config
        return await retry(
            fn,
            config.attempts_for(step),
            base_delay=config.retry_base_delay,
            label=f"{session.id[:8]} {label}",
            sleep=self.sleep,
        )

    def _subtopic_progress(self, session: Session) -> float:
        total = session.config.total_subtopics or 1
        done = min(len(session.subtopic_markdowns), total)
        return round(STRUCTURE_PROGRESS + SUBTOPICS_PROGRESS_SPAN * done / total, 1)

    def _checkpoint(self, session: Session) -> None:
        check_limits(session)
        self._persist(session)

    def _persist(self, session: Session) -> None:
        if self.store is not None:
            self.store.save(session)

    def _update(self, session: Session, phase: str | None = None, progress: float | None = None) -> None:
        if phase is not None:
            session.phase = phase
        if progress is not None:
            session.progress = max(session.progress, progress)
        touch(session)
        self._emit(session)

    def _emit(self, session: Session) -> None:
        if self.on_progress is None:
            return
        self.on_progress(progress_event(session))


def progress_event(session: Session) -> dict:
    return {
        "session_id": session.id,
        "status": session.status,
        "phase": session.phase,
        "progress": session.progress,
        "current_unit": session.current_unit,
        "current_subtopic": session.current_subtopic,
        "error": session.error,
    }
