"""
BookGen V1.0 - Session State Definition
=======================================
The mutable aggregate record of one book's generation, the outline schema it
must satisfy, and the helpers that keep its invariants:

    * status only moves forward (``advance_status``)
    * a subtopic body is pushed onto its version stack before it is replaced
    * a failed session drops its generated content but keeps outline + counters
"""

from __future__ import annotations

import base64
import time
import uuid
from dataclasses import dataclass, field, fields
from typing import Annotated, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from bookgen.config import MAX_VERSIONS, BookConfig, get_default_author, get_model
from bookgen.errors import InvalidStatusTransition, NoPreviousVersion

# ──────────────────────────────────────────────
# STATUS MACHINE
# ──────────────────────────────────────────────
QUEUED = "queued"
GENERATING = "generating"
MARKDOWN_READY = "markdown_ready"
EXPORTING_PDF = "exporting_pdf"
COMPLETED = "completed"
FAILED = "failed"
DOWNLOADED = "downloaded"

ALL_STATUSES = (QUEUED, GENERATING, MARKDOWN_READY, EXPORTING_PDF, COMPLETED, FAILED, DOWNLOADED)
TERMINAL_STATUSES = (COMPLETED, FAILED, DOWNLOADED)
IN_FLIGHT_STATUSES = (QUEUED, GENERATING)

_FORWARD_ORDER = {
    QUEUED: 0,
    GENERATING: 1,
    MARKDOWN_READY: 2,
    EXPORTING_PDF: 3,
    COMPLETED: 4,
    DOWNLOADED: 5,
}


# ──────────────────────────────────────────────
# OUTLINE SCHEMA
# ──────────────────────────────────────────────
NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


def _check_count(value: list, info: ValidationInfo, key: str, noun: str) -> list:
    expected = (info.context or {}).get(key)
    if expected is not None and len(value) != expected:
        raise ValueError(f"expected {expected} {noun}, got {len(value)}")
    return value


class UnitOutline(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    unit_title: NonEmptyStr = Field(validation_alias=AliasChoices("unit_title", "unitTitle"))
    subtopics: list[NonEmptyStr]

    @field_validator("subtopics")
    @classmethod
    def _subtopic_count(cls, value, info: ValidationInfo):
        return _check_count(value, info, "subtopics_per_unit", "subtopics")


class BookStructure(BaseModel):
    """
    The fixed-shape plan a session must fulfil.

    Counts are only enforced when a validation context carrying the
    session's ``BookConfig`` numbers is supplied (see ``parse_outline``);
    plain ``model_validate`` is used to reload persisted snapshots.
    """

    model_config = ConfigDict(populate_by_name=True)

    title: NonEmptyStr
    units: list[UnitOutline]
    capstone_topics: list[NonEmptyStr] = Field(
        validation_alias=AliasChoices("capstone_topics", "capstoneTopics")
    )
    case_study_topics: list[NonEmptyStr] = Field(
        validation_alias=AliasChoices("case_study_topics", "caseStudyTopics")
    )

    @classmethod
    def parse_outline(cls, data: object, config: BookConfig) -> "StructureValidation":
        return parse_outline(data, config)

    @field_validator("units")
    @classmethod
    def _unit_count(cls, value, info: ValidationInfo):
        return _check_count(value, info, "unit_count", "units")

    @field_validator("capstone_topics")
    @classmethod
    def _capstone_count(cls, value, info: ValidationInfo):
        return _check_count(value, info, "capstone_count", "capstone topics")

    @field_validator("case_study_topics")
    @classmethod
    def _case_study_count(cls, value, info: ValidationInfo):
        return _check_count(value, info, "case_study_count", "case study topics")


@dataclass
class StructureIssue:
    location: str
    message: str

    def __str__(self) -> str:
        return f"{self.location or '<root>'}: {self.message}"


@dataclass
class StructureValidation:
    """Either a valid outline or the list of fields/counts that failed."""

    structure: Optional[BookStructure] = None
    issues: list[StructureIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.structure is not None and not self.issues


def shape_context(config: BookConfig) -> dict:
    return {
        "unit_count": config.unit_count,
        "subtopics_per_unit": config.subtopics_per_unit,
        "capstone_count": config.capstone_count,
        "case_study_count": config.case_study_count,
    }


def parse_outline(data: object, config: BookConfig) -> StructureValidation:
    """Schema-checked deserialisation of a raw outline against the required counts."""
    try:
        structure = BookStructure.model_validate(data, context=shape_context(config))
    except ValidationError as exc:
        issues = [
            StructureIssue(
                location=".".join(str(part) for part in err["loc"]),
                message=err["msg"],
            )
            for err in exc.errors()
        ]
        return StructureValidation(structure=None, issues=issues)
    return StructureValidation(structure=structure)


# ──────────────────────────────────────────────
# SESSION
# ──────────────────────────────────────────────
def subtopic_key(unit_index: int, subtopic_index: int) -> str:
    return f"u{unit_index}-s{subtopic_index}"


@dataclass
class Session:
    """
    One in-flight or finished book generation.

    Attributes
    ----------
    subtopic_markdowns : dict[str, str]
        Authoritative subtopic bodies keyed by ``subtopic_key(u, s)``.

    subtopic_versions : dict[str, list[str]]
        Bounded undo stack (oldest first) per subtopic key.

    micro_summaries : list[list[str] | None]
        Transient per-unit digests, cleared once the unit summary is combined.

    final_markdown : str | None
        Derived data. ``None`` means stale; rebuild before use.
    """

    topic: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    model: str = field(default_factory=get_model)
    author: Optional[str] = None
    config: BookConfig = field(default_factory=BookConfig)
    status: str = QUEUED
    phase: str = "init"
    progress: float = 0.0
    current_unit: int = 0
    current_subtopic: int = 0
    structure: Optional[BookStructure] = None
    preface_markdown: Optional[str] = None
    unit_introductions: list = field(default_factory=list)
    unit_markdowns: list = field(default_factory=list)
    micro_summaries: list = field(default_factory=list)
    unit_summaries: list = field(default_factory=list)
    unit_end_summaries: list = field(default_factory=list)
    unit_exercises: list = field(default_factory=list)
    capstones_markdown: Optional[str] = None
    case_studies_markdown: Optional[str] = None
    glossary_markdown: Optional[str] = None
    bibliography_markdown: Optional[str] = None
    final_markdown: Optional[str] = None
    pdf_bytes: Optional[bytes] = None
    error: Optional[str] = None
    call_count: int = 0
    token_count: int = 0
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)
    subtopic_markdowns: dict = field(default_factory=dict)
    subtopic_versions: dict = field(default_factory=dict)
    edit_count: int = 0

    def __post_init__(self):
        self.ensure_unit_slots()

    def ensure_unit_slots(self) -> None:
        """Pre-size every per-unit list so phases write by index, never append."""
        n = self.config.unit_count
        for name in (
            "unit_introductions",
            "unit_markdowns",
            "micro_summaries",
            "unit_summaries",
            "unit_end_summaries",
            "unit_exercises",
        ):
            slots = getattr(self, name)
            if len(slots) < n:
                slots.extend([None] * (n - len(slots)))

    @property
    def display_author(self) -> str:
        return self.author.strip() if self.author and self.author.strip() else get_default_author()

    # ── Serialisation ──
    def to_dict(self) -> dict:
        d = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "structure":
                value = value.model_dump() if value is not None else None
            elif f.name == "config":
                value = value.to_dict()
            elif f.name == "pdf_bytes":
                value = base64.b64encode(value).decode("ascii") if value else None
            elif f.name == "subtopic_versions":
                value = {k: list(v) for k, v in value.items()}
            elif isinstance(value, (list, dict)):
                value = type(value)(value)
            d[f.name] = value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Session":
        data = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        data["config"] = BookConfig.from_dict(d.get("config"))
        if d.get("structure"):
            data["structure"] = BookStructure.model_validate(d["structure"])
        if d.get("pdf_bytes"):
            data["pdf_bytes"] = base64.b64decode(d["pdf_bytes"])
        return cls(**data)


def new_session(
    topic: str,
    model: str | None = None,
    author: str | None = None,
    config: BookConfig | None = None,
) -> Session:
    session = Session(topic=topic, author=author, config=config or BookConfig.from_env())
    if model:
        session.model = model
    return session


def touch(session: Session) -> None:
    session.last_activity_at = time.time()


def advance_status(session: Session, status: str) -> None:
    """Move the session forward. ``failed`` is reachable from any non-terminal status."""
    current = session.status
    if status == current:
        return
    if status not in ALL_STATUSES:
        raise InvalidStatusTransition(f"Unknown status: {status}")
    if status == FAILED:
        if current in TERMINAL_STATUSES:
            raise InvalidStatusTransition(f"Cannot fail a session in terminal status {current}")
    elif current == FAILED or _FORWARD_ORDER[status] < _FORWARD_ORDER[current]:
        raise InvalidStatusTransition(f"Cannot move session from {current} to {status}")
    session.status = status
    touch(session)


def reset_for_resume(session: Session) -> None:
    """Caller-driven full reset: the only path that moves a status backwards."""
    session.status = QUEUED
    session.error = None
    session.phase = "init"
    session.progress = 0.0
    session.ensure_unit_slots()
    touch(session)


def purge_content(session: Session) -> None:
    """Drop generated content to bound memory. Outline and counters survive."""
    n = session.config.unit_count
    session.preface_markdown = None
    session.unit_introductions = [None] * n
    session.unit_markdowns = [None] * n
    session.micro_summaries = [None] * n
    session.unit_summaries = [None] * n
    session.unit_end_summaries = [None] * n
    session.unit_exercises = [None] * n
    session.capstones_markdown = None
    session.case_studies_markdown = None
    session.glossary_markdown = None
    session.bibliography_markdown = None
    session.final_markdown = None
    session.pdf_bytes = None
    session.subtopic_markdowns = {}
    session.subtopic_versions = {}


def fail_session(session: Session, message: str) -> None:
    if session.status not in TERMINAL_STATUSES:
        advance_status(session, FAILED)
    session.error = message
    purge_content(session)
    touch(session)


# ──────────────────────────────────────────────
# VERSION STACK
# ──────────────────────────────────────────────
def push_version(session: Session, key: str, markdown: str) -> int:
    versions = session.subtopic_versions.setdefault(key, [])
    versions.append(markdown)
    if len(versions) > MAX_VERSIONS:
        del versions[: len(versions) - MAX_VERSIONS]
    return len(versions)


def pop_version(session: Session, key: str) -> str:
    versions = session.subtopic_versions.get(key)
    if not versions:
        raise NoPreviousVersion(key)
    return versions.pop()


def versions_remaining(session: Session, key: str) -> int:
    return len(session.subtopic_versions.get(key) or [])
