"""
BookGen V1.0 - Shared Configuration
===================================
Centralised path constants and generation settings used across all modules.
Every value can be overridden from the environment (or a ``.env`` file).
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# ──────────────────────────────────────────────
# PATHS
# ──────────────────────────────────────────────
BASE_DIR = Path(__file__).resolve().parent.parent
OUTPUT_DIR = Path(os.getenv("OUTPUT_DIR", str(BASE_DIR / "data" / "output")))
SESSIONS_DIR = Path(os.getenv("SESSIONS_DIR", str(BASE_DIR / "data" / "sessions")))
BATCH_PROGRESS_FILE = Path(os.getenv("BATCH_PROGRESS_FILE", str(BASE_DIR / "data" / "batch-progress.json")))

# ──────────────────────────────────────────────
# BOOK SHAPE
# ──────────────────────────────────────────────
DEBUG_MODE = os.getenv("DEBUG_MODE", "").lower() == "true"

UNIT_COUNT = int(os.getenv("UNIT_COUNT", "1" if DEBUG_MODE else "10"))
SUBTOPICS_PER_UNIT = int(os.getenv("SUBTOPICS_PER_UNIT", "1" if DEBUG_MODE else "6"))
CAPSTONE_COUNT = int(os.getenv("CAPSTONE_COUNT", "1" if DEBUG_MODE else "2"))
CASE_STUDY_COUNT = int(os.getenv("CASE_STUDY_COUNT", "1" if DEBUG_MODE else "3"))

# ──────────────────────────────────────────────
# PIPELINE SETTINGS
# ──────────────────────────────────────────────
LLM_CONCURRENCY = int(os.getenv("LLM_CONCURRENCY", "3"))
MIN_CALL_INTERVAL = float(os.getenv("MIN_CALL_INTERVAL", "0.8" if DEBUG_MODE else "0"))
MIN_CALL_GAP = float(os.getenv("MIN_CALL_GAP", "0.05"))
LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "120"))
RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "2"))

MAX_CALLS = int(os.getenv("MAX_CALLS", "250"))
MAX_TOKENS = int(os.getenv("MAX_TOKENS", "400000"))

MAX_CONCURRENT_SESSIONS = int(os.getenv("MAX_CONCURRENT_SESSIONS", "3"))
SESSION_TTL = float(os.getenv("SESSION_TTL", "1800"))
DOWNLOAD_CLEANUP_DELAY = 300
SWEEP_INTERVAL = 60
BATCH_COOLDOWN = float(os.getenv("BATCH_COOLDOWN", "5"))

MAX_VERSIONS = 5
DEBUG_ORCHESTRATOR = os.getenv("DEBUG_ORCHESTRATOR", "").lower() in ("1", "true")

DEFAULT_RETRY_ATTEMPTS = {
    "structure": 3,
    "preface": 2,
    "unit_intro": 2,
    "subtopic": 3,
    "micro_summary": 2,
    "unit_summary": 2,
    "unit_end_summary": 2,
    "exercises": 3,
    "capstones": 3,
    "case_studies": 3,
    "glossary": 2,
    "bibliography": 2,
}


def get_model() -> str:
    """Return the primary model identifier (subtopic bodies, structure, back matter)."""
    model = os.getenv("DEFAULT_MODEL", "gpt-4o-mini")
    if not model:
        print("[Config] ⚠️ WARNING: DEFAULT_MODEL not set, using fallback")
        return "gpt-4o-mini"
    return model


def get_light_model() -> str:
    """Return the cheaper model used for summaries, introductions and edits."""
    return os.getenv("LIGHT_MODEL") or get_model()


def get_default_author() -> str:
    return os.getenv("BOOK_AUTHOR", "Editorial Board")


@dataclass(frozen=True)
class BookConfig:
    """
    Snapshot of the settings a single session is generated with.

    The four shape fields fix the outline's required counts; a session keeps
    its own copy so they cannot change after creation.
    """

    unit_count: int = UNIT_COUNT
    subtopics_per_unit: int = SUBTOPICS_PER_UNIT
    capstone_count: int = CAPSTONE_COUNT
    case_study_count: int = CASE_STUDY_COUNT
    concurrency: int = LLM_CONCURRENCY
    min_call_interval: float = MIN_CALL_INTERVAL
    max_calls: int = MAX_CALLS
    max_tokens: int = MAX_TOKENS
    light_model: str = field(default_factory=get_light_model)
    llm_timeout: float = LLM_TIMEOUT
    retry_base_delay: float = RETRY_BASE_DELAY
    retry_attempts: dict = field(default_factory=lambda: dict(DEFAULT_RETRY_ATTEMPTS))

    @property
    def total_subtopics(self) -> int:
        return self.unit_count * self.subtopics_per_unit

    def attempts_for(self, step: str) -> int:
        return self.retry_attempts.get(step, 2)

    def with_overrides(self, **overrides) -> "BookConfig":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict | None) -> "BookConfig":
        if not d:
            return cls()
        known = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def from_env(cls) -> "BookConfig":
        return cls()
