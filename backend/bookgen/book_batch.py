"""
BookGen V1.0 - Batch Title List & Progress File
===============================================
Reads book titles from column A of a CSV file and tracks which titles a batch
has finished, so a crashed batch can be restarted without redoing them.

Progress file layout (JSON):

    { "completed": [...], "failed": [...], "started_at": "...", "last_updated_at": "..." }

Completed titles are skipped on the next run; failed titles are retried.
"""

from __future__ import annotations

import csv
import json
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path

import regex as re

from bookgen.config import BATCH_PROGRESS_FILE

HEADER_RE = re.compile(r"title|book|topic", re.IGNORECASE)
UNSAFE_FILENAME_RE = re.compile(r'[<>:"/\\|?*]+')


def _now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def read_titles(path: Path | str) -> list[str]:
    """First-column titles, header row and blank rows skipped, duplicates dropped."""
    path = Path(path)
    if path.suffix.lower() != ".csv":
        raise ValueError(f'Unsupported file type "{path.suffix}". Use .csv')

    with path.open(encoding="utf-8", newline="") as f:
        rows = [row for row in csv.reader(f) if row and row[0].strip()]

    titles: list[str] = []
    seen: set[str] = set()
    for i, row in enumerate(rows):
        title = row[0].strip()
        if i == 0 and HEADER_RE.search(title):
            continue
        key = title.lower()
        if key in seen:
            print(f'[Batch] ⚠️ Skipping duplicate title: "{title}"')
            continue
        seen.add(key)
        titles.append(title)
    return titles


def safe_filename(title: str) -> str:
    return re.sub(r"\s+", " ", UNSAFE_FILENAME_RE.sub("", title)).strip()[:200]


@dataclass
class BatchProgress:
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=_now)
    last_updated_at: str = field(default_factory=_now)

    def pending(self, titles: list[str]) -> list[str]:
        done = set(self.completed)
        return [t for t in titles if t not in done]

    def mark_completed(self, title: str) -> None:
        if title not in self.completed:
            self.completed.append(title)
        if title in self.failed:
            self.failed.remove(title)

    def mark_failed(self, title: str) -> None:
        if title not in self.failed:
            self.failed.append(title)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "BatchProgress":
        progress = cls(
            completed=list(d.get("completed") or []),
            failed=list(dict.fromkeys(d.get("failed") or [])),
        )
        progress.started_at = d.get("started_at") or progress.started_at
        progress.last_updated_at = d.get("last_updated_at") or progress.started_at
        return progress


def load_progress(path: Path | str = BATCH_PROGRESS_FILE) -> BatchProgress:
    path = Path(path)
    if path.exists():
        try:
            return BatchProgress.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, AttributeError) as e:
            print(f"[Batch] ⚠️ Could not read progress file ({e}), starting fresh")
    return BatchProgress()


def save_progress(progress: BatchProgress, path: Path | str = BATCH_PROGRESS_FILE) -> None:
    path = Path(path)
    progress.last_updated_at = _now()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(progress.to_dict(), indent=2), encoding="utf-8")
