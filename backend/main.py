"""
BookGen V1.0 - Command Line Runner
==================================
Runs one book session end to end without the HTTP server:

    structure → preface → units → back matter → assembly → Markdown file
    (optional) export → PDF (typst) / DOCX (pandoc)

Sessions are persisted to SESSIONS_DIR after every phase, so an interrupted
run can be continued with --resume.

Usage
-----
    python main.py "Graph Theory Basics"                      # Full run
    python main.py "Graph Theory Basics" --export pdf docx    # With exports
    python main.py "Graph Theory Basics" --units 2 --subtopics 2
    python main.py --resume 3f2a9c1e-...                      # Continue a session
    python main.py --status 3f2a9c1e-...                      # Show a session
    python main.py --batch books.csv                          # Every title in column A
    python main.py --batch-status                             # Batch progress
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Fix Windows console encoding (cp1252 can't handle Unicode box chars)
if sys.stdout.encoding != "utf-8":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
if sys.stderr.encoding != "utf-8":
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

from bookgen.assembler import ensure_final_markdown, slugify
from bookgen.book_batch import load_progress, read_titles, safe_filename, save_progress
from bookgen.config import BATCH_COOLDOWN, BATCH_PROGRESS_FILE, OUTPUT_DIR, SESSIONS_DIR, BookConfig
from bookgen.errors import ExportError
from bookgen.exporter import export_docx, export_pdf
from bookgen.llm_client import LLMClient
from bookgen.orchestrator import Orchestrator
from bookgen.session_store import FileBlobStore, SessionRegistry
from bookgen.state import (
    COMPLETED,
    EXPORTING_PDF,
    FAILED,
    MARKDOWN_READY,
    Session,
    advance_status,
    reset_for_resume,
)


def banner(title: str) -> None:
    print()
    print("╔══════════════════════════════════════════════════════════╗")
    print(f"║  {title:<56}║")
    print("╚══════════════════════════════════════════════════════════╝")
    print()


def _print_progress(event: dict) -> None:
    print(f"   📈 {event['progress']:5.1f}%  {event['phase']}")


# ──────────────────────────────────────────────
# OUTPUTS
# ──────────────────────────────────────────────
def output_stem(session: Session, output_dir: Path, name: str | None = None) -> Path:
    if name:
        return output_dir / name
    title = session.structure.title if session.structure else session.topic
    return output_dir / f"{slugify(title) or 'book'}-{session.id[:8]}"


def write_outputs(
    session: Session, formats: list[str], output_dir: Path | None = None, name: str | None = None
) -> list[Path]:
    output_dir = output_dir or OUTPUT_DIR
    output_dir.mkdir(parents=True, exist_ok=True)
    stem = output_stem(session, output_dir, name)
    markdown = ensure_final_markdown(session)

    md_path = stem.parent / f"{stem.name}.md"
    md_path.write_text(markdown, encoding="utf-8")
    print(f"✅ Markdown written: {md_path}")
    written = [md_path]

    if "pdf" in formats:
        advance_status(session, EXPORTING_PDF)
        session.pdf_bytes = export_pdf(markdown)
        pdf_path = stem.parent / f"{stem.name}.pdf"
        pdf_path.write_bytes(session.pdf_bytes)
        advance_status(session, COMPLETED)
        print(f"✅ PDF written: {pdf_path}")
        written.append(pdf_path)

    if "docx" in formats:
        docx_path = stem.parent / f"{stem.name}.docx"
        docx_path.write_bytes(export_docx(markdown, session.structure.title))
        print(f"✅ DOCX written: {docx_path}")
        written.append(docx_path)

    return written


# ──────────────────────────────────────────────
# COMMANDS
# ──────────────────────────────────────────────
async def run_session(registry: SessionRegistry, session: Session, llm) -> Session:
    orchestrator = Orchestrator(llm, store=registry, on_progress=_print_progress)
    await orchestrator.orchestrate(session)
    return session


def finish(registry: SessionRegistry, session: Session, formats: list[str], started: float) -> int:
    if session.status != MARKDOWN_READY:
        print(f"❌ Generation failed: {session.error}")
        print(f"   Session id: {session.id} (retry with --resume)")
        return 1

    try:
        write_outputs(session, formats)
    except ExportError as e:
        print(f"❌ Export failed: {e}")
        return 1
    finally:
        registry.save(session)

    minutes, seconds = divmod(int(time.time() - started), 60)
    print()
    print("╔══════════════════════════════════════════════════════════╗")
    print("║                🎉  BOOK COMPLETE  🎉                      ║")
    print("╠══════════════════════════════════════════════════════════╣")
    print(f"║  ⏱️  Total time: {minutes}m {seconds}s")
    print(f"║  🆔  Session: {session.id}")
    print(f"║  📞  Calls: {session.call_count}   🔢 Tokens: {session.token_count}")
    print("╚══════════════════════════════════════════════════════════╝")
    print()
    return 0


def show_status(registry: SessionRegistry, session_id: str) -> int:
    session = registry.get(session_id)
    if session is None:
        print(f"❌ Session not found: {session_id}")
        return 1
    print(f"🆔 {session.id}")
    print(f"   Topic:    {session.topic}")
    print(f"   Status:   {session.status}")
    print(f"   Phase:    {session.phase} ({session.progress:.1f}%)")
    print(f"   Subtopics: {len(session.subtopic_markdowns)}/{session.config.total_subtopics}")
    print(f"   Calls: {session.call_count}  Tokens: {session.token_count}")
    if session.error:
        print(f"   Error:    {session.error}")
    return 0


# ──────────────────────────────────────────────
# BATCH MODE
# ──────────────────────────────────────────────
def process_book(
    registry: SessionRegistry,
    title: str,
    position: str,
    formats: list[str],
    config: BookConfig,
    llm,
    model: str | None = None,
    author: str | None = None,
) -> str | None:
    """Generate and write one batch title. Returns the failure message, or None on success."""
    started = time.time()
    print(f'[Batch] ({position}) Generating: "{title}"')
    session = registry.create_session(title, model=model, author=author, config=config)
    try:
        asyncio.run(run_session(registry, session, llm))
        if session.status != MARKDOWN_READY:
            return session.error or "Generation failed"
        try:
            write_outputs(session, formats, name=safe_filename(title))
        except ExportError as e:
            return f"Export failed: {e}"
        print(
            f'[Batch] ({position}) ✅ DONE: "{title}" in {int(time.time() - started)}s '
            f"({session.call_count} calls, {session.token_count} tokens)"
        )
        return None
    finally:
        registry.delete(session.id)


def run_batch_file(
    registry: SessionRegistry,
    titles_file: str,
    formats: list[str],
    config: BookConfig,
    llm,
    progress_file: Path = BATCH_PROGRESS_FILE,
    model: str | None = None,
    author: str | None = None,
) -> int:
    path = Path(titles_file).resolve()
    if not path.exists():
        print(f"❌ File not found: {path}")
        return 1
    try:
        titles = read_titles(path)
    except ValueError as e:
        print(f"❌ {e}")
        return 1
    if not titles:
        print("❌ No titles found in column A.")
        return 1

    progress = load_progress(progress_file)
    save_progress(progress, progress_file)
    skipped = len(titles) - len(progress.pending(titles))
    remaining = progress.pending(titles)
    retrying = [t for t in remaining if t in progress.failed]

    banner("📚  BookGen V1.0 - BATCH GENERATOR")
    print(f"[Batch] Found {len(titles)} title(s). Already completed: {skipped}. Remaining: {len(remaining)}.")
    if retrying:
        print(f"[Batch] 🔄 Retrying {len(retrying)} previously failed title(s).")
    if not remaining:
        print(f"[Batch] ✅ All titles already completed. Delete {progress_file} to run them again.")
        return 0

    errors: list[tuple[str, str]] = []
    for i, title in enumerate(remaining):
        position = f"{titles.index(title) + 1}/{len(titles)}"
        error = process_book(registry, title, position, formats, config, llm, model=model, author=author)
        if error is None:
            progress.mark_completed(title)
        else:
            print(f'[Batch] ❌ FAILED: "{title}": {error}')
            progress.mark_failed(title)
            errors.append((title, error))
        save_progress(progress, progress_file)

        if i < len(remaining) - 1 and BATCH_COOLDOWN > 0:
            print(f"[Batch] ⏳ Cooling down {BATCH_COOLDOWN:g}s before next book...")
            time.sleep(BATCH_COOLDOWN)

    print()
    print("╔══════════════════════════════════════════════════════════╗")
    print("║                     BATCH SUMMARY                        ║")
    print("╠══════════════════════════════════════════════════════════╣")
    print(f"║  Total in file:   {len(titles)}")
    print(f"║  Completed (all): {len(progress.completed)}")
    print(f"║  Failed (run):    {len(errors)}")
    print(f"║  Skipped (done):  {skipped}")
    print("╚══════════════════════════════════════════════════════════╝")
    for title, error in errors:
        print(f'   - "{title}": {error}')
    return 1 if errors else 0


def show_batch_status(progress_file: Path = BATCH_PROGRESS_FILE) -> int:
    if not Path(progress_file).exists():
        print(f"No batch progress file found ({progress_file}).")
        print("Run a batch first: python main.py --batch your-books.csv")
        return 0
    progress = load_progress(progress_file)
    print(f"Completed: {len(progress.completed)} book(s)")
    print(f"Failed:    {len(progress.failed)} book(s)")
    print(f"Updated:   {progress.last_updated_at}")
    for i, title in enumerate(progress.completed, 1):
        print(f"  ✅ {i}. {title}")
    for i, title in enumerate(progress.failed, 1):
        print(f"  ❌ {i}. {title}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="BookGen V1.0 Book Generator")
    parser.add_argument("topic", help="Book topic", nargs="?")
    parser.add_argument("--model", default=None, help="Primary model (defaults to DEFAULT_MODEL)")
    parser.add_argument("--author", default=None, help="Author line for the front matter")
    parser.add_argument("--units", type=int, default=None, help="Number of units")
    parser.add_argument("--subtopics", type=int, default=None, help="Subtopics per unit")
    parser.add_argument("--capstones", type=int, default=None, help="Number of capstone projects")
    parser.add_argument("--case-studies", type=int, default=None, help="Number of case studies")
    parser.add_argument(
        "--export",
        nargs="*",
        choices=["pdf", "docx"],
        default=None,
        help="Also export the book (e.g., --export pdf docx). Batch mode exports both unless given",
    )
    parser.add_argument("--resume", metavar="SESSION_ID", default=None, help="Continue a persisted session")
    parser.add_argument("--status", metavar="SESSION_ID", default=None, help="Print a persisted session's status")
    parser.add_argument("--batch", metavar="CSV_FILE", default=None, help="Generate every title in column A of a CSV file")
    parser.add_argument("--batch-status", action="store_true", help="Print the batch progress file")
    parser.add_argument(
        "--progress-file", type=Path, default=BATCH_PROGRESS_FILE, help="Batch progress file (resume state)"
    )
    return parser


def main(argv: list[str] | None = None, llm=None) -> int:
    args = build_parser().parse_args(argv)
    registry = SessionRegistry(FileBlobStore(SESSIONS_DIR))
    started = time.time()

    if args.status:
        return show_status(registry, args.status)
    if args.batch_status:
        return show_batch_status(args.progress_file)

    llm = llm or LLMClient()
    formats = args.export or []

    if args.resume:
        session = registry.get(args.resume)
        if session is None:
            print(f"❌ Session not found: {args.resume}")
            return 1
        if session.status == MARKDOWN_READY:
            print("✅ Session already generated. Writing outputs.")
            return finish(registry, session, formats, started)
        banner("📖  BookGen V1.0 - RESUMING SESSION")
        if session.status == FAILED:
            print(f"🔄 Previous failure: {session.error}")
        reset_for_resume(session)
        asyncio.run(run_session(registry, session, llm))
        return finish(registry, session, formats, started)

    config = BookConfig.from_env().with_overrides(
        unit_count=args.units,
        subtopics_per_unit=args.subtopics,
        capstone_count=args.capstones,
        case_study_count=args.case_studies,
    )

    if args.batch:
        batch_formats = ["pdf", "docx"] if args.export is None else args.export
        return run_batch_file(
            registry,
            args.batch,
            batch_formats,
            config,
            llm,
            progress_file=args.progress_file,
            model=args.model,
            author=args.author,
        )

    if not args.topic or len(args.topic.strip()) < 3:
        print("❌ A topic of at least 3 characters is required.")
        return 1

    banner("📖  BookGen V1.0 - BOOK GENERATOR")
    print(f"📚 Topic: {args.topic.strip()}")
    print(
        f"   Shape: {config.unit_count} units × {config.subtopics_per_unit} subtopics, "
        f"{config.capstone_count} capstones, {config.case_study_count} case studies"
    )

    session = registry.create_session(args.topic.strip(), model=args.model, author=args.author, config=config)
    print(f"🆔 Session: {session.id}")
    asyncio.run(run_session(registry, session, llm))
    return finish(registry, session, formats, started)


# ──────────────────────────────────────────────
# CLI ENTRY POINT
# ──────────────────────────────────────────────
if __name__ == "__main__":
    sys.exit(main())
