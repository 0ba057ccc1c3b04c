"""
BookGen V1.0 - Export Collaborator
==================================
Final Markdown in, binary document out:

    markdown_to_typst() → `typst compile` → PDF bytes
    `pandoc -f gfm`     →                   DOCX bytes

Headings get Typst labels built with the same slugs the Markdown table of
contents links to, so TOC entries stay clickable in the PDF.
"""

from __future__ import annotations

import subprocess
import tempfile
from pathlib import Path

import regex as re

from bookgen.assembler import slugify
from bookgen.errors import ExportError

COMPILE_TIMEOUT = 300

TYPST_PREAMBLE = """\
#set page(paper: "a4", margin: (x: 2.2cm, y: 2.5cm), numbering: "1")
#set text(size: 11pt)
#set par(justify: true)
#set heading(numbering: none)
#show heading.where(level: 1): it => { pagebreak(weak: true); it }
#show link: set text(fill: rgb("#1a4f8b"))
"""

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
_UNIT_HEADING_RE = re.compile(r"^Unit\s+(\d+)\b", re.IGNORECASE)
_ORDERED_RE = re.compile(r"^(\s*)\d+[.)]\s+(.*)$")
_BULLET_RE = re.compile(r"^(\s*)[-*+]\s+(.*)$")
_TABLE_SEPARATOR_RE = re.compile(r"^\|[\s:|\-]+\|\s*$")
_RULE_RE = re.compile(r"^(-{3,}|\*{3,}|_{3,})\s*$")
_INLINE_RE = re.compile(
    r"(?P<code>`[^`\n]+`)"
    r"|(?P<link>\[(?P<link_text>[^\]\n]+)\]\((?P<link_url>[^)\s]+)\))"
    r"|(?P<bold>\*\*(?P<bold_text>.+?)\*\*|__(?P<bold_text2>.+?)__)"
    r"|(?P<italic>\*(?P<italic_text>[^*\s][^*\n]*?)\*|(?<!\w)_(?P<italic_text2>[^_\s][^_\n]*?)_(?!\w))"
)

_TYPST_SPECIAL = {
    "\\": r"\\",
    "#": r"\#",
    "$": r"\$",
    "*": r"\*",
    "_": r"\_",
    "<": r"\<",
    ">": r"\>",
    "@": r"\@",
    "`": r"\`",
    "~": r"\~",
    "[": r"\[",
    "]": r"\]",
}


def escape_typst(text: str) -> str:
    if not text:
        return ""
    return "".join(_TYPST_SPECIAL.get(c, c) for c in text)


def _typst_string(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def render_inline(text: str) -> str:
    """Inline Markdown (code, links, bold, italic) → Typst markup; everything else escaped."""
    out: list[str] = []
    pos = 0
    for m in _INLINE_RE.finditer(text):
        out.append(escape_typst(text[pos : m.start()]))
        if m.group("code"):
            out.append(m.group("code"))
        elif m.group("link"):
            label = render_inline(m.group("link_text"))
            url = m.group("link_url")
            if url.startswith("#"):
                out.append(f"#link(<{url[1:]}>)[{label}]")
            else:
                out.append(f"#link({_typst_string(url)})[{label}]")
        elif m.group("bold"):
            inner = m.group("bold_text") or m.group("bold_text2")
            out.append(f"*{render_inline(inner)}*")
        else:
            inner = m.group("italic_text") or m.group("italic_text2")
            out.append(f"_{render_inline(inner)}_")
        pos = m.end()
    out.append(escape_typst(text[pos:]))
    return "".join(out)


def _table_cells(line: str) -> list[str]:
    return [c.strip() for c in line.strip().strip("|").split("|")]


def render_table(lines: list[str]) -> str:
    rows = [_table_cells(line) for line in lines if not _TABLE_SEPARATOR_RE.match(line)]
    if not rows:
        return ""
    columns = max(len(r) for r in rows)
    cells = []
    for row in rows:
        padded = row + [""] * (columns - len(row))
        cells.extend(f"[{render_inline(c)}]" for c in padded)
    return f"#table(columns: {columns}, " + ", ".join(cells) + ")"


class _LabelTracker:
    """Heading text → label, matching the assembler's TOC anchors."""

    def __init__(self):
        self.unit = 0
        self.seen: set[str] = set()

    def label_for(self, level: int, text: str) -> str | None:
        m = _UNIT_HEADING_RE.match(text)
        if level == 1 and m:
            self.unit = int(m.group(1))
        if level > 2:
            return None
        lowered = text.strip().lower()
        if level == 2 and self.unit and lowered in ("summary", "exercises"):
            label = f"{lowered}-{self.unit}"
        else:
            label = slugify(text)
        if not label or label in self.seen:
            return None
        self.seen.add(label)
        return label


def markdown_to_typst(markdown: str) -> str:
    lines = markdown.splitlines()
    out: list[str] = [TYPST_PREAMBLE]
    labels = _LabelTracker()
    i = 0
    n = len(lines)

    while i < n:
        line = lines[i]
        stripped = line.strip()

        if stripped.startswith("```"):
            fence = [stripped]
            i += 1
            while i < n and not lines[i].strip().startswith("```"):
                fence.append(lines[i])
                i += 1
            fence.append("```")
            i += 1
            out.append("\n".join(fence))
            continue

        heading = _HEADING_RE.match(line)
        if heading:
            level = len(heading.group(1))
            text = heading.group(2)
            label = labels.label_for(level, text)
            suffix = f" <{label}>" if label else ""
            out.append(f"{'=' * level} {render_inline(text)}{suffix}")
            i += 1
            continue

        if stripped.startswith("|"):
            block = []
            while i < n and lines[i].strip().startswith("|"):
                block.append(lines[i])
                i += 1
            out.append(render_table(block))
            continue

        if _RULE_RE.match(stripped):
            out.append("#line(length: 100%)")
            i += 1
            continue

        ordered = _ORDERED_RE.match(line)
        bullet = _BULLET_RE.match(line)
        if ordered:
            out.append(f"{ordered.group(1)}+ {render_inline(ordered.group(2))}")
        elif bullet:
            out.append(f"{bullet.group(1)}- {render_inline(bullet.group(2))}")
        elif stripped.startswith(">"):
            out.append(f"#quote(block: true)[{render_inline(stripped.lstrip('> '))}]")
        elif stripped.startswith(("=", "+ ", "/ ")):
            # would otherwise open a Typst heading, list or term
            out.append("\\" + render_inline(stripped))
        else:
            out.append(render_inline(line))
        i += 1

    return "\n".join(out) + "\n"


def _run(args: list[str], tool: str) -> None:
    try:
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=COMPILE_TIMEOUT,
        )
    except FileNotFoundError as e:
        raise ExportError(f"{tool} not found. Please install the {tool} CLI.") from e
    except subprocess.TimeoutExpired as e:
        raise ExportError(f"{tool} timed out after {COMPILE_TIMEOUT} seconds") from e
    if result.returncode != 0:
        raise ExportError(f"{tool} failed: {(result.stderr or result.stdout or '').strip()}")


def export_pdf(markdown: str) -> bytes:
    print("[Export] 🚀 Compiling PDF with Typst...")
    with tempfile.TemporaryDirectory(prefix="bookgen-") as tmp:
        typ_path = Path(tmp) / "book.typ"
        pdf_path = Path(tmp) / "book.pdf"
        typ_path.write_text(markdown_to_typst(markdown), encoding="utf-8")
        _run(["typst", "compile", str(typ_path), str(pdf_path)], "typst")
        if not pdf_path.exists() or pdf_path.stat().st_size == 0:
            raise ExportError("typst produced no PDF")
        data = pdf_path.read_bytes()
    print(f"[Export] ✅ PDF ready ({len(data) / (1024 * 1024):.2f} MB)")
    return data


def export_docx(markdown: str, title: str | None = None) -> bytes:
    print("[Export] 🚀 Converting to DOCX with pandoc...")
    with tempfile.TemporaryDirectory(prefix="bookgen-") as tmp:
        md_path = Path(tmp) / "book.md"
        docx_path = Path(tmp) / "book.docx"
        md_path.write_text(markdown, encoding="utf-8")
        args = ["pandoc", str(md_path), "-f", "gfm", "-o", str(docx_path)]
        if title:
            args += ["--metadata", f"title={title}"]
        _run(args, "pandoc")
        if not docx_path.exists():
            raise ExportError("pandoc produced no DOCX")
        data = docx_path.read_bytes()
    print(f"[Export] ✅ DOCX ready ({len(data) / 1024:.1f} KB)")
    return data
