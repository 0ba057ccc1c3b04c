"""
BookGen V1.0 - Markdown Span Mapping
====================================
Locates a passage the reader selected in rendered text inside the Markdown
source it came from. Two independent layers, each keeping a position map
back to its input:

    PlainProjection  - source with inline formatting tokens removed
                       (emphasis, inline code, heading markers, fence lines)
    NormalizedText   - whitespace runs collapsed to one space

``find_markdown_span`` tries, in order: an exact match, a whitespace-
normalised match on the source, then a normalised match on the plain
projection widened over adjacent formatting characters.
"""

from __future__ import annotations

from dataclasses import dataclass

_EMPHASIS_CHARS = "*_`"


@dataclass
class MarkdownSpan:
    start: int
    end: int
    text: str


class NormalizedText:
    """Whitespace-collapsed view of ``source``; ``positions[i]`` is the source index of ``text[i]``."""

    def __init__(self, source: str):
        chars: list[str] = []
        positions: list[int] = []
        for i, ch in enumerate(source):
            if ch.isspace():
                if chars and chars[-1] != " ":
                    chars.append(" ")
                    positions.append(i)
            else:
                chars.append(ch)
                positions.append(i)
        self.source = source
        self.text = "".join(chars)
        self.positions = positions

    def find(self, needle: str) -> tuple[int, int] | None:
        """Source ``[start, end)`` of the first match of an already-normalised needle."""
        if not needle:
            return None
        idx = self.text.find(needle)
        if idx == -1:
            return None
        return self.positions[idx], self.positions[idx + len(needle) - 1] + 1


class PlainProjection:
    """
    Markdown with inline formatting stripped. ``positions[i]`` is the index in
    ``source`` that produced ``text[i]``. Fenced code keeps its content but
    loses the fence lines.
    """

    def __init__(self, source: str):
        self.source = source
        chars: list[str] = []
        positions: list[int] = []
        md = source
        n = len(md)
        i = 0

        def keep(j: int):
            chars.append(md[j])
            positions.append(j)

        while i < n:
            if md.startswith("```", i):
                line_end = md.find("\n", i)
                if line_end == -1:
                    break
                i = line_end + 1
                closing = md.find("```", i)
                stop = n if closing == -1 else closing
                while i < stop:
                    keep(i)
                    i += 1
                if closing != -1:
                    after = md.find("\n", closing)
                    i = n if after == -1 else after + 1
                continue

            if md.startswith("***", i) or md.startswith("___", i):
                i += 3
                continue
            if md.startswith("**", i) or md.startswith("__", i):
                i += 2
                continue
            if md[i] in "*_":
                opens = i + 1 < n and not md[i + 1].isspace()
                closes = i > 0 and not md[i - 1].isspace()
                if opens or closes:
                    i += 1
                    continue
            if md[i] == "`":
                i += 1
                continue

            if md[i] == "#" and (i == 0 or md[i - 1] == "\n"):
                while i < n and md[i] == "#":
                    i += 1
                if i < n and md[i] == " ":
                    i += 1
                continue

            keep(i)
            i += 1

        self.text = "".join(chars)
        self.positions = positions

    def to_source(self, start: int, end: int) -> tuple[int, int]:
        """Map a plain ``[start, end)`` back to source offsets."""
        return self.positions[start], self.positions[end - 1] + 1


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def _widen_over_formatting(source: str, start: int, end: int) -> tuple[int, int]:
    while end < len(source) and source[end] in _EMPHASIS_CHARS:
        end += 1
    while start > 0 and source[start - 1] in _EMPHASIS_CHARS:
        start -= 1
    return start, end


def find_markdown_span(markdown: str, selected: str) -> MarkdownSpan | None:
    if not selected or not selected.strip():
        return None

    idx = markdown.find(selected)
    if idx != -1:
        return MarkdownSpan(idx, idx + len(selected), selected)

    needle = normalize_whitespace(selected)
    match = NormalizedText(markdown).find(needle)
    if match is not None:
        start, end = match
        return MarkdownSpan(start, end, markdown[start:end])

    plain = PlainProjection(markdown)
    match = NormalizedText(plain.text).find(needle)
    if match is None:
        return None
    start, end = plain.to_source(*match)
    start, end = _widen_over_formatting(markdown, start, end)
    return MarkdownSpan(start, end, markdown[start:end])


def splice(markdown: str, span: MarkdownSpan, replacement: str) -> str:
    return markdown[: span.start] + replacement + markdown[span.end :]
