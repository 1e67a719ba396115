"""Split markdown into heading-anchored sections for collapsed display."""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple

MAX_HEADING_LEVEL = 6
FENCE_MARKERS = ("```", "~~~")
INTRODUCTION_TITLE = "Introduction"
DOCUMENT_TITLE = "Document"


class HeadingMatch(NamedTuple):
    level: int
    title: str


@dataclass(frozen=True)
class Section:
    """One contiguous span of a document, anchored at a heading."""

    level: int
    title: str
    body: str
    start_line: int


def parse_heading(line: str) -> HeadingMatch | None:
    """Return level/title for an ATX heading line, or None for anything else."""
    trimmed = line.strip()
    marker_count = len(trimmed) - len(trimmed.lstrip("#"))
    if not 1 <= marker_count <= MAX_HEADING_LEVEL:
        return None
    rest = trimmed[marker_count:]
    if rest and not rest.startswith(" "):
        return None
    title = rest.strip().rstrip("#").strip()
    return HeadingMatch(marker_count, title)


def _document_lines(text: str) -> list[str]:
    # Same line model as most editors: "\n" separated, "\r\n" tolerated, and a
    # trailing newline does not open an extra empty line.
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def _is_fence_line(line: str) -> bool:
    return line.strip().startswith(FENCE_MARKERS)


def split_sections(text: str) -> list[Section]:
    """Split a document into ordered, non-overlapping sections.

    Headings inside fenced code blocks are ignored. Non-blank content before
    the first heading becomes a level-0 introduction section; a document with
    no headings at all comes back as a single level-0 section holding the
    input unchanged.
    """
    lines = _document_lines(text)
    anchors: list[tuple[int, HeadingMatch]] = []
    in_fence = False

    for line_number, line in enumerate(lines):
        if _is_fence_line(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        heading = parse_heading(line)
        if heading is not None:
            anchors.append((line_number, heading))

    if not anchors:
        return [Section(level=0, title=DOCUMENT_TITLE, body=text, start_line=0)]

    sections: list[Section] = []
    first_line = anchors[0][0]
    if first_line > 0:
        intro = "\n".join(lines[:first_line])
        if intro.strip():
            sections.append(Section(level=0, title=INTRODUCTION_TITLE, body=intro, start_line=0))

    for index, (start_line, heading) in enumerate(anchors):
        end_line = anchors[index + 1][0] if index + 1 < len(anchors) else len(lines)
        sections.append(
            Section(
                level=heading.level,
                title=heading.title,
                body="\n".join(lines[start_line:end_line]),
                start_line=start_line,
            )
        )
    return sections
