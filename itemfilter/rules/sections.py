#!/usr/bin/env python3
"""Splitting of filter files into rule blocks.

A rule block is a maximal run of non-blank lines. ``//`` starts a line
comment; the comment is removed from the text handed to the compiler but
kept in the raw text used for diagnostics.

Example:
    >>> sections = split_sections(['BaseName == "Chaos Orb" // currency', '', 'Quality > 10'])
    >>> [section.start_line for section in sections]
    [1, 3]
    >>> sections[0].raw_text
    'BaseName == "Chaos Orb" // currency'
"""

from typing import Iterable, List, NamedTuple, Optional

from itemfilter.core.constants import COMMENT_MARKER


class Section(NamedTuple):
    """One rule block of a filter file."""

    text: str  # Comment-stripped, newline-terminated lines
    raw_text: str  # Original lines, without the final newline
    start_line: int  # 1-based


def strip_comment(line: str) -> str:
    """Remove everything from the first comment marker onward."""
    index = line.find(COMMENT_MARKER)
    return line if index == -1 else line[:index]


def split_sections(lines: Iterable[str], keep_comment_only: bool = False) -> List[Section]:
    """Split raw file lines into rule blocks.

    Args:
        lines: File lines, with or without line terminators
        keep_comment_only: Emit blocks made only of comments (they will then
            fail to compile and be reported) instead of dropping them

    Returns:
        Blocks in file order
    """
    sections: List[Section] = []
    text: List[str] = []
    raw_text: List[str] = []
    start_line: Optional[int] = None

    def flush() -> None:
        stripped = "".join(text)
        if start_line is not None and (stripped.strip() or keep_comment_only):
            sections.append(Section(stripped, "".join(raw_text).rstrip("\n"), start_line))

    for index, line in enumerate(lines):
        line = line.rstrip("\r\n")
        if line.strip():
            if start_line is None:
                start_line = index + 1
            text.append(strip_comment(line) + "\n")
            raw_text.append(line + "\n")
        else:
            flush()
            text, raw_text, start_line = [], [], None

    # Implicit trailing blank line
    flush()

    return sections
