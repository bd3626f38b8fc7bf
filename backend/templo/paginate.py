from __future__ import annotations

from dataclasses import dataclass

MAX_LINES_PER_PAGE = 40
MAX_LINE_WIDTH = 80


@dataclass(frozen=True)
class Page:
    lines: tuple[str, ...]


def wrap_line(line: str, max_line_width: int = MAX_LINE_WIDTH) -> list[str]:
    """Greedy word wrap. A word wider than the limit gets a line to itself."""
    if len(line) <= max_line_width:
        return [line]

    wrapped: list[str] = []
    current = ""
    for word in line.split():
        if not current:
            current = word
        elif len(current) + 1 + len(word) <= max_line_width:
            current = f"{current} {word}"
        else:
            wrapped.append(current)
            current = word
    if current:
        wrapped.append(current)
    return wrapped or [""]


def paginate(
    text: str,
    max_lines_per_page: int = MAX_LINES_PER_PAGE,
    max_line_width: int = MAX_LINE_WIDTH,
) -> list[Page]:
    if max_lines_per_page < 1:
        raise ValueError(f"max_lines_per_page must be >= 1, got {max_lines_per_page}")
    if max_line_width < 1:
        raise ValueError(f"max_line_width must be >= 1, got {max_line_width}")

    if not text:
        return [Page(lines=())]

    pages: list[Page] = []
    current: list[str] = []
    for logical in text.split("\n"):
        for line in wrap_line(logical, max_line_width):
            if len(current) >= max_lines_per_page:
                pages.append(Page(lines=tuple(current)))
                current = []
            current.append(line)

    if current:
        pages.append(Page(lines=tuple(current)))
    return pages or [Page(lines=())]
