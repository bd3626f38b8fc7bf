"""Turn stored grimoire HTML into plain text with paragraph breaks.

The tokenizer is a small state machine over the raw markup (text, tag,
comment/declaration, raw-text element) so that malformed input never
makes it backtrack: every character is looked at a bounded number of times.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, Literal

BLOCK_TAGS = frozenset({"h1", "h2", "h3", "h4", "h5", "h6", "p", "div", "section"})
RAW_TEXT_TAGS = frozenset({"script", "style"})

_ENTITIES = {
    "&nbsp;": " ",
    "&amp;": "&",
    "&lt;": "<",
    "&gt;": ">",
    "&quot;": '"',
    "&#39;": "'",
}
_ENTITY_RE = re.compile("|".join(re.escape(k) for k in _ENTITIES))
_RAW_CLOSE_RE = {name: re.compile(rf"</{name}\b[^>]*>", re.IGNORECASE) for name in RAW_TEXT_TAGS}
_WS_RE = re.compile(r"\s+")
_INLINE_WS_RE = re.compile(r"[^\S\n]+")
_PARAGRAPH_RE = re.compile(r"\n{3,}")

TokenKind = Literal["text", "tag", "comment"]


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    value: str
    closing: bool = False


def _tag_end(html: str, start: int) -> int:
    # Quotes only count when they open an attribute value (after '=').
    quote: str | None = None
    prev = ""
    for j in range(start, len(html)):
        ch = html[j]
        if quote:
            if ch == quote:
                quote = None
                prev = ch
            continue
        if ch in "\"'" and prev == "=":
            quote = ch
        elif ch == ">":
            return j
        if not ch.isspace():
            prev = ch
    return -1


def _tag_name(inner: str) -> tuple[str, bool]:
    closing = inner.startswith("/")
    body = inner[1:] if closing else inner
    name = []
    for ch in body:
        if not ch.isalnum():
            break
        name.append(ch)
    return "".join(name).lower(), closing


def tokenize(html: str) -> Iterator[Token]:
    """Yield text, tag and comment tokens; script/style bodies are skipped."""
    n = len(html)
    i = 0
    text_start = 0
    while i < n:
        lt = html.find("<", i)
        if lt < 0:
            break

        if html.startswith("<!--", lt):
            if text_start < lt:
                yield Token("text", html[text_start:lt])
            end = html.find("-->", lt + 4)
            yield Token("comment", html[lt + 4 : end if end >= 0 else n])
            i = n if end < 0 else end + 3
            text_start = i
            continue

        nxt = html[lt + 1 : lt + 2]
        if not (nxt.isalpha() or nxt in ("/", "!", "?")):
            # A bare '<' is literal text ("a < b").
            i = lt + 1
            continue

        end = _tag_end(html, lt + 1)
        if end < 0:
            # Unterminated tag: the remainder stays literal text.
            break

        if text_start < lt:
            yield Token("text", html[text_start:lt])
        i = end + 1
        text_start = i

        if nxt in ("!", "?"):
            yield Token("comment", html[lt + 2 : end])
            continue

        name, closing = _tag_name(html[lt + 1 : end])
        yield Token("tag", name, closing)

        if name in RAW_TEXT_TAGS and not closing:
            m = _RAW_CLOSE_RE[name].search(html, i)
            i = m.end() if m else n
            text_start = i
            if m:
                yield Token("tag", name, True)

    if text_start < n:
        yield Token("text", html[text_start:])


def decode_entities(text: str) -> str:
    # Single left-to-right pass: "&amp;lt;" becomes "&lt;", never "<".
    return _ENTITY_RE.sub(lambda m: _ENTITIES[m.group(0)], text)


def normalize_html(html: str) -> str:
    parts: list[str] = []
    for token in tokenize(html or ""):
        if token.kind == "text":
            parts.append(_WS_RE.sub(" ", decode_entities(token.value)))
        elif token.kind == "tag":
            if token.value == "br":
                parts.append("\n")
            elif token.value in BLOCK_TAGS:
                parts.append("\n\n")

    # Tags and comments can leave spaces from neighbouring text tokens side by side.
    joined = _INLINE_WS_RE.sub(" ", "".join(parts))
    text = "\n".join(line.strip(" ") for line in joined.split("\n"))
    text = _PARAGRAPH_RE.sub("\n\n", text)
    return text.strip()


def count_words(text: str) -> int:
    return len(str(text or "").split())
