from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Literal, Sequence

from markdown_it import MarkdownIt
from mdit_py_plugins.container import container_plugin

from .html_normalize import normalize_html
from .logging_utils import get_logger
from .paginate import MAX_LINE_WIDTH, MAX_LINES_PER_PAGE, Page, paginate

log = get_logger(__name__)

DEFAULT_AUTHOR = "Templo do Abismo"

TITLE_FONT_SIZE = 18
HEADER_FONT_SIZE = 12
BODY_FONT_SIZE = 11
FOOTER_FONT_SIZE = 9

MEDIA_BOX = (0, 0, 612, 792)
MARGIN_LEFT = 50
TOP_BASELINE = 750
TITLE_GAP = 40
HEADER_GAP = 30
LINE_LEADING = 15
PARAGRAPH_GAP = 10
FOOTER_BASELINE = 30
FOOTER_TEMPLATE = "Page {page} of {total}"

PDF_HEADER = b"%PDF-1.4\n"
FONT_RESOURCE = "F1"
BASE_FONT = "Helvetica"

_ASCII_REPLACEMENTS = {
    "\u00a0": " ",
    "\u2007": " ",
    "\u2009": " ",
    "\u200b": "",
    "\u2010": "-",
    "\u2011": "-",
    "\u2012": "-",
    "\u2013": "-",
    "\u2014": "--",
    "\u2015": "--",
    "\u2212": "-",
    "\u2026": "...",
    "\u2018": "'",
    "\u2019": "'",
    "\u201c": "\"",
    "\u201d": "\"",
    "\u2022": "*",
    "\u2190": "<-",
    "\u2192": "->",
    "\t": " ",
}
_LENGTH_RE = re.compile(rb"/Length (\d+)")
_FILENAME_STRIP_RE = re.compile(r"[^A-Za-z0-9\s]")
_FILENAME_WS_RE = re.compile(r"\s+")


class BuildInvariantViolation(RuntimeError):
    pass


@dataclass(frozen=True)
class PdfLayout:
    max_lines_per_page: int = MAX_LINES_PER_PAGE
    max_line_width: int = MAX_LINE_WIDTH
    title_font_size: int = TITLE_FONT_SIZE
    header_font_size: int = HEADER_FONT_SIZE
    body_font_size: int = BODY_FONT_SIZE

    def __post_init__(self) -> None:
        for name in ("max_lines_per_page", "max_line_width", "title_font_size", "header_font_size", "body_font_size"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.max_lines_per_page > self.max_body_lines:
            raise ValueError(
                f"max_lines_per_page={self.max_lines_per_page} does not fit above the footer "
                f"at {self.body_font_size}pt (at most {self.max_body_lines})"
            )

    @property
    def line_leading(self) -> int:
        return max(LINE_LEADING, self.body_font_size + 4)

    @property
    def max_body_lines(self) -> int:
        """Body lines that fit on page 1 between the title block and the footer."""
        first_baseline = TOP_BASELINE - TITLE_GAP - HEADER_GAP
        lowest_baseline = FOOTER_BASELINE + self.line_leading
        return (first_baseline - lowest_baseline) // self.line_leading + 1


@dataclass(frozen=True)
class DocumentRequest:
    title: str
    content: str
    author: str = DEFAULT_AUTHOR
    content_format: Literal["html", "markdown"] = "html"


@dataclass(frozen=True)
class PdfObject:
    number: int
    dictionary: bytes
    stream: bytes | None = None

    def serialize(self) -> bytes:
        out = b"%d 0 obj\n" % self.number + self.dictionary + b"\n"
        if self.stream is not None:
            out += b"stream\n" + self.stream + b"\nendstream\n"
        return out + b"endobj\n\n"


@dataclass(frozen=True)
class PdfDocument:
    """Numbered object graph: catalog, page tree, page/content pairs, font."""

    objects: tuple[PdfObject, ...]
    page_count: int
    root: int = 1

    def serialize(self) -> bytes:
        chunks: list[bytes] = [PDF_HEADER]
        offsets: list[int] = []
        position = len(PDF_HEADER)
        for obj in self.objects:
            data = obj.serialize()
            offsets.append(position)
            chunks.append(data)
            position += len(data)

        xref_offset = position
        size = len(self.objects) + 1
        chunks.append(b"xref\n0 %d\n" % size)
        chunks.append(b"0000000000 65535 f \n")
        chunks.extend(b"%010d 00000 n \n" % offset for offset in offsets)
        chunks.append(b"trailer\n<<\n/Size %d\n/Root %d 0 R\n>>\n" % (size, self.root))
        chunks.append(b"startxref\n%d\n" % xref_offset + b"%%EOF")

        buffer = b"".join(chunks)
        _verify(buffer, self.objects, offsets, xref_offset)
        return buffer


def _verify(buffer: bytes, objects: Sequence[PdfObject], offsets: Sequence[int], xref_offset: int) -> None:
    numbers = [obj.number for obj in objects]
    if numbers != list(range(1, len(objects) + 1)):
        raise BuildInvariantViolation(f"Object numbers are not sequential: {numbers}")

    for obj, offset in zip(objects, offsets):
        marker = b"%d 0 obj" % obj.number
        if buffer[offset : offset + len(marker)] != marker:
            raise BuildInvariantViolation(f"xref offset {offset} does not start object {obj.number}")
        if obj.stream is None:
            continue
        m = _LENGTH_RE.search(obj.dictionary)
        if not m or int(m.group(1)) != len(obj.stream):
            raise BuildInvariantViolation(f"/Length of object {obj.number} does not match its stream")
        start = buffer.index(b"stream\n", offset) + len(b"stream\n")
        end = start + int(m.group(1))
        if buffer[end : end + len(b"\nendstream")] != b"\nendstream":
            raise BuildInvariantViolation(f"Stream of object {obj.number} is not terminated at its /Length")

    if buffer[xref_offset : xref_offset + 5] != b"xref\n":
        raise BuildInvariantViolation(f"startxref {xref_offset} does not point at the xref table")
    if not buffer.endswith(b"%%EOF"):
        raise BuildInvariantViolation("Output does not end with %%EOF")


def to_latin1(text: str) -> str:
    """Fold text into the single-byte repertoire the font encoding can show."""
    out = str(text or "")
    for key, val in _ASCII_REPLACEMENTS.items():
        out = out.replace(key, val)
    return out.encode("latin-1", "replace").decode("latin-1")


def escape_pdf_text(text: str) -> str:
    return (
        to_latin1(text)
        .replace("\\", "\\\\")
        .replace("(", "\\(")
        .replace(")", "\\)")
        .replace("\r", " ")
        .replace("\n", " ")
    )


def _show(text: str) -> str:
    return f"({escape_pdf_text(text)}) Tj"


def _select_font(size: int) -> str:
    return f"/{FONT_RESOURCE} {size} Tf"


def page_content(title: str, author: str, page: Page, page_no: int, total: int, layout: PdfLayout) -> bytes:
    ops = ["BT"]
    if page_no == 1:
        ops += [
            _select_font(layout.title_font_size),
            f"{MARGIN_LEFT} {TOP_BASELINE} Td",
            _show(title),
            f"0 -{TITLE_GAP} Td",
            _select_font(layout.header_font_size),
            _show(author),
            f"0 -{HEADER_GAP} Td",
        ]
    else:
        ops += [
            _select_font(layout.header_font_size),
            f"{MARGIN_LEFT} {TOP_BASELINE} Td",
            _show(title),
            f"0 -{HEADER_GAP} Td",
        ]

    ops.append(_select_font(layout.body_font_size))
    for line in page.lines:
        if line.strip():
            ops.append(_show(line))
            ops.append(f"0 -{layout.line_leading} Td")
        else:
            ops.append(f"0 -{PARAGRAPH_GAP} Td")

    ops += [
        _select_font(FOOTER_FONT_SIZE),
        f"1 0 0 1 {MARGIN_LEFT} {FOOTER_BASELINE} Tm",
        _show(FOOTER_TEMPLATE.format(page=page_no, total=total)),
        "ET",
    ]
    return "\n".join(ops).encode("latin-1")


def build_document(
    title: str,
    author: str,
    pages: Iterable[Page],
    layout: PdfLayout | None = None,
) -> PdfDocument:
    layout = layout or PdfLayout()
    page_list = list(pages) or [Page(lines=())]
    total = len(page_list)
    page_numbers = [3 + 2 * i for i in range(total)]
    font_number = 3 + 2 * total

    kids = b" ".join(b"%d 0 R" % n for n in page_numbers)
    objects = [
        PdfObject(1, b"<<\n/Type /Catalog\n/Pages 2 0 R\n>>"),
        PdfObject(2, b"<<\n/Type /Pages\n/Kids [" + kids + b"]\n/Count %d\n>>" % total),
    ]
    media_box = " ".join(str(v) for v in MEDIA_BOX).encode("ascii")
    for index, page in enumerate(page_list):
        page_number = page_numbers[index]
        content_number = page_number + 1
        objects.append(
            PdfObject(
                page_number,
                b"<<\n/Type /Page\n/Parent 2 0 R\n/MediaBox [" + media_box + b"]\n"
                b"/Contents %d 0 R\n/Resources <<\n/Font << /%s %d 0 R >>\n>>\n>>"
                % (content_number, FONT_RESOURCE.encode("ascii"), font_number),
            )
        )
        body = page_content(title, author, page, index + 1, total, layout)
        objects.append(PdfObject(content_number, b"<<\n/Length %d\n>>" % len(body), body))

    objects.append(
        PdfObject(
            font_number,
            b"<<\n/Type /Font\n/Subtype /Type1\n/BaseFont /%s\n/Encoding /WinAnsiEncoding\n>>"
            % BASE_FONT.encode("ascii"),
        )
    )
    return PdfDocument(objects=tuple(objects), page_count=total)


def _build_markdown_parser() -> MarkdownIt:
    md = MarkdownIt("commonmark", {"html": False, "breaks": True})
    md.enable("table")
    for kind in ("note", "warning", "ritual"):
        md.use(container_plugin, kind)
    return md


_MD_PARSER: MarkdownIt | None = None


def _get_markdown_parser() -> MarkdownIt:
    global _MD_PARSER
    if _MD_PARSER is None:
        _MD_PARSER = _build_markdown_parser()
    return _MD_PARSER


def content_to_text(content: str, content_format: str = "html") -> str:
    html = str(content or "")
    if content_format == "markdown":
        html = _get_markdown_parser().render(html)
    return normalize_html(html)


def render_pdf(request: DocumentRequest, layout: PdfLayout | None = None) -> bytes:
    layout = layout or PdfLayout()
    text = content_to_text(request.content, request.content_format)
    pages = paginate(text, layout.max_lines_per_page, layout.max_line_width)
    document = build_document(request.title, request.author, pages, layout)
    data = document.serialize()
    log.info("Rendered PDF title=%r pages=%d bytes=%d", request.title, document.page_count, len(data))
    return data


def pdf_filename(title: str) -> str:
    stem = _FILENAME_STRIP_RE.sub("", str(title or ""))
    stem = _FILENAME_WS_RE.sub("_", stem.strip())
    return f"{stem or 'grimoire'}.pdf"
