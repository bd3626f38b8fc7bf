from __future__ import annotations

import argparse
import sys
from pathlib import Path

from templo.paginate import MAX_LINE_WIDTH, MAX_LINES_PER_PAGE
from templo.pdf_export import DEFAULT_AUTHOR, DocumentRequest, PdfLayout, pdf_filename, render_pdf


def log(msg: str) -> None:
    print(msg, file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Render a grimoire (HTML or Markdown file) to a minimal PDF.")
    ap.add_argument("input", type=Path, help="HTML or Markdown source file")
    ap.add_argument("-o", "--output", type=Path, default=None, help="Output PDF path (defaults to a name derived from the title)")
    ap.add_argument("--title", type=str, default="", help="Document title (defaults to the input file stem)")
    ap.add_argument("--author", type=str, default=DEFAULT_AUTHOR, help="Author line printed under the title")
    ap.add_argument("--format", choices=("html", "markdown"), default=None, help="Source format (guessed from the extension)")
    ap.add_argument("--lines-per-page", type=int, default=MAX_LINES_PER_PAGE, help="Wrapped body lines per page")
    ap.add_argument("--line-width", type=int, default=MAX_LINE_WIDTH, help="Maximum characters per body line")
    args = ap.parse_args(argv)

    try:
        content = args.input.read_text(encoding="utf-8-sig")
    except OSError as e:
        log(f"ERROR: cannot read {args.input}: {e}")
        return 2

    if args.lines_per_page < 1 or args.line_width < 1:
        ap.error("--lines-per-page and --line-width must be positive")

    content_format = args.format or ("markdown" if args.input.suffix.lower() in (".md", ".markdown") else "html")
    title = args.title.strip() or args.input.stem
    try:
        layout = PdfLayout(max_lines_per_page=args.lines_per_page, max_line_width=args.line_width)
    except ValueError as e:
        ap.error(str(e))

    data = render_pdf(
        DocumentRequest(title=title, content=content, author=args.author, content_format=content_format),
        layout,
    )

    out_path = args.output or args.input.with_name(pdf_filename(title))
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_bytes(data)
    log(f"Done: {out_path} ({len(data)} bytes)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
