"""
ingestion.py — Document bytes → page-segmented text, and upload registration.

Three formats, one output shape (ParsedDocument: full_text + pages):

  PDF    pdfplumber, one Page per PDF page. These are the only documents
         that arrive with real page boundaries.
  DOCX   python-docx, paragraphs then tables (cells joined with " | ").
         No pages: the prepare step paginates by word count.
  text   decoded as UTF-8 (undecodable bytes replaced). A form feed
         (\\f) is honoured as a page break; otherwise no pages.

Scanned PDFs come back with empty pages. We do not OCR them; the page
stays empty and the prepare step warns about a document with no text.

Uploads are de-duplicated per tender by SHA-256 of the raw bytes. The
same filename with different bytes is stored as a new Document with
version + 1; the old version is kept so earlier runs stay explainable.
"""

from __future__ import annotations

import hashlib
import io
import logging
from pathlib import Path
from typing import List, Optional, Tuple

import pdfplumber

from tender_review.config import config
from tender_review.schemas import Document, Page, ParsedDocument

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
TEXT_MIME = "text/plain"

_SUFFIX_MIME = {
    ".pdf": PDF_MIME,
    ".docx": DOCX_MIME,
    ".txt": TEXT_MIME,
    ".md": TEXT_MIME,
    ".text": TEXT_MIME,
}


def guess_mime_type(filename: str) -> str:
    suffix = Path(filename).suffix.lower()
    try:
        return _SUFFIX_MIME[suffix]
    except KeyError:
        raise ValueError(
            f"Unsupported format '{suffix}'. Supported: {', '.join(sorted(_SUFFIX_MIME))}"
        ) from None


def parse_document(data: bytes, mime_type: str) -> ParsedDocument:
    """
    Turn raw bytes into text. Raises ValueError for unsupported types;
    library errors from a corrupt file propagate (register_upload turns
    them into ValueError).
    """
    mime_type = (mime_type or "").split(";")[0].strip().lower()
    if mime_type == PDF_MIME:
        return _parse_pdf(data)
    if mime_type == DOCX_MIME:
        return _parse_docx(data)
    if mime_type.startswith("text/"):
        return _parse_text(data)
    raise ValueError(
        f"Unsupported MIME type '{mime_type}'. "
        f"Supported: {', '.join(config.supported_mime_types)}"
    )


def _parse_pdf(data: bytes) -> ParsedDocument:
    pages: List[Page] = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        metadata = dict(pdf.metadata or {})
        for number, page in enumerate(pdf.pages, start=1):
            pages.append(Page(number=number, text=page.extract_text() or ""))

    empty = sum(1 for p in pages if not p.text.strip())
    if empty:
        logger.warning("PDF has %d/%d pages with no extractable text (scanned?)", empty, len(pages))
    logger.info("Parsed PDF: %d pages", len(pages))
    return ParsedDocument(
        full_text="\n".join(p.text for p in pages),
        pages=pages,
        metadata={k: str(v) for k, v in metadata.items()},
    )


def _parse_docx(data: bytes) -> ParsedDocument:
    from docx import Document as DocxDocument

    doc = DocxDocument(io.BytesIO(data))
    parts: List[str] = [p.text for p in doc.paragraphs if p.text.strip()]
    table_rows = 0
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
                table_rows += 1

    logger.info("Parsed DOCX: %d text blocks (%d table rows)", len(parts), table_rows)
    return ParsedDocument(full_text="\n".join(parts), metadata={"tableRows": table_rows})


def _parse_text(data: bytes) -> ParsedDocument:
    text = data.decode("utf-8", errors="replace").replace("\r\n", "\n")
    if "\f" in text:
        pages = [Page(number=i, text=chunk) for i, chunk in enumerate(text.split("\f"), start=1)]
        return ParsedDocument(full_text="\n".join(p.text for p in pages), pages=pages)
    return ParsedDocument(full_text=text)


def paginate_text(text: str, words_per_page: Optional[int] = None) -> List[Page]:
    """
    Split text into pages of at most `words_per_page` words.

    Breaks fall between lines so headings and list items stay intact;
    only a single line longer than a page is split mid-line. Joining the
    pages with "\\n" gives back the original line structure.
    """
    limit = words_per_page or config.runner.words_per_page
    pages: List[List[str]] = []
    current: List[str] = []
    count = 0

    for line in text.split("\n"):
        words = len(line.split())
        if words > limit:
            if current:
                pages.append(current)
                current, count = [], 0
            tokens = line.split()
            for start in range(0, len(tokens), limit):
                pages.append([" ".join(tokens[start:start + limit])])
            continue
        if count + words > limit and current:
            pages.append(current)
            current, count = [], 0
        current.append(line)
        count += words

    if current:
        pages.append(current)
    return [Page(number=i, text="\n".join(lines)) for i, lines in enumerate(pages, start=1)]


def _validate_upload(filename: str, data: bytes, mime_type: str) -> None:
    size_mb = len(data) / (1024 * 1024)
    if size_mb > config.max_file_size_mb:
        raise ValueError(
            f"File too large ({size_mb:.1f} MB). Max: {config.max_file_size_mb} MB"
        )
    base = mime_type.split(";")[0].strip().lower()
    if base not in config.supported_mime_types and not base.startswith("text/"):
        raise ValueError(f"Unsupported MIME type '{mime_type}' for {filename}")


def register_upload(
    store,
    tender_id: str,
    filename: str,
    data: bytes,
    mime_type: Optional[str] = None,
) -> Tuple[Document, bool]:
    """
    Parse and store an uploaded file. Returns (document, created).

    Identical bytes already stored for this tender return the existing
    Document with created=False. A file that cannot be parsed raises
    ValueError and nothing is stored.
    """
    store.get_tender(tender_id)
    mime_type = mime_type or guess_mime_type(filename)
    _validate_upload(filename, data, mime_type)

    digest = hashlib.sha256(data).hexdigest()
    existing = store.find_document_by_hash(tender_id, digest)
    if existing is not None:
        logger.info("Duplicate upload of %s for tender %s (matches %s)",
                    filename, tender_id, existing.id)
        return existing, False

    try:
        parsed = parse_document(data, mime_type)
    except ValueError:
        raise
    except Exception as exc:
        # pdfminer, zipfile and lxml each raise their own types for a
        # corrupt file
        logger.warning("Could not parse %s (%s): %s", filename, mime_type, exc)
        raise ValueError(f"Could not parse {filename}: {exc}") from exc
    prior = [d.version for d in store.list_documents(tender_id) if d.filename == filename]
    version = max(prior) + 1 if prior else 1

    document = Document(
        tender_id=tender_id,
        filename=filename,
        mime_type=mime_type,
        sha256=digest,
        version=version,
        page_count=len(parsed.pages),
        content=parsed.full_text,
        pages=parsed.pages,
    )
    store.upsert_document(document)
    logger.info("Registered %s v%d for tender %s (%d pages, %d chars)",
                filename, version, tender_id, document.page_count, len(parsed.full_text))
    return document, True


def load_file(path: str) -> Tuple[str, bytes, str]:
    """Read a local file for the CLI: (filename, bytes, mime type)."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"File not found: {p}")
    return p.name, p.read_bytes(), guess_mime_type(p.name)
