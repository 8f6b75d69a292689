"""Text extraction from uploaded final documents (PDF, DOCX, plain text)."""
from io import BytesIO

import docx
import fitz


class ExtractionError(Exception):
    pass


def _pdf_text(data: bytes) -> str:
    with fitz.open(stream=data, filetype="pdf") as doc:
        return "\n".join(page.get_text() for page in doc)


def _docx_text(data: bytes) -> str:
    document = docx.Document(BytesIO(data))
    parts = [p.text for p in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            parts.extend(cell.text for cell in row.cells)
    return "\n".join(parts)


def extract_text(data: bytes, filename: str) -> str:
    ext = (filename or "").rsplit(".", 1)[-1].lower() if "." in (filename or "") else ""
    try:
        if ext == "pdf":
            return _pdf_text(data)
        if ext == "docx":
            return _docx_text(data)
        if ext == "txt":
            return data.decode("utf-8", errors="replace")
    except Exception as e:
        raise ExtractionError(f"Failed to extract text from {filename}: {e}") from e
    raise ExtractionError(f"Unsupported file type: {ext or 'unknown'}. Only PDF, DOCX and TXT are supported.")
