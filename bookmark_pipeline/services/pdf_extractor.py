"""PDF text-layer extraction with swappable backends.

PyMuPDF is the default; pdfplumber is slower but copes better with some
table-heavy layouts. A document that cannot be parsed yields empty text and
a warning rather than an exception: an unreadable PDF is a valid
"nothing to index" outcome.
"""

import io
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

import structlog

logger = structlog.get_logger(__name__)

PDF_MAGIC = b"%PDF-"


class PDFBackend(str, Enum):
    """Available PDF extraction backends."""

    PYMUPDF = "pymupdf"
    PDFPLUMBER = "pdfplumber"


@dataclass
class PDFExtractionResult:
    """Result of PDF extraction."""

    text: str = ""
    page_count: int = 0
    extracted_page_count: int = 0
    warnings: list[str] = field(default_factory=list)
    backend_used: str = ""


class PDFExtractorBackend(ABC):
    """Abstract base class for PDF extraction backends."""

    name: str = ""

    def extract(self, file_bytes: bytes, max_pages: int | None = None) -> PDFExtractionResult:
        result = PDFExtractionResult(backend_used=self.name)
        pages: list[str] = []
        try:
            result.page_count, pages = self._extract_pages(file_bytes, max_pages)
        except ImportError:
            raise
        except Exception as e:
            logger.warning("pdf_extraction_failed", backend=self.name, error=str(e))
            result.warnings.append(f"Extraction error: {e}")

        if max_pages and result.page_count > max_pages:
            result.warnings.append(
                f"Truncated: {result.page_count} pages, extracted {max_pages}"
            )

        non_empty = [p for p in pages if p.strip()]
        result.extracted_page_count = len(non_empty)
        result.text = "\n\n".join(non_empty)
        return result

    @abstractmethod
    def _extract_pages(
        self, file_bytes: bytes, max_pages: int | None
    ) -> tuple[int, list[str]]:
        """Return (total page count, text of each extracted page)."""


class PyMuPDFBackend(PDFExtractorBackend):
    """PyMuPDF (fitz) based extraction backend."""

    name = "pymupdf"

    def _extract_pages(self, file_bytes, max_pages):
        import fitz  # pymupdf

        with fitz.open(stream=file_bytes, filetype="pdf") as doc:
            total = len(doc)
            limit = min(total, max_pages) if max_pages else total
            return total, [doc[i].get_text("text") for i in range(limit)]


class PDFPlumberBackend(PDFExtractorBackend):
    """pdfplumber based extraction backend."""

    name = "pdfplumber"

    def _extract_pages(self, file_bytes, max_pages):
        import pdfplumber

        with pdfplumber.open(io.BytesIO(file_bytes)) as pdf:
            total = len(pdf.pages)
            limit = min(total, max_pages) if max_pages else total
            return total, [pdf.pages[i].extract_text() or "" for i in range(limit)]


_BACKENDS: dict[PDFBackend, type[PDFExtractorBackend]] = {
    PDFBackend.PYMUPDF: PyMuPDFBackend,
    PDFBackend.PDFPLUMBER: PDFPlumberBackend,
}


def get_backend(backend: PDFBackend | str) -> PDFExtractorBackend:
    """Get an instance of the specified backend."""
    backend = PDFBackend(backend)
    return _BACKENDS[backend]()


def looks_like_pdf(data: bytes) -> bool:
    return data[:1024].lstrip().startswith(PDF_MAGIC)


def extract_pdf_text(
    file_bytes: bytes,
    backend: PDFBackend | str = PDFBackend.PYMUPDF,
    max_pages: int | None = None,
) -> PDFExtractionResult:
    """Extract the embedded text layer of a PDF."""
    result = get_backend(backend).extract(file_bytes, max_pages)
    logger.info(
        "pdf_extracted",
        backend=result.backend_used,
        total_pages=result.page_count,
        extracted_pages=result.extracted_page_count,
        text_length=len(result.text),
        warnings_count=len(result.warnings),
    )
    return result
