"""Plain-text extraction from uploaded files."""

from __future__ import annotations

import io
import logging
from pathlib import PurePath

from docx import Document as DocxDocument
from PyPDF2 import PdfReader

from .errors import ExtractionError
from .models import UploadedFile

logger = logging.getLogger("journey.extraction")

PDF_TYPES = {"application/pdf"}
DOCX_TYPES = {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"}


class FileTextExtractor:
    """Extract text from PDF, DOCX and plain-text uploads.

    Each call handles exactly one file and raises :class:`ExtractionError`
    when that file cannot be read.
    """

    def extract(self, file: UploadedFile) -> str:
        suffix = PurePath(file.file_name).suffix.lower()
        content_type = (file.content_type or "").lower()

        if not file.data:
            raise ExtractionError(file.file_name, "File is empty")

        if suffix == ".pdf" or content_type in PDF_TYPES:
            text = self._extract_pdf(file)
        elif suffix == ".docx" or content_type in DOCX_TYPES:
            text = self._extract_docx(file)
        elif suffix == ".doc":
            raise ExtractionError(file.file_name, "Legacy .doc files are not supported")
        else:
            text = self._extract_plain(file)

        logger.debug(f"Extracted {len(text)} characters from {file.file_name}")
        return text.strip()

    @staticmethod
    def _extract_pdf(file: UploadedFile) -> str:
        try:
            reader = PdfReader(io.BytesIO(file.data))
            pages = [page.extract_text() or "" for page in reader.pages]
        except Exception as e:
            raise ExtractionError(file.file_name, f"Could not read PDF: {e}") from e
        return "\n".join(pages)

    @staticmethod
    def _extract_docx(file: UploadedFile) -> str:
        try:
            document = DocxDocument(io.BytesIO(file.data))
        except Exception as e:
            raise ExtractionError(file.file_name, f"Could not read DOCX: {e}") from e
        return "\n".join(paragraph.text for paragraph in document.paragraphs)

    @staticmethod
    def _extract_plain(file: UploadedFile) -> str:
        try:
            return file.data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ExtractionError(file.file_name, "File is not UTF-8 text") from e
