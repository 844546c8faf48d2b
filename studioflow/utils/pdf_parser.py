"""PDF helpers for signed contract documents.

Rendering and overlaying contracts happens elsewhere; these helpers only
confirm that a signed contract PDF on disk is readable before it is attached
to a delivery email.
"""

from pathlib import Path
from typing import Union

import pdfplumber


class PDFParseError(Exception):
    """Exception raised when PDF parsing fails."""
    pass


def count_pdf_pages(path: Union[Path, str]) -> int:
    """Return the number of pages in a PDF file.

    Args:
        path: Path to the PDF file (can be Path object or string)

    Returns:
        Page count (always >= 1 for a readable document)

    Raises:
        FileNotFoundError: If the PDF file does not exist
        PDFParseError: If the PDF cannot be parsed or has no pages

    Examples:
        >>> count_pdf_pages("signed_contract.pdf") >= 1
        True
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"PDF file not found: {path}")

    if not path.is_file():
        raise PDFParseError(f"Path is not a file: {path}")

    try:
        with pdfplumber.open(path) as pdf:
            page_count = len(pdf.pages)
    except Exception as e:
        raise PDFParseError(f"Failed to parse PDF {path}: {str(e)}") from e

    if page_count == 0:
        raise PDFParseError(f"PDF has no pages: {path}")
    return page_count


def is_readable_pdf(path: Union[Path, str]) -> bool:
    """Return True if the file exists and pdfplumber can open at least one page."""
    try:
        return count_pdf_pages(path) > 0
    except (FileNotFoundError, PDFParseError):
        return False
