"""Rendering and offline validation of SRI XML documents."""

from .generator import DocumentXMLBuilder, sanitize_text
from .validator import DocumentValidationResult, ParsedTotals, parse_totals, validate_document_xml

__all__ = [
    "DocumentXMLBuilder",
    "DocumentValidationResult",
    "ParsedTotals",
    "parse_totals",
    "sanitize_text",
    "validate_document_xml",
]
