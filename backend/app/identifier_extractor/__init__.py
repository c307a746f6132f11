from app.identifier_extractor.extractor import IdentifierExtractor
from app.identifier_extractor.patterns import extract_with_patterns, normalize_value, parse_date

__all__ = ["IdentifierExtractor", "extract_with_patterns", "normalize_value", "parse_date"]
