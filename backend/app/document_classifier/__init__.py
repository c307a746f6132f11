from app.document_classifier.classifier import DocumentClassifier
from app.document_classifier.rules import match_rules

__all__ = ["DocumentClassifier", "match_rules"]
