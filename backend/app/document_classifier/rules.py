"""Pattern tier of document classification.

Evaluates the ordered rule table subject-first, then body, then attachment
text; the first matching rule wins. No DB or Claude dependency.
"""

import re

from app.resolution_config.loader import ClassificationTable
from app.schemas.resolution import (
    ClassificationMethod,
    ClassificationResult,
    Direction,
    SenderCategory,
)

# Start of quoted history in a reply body
QUOTED_HISTORY_RE = re.compile(
    r"^(?:-{2,}\s*original message\s*-{2,}|on\s.{0,200}?\swrote:|from:\s.+@.+|>{1,})",
    re.IGNORECASE | re.MULTILINE,
)
FORWARDED_RE = re.compile(r"^-{2,}\s*forwarded message\s*-{2,}|^begin forwarded message:", re.IGNORECASE | re.MULTILINE)


def strip_reply_prefix(subject: str, reply_re: re.Pattern) -> tuple[str, bool]:
    """Remove RE:/FW: prefixes. Returns (clean_subject, was_reply_or_forward)."""
    match = reply_re.match(subject or "")
    if not match:
        return (subject or "").strip(), False
    return subject[match.end():].strip(), True


def latest_body(body: str) -> str:
    """Body text above the first quoted-history marker."""
    if not body:
        return ""
    if FORWARDED_RE.search(body):
        return body
    match = QUOTED_HISTORY_RE.search(body)
    if match and match.start() > 0:
        return body[:match.start()]
    return body


def match_rules(
    *,
    subject: str,
    body: str,
    attachment_text: str,
    direction: Direction,
    sender_category: SenderCategory,
    table: ClassificationTable,
    reply_re: re.Pattern,
) -> ClassificationResult | None:
    """Return the first matching rule's classification, or None."""
    clean_subject, is_reply = strip_reply_prefix(subject, reply_re)
    fields = (
        ("subject", clean_subject),
        ("body", latest_body(body)),
        ("attachment", attachment_text or ""),
    )
    for field, text in fields:
        if not text.strip():
            continue
        for rule in table.rules:
            if not rule.applies_to(direction, sender_category):
                continue
            if any(p.search(text) for p in rule.patterns_for(field)):
                confidence = rule.confidence
                if is_reply:
                    confidence = max(0, confidence - table.reply_confidence_penalty)
                return ClassificationResult(
                    document_type=rule.document_type,
                    confidence=confidence,
                    method=ClassificationMethod.PATTERN,
                    evidence=f"{rule.id}@{field}",
                )
    return None
