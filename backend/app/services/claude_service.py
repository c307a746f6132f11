"""
Claude API service: the AI collaborator behind the classifier and extractor.

Two tasks only:
- classify: subject + body + direction -> {document_type, confidence, reasoning}
- extract: subject + body + attachment text -> identifier fields (null when absent)

Calls are rate-limited process-wide and retried on transient API failures.
Responses are parsed and validated here; semantic sanitisation happens in the
calling tier.
"""

import asyncio
import json
import logging

import anthropic
from pydantic import ValidationError

from app.config import Settings
from app.errors import AIServiceError
from app.schemas.ai import AIClassification, AIExtraction
from app.schemas.resolution import Direction, DocumentType

logger = logging.getLogger("resolution.claude")

TRANSIENT_ERRORS = (
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
)

MAX_BODY_CHARS = 6000
MAX_ATTACHMENT_CHARS = 12000

CLASSIFICATION_SYSTEM_PROMPT = """You classify freight-forwarding emails into shipping document types.

Allowed document types:
{catalogue}

Direction tells you whether the forwarder received the email (inbound) or sent it (outbound).
Use "general_correspondence" for conversation with no shipping document, and "unknown" only if you cannot tell.

Respond with ONLY a JSON object:
{{"document_type": "<type>", "confidence": <0-100>, "reasoning": "<one sentence>"}}"""

EXTRACTION_SYSTEM_PROMPT = """You extract shipment identifiers from freight-forwarding emails and their attachments.

Return null for any field that is not present. Never guess. Dates as written in the document.

Respond with valid JSON only, matching this shape:
{
  "booking_number": "string or null",
  "bl_number": "string or null",
  "mbl_number": "string or null",
  "hbl_number": "string or null",
  "container_numbers": ["string"],
  "si_cutoff": "string or null",
  "vgm_cutoff": "string or null",
  "cargo_cutoff": "string or null",
  "gate_cutoff": "string or null",
  "etd": "string or null",
  "eta": "string or null",
  "vessel_name": "string or null",
  "voyage_number": "string or null",
  "port_of_loading": "string or null",
  "port_of_discharge": "string or null",
  "place_of_receipt": "string or null",
  "place_of_delivery": "string or null",
  "shipper": "string or null",
  "consignee": "string or null"
}"""


def _parse_json_response(response_text: str) -> dict:
    """Parse JSON from Claude response, handling markdown code blocks."""
    text = response_text.strip()
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0].strip()
    elif "```" in text:
        text = text.split("```")[1].split("```")[0].strip()

    try:
        data = json.loads(text)
    except (json.JSONDecodeError, IndexError) as e:
        logger.error("Failed to parse Claude response as JSON: %s", e)
        raise ValueError(f"Claude response was not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Claude response was not a JSON object")
    return data


class AsyncRateLimiter:
    """Spaces call starts so no more than `rate` begin per second."""

    def __init__(self, rate: float):
        self.interval = 1.0 / rate if rate > 0 else 0.0
        self._lock = asyncio.Lock()
        self._next_slot = 0.0

    async def acquire(self) -> None:
        if not self.interval:
            return
        async with self._lock:
            now = asyncio.get_running_loop().time()
            wait = self._next_slot - now
            self._next_slot = max(now, self._next_slot) + self.interval
        if wait > 0:
            await asyncio.sleep(wait)


class ClaudeService:
    def __init__(self, settings: Settings, client: anthropic.AsyncAnthropic | None = None):
        self.client = client or anthropic.AsyncAnthropic(
            api_key=settings.anthropic_api_key,
            timeout=settings.ai_timeout_seconds,
            max_retries=0,
        )
        self.model = settings.claude_model
        self.max_tokens = settings.claude_max_tokens
        self.max_retries = max(1, settings.ai_max_retries)
        self.retry_backoff = settings.ai_retry_backoff_seconds
        self.rate_limiter = AsyncRateLimiter(settings.ai_max_calls_per_second)

    async def classify(self, *, subject: str, body: str, direction: Direction) -> AIClassification:
        """Ask the model for a document type. Raises AIServiceError on any failure."""
        catalogue = "\n".join(f"- {t.value}" for t in DocumentType)
        user_text = (
            f"Direction: {direction.value}\n"
            f"Subject: {subject}\n\n"
            f"Body:\n{body[:MAX_BODY_CHARS]}"
        )
        raw = await self._call(CLASSIFICATION_SYSTEM_PROMPT.format(catalogue=catalogue), user_text)
        try:
            return AIClassification.model_validate(_parse_json_response(raw))
        except (ValueError, ValidationError) as e:
            raise AIServiceError(f"Malformed classification response: {e}") from e

    async def extract(
        self,
        *,
        subject: str,
        body: str,
        attachment_text: str = "",
        direction: Direction,
    ) -> AIExtraction:
        """Ask the model for identifier fields. Raises AIServiceError on any failure."""
        parts = [
            f"Direction: {direction.value}",
            f"Subject: {subject}",
            f"Body:\n{body[:MAX_BODY_CHARS]}",
        ]
        if attachment_text.strip():
            parts.append(f"Attachment text:\n{attachment_text[:MAX_ATTACHMENT_CHARS]}")
        raw = await self._call(EXTRACTION_SYSTEM_PROMPT, "\n\n".join(parts))
        try:
            return AIExtraction.model_validate(_parse_json_response(raw))
        except (ValueError, ValidationError) as e:
            raise AIServiceError(f"Malformed extraction response: {e}") from e

    async def _call(self, system: str, user_text: str) -> str:
        """One rate-limited model call, retried on transient API errors."""
        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            await self.rate_limiter.acquire()
            try:
                response = await self.client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user_text}],
                )
                return response.content[0].text
            except TRANSIENT_ERRORS as e:
                last_error = e
                if attempt < self.max_retries:
                    wait_time = self.retry_backoff * attempt
                    logger.warning(
                        "Claude call failed (%s), retrying in %.1fs (attempt %d/%d)",
                        type(e).__name__, wait_time, attempt, self.max_retries,
                    )
                    await asyncio.sleep(wait_time)
            except anthropic.APIError as e:
                raise AIServiceError(f"Claude request rejected: {e}") from e
            except (IndexError, AttributeError) as e:
                raise AIServiceError(f"Claude response had no text content: {e}") from e

        raise AIServiceError(f"Claude unavailable after {self.max_retries} attempts: {last_error}")
