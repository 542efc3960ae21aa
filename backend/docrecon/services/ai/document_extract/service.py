"""Document extraction client: turns a stored document into staged item candidates.

The model call is opaque and may be slow or fail. Failures come back as an
``ExtractionResponse`` carrying an ``ErrorKind`` so the invoker can tell a
retryable hiccup from a document that will never extract.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
from typing import Callable, Protocol

import httpx
import pdfplumber
from pydantic import ValidationError

from docrecon.core.storage import StoredDocument, download_document
from docrecon.schemas.extraction import ErrorKind
from docrecon.services.ai.common import router as ai_router
from docrecon.services.ai.common.providers import Attachment
from docrecon.services.ai.common.json_tools import extract_json
from docrecon.services.ai.document_extract.contracts import (
    ExtractionRequest,
    ExtractionResponse,
    StagedItemCandidate,
)
from docrecon.services.extraction_errors import PermanentInputError

logger = logging.getLogger(__name__)

TEXT_FILE_TYPES = {"csv", "txt", "json", "xml", "md", "tsv"}
IMAGE_MEDIA_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
}
SUPPORTED_FILE_TYPES = TEXT_FILE_TYPES | {"pdf"} | set(IMAGE_MEDIA_TYPES)
MAX_DOCUMENT_CHARS = 12000
MAX_PDF_PAGES = 30

# HTTP statuses that mean "this input will never work"
PERMANENT_HTTP_STATUSES = {400, 413, 415, 422}

EXTRACT_SYSTEM_PROMPT = (
    "You extract structured data from business documents. "
    "Return ONLY a JSON object of the form "
    '{"items": [{"field_path": "...", "value": ..., "confidence": 0.0-1.0, "source_snippet": "..."}]}. '
    "Use dotted field paths (e.g. supplier.name, waste.january.quantity). "
    "confidence is your certainty that the value is exactly right."
)

EXTRACT_PROMPT = """Document type: {file_type}
Retry attempt: {retry_attempt}

Document content:
{content}"""


class ExtractionClient(Protocol):
    async def extract(self, request: ExtractionRequest) -> ExtractionResponse: ...


def parse_items(raw_text: str) -> tuple[list[StagedItemCandidate], str | None]:
    """Parse model output into candidates.

    Returns ``(items, error)``. Items before the first malformed entry are
    kept; ``error`` names what went wrong, ``None`` when everything parsed.
    """
    parsed = extract_json(raw_text)
    if isinstance(parsed, dict):
        entries = parsed.get("items")
    else:
        entries = parsed
    if not isinstance(entries, list):
        return [], "Model response contained no item list"

    items: list[StagedItemCandidate] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            return items, f"Malformed item at index {index}"
        try:
            items.append(
                StagedItemCandidate(
                    field_path=str(entry.get("field_path") or entry.get("field") or ""),
                    extracted_value=entry.get("value", entry.get("extracted_value")),
                    confidence_score=entry.get("confidence", entry.get("confidence_score", 0.0)),
                    source_snippet=entry.get("source_snippet"),
                )
            )
        except ValidationError as exc:
            return items, f"Malformed item at index {index}: {exc.errors()[0].get('msg', 'invalid')}"
    return items, None


def classify_http_error(exc: httpx.HTTPStatusError) -> ErrorKind:
    status = exc.response.status_code
    if status in PERMANENT_HTTP_STATUSES:
        return ErrorKind.PERMANENT
    return ErrorKind.TRANSIENT


def pdf_text(content: bytes, *, max_pages: int = MAX_PDF_PAGES) -> str:
    """Text layer of a PDF, page by page."""
    try:
        with pdfplumber.open(io.BytesIO(content)) as pdf:
            pages = [page.extract_text() or "" for page in pdf.pages[:max_pages]]
    except Exception as exc:
        raise PermanentInputError(f"Unreadable PDF: {exc.__class__.__name__}") from exc
    return "\n\n".join(page.strip() for page in pages if page.strip())


def prepare_document(content: bytes, file_type: str) -> tuple[str, list[Attachment]]:
    """Turn raw document bytes into prompt text plus any binary attachments.

    Raises ``PermanentInputError`` for documents that hold nothing to extract.
    """
    if file_type in IMAGE_MEDIA_TYPES:
        if not content:
            raise PermanentInputError("Image document is empty")
        attachment = Attachment(
            media_type=IMAGE_MEDIA_TYPES[file_type],
            data=base64.b64encode(content).decode("ascii"),
        )
        return "The document is the attached image.", [attachment]

    if file_type == "pdf":
        text = pdf_text(content)
    else:
        text = content.decode("utf-8", errors="ignore")
    text = text.strip()
    if not text:
        raise PermanentInputError("Document has no readable content")
    return text[:MAX_DOCUMENT_CHARS], []


class ProviderExtractionClient:
    """``ExtractionClient`` backed by the configured AI provider."""

    def __init__(
        self,
        *,
        loader: Callable[[StoredDocument], bytes] = download_document,
        override_provider: str | None = None,
    ) -> None:
        self._loader = loader
        self._override_provider = override_provider

    async def extract(self, request: ExtractionRequest) -> ExtractionResponse:
        file_type = (request.file_type or "").lower().lstrip(".")
        if file_type not in SUPPORTED_FILE_TYPES:
            return ExtractionResponse.failure(
                f"Unsupported file type: {file_type or 'unknown'}", kind=ErrorKind.PERMANENT
            )

        document = StoredDocument(file_path=request.file_path, file_type=file_type)
        try:
            content = await asyncio.to_thread(self._loader, document)
        except FileNotFoundError as exc:
            return ExtractionResponse.failure(f"Document not found: {exc}", kind=ErrorKind.PERMANENT)
        except Exception as exc:
            logger.warning("Document download failed for %s: %s", request.document_id, exc)
            return ExtractionResponse.failure(f"Document download failed: {exc}")

        try:
            text, attachments = await asyncio.to_thread(prepare_document, content, file_type)
        except PermanentInputError as exc:
            return ExtractionResponse.failure(str(exc), kind=ErrorKind.PERMANENT)

        config = ai_router.resolve("document_extract", override_provider=self._override_provider)
        prompt = EXTRACT_PROMPT.format(
            file_type=file_type,
            retry_attempt=request.retry_attempt,
            content=text,
        )

        try:
            result = await config.provider.generate(
                prompt,
                system_prompt=EXTRACT_SYSTEM_PROMPT,
                model=config.model,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                timeout_seconds=config.timeout_seconds,
                attachments=attachments or None,
            )
        except httpx.HTTPStatusError as exc:
            kind = classify_http_error(exc)
            return ExtractionResponse.failure(f"Provider returned HTTP {exc.response.status_code}", kind=kind)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            return ExtractionResponse.failure(f"Provider unreachable: {exc.__class__.__name__}")

        model_version = f"{result.provider}:{result.model}"
        items, error = parse_items(result.raw_text)
        if error:
            logger.warning("Extraction output for %s incomplete: %s", request.document_id, error)
            return ExtractionResponse.failure(error, staged_items=items, model_version=model_version)

        return ExtractionResponse(success=True, staged_items=items, model_version=model_version)
