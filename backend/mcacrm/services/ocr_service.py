"""
Text extraction for uploaded bank statements.

Google Document AI (REST, OAuth refresh-token auth) is the primary extractor.
PDFs above the sync page limit are split with pypdf and sent chunk by chunk;
if Document AI is unavailable, pypdf's own text layer is used for PDFs.
"""

import asyncio
import base64
import io
import logging
import time
from typing import List, Optional, Tuple

import httpx
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from mcacrm.config import settings
from mcacrm.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
DOCUMENT_AI_BASE = "https://documentai.googleapis.com/v1"

# Chunk text shorter than this is treated as empty
MIN_CHUNK_CHARS = 50
MIN_LOCAL_TEXT_CHARS = 100

MIME_TYPES = {
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".webp": "image/webp",
}


def mime_type_for(filename: Optional[str]) -> str:
    if not filename or "." not in filename:
        return "application/pdf"
    ext = "." + filename.rsplit(".", 1)[1].lower()
    return MIME_TYPES.get(ext, "application/pdf")


# ============================================================================
# PDF HELPERS (pypdf)
# ============================================================================

def count_pdf_pages(data: bytes) -> int:
    try:
        return len(PdfReader(io.BytesIO(data)).pages)
    except (PdfReadError, ValueError, OSError) as e:
        logger.warning(f"Could not read PDF page count: {e}")
        return 0


def split_pdf(data: bytes, chunk_pages: int) -> List[Tuple[int, int, bytes]]:
    """Split into (first_page, last_page, pdf_bytes) chunks, 1-based pages."""
    reader = PdfReader(io.BytesIO(data))
    total = len(reader.pages)
    chunks = []
    for start in range(0, total, chunk_pages):
        end = min(start + chunk_pages, total)
        writer = PdfWriter()
        for index in range(start, end):
            writer.add_page(reader.pages[index])
        buffer = io.BytesIO()
        writer.write(buffer)
        chunks.append((start + 1, end, buffer.getvalue()))
    return chunks


def extract_pdf_text_locally(data: bytes) -> str:
    try:
        reader = PdfReader(io.BytesIO(data))
        return "\n".join((page.extract_text() or "") for page in reader.pages)
    except (PdfReadError, ValueError, OSError) as e:
        logger.warning(f"Local PDF text extraction failed: {e}")
        return ""


# ============================================================================
# DOCUMENT AI CLIENT
# ============================================================================

class DocumentAIClient:
    """Synchronous ("online") processing against one Document AI processor."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout or settings.OCR_TIMEOUT_SECONDS
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def processor_name(self) -> str:
        return (
            f"projects/{settings.GOOGLE_PROJECT_ID}/locations/{settings.DOCUMENT_AI_LOCATION}"
            f"/processors/{settings.DOCUMENT_AI_PROCESSOR_ID}"
        )

    @property
    def is_configured(self) -> bool:
        return all([
            settings.GOOGLE_PROJECT_ID,
            settings.DOCUMENT_AI_PROCESSOR_ID,
            settings.GOOGLE_CLIENT_ID,
            settings.GOOGLE_CLIENT_SECRET,
            settings.GOOGLE_REFRESH_TOKEN,
        ])

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        response = await client.post(TOKEN_URL, data={
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "refresh_token": settings.GOOGLE_REFRESH_TOKEN,
            "grant_type": "refresh_token",
        })
        if response.status_code != 200:
            raise ExternalServiceError("document_ai", f"Token refresh failed: {response.status_code} {response.text}")

        data = response.json()
        token = data.get("access_token")
        if not token:
            raise ExternalServiceError("document_ai", "No access token in refresh response")

        # refresh a minute early
        self._access_token = token
        self._token_expires_at = time.monotonic() + int(data.get("expires_in", 3600)) - 60
        logger.info("Document AI access token refreshed")
        return token

    async def process(self, data: bytes, mime_type: str) -> str:
        if not self.is_configured:
            raise ExternalServiceError("document_ai", "Document AI is not configured")

        body = {
            "rawDocument": {
                "content": base64.b64encode(data).decode("ascii"),
                "mimeType": mime_type,
            },
            "imagelessMode": True,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                token = await self._get_access_token(client)
                response = await client.post(
                    f"{DOCUMENT_AI_BASE}/{self.processor_name}:process",
                    json=body,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.HTTPError as e:
            raise ExternalServiceError("document_ai", f"Request failed: {e}") from e

        if response.status_code != 200:
            raise ExternalServiceError("document_ai", f"{response.status_code} {response.text[:500]}")

        try:
            text = (response.json().get("document") or {}).get("text")
        except ValueError as e:
            raise ExternalServiceError("document_ai", f"Unreadable response: {e}") from e
        if not text:
            raise ExternalServiceError("document_ai", "No text returned")
        return text


# ============================================================================
# EXTRACTOR
# ============================================================================

class TextExtractor:
    """Pick a strategy per document and return its text, or None."""

    def __init__(self, ocr: Optional[DocumentAIClient] = None):
        self.ocr = ocr or DocumentAIClient()

    async def extract(self, data: bytes, filename: str) -> Optional[str]:
        mime_type = mime_type_for(filename)
        is_pdf = mime_type == "application/pdf"

        if is_pdf:
            pages = await asyncio.to_thread(count_pdf_pages, data)
            if pages > settings.FCS_LARGE_DOCUMENT_PAGES:
                logger.info(f"{filename}: {pages} pages, extracting in chunks")
                return await self.extract_chunked(data, filename)

        try:
            return await self.ocr.process(data, mime_type)
        except ExternalServiceError as e:
            logger.warning(f"OCR failed for {filename}: {e.message}")

        if is_pdf:
            text = await asyncio.to_thread(extract_pdf_text_locally, data)
            if len(text.strip()) > MIN_LOCAL_TEXT_CHARS:
                logger.info(f"{filename}: used embedded PDF text ({len(text)} chars)")
                return text
        return None

    async def extract_chunked(self, data: bytes, filename: str) -> Optional[str]:
        """Each chunk is independent: a failed chunk is logged and skipped."""
        try:
            chunks = await asyncio.to_thread(split_pdf, data, settings.FCS_CHUNK_PAGES)
        except (PdfReadError, ValueError, OSError) as e:
            logger.error(f"{filename}: could not split PDF: {e}")
            return None
        parts = []
        for first, last, chunk in chunks:
            try:
                text = await self.ocr.process(chunk, "application/pdf")
            except ExternalServiceError as e:
                logger.warning(f"{filename}: chunk pages {first}-{last} failed: {e.message}")
                continue
            if text and len(text) > MIN_CHUNK_CHARS:
                parts.append(text)

        logger.info(f"{filename}: {len(parts)}/{len(chunks)} chunks extracted")
        if not parts:
            return None
        return "\n\n".join(parts)


text_extractor = TextExtractor()
