"""Shared OpenAI client."""

import logging
from typing import Optional

from openai import AsyncOpenAI

from mcacrm.config import settings

logger = logging.getLogger(__name__)

_client: Optional[AsyncOpenAI] = None


def get_openai_client() -> Optional[AsyncOpenAI]:
    """The shared AsyncOpenAI client, or None when no API key is configured."""
    global _client
    if not settings.OPENAI_API_KEY:
        return None
    if _client is None:
        # timeouts are enforced per call with asyncio.wait_for
        _client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY, max_retries=0)
        logger.info("OpenAI client initialized")
    return _client
