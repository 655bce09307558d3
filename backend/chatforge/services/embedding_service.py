"""Query embeddings through the OpenAI embeddings API."""
from __future__ import annotations

import logging
from typing import List, Optional

from openai import AsyncOpenAI

from chatforge.config import settings

logger = logging.getLogger(__name__)


class EmbeddingService:
    """Embeds visitor questions; returns ``None`` when embeddings are unavailable."""

    def __init__(self, client: Optional[AsyncOpenAI] = None) -> None:
        self.model_name = settings.embedding_model
        self._client = client if client is not None else self._build_client()

    def _build_client(self) -> Optional[AsyncOpenAI]:
        if not settings.openai_api_key:
            logger.warning("No embedding provider configured; vector context disabled")
            return None
        return AsyncOpenAI(api_key=settings.openai_api_key)

    @property
    def available(self) -> bool:
        return self._client is not None

    async def embed_query(self, text: str) -> Optional[List[float]]:
        if self._client is None or not text.strip():
            return None
        try:
            response = await self._client.embeddings.create(model=self.model_name, input=[text])
        except Exception as exc:
            logger.warning("Embedding request failed", extra={"error": str(exc)})
            return None
        return list(response.data[0].embedding)
