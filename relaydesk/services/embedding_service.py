"""Embedding service for generating vector embeddings"""

import logging
from typing import List, Optional

import numpy as np
from openai import AsyncOpenAI

from relaydesk.config import settings

logger = logging.getLogger(__name__)


class EmbeddingService:
    """Service for generating text embeddings using OpenAI"""

    def __init__(self, model: Optional[str] = None):
        self.model = model or settings.embedding_model
        self._openai_client: Optional[AsyncOpenAI] = None

    @property
    def openai_client(self) -> AsyncOpenAI:
        if self._openai_client is None:
            self._openai_client = AsyncOpenAI(api_key=settings.openai_api_key)
            logger.info(f"OpenAI client initialized for model: {self.model}")
        return self._openai_client

    async def embed(self, text: str) -> List[float]:
        """Generate embedding for a single text"""
        response = await self.openai_client.embeddings.create(
            model=self.model,
            input=text,
        )
        return response.data[0].embedding

    @staticmethod
    def cosine_similarity(embedding1: List[float], embedding2: List[float]) -> float:
        """Cosine similarity; 0.0 for mismatched dimensions or zero vectors."""
        if len(embedding1) != len(embedding2) or not embedding1:
            return 0.0
        a = np.array(embedding1, dtype=float)
        b = np.array(embedding2, dtype=float)
        norm = np.linalg.norm(a) * np.linalg.norm(b)
        if norm == 0:
            return 0.0
        return float(np.dot(a, b) / norm)


_embedding_service: Optional[EmbeddingService] = None


def get_embedding_service() -> EmbeddingService:
    """Get the embedding service singleton."""
    global _embedding_service
    if _embedding_service is None:
        _embedding_service = EmbeddingService()
    return _embedding_service
