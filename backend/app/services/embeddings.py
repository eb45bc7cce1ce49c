"""
Embedding service for generating vector embeddings from insight text.

Supports two backends:
- Local sentence-transformers models (default, no API key required)
- OpenAI embeddings API

Vectors are normalized to unit length so cosine similarity is a dot product.
"""
from abc import ABC, abstractmethod
from typing import List, Dict, Optional
import logging

import numpy as np

from app.core.config import settings

logger = logging.getLogger(__name__)


def _normalize(embedding: np.ndarray) -> np.ndarray:
    """Normalize embedding to unit length."""
    norm = np.linalg.norm(embedding)
    if norm == 0:
        return embedding
    return embedding / norm


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    @abstractmethod
    def embed_text(self, text: str) -> np.ndarray:
        """
        Generate embedding for a single text.

        Args:
            text: Input text

        Returns:
            Embedding vector as numpy array
        """
        pass

    @abstractmethod
    def get_model_info(self) -> Dict:
        pass


class SentenceTransformerEmbedding(EmbeddingProvider):
    """
    Local sentence-transformers embedding provider.

    Default model: all-MiniLM-L6-v2 (384 dimensions).
    """

    def __init__(self, model_name: str = None):
        from sentence_transformers import SentenceTransformer

        self.model_name = model_name or settings.embedding_model
        self.model = SentenceTransformer(self.model_name)
        self.dimensions = self.model.get_sentence_embedding_dimension()

    def embed_text(self, text: str) -> np.ndarray:
        embedding = self.model.encode(text, convert_to_numpy=True)
        return _normalize(embedding)

    def get_model_info(self) -> Dict:
        return {
            "provider": "sentence-transformers",
            "model": self.model_name,
            "dimensions": self.dimensions,
        }


class OpenAIEmbedding(EmbeddingProvider):
    """OpenAI embeddings API provider."""

    dimensions_map = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(self, api_key: str = None, model: str = None):
        import openai

        self.api_key = api_key or settings.openai_api_key
        if not self.api_key:
            raise ValueError("OpenAI API key is required")

        self.model = model or settings.openai_embedding_model
        self.client = openai.OpenAI(api_key=self.api_key)
        self.dimensions = self.dimensions_map.get(self.model, 1536)

    def embed_text(self, text: str) -> np.ndarray:
        response = self.client.embeddings.create(model=self.model, input=text)
        embedding = np.array(response.data[0].embedding, dtype=np.float32)
        return _normalize(embedding)

    def get_model_info(self) -> Dict:
        return {
            "provider": "openai",
            "model": self.model,
            "dimensions": self.dimensions,
        }


class EmbeddingService:
    """
    High-level embedding service.

    Provides a unified interface for embedding generation regardless of backend.
    """

    def __init__(self, provider: Optional[EmbeddingProvider] = None):
        self.provider = provider or self._create_provider()
        self.model_info = self.provider.get_model_info()

    def _create_provider(self) -> EmbeddingProvider:
        """Create embedding provider based on configuration."""
        provider_type = settings.embedding_provider

        if provider_type == "local":
            return SentenceTransformerEmbedding()
        elif provider_type == "openai":
            return OpenAIEmbedding()
        else:
            raise ValueError(f"Unknown embedding provider: {provider_type}")

    def generate_embedding(self, text: str) -> List[float]:
        """Embedding of ``text`` as a plain list of floats, ready for storage."""
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        return [float(value) for value in self.provider.embed_text(text)]

    def get_dimensions(self) -> int:
        return self.model_info["dimensions"]

    def get_model_name(self) -> str:
        return self.model_info.get("model")


_embedding_service: Optional[EmbeddingService] = None


def get_embedding_service() -> EmbeddingService:
    """Process-wide embedding service, created on first use (model load is slow)."""
    global _embedding_service
    if _embedding_service is None:
        _embedding_service = EmbeddingService()
        logger.info(f"Embedding service ready: {_embedding_service.model_info}")
    return _embedding_service
