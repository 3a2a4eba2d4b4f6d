from relaydesk.services.backend import BackendError, DataBackend, TenantCredentials, open_backend
from relaydesk.services.embedding_service import EmbeddingService, get_embedding_service
from relaydesk.services.llm_service import LLMService, get_llm_service
from relaydesk.services.memory_extractor import MemoryExtractor, ExtractedMemory
from relaydesk.services.memory_service import MemoryService
from relaydesk.services.retry import with_retry

__all__ = [
    "BackendError",
    "DataBackend",
    "TenantCredentials",
    "open_backend",
    "EmbeddingService",
    "get_embedding_service",
    "LLMService",
    "get_llm_service",
    "MemoryExtractor",
    "ExtractedMemory",
    "MemoryService",
    "with_retry",
]
