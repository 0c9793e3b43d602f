"""
External integrations for the build pipeline.

Modules:
- llm_client: OpenAI-compatible JSON generation and embeddings
- vector_store: Pinecone-compatible vector upserts
- notifier: chat message fan-out
"""
from .llm_client import OpenAIClient
from .notifier import ChatNotifier, LoggingNotifier
from .vector_store import VectorRecord, VectorStore

__all__ = ["OpenAIClient", "VectorStore", "VectorRecord", "ChatNotifier", "LoggingNotifier"]
