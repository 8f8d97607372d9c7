"""
Retrieval module for semantic search over course video chunks.
"""
from .semantic_search import ContextRetriever, OpenAIQueryEmbedder, PgVectorRetriever, validate_chunks

__all__ = ['ContextRetriever', 'OpenAIQueryEmbedder', 'PgVectorRetriever', 'validate_chunks']
