"""
RAG (Retrieval-Augmented Generation) module for answering learner questions.
"""
from .generation import CompletionEngine, OpenAIProvider
from .prompts import assemble

__all__ = ['CompletionEngine', 'OpenAIProvider', 'assemble']
