"""Tutor chat: retrieval-augmented chat serving core."""

__version__ = "0.1.0"
