"""Embedding providers, markdown chunking and the vector index."""
