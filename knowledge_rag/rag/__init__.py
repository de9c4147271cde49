"""RAG (Retrieval-Augmented Generation) Knowledge Base

This package provides the ingestion pipeline (normalization, chunking, embedding),
the tenant-scoped knowledge store, retrieval and grounded answer generation.
"""
