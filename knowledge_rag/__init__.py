"""
ERP Knowledge RAG Service

Multi-tenant knowledge base for ERP content: ingestion of documents, products,
ERP records, manuals and archived e-mails, semantic retrieval, and grounded
answer generation with citations.
"""

__version__ = "1.0.0"
__author__ = "UNIBASE ERP Team"
__description__ = "Multi-tenant RAG knowledge base for ERP systems"
