"""
API Package

REST API endpoints for the ERP Knowledge RAG service
"""
