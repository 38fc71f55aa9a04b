"""
Second brain.

Ingestion and retrieval core for personal content: deduplicated items,
paragraph-aware chunks, a durable processing queue, exact vector search fused
with full-text search, and bounded RAG context assembly.
"""

__all__ = [
    "chunker",
    "config",
    "context",
    "db",
    "embeddings",
    "errors",
    "ingest",
    "items",
    "job_queue",
    "search",
    "stats",
    "workers",
]
