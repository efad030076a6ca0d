"""RAG (Retrieval-Augmented Generation) module for repository search.

Provides boundary-aware code chunking, a numpy cosine-similarity vector
store over in-memory or DuckDB storage, and the indexing / retrieval
pipeline that feeds relevant code into LLM prompts.
"""
