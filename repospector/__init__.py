"""RepoSpector backend: repository indexing and semantic code retrieval."""

__version__ = "0.1.0"
