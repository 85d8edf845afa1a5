"""CodeSift - local semantic search over a codebase."""

__version__ = "0.1.0"
