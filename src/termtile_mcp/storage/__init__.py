"""Storage abstractions for termtile MCP."""

from .chroma import ChromaStore, ChromaUnavailableError
from .models import ActionRecord

__all__ = [
    "ActionRecord",
    "ChromaStore",
    "ChromaUnavailableError",
]
