"""Cowcode memory - local semantic memory for a conversational assistant."""

__version__ = "0.1.0"

from cowcode_memory.chat_log import ChatExchange
from cowcode_memory.config import Config
from cowcode_memory.index import MemoryIndex, create_memory_index
from cowcode_memory.search import SearchResult

__all__ = ["ChatExchange", "Config", "MemoryIndex", "SearchResult", "create_memory_index", "__version__"]
