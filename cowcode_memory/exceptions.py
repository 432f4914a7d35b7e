"""Custom exceptions for the cowcode memory index."""


class CowcodeMemoryError(Exception):
    """Base exception for the memory index."""

    pass


class ConfigurationError(CowcodeMemoryError):
    """Configuration-related errors."""

    pass


class EmbeddingServiceError(CowcodeMemoryError):
    """Embedding service errors (network, HTTP status, malformed payload)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ContextLengthError(EmbeddingServiceError):
    """Embedding input exceeded the model's context length."""

    pass


class SchemaCorruptionError(CowcodeMemoryError):
    """Persisted vector table is in a format this version cannot use."""

    def __init__(self, reason: str):
        super().__init__(f"Vector table needs rebuild: {reason}")
        self.reason = reason


class SourceReadError(CowcodeMemoryError):
    """Source file vanished or could not be read."""

    def __init__(self, path: str, message: str):
        super().__init__(f"Cannot read {path}: {message}")
        self.path = path


class PathTraversalError(CowcodeMemoryError):
    """Requested path escapes the workspace root."""

    def __init__(self, path: str):
        super().__init__(
            "path must be relative to workspace "
            f"(e.g. MEMORY.md, memory/2025-02-15.md or chat-log/2025-02-16.jsonl): {path!r}"
        )
        self.path = path


class UnsupportedPathError(CowcodeMemoryError):
    """Requested path is not a readable memory source."""

    def __init__(self, path: str):
        super().__init__(f"Only .md or chat-log/*.jsonl under workspace are allowed: {path!r}")
        self.path = path
