"""memory_search / memory_get tools exposed to the agent layer."""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, model_validator

from cowcode_memory.exceptions import CowcodeMemoryError
from cowcode_memory.index import MemoryIndex
from cowcode_memory.logging import get_logger

log = get_logger(__name__)

MAX_TOOL_RESULTS = 20


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self


class MemoryTool(ABC):
    """Base class for memory tools; results are JSON for the LLM."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}

    def __init__(self, index: MemoryIndex):
        self.index = index

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        pass

    def get_definition(self) -> dict[str, Any]:
        """OpenAI function-style definition."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class MemorySearchTool(MemoryTool):
    name = "memory_search"
    description = (
        "Search notes and past conversations by meaning. "
        "Use dateFrom/dateTo (YYYY-MM-DD) for questions like 'what did we discuss last week'."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "What to look for"},
            "maxResults": {"type": "number", "description": "Maximum results (1-20)"},
            "minScore": {"type": "number", "description": "Minimum score between 0 and 1"},
            "dateFrom": {"type": "string", "description": "Earliest date, YYYY-MM-DD"},
            "dateTo": {"type": "string", "description": "Latest date, YYYY-MM-DD"},
        },
        "required": ["query"],
    }

    async def execute(
        self,
        query: str = "",
        maxResults: int | None = None,
        minScore: float | None = None,
        dateFrom: str | None = None,
        dateTo: str | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        cleaned = str(query or "").strip()
        if not cleaned:
            return ToolResult(
                success=False,
                content=json.dumps({"error": "query is required.", "results": []}),
            )
        defaults = self.index.config.search
        try:
            requested = defaults.max_results if maxResults is None else int(maxResults)
            max_results = min(MAX_TOOL_RESULTS, max(1, requested))
            min_score = defaults.min_score if minScore is None else float(minScore)
            results = await asyncio.to_thread(
                self.index.search,
                cleaned,
                max_results=max_results,
                min_score=min_score,
                date_from=dateFrom,
                date_to=dateTo,
            )
        except (CowcodeMemoryError, TypeError, ValueError) as e:
            log.error("Memory search failed", query=cleaned, error=str(e))
            return ToolResult(
                success=False,
                content=json.dumps({"error": str(e), "results": []}),
            )
        payload = {
            "results": [
                {
                    "path": r.path,
                    "startLine": r.start_line,
                    "endLine": r.end_line,
                    "snippet": r.snippet,
                    "score": round(r.score, 2),
                }
                for r in results
            ]
        }
        return ToolResult(success=True, content=json.dumps(payload, ensure_ascii=False))


class MemoryGetTool(MemoryTool):
    name = "memory_get"
    description = "Read a note or chat log by the path returned from memory_search, optionally a line range."
    parameters = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Workspace-relative path"},
            "from": {"type": "number", "description": "1-based start line"},
            "lines": {"type": "number", "description": "Number of lines"},
        },
        "required": ["path"],
    }

    async def execute(self, path: str = "", lines: int | None = None, **kwargs: Any) -> ToolResult:
        rel_path = str(path or "").strip()
        if not rel_path:
            return ToolResult(
                success=False,
                content=json.dumps({"error": "path is required.", "text": ""}),
            )
        from_line = kwargs.get("from")
        try:
            out = self.index.read_file(
                rel_path,
                int(from_line) if from_line is not None else None,
                int(lines) if lines is not None else None,
            )
        except (CowcodeMemoryError, TypeError, ValueError) as e:
            log.error("Memory read failed", path=rel_path, error=str(e))
            return ToolResult(
                success=False,
                content=json.dumps({"error": str(e), "path": rel_path, "text": ""}),
            )
        return ToolResult(
            success=True,
            content=json.dumps({"path": out.path, "text": out.text}, ensure_ascii=False),
        )


def memory_tools(index: MemoryIndex) -> list[MemoryTool]:
    return [MemorySearchTool(index), MemoryGetTool(index)]


async def execute_memory_tool(index: MemoryIndex, tool_name: str, args: dict[str, Any] | None = None) -> str:
    """Run a memory tool by name and return its JSON payload."""
    tools = {tool.name: tool for tool in memory_tools(index)}
    tool = tools.get(str(tool_name or "").strip())
    if tool is None:
        log.warning("Unknown memory tool", tool=tool_name)
        return json.dumps({"error": f"Unknown tool: {tool_name}"})
    result = await tool.execute(**(args or {}))
    return result.content
