"""Concrete implementations for tool handlers."""

import inspect
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from .models import ToolCall, ToolResult

logger = logging.getLogger(__name__)

_JSON_TYPES = {int: "integer", float: "number", str: "string", bool: "boolean", list: "array", dict: "object"}


class Tool(ABC):
    """Interface for executing agentic tools."""

    @abstractmethod
    def get_tools(self) -> List[Dict[str, Any]]:
        """Returns a list of tool specifications for the LLM."""
        return []

    @abstractmethod
    def execute_tool_call(self, tool_call: ToolCall) -> ToolResult:
        """Executes a tool call. Failures are reported in the result, not raised."""
        pass


class NoTool(Tool):
    """Default handler that provides no tools."""

    def get_tools(self) -> List[Dict[str, Any]]:
        return []

    def execute_tool_call(self, tool_call: ToolCall) -> ToolResult:
        return ToolResult(
            tool_call_id=tool_call.id,
            function_name=tool_call.function_name,
            content="NoTool handler is active; no tools can be executed.",
            is_error=True,
        )


class PythonTool(Tool):
    """Exposes registered Python functions as tools."""

    def __init__(self):
        self._registry: Dict[str, Callable[..., Any]] = {}

    def register_function(self, func: Callable[..., Any], name: Optional[str] = None) -> None:
        if not callable(func):
            raise ValueError("Only callables can be registered as tools")
        self._registry[name or func.__name__] = func

    def get_tools(self) -> List[Dict[str, Any]]:
        return [self._generate_schema(func, name) for name, func in self._registry.items()]

    def _generate_schema(self, func: Callable[..., Any], name: Optional[str] = None) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        required: List[str] = []
        for param in inspect.signature(func).parameters.values():
            if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
                continue
            properties[param.name] = {"type": _JSON_TYPES.get(param.annotation, "string")}
            if param.default is param.empty:
                required.append(param.name)
        return {
            "type": "function",
            "function": {
                "name": name or func.__name__,
                "description": inspect.getdoc(func) or "",
                "parameters": {"type": "object", "properties": properties, "required": required},
            },
        }

    def execute_tool_call(self, tool_call: ToolCall) -> ToolResult:
        def result(content: str, is_error: bool = False) -> ToolResult:
            return ToolResult(
                tool_call_id=tool_call.id,
                function_name=tool_call.function_name,
                content=content,
                is_error=is_error,
            )

        func = self._registry.get(tool_call.function_name)
        if func is None:
            return result(f"Tool '{tool_call.function_name}' not found", is_error=True)
        try:
            kwargs = json.loads(tool_call.function_args or "{}")
        except json.JSONDecodeError as e:
            return result(f"Failed to parse arguments: {e}", is_error=True)
        try:
            output = func(**kwargs)
        except TypeError as e:
            return result(f"Invalid arguments: {e}", is_error=True)
        except Exception as e:  # tool code is user-supplied; report, don't crash the turn
            logger.warning("Tool '%s' raised %s", tool_call.function_name, type(e).__name__)
            return result(f"Tool execution failed: {type(e).__name__}", is_error=True)

        if isinstance(output, str):
            return result(output)
        try:
            return result(json.dumps(output))
        except (TypeError, ValueError):
            return result(str(output))
