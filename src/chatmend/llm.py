"""Concrete implementations for LLM providers."""

import json
import os
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from .errors import ProviderError
from .models import ASSISTANT_ROLE, SYSTEM_ROLE, TOOL_ROLE, USER_ROLE, ChatMessage, ToolCall

_STRUCTURE_ERROR_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"tool_calls.*must be followed by tool messages",
        r"tool_call_id.*did not have response messages",
        r"assistant message.*tool_calls.*must be followed",
        r"invalid.*parameter.*messages",
    )
]
_RATE_LIMIT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"rate limit", r"too many requests", r"quota exceeded")
]
_TIMEOUT_PATTERNS = [re.compile(r"timed? ?out", re.IGNORECASE)]
_NETWORK_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"network", r"connection", r"unreachable", r"name resolution")
]


def classify_error(error: BaseException) -> ProviderError:
    """Maps an arbitrary provider exception onto a ProviderError kind."""
    if isinstance(error, ProviderError):
        return error
    if isinstance(error, TimeoutError):
        return ProviderError("timeout", str(error))
    if isinstance(error, ConnectionError):
        return ProviderError("network", str(error))

    message = str(error)
    for kind, patterns in (
        ("invalid_response", _STRUCTURE_ERROR_PATTERNS),
        ("rate_limited", _RATE_LIMIT_PATTERNS),
        ("timeout", _TIMEOUT_PATTERNS),
        ("network", _NETWORK_PATTERNS),
    ):
        if any(p.search(message) for p in patterns):
            return ProviderError(kind, message)
    return ProviderError("unknown", f"{type(error).__name__}: {message}")


class LLM(ABC):
    """Abstract Base Class for all LLM providers."""

    model: str = ""

    @abstractmethod
    def generate_response(
        self, messages: List[Dict[str, Any]], model: Optional[str] = None, **kwargs: Any
    ) -> Any:
        """Generates a response from the LLM provider.

        This method should return the provider's native, rich response object
        directly from their SDK, and raise ProviderError for failures it can
        classify.

        Parameters
        ----------
        messages : List[Dict[str, Any]]
            A list of message dictionaries, conforming to the provider's
            expected format.
        model : str, optional
            The specific model to use for the generation.
        **kwargs : Any
            Provider-specific parameters (e.g., tools, temperature) to be
            passed directly to the SDK.

        Returns
        -------
        Any
            The provider's native, rich response object.
        """
        pass

    @abstractmethod
    def extract_content(self, response: Any) -> Optional[str]:
        """Extracts the text content from the provider's native response object."""
        pass

    @abstractmethod
    def parse_tool_calls(self, response: Any) -> List[ToolCall]:
        """Extracts tool calls from the response.

        Raises ProviderError(kind="invalid_response") for a malformed tool-call
        payload (missing id or name, arguments that are not a JSON object).
        """
        pass

    def create_assistant_message(self, response: Any) -> ChatMessage:
        tool_calls = self.parse_tool_calls(response)
        return ChatMessage(
            role=ASSISTANT_ROLE,
            content=self.extract_content(response),
            tool_calls=tool_calls or None,
        )

    def format_messages(self, messages: Sequence[ChatMessage]) -> List[Dict[str, Any]]:
        """Converts messages to the OpenAI chat-completions wire format.

        Synthetic tool responses are sent like any other tool message.
        """
        formatted = []
        for message in messages:
            entry: Dict[str, Any] = {"role": message.role, "content": message.content or ""}
            if message.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": call.function_name,
                            "arguments": call.function_args,
                        },
                    }
                    for call in message.tool_calls
                ]
            if message.role == TOOL_ROLE:
                entry["tool_call_id"] = message.tool_call_id
            formatted.append(entry)
        return formatted


def _checked_tool_call(call_id: Any, name: Any, arguments: Any) -> ToolCall:
    if not call_id or not name:
        raise ProviderError("invalid_response", "Tool call without id or function name")
    if isinstance(arguments, dict):
        arguments = json.dumps(arguments)
    arguments = arguments or "{}"
    try:
        parsed = json.loads(arguments)
    except (TypeError, ValueError) as e:
        raise ProviderError(
            "invalid_response", "Tool call arguments are not valid JSON"
        ) from e
    if not isinstance(parsed, dict):
        raise ProviderError("invalid_response", "Tool call arguments are not a JSON object")
    return ToolCall(id=str(call_id), function_name=str(name), function_args=arguments)


def _translate_sdk_error(sdk: Any, error: Exception) -> ProviderError:
    """Maps an ``openai`` or ``anthropic`` SDK exception onto a ProviderError.

    Both SDKs share the same exception hierarchy, so one mapping serves both.
    """
    if isinstance(error, sdk.APITimeoutError):
        return ProviderError("timeout", str(error))
    if isinstance(error, sdk.APIConnectionError):
        return ProviderError("network", str(error))
    if isinstance(error, sdk.RateLimitError):
        header = error.response.headers.get("retry-after", "")
        return ProviderError(
            "rate_limited",
            str(error),
            retry_after=float(header) if header.isdigit() else None,
        )
    if isinstance(error, sdk.BadRequestError):
        return classify_error(error)
    if isinstance(error, sdk.APIStatusError):
        if error.status_code >= 500:
            return ProviderError("network", str(error))
        return ProviderError("unknown", str(error))
    return classify_error(error)


class OpenAI(LLM):
    def __init__(self, default_model: str = "gpt-4o", **client_kwargs: Any):
        from openai import OpenAI

        self.client = OpenAI(**client_kwargs)
        self.model = default_model

    def _create(self, messages: List[Dict[str, Any]], model: str, **kwargs: Any) -> Any:
        return self.client.chat.completions.create(messages=messages, model=model, **kwargs)

    def generate_response(
        self, messages: List[Dict[str, Any]], model=None, **kwargs: Any
    ) -> Any:
        import openai

        try:
            return self._create(messages, model or self.model, **kwargs)
        except openai.APIError as e:
            raise _translate_sdk_error(openai, e) from e

    def extract_content(self, response: Any) -> Optional[str]:
        return response.choices[0].message.content

    def parse_tool_calls(self, response: Any) -> List[ToolCall]:
        raw_calls = response.choices[0].message.tool_calls or []
        return [
            _checked_tool_call(
                getattr(call, "id", None),
                getattr(call.function, "name", None),
                getattr(call.function, "arguments", None),
            )
            for call in raw_calls
        ]


class OpenRouter(OpenAI):
    def __init__(self, default_model: str = "openai/gpt-4o-mini", **client_kwargs: Any):
        client_kwargs.setdefault("base_url", "https://openrouter.ai/api/v1")
        if "api_key" not in client_kwargs:
            client_kwargs["api_key"] = os.environ["OPENROUTER_API_KEY"]
        super().__init__(default_model, **client_kwargs)

    def _create(self, messages, model, **kwargs):
        kwargs.setdefault(
            "extra_headers", {"HTTP-Referer": "chatmend", "X-Title": "Chatmend"}
        )
        return super()._create(messages, model, **kwargs)


class DeepSeek(OpenRouter):
    def __init__(self, default_model: str = "deepseek/deepseek-chat", **client_kwargs: Any):
        super().__init__(default_model, **client_kwargs)


def _content_blocks(content: Any) -> List[Dict[str, Any]]:
    if isinstance(content, list):
        return list(content)
    return [{"type": "text", "text": content}] if content else []


class Anthropic(LLM):
    """Claude through the Messages API.

    Tool calls map to ``tool_use`` blocks and tool responses to ``tool_result``
    blocks inside a user turn. Consecutive entries with the same role are
    merged, and system messages move to the ``system`` parameter.
    """

    def __init__(self, default_model: str = "claude-3-5-sonnet-20241022", **client_kwargs: Any):
        from anthropic import Anthropic

        if "api_key" not in client_kwargs:
            client_kwargs["api_key"] = os.environ["ANTHROPIC_API_KEY"]
        self.client = Anthropic(**client_kwargs)
        self.model = default_model

    def format_messages(self, messages: Sequence[ChatMessage]) -> List[Dict[str, Any]]:
        formatted: List[Dict[str, Any]] = []
        for message in messages:
            if message.role == TOOL_ROLE:
                role = USER_ROLE
                blocks = [
                    {
                        "type": "tool_result",
                        "tool_use_id": message.tool_call_id,
                        "content": message.content or "",
                    }
                ]
            else:
                role = message.role
                blocks = _content_blocks(message.content)
                for call in message.tool_calls or ():
                    blocks.append(
                        {
                            "type": "tool_use",
                            "id": call.id,
                            "name": call.function_name,
                            "input": json.loads(call.function_args or "{}"),
                        }
                    )
            if not blocks:
                continue
            if formatted and formatted[-1]["role"] == role:
                formatted[-1]["content"].extend(blocks)
            else:
                formatted.append({"role": role, "content": blocks})
        return formatted

    def generate_response(self, messages, model=None, **kwargs):
        import anthropic

        system = [
            block["text"]
            for m in messages
            if m["role"] == SYSTEM_ROLE
            for block in _content_blocks(m["content"])
            if block.get("type") == "text"
        ]
        if system:
            kwargs.setdefault("system", "\n\n".join(system))
        if kwargs.get("tools"):
            kwargs["tools"] = [
                {
                    "name": tool["function"]["name"],
                    "description": tool["function"].get("description", ""),
                    "input_schema": tool["function"]["parameters"],
                }
                for tool in kwargs["tools"]
            ]
        kwargs.setdefault("max_tokens", 4096)
        try:
            return self.client.messages.create(
                model=model or self.model,
                messages=[m for m in messages if m["role"] != SYSTEM_ROLE],
                **kwargs,
            )
        except anthropic.APIError as e:
            raise _translate_sdk_error(anthropic, e) from e

    def extract_content(self, response: Any) -> Optional[str]:
        texts = [block.text for block in response.content if block.type == "text"]
        return "".join(texts) if texts else None

    def parse_tool_calls(self, response: Any) -> List[ToolCall]:
        return [
            _checked_tool_call(
                getattr(block, "id", None),
                getattr(block, "name", None),
                getattr(block, "input", None),
            )
            for block in response.content
            if block.type == "tool_use"
        ]


class Echo(LLM):
    """Returns the last user prompt. Useful for testing and offline demos.

    A response dict may carry ``tool_calls`` in the OpenAI shape, which lets
    tests script tool-calling turns through ``responses``.
    """

    def __init__(
        self,
        default_model: str = "echo-v1",
        responses: Optional[List[Dict[str, Any]]] = None,
    ):
        self.model = default_model
        self.responses = list(responses or [])

    def generate_response(self, messages, model=None, **kwargs):
        if self.responses:
            return self.responses.pop(0)
        user_prompt = messages[-1]["content"] if messages else "No message provided"
        return {"content": f"Echo: {user_prompt}", "tool_calls": []}

    def extract_content(self, response: Any) -> Optional[str]:
        if isinstance(response, dict) and "content" in response:
            return response["content"]
        return str(response)

    def parse_tool_calls(self, response: Any) -> List[ToolCall]:
        if not isinstance(response, dict):
            return []
        calls = []
        for raw in response.get("tool_calls") or []:
            function = raw.get("function") or {}
            calls.append(
                _checked_tool_call(
                    raw.get("id"), function.get("name"), function.get("arguments")
                )
            )
        return calls
