"""
LLM provider adapters for the enrichment agent.

The conversation history is kept in one neutral, Anthropic-shaped form:

    {"role": "user" | "assistant", "content": str | [block, ...]}

with blocks
    {"type": "text", "text": ...}
    {"type": "tool_use", "id": ..., "name": ..., "input": {...}}
    {"type": "tool_result", "tool_use_id": ..., "name": ..., "content": str, "is_error": bool}

Each provider translates that history and the tool catalog into its own wire
format and reports back an `LLMResponse`. Providers also tell the retry layer
what a rate-limit error looks like and how long the service asked us to wait.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from api.services.resilience import ServiceUnavailableError
from api.services.tool_gateway import ToolSpec

logger = logging.getLogger(__name__)


@dataclass
class ToolUseRequest:
    """A tool invocation requested by the model."""
    id: str
    name: str
    input: dict = field(default_factory=dict)


@dataclass
class LLMResponse:
    """Provider-neutral model response."""
    text: str = ""
    tool_uses: list[ToolUseRequest] = field(default_factory=list)
    stop_reason: str = "end_turn"
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""

    @property
    def wants_tools(self) -> bool:
        return self.stop_reason == "tool_use" and bool(self.tool_uses)

    def assistant_blocks(self) -> list[dict]:
        """The response as neutral assistant content blocks, for the history."""
        blocks: list[dict] = []
        if self.text:
            blocks.append({"type": "text", "text": self.text})
        for use in self.tool_uses:
            blocks.append({"type": "tool_use", "id": use.id, "name": use.name, "input": use.input})
        return blocks


class LLMProvider(ABC):
    """Contract shared by every LLM backend."""

    name: str = "llm"

    @abstractmethod
    async def complete(
        self,
        model: str,
        system: str,
        messages: list[dict],
        tools: list[ToolSpec],
        allow_tools: bool = True,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        """Send one request and return the parsed response."""

    @abstractmethod
    def is_rate_limit(self, error: Exception) -> bool:
        """True when the error is the provider's rate-limit signal."""

    @abstractmethod
    def retry_hint(self, error: Exception) -> Optional[float]:
        """Seconds the provider asked us to wait, when it said so."""


def _content_blocks(content: Any) -> list[dict]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []
    return list(content or [])


# ==========================================================================
# ANTHROPIC
# ==========================================================================

def normalize_schema_for_anthropic(schema: Optional[dict]) -> dict:
    """Anthropic requires an object-typed input schema with a properties map."""
    if not isinstance(schema, dict) or not schema:
        return {"type": "object", "properties": {}}
    normalized = dict(schema)
    if normalized.get("type") != "object":
        normalized["type"] = "object"
    normalized.setdefault("properties", {})
    return normalized


def _parse_reset_timestamp(value: str) -> Optional[float]:
    try:
        reset_at = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if reset_at.tzinfo is None:
        reset_at = reset_at.replace(tzinfo=timezone.utc)
    return max((reset_at - datetime.now(timezone.utc)).total_seconds(), 0.0)


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API via the async SDK client."""

    name = "anthropic"

    def __init__(self, api_key: str = "", client: Any = None):
        if client is None:
            import anthropic

            if not api_key:
                raise ServiceUnavailableError("LLM provider", "ANTHROPIC_API_KEY is not set")
            # Retries are handled by RateLimitedCaller
            client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)
        self.client = client

    @staticmethod
    def to_wire_messages(messages: list[dict]) -> list[dict]:
        """Drop the neutral-only `name` field from tool_result blocks."""
        wire = []
        for message in messages:
            content = message["content"]
            if isinstance(content, list):
                blocks = []
                for block in content:
                    if block.get("type") == "tool_result":
                        block = {k: v for k, v in block.items() if k != "name"}
                    blocks.append(block)
                content = blocks
            wire.append({"role": message["role"], "content": content})
        return wire

    @staticmethod
    def to_wire_tools(tools: list[ToolSpec]) -> list[dict]:
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": normalize_schema_for_anthropic(tool.input_schema),
            }
            for tool in tools
        ]

    async def complete(
        self,
        model: str,
        system: str,
        messages: list[dict],
        tools: list[ToolSpec],
        allow_tools: bool = True,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        call_kwargs = {
            "model": model,
            "max_tokens": max_tokens,
            "system": system,
            "messages": self.to_wire_messages(messages),
        }
        if tools:
            # Tools stay defined whenever the history may hold tool_use blocks
            call_kwargs["tools"] = self.to_wire_tools(tools)
            if not allow_tools:
                call_kwargs["tool_choice"] = {"type": "none"}

        message = await self.client.messages.create(**call_kwargs)

        result = LLMResponse(model=model, stop_reason=getattr(message, "stop_reason", None) or "end_turn")
        texts = []
        for block in message.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                result.tool_uses.append(
                    ToolUseRequest(id=block.id, name=block.name, input=dict(block.input or {}))
                )
        result.text = "\n".join(t for t in texts if t)

        usage = getattr(message, "usage", None)
        if usage is not None:
            result.input_tokens = getattr(usage, "input_tokens", 0) or 0
            result.output_tokens = getattr(usage, "output_tokens", 0) or 0
        return result

    def is_rate_limit(self, error: Exception) -> bool:
        import anthropic

        if isinstance(error, anthropic.RateLimitError):
            return True
        return getattr(error, "status_code", None) == 429

    def retry_hint(self, error: Exception) -> Optional[float]:
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None)
        if not headers:
            return None

        retry_after = headers.get("retry-after")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                logger.debug(f"Ignoring non-numeric retry-after header: {retry_after!r}")

        reset = headers.get("anthropic-ratelimit-input-tokens-reset")
        if reset:
            return _parse_reset_timestamp(reset)
        return None


# ==========================================================================
# GEMINI
# ==========================================================================

_GEMINI_TYPES = {
    "string": "STRING",
    "integer": "INTEGER",
    "number": "NUMBER",
    "boolean": "BOOLEAN",
    "array": "ARRAY",
    "object": "OBJECT",
}


def _permissive_schema(schema: dict) -> dict:
    out = {"type": "STRING"}
    if schema.get("description"):
        out["description"] = schema["description"]
    return out


def json_schema_to_gemini(schema: Any) -> dict:
    """
    Translate a JSON Schema fragment into a Gemini function-parameter schema.

    Keeps required/optional fields, string enums, array item types and
    nullability. Shapes Gemini cannot express (unions, free-form objects,
    unknown types) fall back to a permissive string schema.

    Examples:
        >>> json_schema_to_gemini({"type": "array", "items": {"type": "string"}})
        {'type': 'ARRAY', 'items': {'type': 'STRING'}}
    """
    if not isinstance(schema, dict):
        return {"type": "STRING"}

    schema_type = schema.get("type")
    nullable = False
    if isinstance(schema_type, list):
        non_null = [t for t in schema_type if t != "null"]
        nullable = len(non_null) < len(schema_type)
        schema_type = non_null[0] if len(non_null) == 1 else None

    if schema_type is None:
        if "properties" in schema:
            schema_type = "object"
        elif "items" in schema:
            schema_type = "array"
        elif "enum" in schema:
            schema_type = "string"

    gemini_type = _GEMINI_TYPES.get(schema_type)
    if gemini_type is None:
        return _permissive_schema(schema)

    out: dict = {"type": gemini_type}
    if schema.get("description"):
        out["description"] = schema["description"]
    if nullable:
        out["nullable"] = True

    if gemini_type == "STRING" and schema.get("enum"):
        out["enum"] = [str(v) for v in schema["enum"]]

    if gemini_type == "ARRAY":
        out["items"] = json_schema_to_gemini(schema.get("items") or {"type": "string"})

    if gemini_type == "OBJECT":
        properties = {
            key: json_schema_to_gemini(value)
            for key, value in (schema.get("properties") or {}).items()
        }
        if not properties:
            return _permissive_schema(schema)
        out["properties"] = properties
        required = [name for name in schema.get("required") or [] if name in properties]
        if required:
            out["required"] = required

    return out


def _parse_duration(value: Any) -> Optional[float]:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.endswith("s"):
        try:
            return float(value[:-1])
        except ValueError:
            return None
    return None


class GeminiProvider(LLMProvider):
    """Google Gemini via the google-genai async client."""

    name = "gemini"

    def __init__(self, api_key: str = "", client: Any = None):
        if client is None:
            from google import genai

            if not api_key:
                raise ServiceUnavailableError("LLM provider", "GOOGLE_API_KEY is not set")
            client = genai.Client(api_key=api_key)
        self.client = client
        self._call_counter = 0

    @staticmethod
    def to_wire_contents(messages: list[dict]) -> list:
        from google.genai import types

        contents = []
        for message in messages:
            role = "model" if message["role"] == "assistant" else "user"
            parts = []
            for block in _content_blocks(message["content"]):
                block_type = block.get("type")
                if block_type == "text" and block.get("text"):
                    parts.append(types.Part(text=block["text"]))
                elif block_type == "tool_use":
                    parts.append(types.Part(
                        function_call=types.FunctionCall(name=block["name"], args=block.get("input") or {})
                    ))
                elif block_type == "tool_result":
                    key = "error" if block.get("is_error") else "result"
                    parts.append(types.Part.from_function_response(
                        name=block.get("name") or "tool",
                        response={key: block.get("content", "")},
                    ))
            if parts:
                contents.append(types.Content(role=role, parts=parts))
        return contents

    @staticmethod
    def to_wire_tools(tools: list[ToolSpec]) -> list:
        from google.genai import types

        declarations = []
        for tool in tools:
            parameters = json_schema_to_gemini(tool.input_schema)
            kwargs = {"name": tool.name, "description": tool.description}
            if parameters.get("type") == "OBJECT":
                kwargs["parameters"] = types.Schema(**parameters)
            declarations.append(types.FunctionDeclaration(**kwargs))
        return [types.Tool(function_declarations=declarations)] if declarations else []

    def _next_call_id(self) -> str:
        self._call_counter += 1
        return f"call_{self._call_counter}"

    async def complete(
        self,
        model: str,
        system: str,
        messages: list[dict],
        tools: list[ToolSpec],
        allow_tools: bool = True,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        from google.genai import types

        cfg: dict[str, Any] = {
            "system_instruction": system,
            "max_output_tokens": max_tokens,
        }
        wire_tools = self.to_wire_tools(tools)
        if wire_tools:
            cfg["tools"] = wire_tools
            if not allow_tools:
                cfg["tool_config"] = types.ToolConfig(
                    function_calling_config=types.FunctionCallingConfig(mode="NONE")
                )

        response = await self.client.aio.models.generate_content(
            model=model,
            contents=self.to_wire_contents(messages),
            config=types.GenerateContentConfig(**cfg),
        )

        result = LLMResponse(model=model)
        texts = []
        candidates = getattr(response, "candidates", None) or []
        content = getattr(candidates[0], "content", None) if candidates else None
        for part in getattr(content, "parts", None) or []:
            function_call = getattr(part, "function_call", None)
            if function_call is not None:
                result.tool_uses.append(ToolUseRequest(
                    id=getattr(function_call, "id", None) or self._next_call_id(),
                    name=function_call.name,
                    input=dict(function_call.args or {}),
                ))
            elif getattr(part, "text", None):
                texts.append(part.text)
        result.text = "\n".join(texts)
        result.stop_reason = "tool_use" if result.tool_uses else "end_turn"

        usage = getattr(response, "usage_metadata", None)
        if usage is not None:
            result.input_tokens = getattr(usage, "prompt_token_count", 0) or 0
            result.output_tokens = getattr(usage, "candidates_token_count", 0) or 0
        return result

    def is_rate_limit(self, error: Exception) -> bool:
        from google.genai import errors

        if isinstance(error, errors.APIError):
            return error.code == 429
        return getattr(error, "code", None) == 429

    def retry_hint(self, error: Exception) -> Optional[float]:
        details = getattr(error, "details", None)
        if isinstance(details, dict):
            details = details.get("error", details).get("details", [])
        if not isinstance(details, list):
            return None
        for detail in details:
            if isinstance(detail, dict) and str(detail.get("@type", "")).endswith("RetryInfo"):
                return _parse_duration(detail.get("retryDelay"))
        return None


def build_provider(settings) -> LLMProvider:
    """Create the provider selected by LLM_PROVIDER."""
    provider = (settings.llm_provider or "anthropic").lower()
    if provider == "anthropic":
        return AnthropicProvider(api_key=settings.anthropic_api_key)
    if provider == "gemini":
        return GeminiProvider(api_key=settings.google_api_key)
    raise ValueError(f"Unknown LLM_PROVIDER: {settings.llm_provider}")
