"""
Test doubles for the tool service and the LLM provider.

FakeGateway answers tool calls from per-tool handlers and records every call.
ScriptedProvider returns a fixed sequence of LLMResponses and records the
requests it received.
"""
import json
from typing import Any, Callable, Optional, Union

from api.services.llm_providers import LLMProvider, LLMResponse, ToolUseRequest
from api.services.tool_gateway import ToolSpec


def text_result(payload: Any, is_error: bool = False) -> dict:
    """Raw tool result whose single text block holds `payload` (JSON-encoded unless already a string)."""
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


def resolution(*identities: tuple) -> dict:
    """resolve_identities result: identities given as (person_id, kind, [values])."""
    return text_result({
        "identities": [
            {"person_id": pid, "identifiers": {kind: list(values)}}
            for pid, kind, values in identities
        ]
    })


def profiles(*entries: dict) -> dict:
    """get_person result with one profile per `domains` dict."""
    return text_result({"profiles": [{"domains": d} for d in entries]})


Handler = Union[dict, Callable[[dict], dict], Exception]


class FakeGateway:
    """Stands in for ToolGateway; handlers are keyed by tool name."""

    def __init__(self, handlers: Optional[dict[str, Handler]] = None, tools: Optional[list[ToolSpec]] = None):
        self.handlers = dict(handlers or {})
        self.tools = tools if tools is not None else [
            ToolSpec(name="resolve_identities", description="Resolve identifiers to person ids"),
            ToolSpec(name="get_person", description="Fetch profiles by person id"),
        ]
        self.calls: list[tuple[str, dict]] = []

    async def list_tools(self) -> list[ToolSpec]:
        return self.tools

    async def execute(self, name: str, arguments: dict) -> dict:
        self.calls.append((name, arguments))
        handler = self.handlers.get(name)
        if handler is None:
            return text_result({})
        if isinstance(handler, Exception):
            raise handler
        if callable(handler):
            return handler(arguments)
        return handler

    def calls_to(self, name: str) -> list[dict]:
        return [args for tool, args in self.calls if tool == name]


def tool_use(name: str, arguments: dict, call_id: str = "tu_1", text: str = "") -> LLMResponse:
    return LLMResponse(
        text=text,
        tool_uses=[ToolUseRequest(id=call_id, name=name, input=arguments)],
        stop_reason="tool_use",
        input_tokens=100,
        output_tokens=20,
    )


def answer(text: str) -> LLMResponse:
    return LLMResponse(text=text, stop_reason="end_turn", input_tokens=100, output_tokens=50)


class ScriptedProvider(LLMProvider):
    """Returns the scripted responses in order; records each request."""

    name = "scripted"

    def __init__(self, responses: list[Union[LLMResponse, Exception]]):
        self.responses = list(responses)
        self.requests: list[dict] = []

    async def complete(self, model, system, messages, tools, allow_tools=True, max_tokens=4096):
        self.requests.append({
            "model": model,
            "system": system,
            "messages": [dict(m) for m in messages],
            "tools": list(tools),
            "allow_tools": allow_tools,
        })
        if not self.responses:
            raise AssertionError("ScriptedProvider ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        response.model = model
        return response

    def is_rate_limit(self, error: Exception) -> bool:
        return getattr(error, "status_code", None) == 429

    def retry_hint(self, error: Exception) -> Optional[float]:
        return getattr(error, "retry_after", None)


class RateLimited(Exception):
    """Provider-agnostic 429 for caller tests."""

    def __init__(self, retry_after: Optional[float] = None):
        self.status_code = 429
        self.retry_after = retry_after
        super().__init__("429 rate limited")


class FakeClock:
    """Monotonic clock that only moves when the fake sleep is awaited."""

    def __init__(self):
        self.now = 1000.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
