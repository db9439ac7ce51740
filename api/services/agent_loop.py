"""
Agentic tool-calling loop for contact enrichment.

Drives a multi-turn conversation with the configured LLM provider while the
model calls tools on the identity tool service. The loop is an explicit state
machine:

    INIT -> CONNECTING -> READY -> AWAITING_RESPONSE
         -> (TOOL_USE -> EXECUTING_TOOLS -> AWAITING_RESPONSE)*
         -> DONE | FAILED

The provider's "tool use" stop signal is what moves AWAITING_RESPONSE to
TOOL_USE. Every LLM call goes through RateLimitedCaller (retry + spacing).
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from api.services.llm_providers import LLMProvider, LLMResponse, ToolUseRequest
from api.services.resilience import RateLimitedCaller, RateLimitPolicy
from api.services.tool_gateway import ToolGateway, ToolSpec

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "... [truncated]"

FINAL_SUMMARY_REQUEST = (
    "Please summarize what was done and what was found for the user, "
    "in plain language, without calling any more tools."
)

# Pricing per million tokens
_PRICING = {
    "haiku":  {"input": 0.80,  "output": 4.00},
    "sonnet": {"input": 3.00,  "output": 15.00},
    "opus":   {"input": 15.00, "output": 75.00},
    "gemini-pro":   {"input": 1.25, "output": 10.00},
    "gemini-flash": {"input": 0.30, "output": 2.50},
}


def _calc_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Estimate cost in USD from the model family's list price."""
    model_lower = model.lower()
    tier = "sonnet"
    if "haiku" in model_lower:
        tier = "haiku"
    elif "opus" in model_lower:
        tier = "opus"
    elif "gemini" in model_lower:
        tier = "gemini-flash" if "flash" in model_lower else "gemini-pro"
    pricing = _PRICING[tier]
    return (
        (input_tokens / 1_000_000) * pricing["input"]
        + (output_tokens / 1_000_000) * pricing["output"]
    )


class AgentState(str, Enum):
    INIT = "init"
    CONNECTING = "connecting"
    READY = "ready"
    AWAITING_RESPONSE = "awaiting_response"
    TOOL_USE = "tool_use"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    FAILED = "failed"


@dataclass
class AgentConfig:
    """Tuning knobs for one agent run."""
    tool_model: str
    final_model: str
    max_tool_rounds: int = 10
    max_tokens: int = 4096
    tool_result_max_chars: int = 2000
    tool_call_delay_seconds: float = 0.5
    history_limit: int = 6
    history_keep_recent: int = 4
    final_answer_min_chars: int = 50
    rate_limit: RateLimitPolicy = field(default_factory=RateLimitPolicy)

    @classmethod
    def from_settings(cls, settings) -> "AgentConfig":
        return cls(
            tool_model=settings.tool_model,
            final_model=settings.final_model,
            max_tool_rounds=settings.max_tool_rounds,
            max_tokens=settings.llm_max_tokens,
            tool_result_max_chars=settings.tool_result_max_chars,
            tool_call_delay_seconds=settings.tool_call_delay_seconds,
            history_limit=settings.history_limit,
            history_keep_recent=settings.history_keep_recent,
            final_answer_min_chars=settings.final_answer_min_chars,
            rate_limit=RateLimitPolicy(
                max_attempts=settings.llm_max_attempts,
                max_delay=settings.llm_max_backoff_seconds,
                min_interval=settings.min_call_interval_seconds,
            ),
        )


@dataclass
class AgentResult:
    """Result of an agentic loop run."""
    response: str
    tool_calls: list[dict] = field(default_factory=list)
    iterations: int = 0
    state: AgentState = AgentState.INIT
    model: str = ""
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost_usd: float = 0.0

    def add_usage(self, response: LLMResponse) -> None:
        self.total_input_tokens += response.input_tokens
        self.total_output_tokens += response.output_tokens
        self.total_cost_usd += _calc_cost(response.model, response.input_tokens, response.output_tokens)


def truncate_tool_result(content, max_chars: int = 2000) -> str:
    """JSON-serialize a tool result payload, cutting it at `max_chars`."""
    serialized = json.dumps(content, default=str)
    if len(serialized) > max_chars:
        return serialized[:max_chars] + TRUNCATION_MARKER
    return serialized


def _is_tool_result_turn(message: dict) -> bool:
    content = message.get("content")
    return (
        message.get("role") == "user"
        and isinstance(content, list)
        and bool(content)
        and all(isinstance(b, dict) and b.get("type") == "tool_result" for b in content)
    )


def compact_history(messages: list[dict], limit: int = 6, keep_recent: int = 4) -> list[dict]:
    """
    Keep the first message plus the most recent ones once history exceeds `limit`.

    The kept tail never starts with a tool-result turn whose tool_use request
    was dropped.
    """
    if len(messages) <= limit:
        return messages
    start = max(len(messages) - keep_recent, 1)
    while start < len(messages) and _is_tool_result_turn(messages[start]):
        start += 1
    return [messages[0]] + messages[start:]


def _without_tool_use(message: dict) -> Optional[dict]:
    content = message["content"]
    if not isinstance(content, list):
        return message
    blocks = [b for b in content if b.get("type") == "text" and b.get("text")]
    if not blocks:
        return None
    return {"role": message["role"], "content": blocks}


def _append_user_text(messages: list[dict], text: str) -> list[dict]:
    """Append a user text turn, merging it into a trailing user turn."""
    if messages and messages[-1]["role"] == "user":
        last = messages[-1]
        content = last["content"]
        if isinstance(content, str):
            merged = {"role": "user", "content": f"{content}\n\n{text}"}
        else:
            merged = {"role": "user", "content": list(content) + [{"type": "text", "text": text}]}
        return messages[:-1] + [merged]
    return messages + [{"role": "user", "content": text}]


class ConversationOrchestrator:
    """Runs one enrichment conversation against the LLM and the tool service."""

    def __init__(
        self,
        provider: LLMProvider,
        gateway: ToolGateway,
        config: AgentConfig,
        caller: Optional[RateLimitedCaller] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.gateway = gateway
        self.config = config
        self.caller = caller or RateLimitedCaller(
            is_rate_limit=provider.is_rate_limit,
            retry_hint=provider.retry_hint,
            policy=config.rate_limit,
        )
        self._sleep = sleep
        self.state = AgentState.INIT
        self.tools: list[ToolSpec] = []

    def _transition(self, new_state: AgentState) -> None:
        logger.debug(f"Agent state {self.state.value} -> {new_state.value}")
        self.state = new_state

    async def _call_llm(
        self,
        model: str,
        system: str,
        messages: list[dict],
        result: AgentResult,
        allow_tools: bool = True,
    ) -> LLMResponse:
        response = await self.caller.call(
            self.provider.complete,
            model=model,
            system=system,
            messages=messages,
            tools=self.tools,
            allow_tools=allow_tools,
            max_tokens=self.config.max_tokens,
        )
        result.add_usage(response)
        result.model = model
        return response

    async def _execute_tools(self, tool_uses: list[ToolUseRequest], result: AgentResult) -> list[dict]:
        """Execute every requested tool in order; one tool_result block per call."""
        tool_results = []
        for i, use in enumerate(tool_uses):
            if i > 0:
                await self._sleep(self.config.tool_call_delay_seconds)

            logger.info(f"Executing tool: {use.name}")
            try:
                tool_result = await self.gateway.execute(use.name, use.input)
            except Exception as e:
                logger.error(f"Tool {use.name} failed: {e}")
                tool_result = {"content": [{"type": "text", "text": f"Error: {e}"}], "isError": True}

            result.tool_calls.append({"name": use.name, "input": use.input, "result": tool_result})

            tool_results.append({
                "type": "tool_result",
                "tool_use_id": use.id,
                "name": use.name,
                "content": truncate_tool_result(
                    tool_result.get("content"), self.config.tool_result_max_chars
                ),
                "is_error": bool(tool_result.get("isError")),
            })
        return tool_results

    async def _final_answer(
        self, system: str, messages: list[dict], last: LLMResponse, result: AgentResult
    ) -> str:
        """
        Ask the default model for a user-presentable summary, tools disabled.

        Tool requests of the last response never got results, so only its text
        is kept in the history.
        """
        logger.info("Getting final response with the default model...")
        history = list(messages)
        unanswered = _without_tool_use({"role": "assistant", "content": last.assistant_blocks()})
        if unanswered is not None:
            history.append(unanswered)
        history = _append_user_text(history, FINAL_SUMMARY_REQUEST)

        response = await self._call_llm(
            self.config.final_model, system, history, result, allow_tools=False
        )
        return response.text

    async def run(self, messages: list[dict], system_prompt: str = "") -> AgentResult:
        """
        Run the conversation to completion.

        Args:
            messages: Conversation so far (`role`/`content` dicts), last one from the user
            system_prompt: System prompt sent with every call

        Returns:
            AgentResult with the final text and the full tool-call log

        Raises:
            ToolTransportError: Tool service unreachable during the handshake
            Exception: Provider errors once retries are exhausted
        """
        result = AgentResult(response="", model=self.config.tool_model)
        history = [{"role": m["role"], "content": m["content"]} for m in messages]

        try:
            self._transition(AgentState.CONNECTING)
            self.tools = await self.gateway.list_tools()
            self._transition(AgentState.READY)

            self._transition(AgentState.AWAITING_RESPONSE)
            response = await self._call_llm(self.config.tool_model, system_prompt, history, result)

            while response.wants_tools and result.iterations < self.config.max_tool_rounds:
                self._transition(AgentState.TOOL_USE)
                result.iterations += 1
                history.append({"role": "assistant", "content": response.assistant_blocks()})

                self._transition(AgentState.EXECUTING_TOOLS)
                tool_results = await self._execute_tools(response.tool_uses, result)
                history.append({"role": "user", "content": tool_results})
                history = compact_history(
                    history, self.config.history_limit, self.config.history_keep_recent
                )

                self._transition(AgentState.AWAITING_RESPONSE)
                response = await self._call_llm(self.config.tool_model, system_prompt, history, result)

            if response.wants_tools:
                logger.warning(f"Max tool use iterations reached ({self.config.max_tool_rounds})")

            final_text = response.text
            if len(final_text) < self.config.final_answer_min_chars:
                final_text = await self._final_answer(system_prompt, history, response, result)

            result.response = final_text
            self._transition(AgentState.DONE)
        except Exception:
            self._transition(AgentState.FAILED)
            result.state = self.state
            raise

        result.state = self.state
        logger.info(
            f"Agent finished after {result.iterations} tool round(s), "
            f"{len(result.tool_calls)} tool call(s), "
            f"{result.total_input_tokens} in / {result.total_output_tokens} out tokens"
        )
        return result
