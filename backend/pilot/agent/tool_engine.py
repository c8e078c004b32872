"""Tool-call engines: how tool definitions reach the model and how tool
calls come back out of its response.

Two strategies are supported:

* Native: the OpenAI ``tools`` parameter; calls are read from
  ``message.tool_calls`` and results go back as ``tool`` role messages.
* Prompt engineering: tools are described in the system prompt and the
  model answers with ``<tool_call>{...}</tool_call>`` blocks. Used with
  models or gateways that lack native function calling.

Engines never raise from ``parse_response``. Malformed output yields zero
tool calls and the raw text as content; the orchestration loop decides
what an empty batch means.
"""

from __future__ import annotations

import json
import logging
import random
import re
import string
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from pilot.agent.state import ToolCall, ToolDescriptor, ToolResult

logger = logging.getLogger(__name__)


@dataclass
class ParsedModelResponse:
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None


@dataclass
class RequestContext:
    """Inputs for one model request, before engine-specific shaping."""

    model: str
    messages: list[dict]
    tools: list[ToolDescriptor] = field(default_factory=list)
    tool_choice: str | None = None  # forced tool name, or None for auto
    temperature: float = 0.2


class ToolCallEngine(ABC):
    name: str = ""

    @abstractmethod
    def prepare_prompt(self, instructions: str, tools: list[ToolDescriptor]) -> str:
        """Return the system prompt for the given tool catalog."""

    @abstractmethod
    def prepare_request(self, context: RequestContext) -> dict:
        """Return kwargs for ``client.chat.completions.create``."""

    @abstractmethod
    def parse_response(self, response: Any) -> ParsedModelResponse:
        ...

    @abstractmethod
    def build_historical_assistant_message(self, response: ParsedModelResponse) -> dict:
        ...

    @abstractmethod
    def build_historical_tool_call_result_messages(
        self, results: list[ToolResult]
    ) -> list[dict]:
        ...


def _message_of(response: Any) -> Any:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return None, None
    choice = choices[0]
    return getattr(choice, "message", None), getattr(choice, "finish_reason", None)


# ── Native function calling ─────────────────────────────────────


class NativeToolCallEngine(ToolCallEngine):
    name = "native"

    def prepare_prompt(self, instructions: str, tools: list[ToolDescriptor]) -> str:
        return instructions

    def prepare_request(self, context: RequestContext) -> dict:
        kwargs: dict = {
            "model": context.model,
            "messages": context.messages,
            "temperature": context.temperature,
        }
        if context.tools:
            kwargs["tools"] = [t.to_openai() for t in context.tools]
            if context.tool_choice:
                kwargs["tool_choice"] = {
                    "type": "function",
                    "function": {"name": context.tool_choice},
                }
            else:
                kwargs["tool_choice"] = "auto"
        return kwargs

    def parse_response(self, response: Any) -> ParsedModelResponse:
        try:
            message, finish_reason = _message_of(response)
        except Exception:
            logger.exception("Unreadable model response")
            return ParsedModelResponse()
        if message is None:
            return ParsedModelResponse(finish_reason=finish_reason)

        calls = []
        for tc in getattr(message, "tool_calls", None) or []:
            function = getattr(tc, "function", None)
            name = getattr(function, "name", None)
            if not name:
                continue
            calls.append(
                ToolCall(
                    id=getattr(tc, "id", None) or generate_call_id(),
                    name=name,
                    arguments=getattr(function, "arguments", None) or "{}",
                )
            )
        return ParsedModelResponse(
            content=getattr(message, "content", None) or "",
            tool_calls=calls,
            finish_reason=finish_reason,
        )

    def build_historical_assistant_message(self, response: ParsedModelResponse) -> dict:
        message: dict = {"role": "assistant", "content": response.content or None}
        if response.tool_calls:
            message["tool_calls"] = [tc.to_openai() for tc in response.tool_calls]
        return message

    def build_historical_tool_call_result_messages(
        self, results: list[ToolResult]
    ) -> list[dict]:
        return [
            {
                "role": "tool",
                "tool_call_id": r.tool_call_id,
                "content": r.text,
            }
            for r in results
        ]


# ── Prompt-engineered tool calls ────────────────────────────────

TOOL_CALL_PATTERN = re.compile(r"<tool_call>\s*(.*?)\s*</tool_call>", re.DOTALL)

_TOOL_INSTRUCTIONS = """\
## Tools

You can call the tools below. To call a tool, reply with a block of this exact
form, one block per call:

<tool_call>
{{"name": "<tool name>", "parameters": {{<arguments as JSON>}}}}
</tool_call>

Only the JSON object may appear inside the block. You may write text before
the blocks. Results are returned to you in the next user message.

Available tools:

{tools}
"""


def generate_call_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"call_{int(time.time() * 1000)}_{suffix}"


class PromptEngineeringToolCallEngine(ToolCallEngine):
    name = "prompt_engineering"

    def prepare_prompt(self, instructions: str, tools: list[ToolDescriptor]) -> str:
        if not tools:
            return instructions
        described = "\n\n".join(
            f"### {t.name}\n{t.description}\nParameters (JSON Schema):\n"
            f"{json.dumps(t.parameters, ensure_ascii=False)}"
            for t in tools
        )
        return f"{instructions}\n\n{_TOOL_INSTRUCTIONS.format(tools=described)}"

    def prepare_request(self, context: RequestContext) -> dict:
        messages = list(context.messages)
        if context.tool_choice:
            messages.append(
                {
                    "role": "user",
                    "content": f"Respond with exactly one <tool_call> block calling "
                    f"`{context.tool_choice}`.",
                }
            )
        return {
            "model": context.model,
            "messages": messages,
            "temperature": context.temperature,
        }

    def parse_response(self, response: Any) -> ParsedModelResponse:
        try:
            message, finish_reason = _message_of(response)
        except Exception:
            logger.exception("Unreadable model response")
            return ParsedModelResponse()
        text = (getattr(message, "content", None) or "") if message else ""
        calls, content = self.extract_tool_calls(text)
        return ParsedModelResponse(
            content=content,
            tool_calls=calls,
            finish_reason=finish_reason,
        )

    def extract_tool_calls(self, text: str) -> tuple[list[ToolCall], str]:
        """Pull ``<tool_call>`` blocks out of *text*.

        Returns the calls and the text with all blocks removed. Blocks that
        are not a JSON object with a ``name`` are dropped.
        """
        calls = []
        for match in TOOL_CALL_PATTERN.finditer(text):
            try:
                data = json.loads(match.group(1))
            except json.JSONDecodeError:
                logger.warning("Skipping malformed tool_call block: %.200s", match.group(1))
                continue
            if not isinstance(data, dict) or not data.get("name"):
                logger.warning("Skipping tool_call block without a name")
                continue
            parameters = data.get("parameters")
            if parameters is None:
                parameters = data.get("arguments", {})
            calls.append(
                ToolCall(
                    id=generate_call_id(),
                    name=str(data["name"]),
                    arguments=json.dumps(parameters, ensure_ascii=False),
                )
            )
        content = TOOL_CALL_PATTERN.sub("", text).strip()
        return calls, content

    def build_historical_assistant_message(self, response: ParsedModelResponse) -> dict:
        blocks = [
            "<tool_call>\n"
            + json.dumps(
                {"name": tc.name, "parameters": _safe_arguments(tc)},
                ensure_ascii=False,
            )
            + "\n</tool_call>"
            for tc in response.tool_calls
        ]
        content = "\n".join(filter(None, [response.content, *blocks]))
        return {"role": "assistant", "content": content}

    def build_historical_tool_call_result_messages(
        self, results: list[ToolResult]
    ) -> list[dict]:
        if not results:
            return []
        content = "\n\n".join(f"Tool: {r.name}\nResult:\n{r.text}" for r in results)
        return [{"role": "user", "content": content}]


def _safe_arguments(call: ToolCall) -> Any:
    try:
        return call.parse_arguments()
    except ValueError:
        return call.arguments


ENGINES: dict[str, type[ToolCallEngine]] = {
    NativeToolCallEngine.name: NativeToolCallEngine,
    PromptEngineeringToolCallEngine.name: PromptEngineeringToolCallEngine,
}


def create_engine(name: str) -> ToolCallEngine:
    try:
        return ENGINES[name]()
    except KeyError:
        raise ValueError(
            f"Unknown tool call engine '{name}', expected one of {sorted(ENGINES)}"
        ) from None
