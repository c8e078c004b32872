"""Model client with retry logic for the orchestration loop.

Wraps the OpenAI SDK pointed at any OpenAI-compatible endpoint. Retries
transient failures (429 rate limit, 5xx server errors, timeouts, connection
errors) with exponential backoff. How tools are presented to the model and
read back is delegated to a ToolCallEngine.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from pilot.agent.constants import (
    LLM_MAX_RETRIES,
    LLM_RETRY_BASE_DELAY_SECONDS,
    LLM_RETRY_MAX_DELAY_SECONDS,
    LLM_RETRYABLE_STATUS_CODES,
)
from pilot.agent.state import ToolDescriptor
from pilot.agent.tool_engine import (
    ParsedModelResponse,
    RequestContext,
    ToolCallEngine,
    create_engine,
)
from pilot.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class ModelClient(Protocol):
    engine: ToolCallEngine

    async def ask_text(self, messages: list[dict], request_id: str) -> str:
        ...

    async def ask_with_tools(
        self,
        messages: list[dict],
        tools: list[ToolDescriptor],
        request_id: str,
        tool_choice: str | None = None,
    ) -> ParsedModelResponse:
        ...


def _is_retryable(exc: Exception) -> bool:
    """Determine if an exception is transient and worth retrying."""
    if isinstance(exc, APITimeoutError):
        return True
    if isinstance(exc, APIConnectionError):
        return True
    if isinstance(exc, APIStatusError) and exc.status_code in LLM_RETRYABLE_STATUS_CODES:
        return True
    return False


class OpenAIModelClient:
    def __init__(
        self,
        config: Settings | None = None,
        engine: ToolCallEngine | None = None,
        client: AsyncOpenAI | None = None,
    ):
        self.config = config or default_settings
        self.engine = engine or create_engine(self.config.TOOL_CALL_ENGINE)
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.config.OPENAI_API_KEY,
                base_url=self.config.OPENAI_BASE_URL,
                timeout=httpx.Timeout(120.0, connect=10.0),
            )
        return self._client

    async def _create(self, kwargs: dict, request_id: str):
        for attempt in range(1, LLM_MAX_RETRIES + 1):
            try:
                return await self.client.chat.completions.create(**kwargs)
            except Exception as exc:
                if attempt < LLM_MAX_RETRIES and _is_retryable(exc):
                    delay = min(
                        LLM_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)),
                        LLM_RETRY_MAX_DELAY_SECONDS,
                    )
                    logger.warning(
                        "[%s] LLM request attempt %d/%d failed (%s), retrying in %.1fs",
                        request_id,
                        attempt,
                        LLM_MAX_RETRIES,
                        exc,
                        delay,
                    )
                    await asyncio.sleep(delay)
                else:
                    raise

    async def ask_text(self, messages: list[dict], request_id: str) -> str:
        response = await self._create(
            {
                "model": self.config.OPENAI_MODEL,
                "messages": messages,
                "temperature": self.config.MODEL_TEMPERATURE,
            },
            request_id,
        )
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        return choices[0].message.content or ""

    async def ask_with_tools(
        self,
        messages: list[dict],
        tools: list[ToolDescriptor],
        request_id: str,
        tool_choice: str | None = None,
    ) -> ParsedModelResponse:
        kwargs = self.engine.prepare_request(
            RequestContext(
                model=self.config.OPENAI_MODEL,
                messages=messages,
                tools=tools,
                tool_choice=tool_choice,
                temperature=self.config.MODEL_TEMPERATURE,
            )
        )
        response = await self._create(kwargs, request_id)
        parsed = self.engine.parse_response(response)
        logger.debug(
            "[%s] model returned %d tool call(s): %s",
            request_id,
            len(parsed.tool_calls),
            [tc.name for tc in parsed.tool_calls],
        )
        return parsed
