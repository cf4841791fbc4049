"""Text completion service backed by the Anthropic Messages API.

The rest of the code only sees LLMRequest → LLMResponse. Without an API
key the service answers with a canned mock reply so local runs and the
ingestion flow keep working; callers that need a real classification
treat the mock like any other unparseable reply.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import anthropic

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 500


class LLMServiceError(Exception):
    """Raised when the completion provider call fails."""


@dataclass
class LLMRequest:
    prompt: str
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    model: str | None = None
    # Prior turns: [{"role": "system" | "user" | "assistant", "content": str}]
    context: list[dict[str, str]] = field(default_factory=list)


@dataclass
class LLMResponse:
    text: str
    usage: dict[str, int] | None = None
    metadata: dict = field(default_factory=dict)


class LLMService:
    """Async completion client.

    Args:
        api_key: Anthropic API key. If None and no client is given, the
            service runs in mock mode.
        model: Default model id when a request does not name one.
        client: Pre-built AsyncAnthropic-compatible client (used in tests).
        mock_on_error: Return the mock reply instead of raising when the
            provider call fails (development mode).
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        client=None,
        mock_on_error: bool = False,
    ):
        self.model = model
        self.mock_on_error = mock_on_error
        if client is not None:
            self._client = client
        elif api_key:
            self._client = anthropic.AsyncAnthropic(api_key=api_key)
        else:
            self._client = None
            logger.warning("LLM API key not set; using mock completions")

    @property
    def is_mock(self) -> bool:
        return self._client is None

    async def generate_text(self, request: LLMRequest) -> LLMResponse:
        if self._client is None:
            return self._mock_response(request.prompt)

        system, messages = self._build_messages(request)
        kwargs = dict(
            model=request.model or self.model,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            messages=messages,
        )
        if system:
            kwargs["system"] = system

        try:
            response = await self._client.messages.create(**kwargs)
        except Exception as e:
            logger.error("LLM API call failed: %s", e)
            if self.mock_on_error:
                return self._mock_response(request.prompt)
            raise LLMServiceError(f"LLM API error: {e}") from e

        text = "".join(
            getattr(block, "text", "") for block in (response.content or [])
        )
        return LLMResponse(text=text, usage=self._usage(response))

    @staticmethod
    def _build_messages(request: LLMRequest) -> tuple[str, list[dict[str, str]]]:
        system_parts: list[str] = []
        messages: list[dict[str, str]] = []
        for msg in request.context:
            role = msg.get("role")
            content = msg.get("content", "")
            if role == "system":
                system_parts.append(content)
            elif role in ("user", "assistant"):
                messages.append({"role": role, "content": content})

        already_sent = any(
            m["role"] == "user" and m["content"] == request.prompt for m in messages
        )
        if not already_sent:
            messages.append({"role": "user", "content": request.prompt})
        return "\n\n".join(system_parts), messages

    @staticmethod
    def _usage(response) -> dict[str, int] | None:
        usage = getattr(response, "usage", None)
        if usage is None:
            return None
        prompt_tokens = getattr(usage, "input_tokens", 0) or 0
        completion_tokens = getattr(usage, "output_tokens", 0) or 0
        return {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        }

    @staticmethod
    def _mock_response(prompt: str) -> LLMResponse:
        return LLMResponse(
            text=(
                "This is a mock LLM response for development purposes. "
                f'In production, this would be a real response to: "{prompt[:50]}..."'
            ),
            usage={"prompt_tokens": 100, "completion_tokens": 50, "total_tokens": 150},
            metadata={"is_mock": True},
        )
