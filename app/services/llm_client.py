"""
Model provider adapter — OpenAI chat completions via the async SDK.

The adapter performs one request and nothing else: no retries, no model
selection, no cost accounting. Those belong to the insight engine. Every
failure surfaces as ProviderError.
"""
import logging
from typing import Any, Dict, List, NamedTuple, Optional, Protocol

from openai import AsyncOpenAI, OpenAIError

from app.services.errors import ProviderError
from config import get_settings

logger = logging.getLogger(__name__)


class ProviderResponse(NamedTuple):
    text: str
    input_tokens: Optional[int]     # None → provider did not report usage
    output_tokens: Optional[int]
    raw: Any = None


class ModelProvider(Protocol):
    async def complete(
        self,
        system_prompt: str,
        messages: List[Dict[str, str]],
        model: str,
        max_tokens: int,
    ) -> ProviderResponse:
        ...


class OpenAIProvider:
    """ModelProvider backed by chat.completions."""

    def __init__(self, api_key: Optional[str] = None, client: Optional[AsyncOpenAI] = None):
        self.api_key = api_key
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        # created on first use; raises OpenAIError when no key is configured
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key or get_settings().OPENAI_API_KEY or None)
        return self._client

    async def complete(
        self,
        system_prompt: str,
        messages: List[Dict[str, str]],
        model: str,
        max_tokens: int,
    ) -> ProviderResponse:
        payload = [{"role": "system", "content": system_prompt}, *messages]
        try:
            resp = await self.client.chat.completions.create(
                model=model,
                messages=payload,
                max_tokens=max_tokens,
            )
        except OpenAIError as e:
            raise ProviderError(f"{type(e).__name__}: {e}", response_payload=getattr(e, "body", None)) from e

        if not resp.choices:
            raise ProviderError(f"Empty response from {model}", response_payload=_dump(resp))
        text = resp.choices[0].message.content
        if not text:
            raise ProviderError(
                f"No text content from {model} (finish_reason={resp.choices[0].finish_reason})",
                response_payload=_dump(resp),
            )

        usage = resp.usage
        return ProviderResponse(
            text=text,
            input_tokens=usage.prompt_tokens if usage else None,
            output_tokens=usage.completion_tokens if usage else None,
            raw=_dump(resp),
        )


def _dump(resp) -> Any:
    try:
        return resp.model_dump()
    except AttributeError:
        return str(resp)
