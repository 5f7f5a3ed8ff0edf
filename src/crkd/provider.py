# provider.py
# Model provider: OpenRouter through the openai client.
#
# Swap model strings for any OpenRouter-supported model.
# https://openrouter.ai/models

import logging
from typing import Callable

from openai import APIError, AsyncOpenAI

from crkd.config import OPENROUTER_BASE_URL
from crkd.context import CancelToken
from crkd.errors import ProviderError, RequestCancelledError
from crkd.models import Completion, Usage

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]


def _usage(raw) -> Usage:
    if raw is None:
        return Usage()
    return Usage(
        prompt_tokens=raw.prompt_tokens or 0,
        completion_tokens=raw.completion_tokens or 0,
        cost=getattr(raw, "cost", None),
    )


class OpenRouterProvider:
    """
    Sends a message list to one model and returns the full text.

    Example:
        provider = OpenRouterProvider(api_key=os.getenv("OPENROUTER_API_KEY"))
        completion = await provider.complete("anthropic/claude-3.5-sonnet:beta", messages)
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = OPENROUTER_BASE_URL,
        app_url: str = "",
        app_name: str = "",
        client: AsyncOpenAI | None = None,
    ) -> None:
        headers = {}
        if app_url:
            headers["HTTP-Referer"] = app_url
        if app_name:
            headers["X-Title"] = app_name
        self._client = client or AsyncOpenAI(base_url=base_url, api_key=api_key, default_headers=headers)

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    async def complete(
        self,
        model: str,
        messages: list[dict],
        *,
        stream: bool = False,
        on_chunk: ChunkCallback | None = None,
        cancel_token: CancelToken | None = None,
    ) -> Completion:
        """
        Raises ProviderError when the API call fails and
        RequestCancelledError when the token fires mid-stream.
        """
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        try:
            if stream:
                return await self._stream(model, messages, on_chunk, cancel_token)
            response = await self._client.chat.completions.create(model=model, messages=messages)
        except APIError as exc:
            raise ProviderError(f"Model call to {model} failed: {exc}") from exc

        if not response.choices:
            raise ProviderError(f"Model {model} returned no choices")
        text = (response.choices[0].message.content or "").strip()
        completion = Completion(text=text, model=response.model or model, usage=_usage(response.usage))
        logger.debug("Completion from %s", completion.model, extra={"usage": completion.usage.model_dump()})
        return completion

    async def _stream(
        self,
        model: str,
        messages: list[dict],
        on_chunk: ChunkCallback | None,
        cancel_token: CancelToken | None,
    ) -> Completion:
        response = await self._client.chat.completions.create(
            model=model,
            messages=messages,
            stream=True,
            stream_options={"include_usage": True},
        )
        parts: list[str] = []
        usage = Usage()
        try:
            async for chunk in response:
                if cancel_token is not None and cancel_token.cancelled:
                    raise RequestCancelledError(f"Streaming from {model} cancelled")
                if chunk.usage is not None:
                    usage = _usage(chunk.usage)
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    parts.append(delta)
                    if on_chunk is not None:
                        on_chunk(delta)
        finally:
            await response.close()

        return Completion(text="".join(parts).strip(), model=model, usage=usage)

    async def aclose(self) -> None:
        await self._client.close()
