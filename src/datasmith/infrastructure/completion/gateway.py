from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import openai
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from datasmith.core.config import CompletionSettings
from datasmith.core.errors import CompletionApiError, CompletionTimeoutError, RateLimitedError

logger = logging.getLogger(__name__)


class CompletionGateway(Protocol):
    async def complete(
        self,
        system_prompt: str,
        user_text: str,
        *,
        options: dict[str, Any] | None = None,
    ) -> str: ...


class OpenAICompletionGateway:
    """Chat-completion gateway that maps client failures onto the pipeline error taxonomy.

    Rate limits are retried here with exponential backoff; the caller only sees
    ``RateLimitedError`` once the attempt budget is spent.
    """

    def __init__(
        self,
        *,
        settings: CompletionSettings | None = None,
        client: Any | None = None,
    ) -> None:
        self.settings = settings or CompletionSettings.from_env()
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = openai.AsyncOpenAI(timeout=self.settings.request_timeout_seconds, max_retries=0)
        return self._client

    async def complete(
        self,
        system_prompt: str,
        user_text: str,
        *,
        options: dict[str, Any] | None = None,
    ) -> str:
        opts = dict(options or {})
        role = str(opts.pop("role", "generator"))
        model = str(opts.pop("model", None) or self.settings.model_for(role))
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(openai.RateLimitError),
            stop=stop_after_attempt(self.settings.max_rate_limit_attempts),
            wait=wait_exponential(
                multiplier=self.settings.backoff_base_seconds,
                max=self.settings.backoff_max_seconds,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._request(model, system_prompt, user_text, opts)
        except (openai.APITimeoutError, asyncio.TimeoutError) as exc:
            raise CompletionTimeoutError(f"{role} call timed out after {self.settings.request_timeout_seconds}s") from exc
        except openai.RateLimitError as exc:
            raise RateLimitedError(
                f"{role} call rate limited after {self.settings.max_rate_limit_attempts} attempts"
            ) from exc
        except openai.OpenAIError as exc:
            raise CompletionApiError(f"{role} call failed: {exc}") from exc
        raise CompletionApiError(f"{role} call produced no attempt")

    async def _request(
        self,
        model: str,
        system_prompt: str,
        user_text: str,
        opts: dict[str, Any],
    ) -> str:
        response = await asyncio.wait_for(
            self.client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_text},
                ],
                **opts,
            ),
            timeout=self.settings.request_timeout_seconds,
        )
        choices = getattr(response, "choices", None) or []
        if not choices:
            raise CompletionApiError("Completion response contained no choices.")
        return str(choices[0].message.content or "")
