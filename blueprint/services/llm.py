import logging
import time
from typing import List, Dict, Any

import openai
from openai import OpenAI

from blueprint.config import settings
from blueprint.errors import GenerationFailed

logger = logging.getLogger(__name__)


class LLMClient:
    """Chat-completion wrapper with a single fallback-model retry.

    A "model not found" answer from the provider is retried exactly once
    against the fallback model with identical parameters. Every other provider
    error, and a second not-found, becomes GenerationFailed.
    """

    def __init__(self, client: Any = None, model: str | None = None, fallback_model: str | None = None):
        self.model = model or settings.OPENAI_MODEL
        self.fallback_model = fallback_model or settings.OPENAI_FALLBACK_MODEL
        if client is None and settings.OPENAI_API_KEY:
            client = OpenAI(api_key=settings.OPENAI_API_KEY, timeout=settings.OPENAI_TIMEOUT, max_retries=0)
        self._client = client

    @property
    def offline(self) -> bool:
        return self._client is None

    def complete(self, system: str, messages: List[Dict[str, str]], model: str | None = None,
                 temperature: float = 0.7, max_tokens: int = 4000, json_mode: bool = False) -> str:
        if self.offline:
            return _offline_completion(messages, json_mode)
        primary = model or self.model
        try:
            return self._call(primary, system, messages, temperature, max_tokens, json_mode)
        except openai.NotFoundError as e:
            if primary == self.fallback_model:
                raise GenerationFailed(f"Model {primary} unavailable: {e}") from e
            logger.warning("model %s not found, retrying once with %s", primary, self.fallback_model)
        try:
            return self._call(self.fallback_model, system, messages, temperature, max_tokens, json_mode)
        except openai.NotFoundError as e:
            raise GenerationFailed(f"Fallback model {self.fallback_model} unavailable: {e}") from e

    def _call(self, model: str, system: str, messages: List[Dict[str, str]], temperature: float,
              max_tokens: int, json_mode: bool) -> str:
        kwargs: Dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        started = time.monotonic()
        try:
            resp = self._client.chat.completions.create(
                model=model,
                messages=[{"role": "system", "content": system}, *messages],
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs,
            )
        except openai.NotFoundError:
            raise
        except openai.OpenAIError as e:
            logger.error("completion with %s failed: %s", model, e)
            raise GenerationFailed(str(e)) from e
        content = resp.choices[0].message.content if resp.choices else None
        if not content:
            raise GenerationFailed(f"{model} returned an empty response")
        logger.info("completion from %s: %d chars in %.2fs", model, len(content), time.monotonic() - started)
        return content


def _offline_completion(messages: List[Dict[str, str]], json_mode: bool) -> str:
    # Offline deterministic sample if no API key
    if json_mode:
        return "{}"
    last = messages[-1]["content"] if messages else ""
    first_line = next((ln.strip() for ln in last.splitlines() if ln.strip()), "Request")
    return (
        "# Offline Draft\n\n"
        "No model provider is configured, so this document is a placeholder.\n\n"
        f"## Request\n\n{first_line}\n"
    )
