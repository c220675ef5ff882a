"""Model executor for the retrieval pipeline.

This module talks to Ollama (or any OpenAI-compatible API) using the official
OpenAI Python SDK. Both the spec synthesizer and the relevance judge go through
it; each call is a single-prompt text completion.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any

from openai import APIConnectionError, APITimeoutError, APIStatusError, AsyncOpenAI

from .errors import ModelServiceError
from .types import ExecutionResult, ModelConfig

logger = logging.getLogger(__name__)


_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)


def strip_thinking(text: str) -> str:
    """Remove <think>...</think> blocks from thinking-mode model output.

    If the model ran out of tokens while still thinking (no closing tag), the
    content after the last <think> is returned as best-effort output.
    """
    if not text or not text.strip():
        return text.strip() if text else ""

    cleaned = _THINK_RE.sub("", text).strip()
    if cleaned:
        return cleaned

    if "<think>" in text:
        idx = text.rfind("<think>")
        inner = text[idx + len("<think>") :].strip()
        if inner:
            return inner

    return text.strip()


class ModelExecutor:
    """Async text-completion client backed by an OpenAI-compatible API."""

    def __init__(self, config: ModelConfig):
        self.config = config
        self.client = AsyncOpenAI(
            base_url=config.base_url,
            api_key=config.api_key,
            timeout=float(config.request_timeout_s or 60.0),
        )

    def _build_request(self, prompt: str, model: str | None) -> dict[str, Any]:
        return {
            "model": model or self.config.name,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": float(self.config.temperature),
            "max_tokens": int(self.config.max_output_tokens),
            # Ollama-specific knobs; other OpenAI-compatible servers ignore them.
            "extra_body": {
                "keep_alive": f"{int(self.config.keep_alive_s)}s",
                "options": {"num_ctx": int(self.config.context_window)},
            },
        }

    def _usage_from_response(self, raw: dict[str, Any]) -> tuple[int, int]:
        usage = raw.get("usage") or {}
        prompt = int(usage.get("prompt_tokens") or 0)
        completion = int(usage.get("completion_tokens") or 0)
        return prompt, completion

    def _extract_text_from_response(self, raw: dict[str, Any]) -> str:
        choices = raw.get("choices") or []
        if choices:
            msg = (choices[0] or {}).get("message") or {}
            content = msg.get("content")
            if isinstance(content, str):
                return strip_thinking(content)
            # Some servers may respond with list parts; join best-effort.
            if isinstance(content, list):
                parts: list[str] = []
                for p in content:
                    if isinstance(p, str):
                        parts.append(p)
                    elif isinstance(p, dict):
                        txt = p.get("text")
                        if isinstance(txt, str):
                            parts.append(txt)
                return strip_thinking("".join(parts))
        return ""

    async def complete(self, prompt: str, *, model: str | None = None) -> ExecutionResult:
        """Send one prompt and return the model's text.

        Raises ModelServiceError when the service is unreachable or rejects the
        request after the configured transport retries.
        """
        request_kwargs = self._build_request(prompt, model)
        model_name = str(request_kwargs["model"])

        start = time.perf_counter()
        try:
            resp = await self._request_with_retries(request_kwargs)
        except (TimeoutError, APIConnectionError, APITimeoutError) as e:
            logger.error("Model API connection/timeout error: %s", model_name, exc_info=True)
            raise ModelServiceError(f"connection/timeout talking to model API: {e}") from e
        except APIStatusError as e:
            logger.error("Model API rejected request: %s", model_name, exc_info=True)
            raise ModelServiceError(f"model API error ({e.status_code}): {e}") from e

        raw = resp.model_dump()
        output = self._extract_text_from_response(raw)
        tokens_prompt, tokens_completion = self._usage_from_response(raw)
        latency_ms = (time.perf_counter() - start) * 1000.0
        logger.debug("Completion from %s in %.1fms (%d chars)", model_name, latency_ms, len(output))
        return ExecutionResult(
            output=output,
            model=model_name,
            latency_ms=latency_ms,
            tokens_prompt=tokens_prompt,
            tokens_completion=tokens_completion,
        )

    async def health_check(self) -> bool:
        # Cheapest signal: /models reachable.
        try:
            await self.client.models.list()
            return True
        except (TimeoutError, APIConnectionError, APITimeoutError):
            return False
        except Exception:
            return False

    async def _request_with_retries(self, request_kwargs: dict[str, Any]):
        attempts = max(0, int(self.config.max_retries))
        backoff = max(0.0, float(self.config.retry_backoff_s))
        last_err: Exception | None = None

        for attempt in range(attempts + 1):
            try:
                return await self.client.chat.completions.create(**request_kwargs)
            except (TimeoutError, APIConnectionError, APITimeoutError) as e:
                last_err = e
                if attempt >= attempts:
                    raise
                sleep_for = backoff * (2**attempt)
                logger.warning(
                    "Model API timeout/connection error; retrying in %.1fs (%d/%d)",
                    sleep_for,
                    attempt + 1,
                    attempts,
                )
                if sleep_for > 0:
                    await asyncio.sleep(sleep_for)
        if last_err:
            raise last_err
        raise RuntimeError("request failed without exception")


__all__ = ["ExecutionResult", "ModelExecutor"]
