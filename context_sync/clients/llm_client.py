from __future__ import annotations

import logging
import time
from collections.abc import Callable

import httpx

from context_sync.clients.embeddings_client import is_retryable_status
from context_sync.core.metrics import llm_requests_total

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT_TEMPLATE = """
You are a knowledge assistant for a team workspace.
Answer the user's question strictly based on the provided context.

## Instructions:
1. Read the context snippets carefully and decide which parts are relevant to the question.
2. Do not cite sources in the answer text. Sources are displayed separately.
3. Give detailed, explanatory answers when the context supports it.
4. If the context does NOT contain the answer, say "I couldn't find relevant information in your workspace." Do not use outside knowledge.
5. Use bullet points or numbered lists where they help.
6. Always answer in the same language as the user's question.

## Context:
{context}
"""

NO_RESPONSE = "No response generated."


class LLMError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class LLMClient:
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout_seconds: int | None = None,
        max_retries: int | None = None,
        base_delay_seconds: float | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        from context_sync.core.config import settings

        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.base_url = str(base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.model = model or settings.LLM_MODEL
        self.temperature = settings.LLM_TEMPERATURE
        self.max_tokens = settings.LLM_MAX_TOKENS
        self.timeout_seconds = float(timeout_seconds or settings.LLM_TIMEOUT_SECONDS)
        self.max_retries = settings.LLM_MAX_RETRIES if max_retries is None else max_retries
        self.base_delay_seconds = settings.LLM_BASE_DELAY_SECONDS if base_delay_seconds is None else base_delay_seconds
        self._transport = transport
        self._sleep = sleep

    def generate_answer(self, question: str, context: str) -> str:
        return self.generate_answer_with_history(question, context, [])

    def generate_answer_with_history(self, question: str, context: str, history: list[dict[str, str]]) -> str:
        messages = [{"role": "system", "content": SYSTEM_PROMPT_TEMPLATE.format(context=context or "No context provided.")}]
        messages.extend({"role": turn["role"], "content": turn["content"]} for turn in history)
        messages.append({"role": "user", "content": f"Question: {question}"})
        return self.chat_completion(messages)

    def chat_completion(self, messages: list[dict[str, str]]) -> str:
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        retry_count = 0
        while True:
            try:
                with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                    response = client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
                    response.raise_for_status()
                    body = response.json()
                llm_requests_total.labels(result="success").inc()
                choices = body.get("choices") or []
                content = ((choices[0] if choices else {}).get("message") or {}).get("content")
                return content or NO_RESPONSE
            except httpx.HTTPStatusError as exc:
                status_code = exc.response.status_code
                error = LLMError(
                    f"Chat completion returned HTTP {status_code}",
                    status_code=status_code,
                    retryable=is_retryable_status(status_code),
                )
            except httpx.TimeoutException:
                error = LLMError("Chat completion timed out", retryable=True)

            llm_requests_total.labels(result="error").inc()
            if not error.retryable or retry_count >= self.max_retries:
                LOGGER.error("llm_request_failed", extra={"status_code": error.status_code, "retry_count": retry_count})
                raise error
            delay = self.base_delay_seconds * 2**retry_count
            LOGGER.warning("llm_request_retry", extra={"attempt": retry_count + 1, "max_retries": self.max_retries})
            self._sleep(delay)
            retry_count += 1
