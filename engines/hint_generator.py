"""HTTP client for the external hint-generation model.

The generator is an OpenAI-style chat-completions endpoint. Its output is
never trusted: callers must pass ``GeneratorResponse.hint`` through the
response guardrail before showing it to a learner.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from time import perf_counter
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import ValidationError

from audit_log import LLM_LOGGER_NAME, channel_logger, json_log
from engines.hint_policy import coerce_level, hint_level
from env_validation import safe_float, safe_int
from prompts.hintprompts import HintPrompt, get_prompt
from schemas import GeneratedHintPayload, GeneratorRequest, GeneratorResponse, parse_json_safe

logger = logging.getLogger(__name__)
_LLM_LOGGER = channel_logger(LLM_LOGGER_NAME)

_CODE_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)

_LANGUAGE_LABELS = {"id": "Bahasa Indonesia", "en": "English"}


class HintGeneratorError(RuntimeError):
    """Raised when the generator cannot produce a usable hint."""


class HintGenerator(Protocol):
    async def generate(self, request: GeneratorRequest) -> GeneratorResponse:
        ...


def _default_model_config() -> Dict[str, Any]:
    return {
        "api_url": os.getenv("HINT_LLM_URL"),
        "model_id": os.getenv("HINT_LLM_MODEL", "gemini-2.0-flash-001"),
        "api_key": os.getenv("HINT_LLM_API_KEY"),
        "timeout": safe_float("HINT_LLM_TIMEOUT", 20.0),
        "max_retries": safe_int("HINT_LLM_MAX_RETRIES", 1),
        "retry_backoff": safe_float("HINT_LLM_RETRY_BACKOFF", 0.5),
        "temperature": safe_float("HINT_LLM_TEMPERATURE", 0.7),
        "max_tokens": safe_int("HINT_LLM_MAX_TOKENS", 300),
    }


def _format_context(context: Optional[Dict[str, Any]]) -> str:
    if not context:
        return ""
    lines = ["Informasi Tambahan:"]
    options = context.get("options")
    if isinstance(options, (list, tuple)) and options:
        lines.append(f"- Opsi Jawaban: {', '.join(str(option) for option in options)}")
    if context.get("rubric"):
        lines.append(f"- Rubrik/Kriteria: {context['rubric']}")
    if context.get("type"):
        lines.append(f"- Tipe Soal: {context['type']}")
    return "\n".join(lines) + "\n" if len(lines) > 1 else ""


class HintGeneratorClient:
    """Ask the configured chat model for a level-appropriate hint."""

    def __init__(
        self,
        model_config: Optional[Dict[str, Any]] = None,
        prompt: Optional[HintPrompt] = None,
    ) -> None:
        self.model_config = _default_model_config()
        self.model_config.update(model_config or {})
        self.prompt = prompt or get_prompt(os.getenv("HINT_PROMPT_VARIANT"))

    # ------------------------------------------------------------------
    # Prompt construction
    # ------------------------------------------------------------------
    def build_messages(self, request: GeneratorRequest) -> List[Dict[str, str]]:
        level = hint_level(request.attempt_count)
        if request.user_message:
            learner_input = f"PERTANYAAN/INPUT SISWA:\n\"{request.user_message}\""
        else:
            learner_input = "Siswa meminta petunjuk umum."
        user_prompt = self.prompt.user_template.format(
            subject=request.subject or "Umum",
            language_label=_LANGUAGE_LABELS.get(request.language, "Bahasa Indonesia"),
            level=level,
            attempt_count=request.attempt_count,
            additional_context=_format_context(request.context),
            question=request.question,
            learner_input=learner_input,
        )
        return [
            {"role": "system", "content": self.prompt.system_template},
            {"role": "assistant", "content": self.prompt.acknowledgement},
            {"role": "user", "content": user_prompt},
        ]

    # ------------------------------------------------------------------
    # Response parsing
    # ------------------------------------------------------------------
    @staticmethod
    def _extract_content(data: Any) -> str:
        try:
            return str(data["choices"][0]["message"]["content"])
        except (KeyError, IndexError, TypeError):
            pass
        try:
            return str(data["choices"][0]["text"])
        except (KeyError, IndexError, TypeError):
            raise HintGeneratorError(f"Unexpected generator response: {str(data)[:200]}")

    def parse_reply(self, text: str, request: GeneratorRequest) -> GeneratorResponse:
        fallback_level = hint_level(request.attempt_count)
        fenced = _CODE_FENCE.search(text)
        candidate = fenced.group(1) if fenced else text
        try:
            payload = parse_json_safe(candidate, GeneratedHintPayload, allow_trailing=True)
        except (ValidationError, ValueError):
            payload = GeneratedHintPayload(hint=text.strip(), level=fallback_level)

        hint = payload.hint.strip()
        if not hint:
            raise HintGeneratorError("Generator returned an empty hint")
        return GeneratorResponse(
            success=True,
            hint=hint,
            level=coerce_level(payload.level, fallback_level),
            next_step=payload.next_step or None,
            tip=payload.tip or None,
            follow_up=payload.follow_up or None,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    async def generate(self, request: GeneratorRequest) -> GeneratorResponse:
        if not request.question.strip():
            raise HintGeneratorError("Question is required")

        api_url = self.model_config.get("api_url")
        if not api_url:
            raise HintGeneratorError("Hint generator URL not configured.")

        model_id = self.model_config.get("model_id")
        timeout_seconds = float(self.model_config.get("timeout", 20.0))
        max_retries = int(self.model_config.get("max_retries", 1))
        backoff_seconds = float(self.model_config.get("retry_backoff", 0.5))

        headers: Dict[str, str] = {}
        if api_key := self.model_config.get("api_key"):
            headers["Authorization"] = f"Bearer {api_key}"

        payload = {
            "model": model_id,
            "messages": self.build_messages(request),
            "temperature": float(self.model_config.get("temperature", 0.7)),
            "max_tokens": int(self.model_config.get("max_tokens", 300)),
        }

        last_exception: Optional[Exception] = None
        attempt_count = max(0, max_retries) + 1

        for attempt_index in range(attempt_count):
            attempt_number = attempt_index + 1
            start_time = perf_counter()
            client = httpx.AsyncClient(timeout=timeout_seconds)
            try:
                response = await client.post(api_url, json=payload, headers=headers or None)
                response.raise_for_status()
                content = self._extract_content(response.json())
                result = self.parse_reply(content, request)
                self._log_call(model_id, request, perf_counter() - start_time, attempt_number, "ok")
                return result
            except httpx.HTTPStatusError as exc:
                status = getattr(getattr(exc, "response", None), "status_code", "unknown")
                logger.warning(
                    "Hint generator HTTP error %s (attempt %d/%d): %s",
                    status,
                    attempt_number,
                    attempt_count,
                    exc,
                )
                self._log_call(model_id, request, perf_counter() - start_time, attempt_number, f"http_{status}")
                last_exception = exc
            except (httpx.TimeoutException, httpx.RequestError, HintGeneratorError, ValueError) as exc:
                logger.warning(
                    "Hint generator request failed (attempt %d/%d): %s",
                    attempt_number,
                    attempt_count,
                    exc,
                )
                self._log_call(model_id, request, perf_counter() - start_time, attempt_number, type(exc).__name__)
                last_exception = exc
            finally:
                try:
                    await client.aclose()
                except Exception:  # pragma: no cover - closing failures are logged but ignored
                    logger.debug("Hint generator client close failed", exc_info=True)

            if attempt_index < attempt_count - 1:
                await asyncio.sleep(backoff_seconds * (2 ** attempt_index))

        raise HintGeneratorError(
            f"Hint generation failed after {attempt_count} attempts for model {model_id}."
        ) from last_exception

    def _log_call(
        self,
        model_id: Any,
        request: GeneratorRequest,
        elapsed: float,
        attempt: int,
        outcome: str,
    ) -> None:
        json_log(
            _LLM_LOGGER,
            "hint_generator_call",
            {
                "model": model_id,
                "prompt_version": self.prompt.prompt_version,
                "subject": request.subject,
                "attempt_count": request.attempt_count,
                "language": request.language,
                "latency_ms": int(elapsed * 1000),
                "try": attempt,
                "outcome": outcome,
            },
        )
