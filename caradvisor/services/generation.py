# -*- coding: utf-8 -*-
"""Gemini text generation with a hard per-call timeout."""

import atexit
import concurrent.futures
import logging
from typing import Any, Mapping, Optional

from google import genai as genai3
from google.genai import types as genai_types

from caradvisor.exceptions import UpstreamGenerationError

logger = logging.getLogger(__name__)

AI_CALL_TIMEOUT_SEC = 30
AI_EXECUTOR_WORKERS = 4
SYSTEM_INSTRUCTION = "You are a car recommendation AI."


class GeminiRecommendationGenerator:
    """Sends one prompt, returns the raw response text.

    Calls run on a small thread pool so a hung provider call cannot hold the
    request past ``timeout_sec``. A timed-out call keeps its worker busy until
    the SDK returns; new calls are refused while every worker is queued up.
    """

    def __init__(
        self,
        client: Optional[Any],
        model_id: str,
        timeout_sec: int = AI_CALL_TIMEOUT_SEC,
        workers: int = AI_EXECUTOR_WORKERS,
        temperature: float = 0.2,
    ):
        self.client = client
        self.model_id = model_id
        self.timeout_sec = timeout_sec
        self.temperature = temperature
        self._workers = workers
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=workers)
        atexit.register(lambda: self._executor.shutdown(wait=False))

    def _execute_with_timeout(self, fn):
        try:
            work_queue = getattr(self._executor, "_work_queue", None)
            if work_queue is not None and work_queue.qsize() >= self._workers:
                return None, "EXECUTOR_SATURATED"
            future = self._executor.submit(fn)
        except RuntimeError:
            return None, "EXECUTOR_SATURATED"
        try:
            return future.result(timeout=self.timeout_sec), None
        except concurrent.futures.TimeoutError:
            future.cancel()
            return None, "CALL_TIMEOUT"
        except Exception as e:
            return None, e

    def generate(self, prompt: str) -> str:
        if self.client is None:
            raise UpstreamGenerationError("CLIENT_NOT_INITIALIZED")

        config = genai_types.GenerateContentConfig(
            temperature=self.temperature,
            system_instruction=SYSTEM_INSTRUCTION,
        )

        def _invoke():
            return self.client.models.generate_content(
                model=self.model_id,
                contents=prompt,
                config=config,
            )

        resp, err = self._execute_with_timeout(_invoke)
        if err == "EXECUTOR_SATURATED":
            raise UpstreamGenerationError("SERVER_BUSY")
        if err == "CALL_TIMEOUT":
            logger.warning("[AI] generation timed out after %ss", self.timeout_sec)
            raise UpstreamGenerationError("CALL_TIMEOUT")
        if isinstance(err, Exception):
            logger.error("[AI] generation failed: %s", type(err).__name__)
            raise UpstreamGenerationError(f"CALL_FAILED:{type(err).__name__}") from err
        text = (getattr(resp, "text", "") or "").strip() if resp is not None else ""
        if not text:
            raise UpstreamGenerationError("CALL_FAILED:EMPTY")
        return text


def build_generator(config: Mapping[str, Any]) -> GeminiRecommendationGenerator:
    api_key = config.get("GEMINI_API_KEY", "")
    client = None
    if not api_key:
        logger.warning("[AI] GEMINI_API_KEY missing; recommendations will fail")
    else:
        try:
            client = genai3.Client(api_key=api_key)
            logger.info("[AI] Gemini client initialized model=%s", config.get("GEMINI_RECOMMENDER_MODEL_ID"))
        except Exception:
            logger.exception("[AI] Failed to init Gemini client")
            client = None
    return GeminiRecommendationGenerator(
        client,
        model_id=config.get("GEMINI_RECOMMENDER_MODEL_ID"),
        timeout_sec=int(config.get("AI_CALL_TIMEOUT_SEC", AI_CALL_TIMEOUT_SEC)),
        workers=int(config.get("AI_EXECUTOR_WORKERS", AI_EXECUTOR_WORKERS)),
    )
