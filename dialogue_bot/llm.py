"""
Google Gemini client for generative replies.

The client never raises to its caller: every outcome is a GenerationResult
whose status says whether text is available. Only HTTP 429 is retried, with
exponential backoff (base_delay * 2^attempt) up to max_retries times.

Usage:
    client = GeminiClient.from_settings()
    result = client.generate(prompt)
    if result.available:
        reply = result.text
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import requests
from pydantic import BaseModel, ValidationError

from dialogue_bot.logger import logger
from dialogue_bot.settings import settings


RATE_LIMIT_STATUS = 429

DEFAULT_SAFETY_SETTINGS: List[Dict[str, str]] = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
]


class GenerationStatus(Enum):
    OK = "ok"
    DISABLED = "disabled"
    RATE_LIMITED = "rate_limited"
    MALFORMED = "malformed"
    ERROR = "error"


@dataclass(frozen=True)
class GenerationResult:
    """Generated text or an explicit "unavailable" marker"""
    text: Optional[str]
    status: GenerationStatus
    attempts: int = 0

    @property
    def available(self) -> bool:
        return self.status == GenerationStatus.OK and bool(self.text)

    @classmethod
    def unavailable(cls, status: GenerationStatus, attempts: int = 0) -> "GenerationResult":
        return cls(text=None, status=status, attempts=attempts)


@dataclass
class GenerationStats:
    """Counters for one client"""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    disabled_requests: int = 0
    rate_limited_requests: int = 0
    total_retries: int = 0
    total_response_time_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 100.0
        return (self.successful_requests / self.total_requests) * 100

    @property
    def average_response_time_ms(self) -> float:
        if self.successful_requests == 0:
            return 0.0
        return self.total_response_time_ms / self.successful_requests


# =============================================================================
# RESPONSE SCHEMA
# =============================================================================

class GeminiPart(BaseModel):
    text: str = ""


class GeminiContent(BaseModel):
    parts: List[GeminiPart] = []


class GeminiCandidate(BaseModel):
    content: Optional[GeminiContent] = None


class GeminiResponse(BaseModel):
    candidates: List[GeminiCandidate] = []

    def first_text(self) -> Optional[str]:
        """candidates[0].content.parts[0].text, None when any step is missing"""
        if not self.candidates:
            return None
        content = self.candidates[0].content
        if content is None or not content.parts:
            return None
        return content.parts[0].text.strip() or None


# =============================================================================
# CLIENT
# =============================================================================

class GeminiClient:
    """
    Gemini generateContent client.

    Disabled (returns DISABLED without a request) when `enabled` is false or
    no API key is configured.
    """

    def __init__(
        self,
        api_key: str = "",
        api_url: Optional[str] = None,
        enabled: bool = True,
        timeout: Optional[float] = None,
        generation_config: Optional[Dict[str, Any]] = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            api_key: Gemini API key, sent as the `key` query parameter
            api_url: generateContent endpoint
            enabled: Master switch
            timeout: Request timeout in seconds
            generation_config: temperature/topK/topP/maxOutputTokens
            max_retries: Retries on HTTP 429
            base_delay: First backoff delay in seconds, doubled per retry
            sleep: Injected for tests
        """
        self.api_key = api_key or ""
        self.api_url = api_url or settings.llm.api_url
        self.enabled = enabled
        self.timeout = timeout or settings.llm.timeout
        self.generation_config = dict(generation_config or settings.llm.generation_config)
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep
        self._stats = GenerationStats()

    @classmethod
    def from_settings(cls) -> "GeminiClient":
        llm = settings.llm
        return cls(
            api_key=llm.api_key,
            api_url=llm.api_url,
            enabled=llm.enabled,
            timeout=llm.timeout,
            generation_config=dict(llm.generation_config),
            max_retries=llm.max_retries,
            base_delay=llm.base_delay,
        )

    @property
    def is_configured(self) -> bool:
        return self.enabled and bool(self.api_key)

    @property
    def stats(self) -> GenerationStats:
        return self._stats

    def reset(self) -> None:
        self._stats = GenerationStats()

    def _request_body(self, prompt: str) -> Dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": self.generation_config,
            "safetySettings": DEFAULT_SAFETY_SETTINGS,
        }

    def generate(self, prompt: str) -> GenerationResult:
        """
        Ask Gemini for a reply.

        Returns:
            GenerationResult; status OK with text, otherwise DISABLED,
            RATE_LIMITED (retries exhausted), MALFORMED or ERROR
        """
        if not self.is_configured:
            self._stats.disabled_requests += 1
            return GenerationResult.unavailable(GenerationStatus.DISABLED)

        self._stats.total_requests += 1
        start_time = time.time()
        max_attempts = self.max_retries + 1

        for attempt in range(max_attempts):
            try:
                response = requests.post(
                    self.api_url,
                    params={"key": self.api_key},
                    json=self._request_body(prompt),
                    timeout=self.timeout,
                )
            except requests.exceptions.Timeout:
                logger.warning("Gemini timeout", attempt=attempt + 1)
                return self._failed(GenerationStatus.ERROR, attempt + 1)
            except requests.exceptions.RequestException as e:
                logger.warning("Gemini request failed", attempt=attempt + 1, error=str(e)[:100])
                return self._failed(GenerationStatus.ERROR, attempt + 1)

            if response.status_code == RATE_LIMIT_STATUS:
                if attempt < self.max_retries:
                    delay = self.base_delay * (2 ** attempt)
                    self._stats.total_retries += 1
                    logger.info(
                        "Gemini rate limit hit, retrying",
                        delay_s=delay,
                        attempt=attempt + 1,
                        max_retries=self.max_retries,
                    )
                    self._sleep(delay)
                    continue
                self._stats.rate_limited_requests += 1
                logger.warning("Gemini rate limit exceeded, max retries reached", max_retries=self.max_retries)
                return self._failed(GenerationStatus.RATE_LIMITED, attempt + 1)

            if not response.ok:
                logger.warning("Gemini API error", status=response.status_code)
                return self._failed(GenerationStatus.ERROR, attempt + 1)

            try:
                parsed = GeminiResponse.model_validate(response.json())
            except (ValueError, ValidationError) as e:
                logger.warning("Unexpected Gemini response format", error=str(e)[:100])
                return self._failed(GenerationStatus.MALFORMED, attempt + 1)

            text = parsed.first_text()
            if text is None:
                logger.warning("Gemini response has no text")
                return self._failed(GenerationStatus.MALFORMED, attempt + 1)

            elapsed_ms = (time.time() - start_time) * 1000
            self._stats.successful_requests += 1
            self._stats.total_response_time_ms += elapsed_ms
            logger.debug("Gemini request successful", attempt=attempt + 1, elapsed_ms=round(elapsed_ms, 1))
            return GenerationResult(text=text, status=GenerationStatus.OK, attempts=attempt + 1)

        return self._failed(GenerationStatus.ERROR, max_attempts)

    def _failed(self, status: GenerationStatus, attempts: int) -> GenerationResult:
        self._stats.failed_requests += 1
        return GenerationResult.unavailable(status, attempts)

    def get_stats_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self._stats.total_requests,
            "successful_requests": self._stats.successful_requests,
            "failed_requests": self._stats.failed_requests,
            "disabled_requests": self._stats.disabled_requests,
            "rate_limited_requests": self._stats.rate_limited_requests,
            "total_retries": self._stats.total_retries,
            "success_rate": round(self._stats.success_rate, 1),
            "average_response_time_ms": round(self._stats.average_response_time_ms, 1),
        }
