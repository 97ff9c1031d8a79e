"""
Provider-neutral text completion for OpenAI and Gemini.

LLMClient hides which provider is configured. ask() either returns the
model's text or raises OracleUnavailable; callers decide how to degrade.
"""

import logging
import time
from typing import Callable, Optional

import google.generativeai as genai
import openai
from google.api_core import exceptions as google_exceptions
from openai import OpenAI

import config
from core.errors import OracleUnavailable

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("openai", "gemini")

# Transient errors that warrant retry (network issues, rate limits, server errors)
RETRYABLE_ERRORS = (
    ConnectionError,
    TimeoutError,
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
    google_exceptions.ResourceExhausted,
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.InternalServerError,
)


def retry_with_backoff(
    func,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    backoff_factor: float = 2.0,
    retryable_exceptions: tuple = RETRYABLE_ERRORS,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Execute a function with exponential backoff retry on transient errors.

    Args:
        func: Callable to execute (no arguments)
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds between retries
        max_delay: Maximum delay in seconds
        backoff_factor: Multiplier for delay after each retry
        retryable_exceptions: Tuple of exception types to retry on
        sleep: Sleep function (replaced in tests)

    Returns:
        Result from successful function call

    Raises:
        Last exception if all retries fail
    """
    last_exception = None
    delay = initial_delay

    for attempt in range(max_retries + 1):  # +1 for initial attempt
        try:
            return func()
        except retryable_exceptions as e:
            last_exception = e
            if attempt < max_retries:
                logger.warning(f"Retry {attempt + 1}/{max_retries} after error: {e}. Waiting {delay:.1f}s...")
                sleep(delay)
                delay = min(delay * backoff_factor, max_delay)
            else:
                logger.error(f"All {max_retries} retries failed: {e}")

    raise last_exception


class LLMClient:
    """
    Thin wrapper over the configured AI provider.

    Usage:
        client = LLMClient()
        if client.is_configured:
            text = client.ask("Summarise my week")
    """

    def __init__(
        self,
        provider: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            provider: "openai" or "gemini" (defaults to config.AI_PROVIDER)
            api_key: Provider API key (defaults to the provider's config key)
            model: Model name (defaults to the provider's config model)
            max_retries: Retries after the first attempt (defaults to config.AI_MAX_RETRIES)
            timeout: Per-request timeout in seconds
            sleep: Sleep function used between retries
        """
        self.provider = (provider or config.AI_PROVIDER).lower()
        if self.provider == "openai":
            self.api_key = api_key or config.OPENAI_API_KEY
            self.model = model or config.OPENAI_MODEL
        elif self.provider == "gemini":
            self.api_key = api_key or config.GEMINI_API_KEY
            self.model = model or config.GEMINI_MODEL
        else:
            logger.warning(f"Unknown AI provider '{self.provider}'. Supported: {', '.join(SUPPORTED_PROVIDERS)}")
            self.api_key = ""
            self.model = model or ""

        self.max_retries = config.AI_MAX_RETRIES if max_retries is None else max_retries
        self.timeout = timeout or config.AI_REQUEST_TIMEOUT
        self._sleep = sleep
        self._openai_client = None

    @property
    def is_configured(self) -> bool:
        return self.provider in SUPPORTED_PROVIDERS and bool(self.api_key)

    def ask(
        self,
        prompt: str,
        system: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> str:
        """
        Send a prompt and return the response text.

        Raises:
            OracleUnavailable: provider not configured, request failed after
                retries, or the response was empty.
        """
        if not self.is_configured:
            raise OracleUnavailable(f"AI provider '{self.provider}' is not configured")

        def make_api_call():
            if self.provider == "openai":
                return self._call_openai(prompt, system, temperature, max_tokens)
            return self._call_gemini(prompt, system, temperature, max_tokens)

        try:
            text = retry_with_backoff(
                make_api_call,
                max_retries=self.max_retries,
                initial_delay=config.AI_RETRY_DELAY,
                sleep=self._sleep,
            )
        except (openai.OpenAIError, google_exceptions.GoogleAPIError, ConnectionError, TimeoutError) as e:
            raise OracleUnavailable(f"{self.provider} request failed: {e}") from e

        if not text or not text.strip():
            raise OracleUnavailable(f"Empty response from {self.provider}")
        return text.strip()

    def _call_openai(self, prompt: str, system: Optional[str], temperature: float, max_tokens: int) -> str:
        if self._openai_client is None:
            self._openai_client = OpenAI(api_key=self.api_key, timeout=self.timeout)

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        response = self._openai_client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return response.choices[0].message.content or ""

    def _call_gemini(self, prompt: str, system: Optional[str], temperature: float, max_tokens: int) -> str:
        genai.configure(api_key=self.api_key)
        model = genai.GenerativeModel(
            model_name=self.model,
            generation_config=genai.GenerationConfig(
                temperature=temperature,
                max_output_tokens=max_tokens,
            ),
        )
        full_prompt = f"{system}\n\n{prompt}" if system else prompt
        response = model.generate_content(full_prompt, request_options={"timeout": self.timeout})

        try:
            return response.text
        except ValueError as e:
            # response.text raises ValueError if no valid candidates (e.g. safety block)
            logger.warning(f"Gemini response has no valid text: {e}")
            return ""
