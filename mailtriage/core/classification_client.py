"""
Classification client - one request/response unit against the model.

Protocol:
1. Send the prompt (with a JSON response mime type when a schema is given).
2. Non-2xx answers are classified (auth, rate limit, unavailable, generic) and
   returned at once; backoff for those belongs to the caller.
3. The completion text is pulled out of the envelope. Empty or malformed
   envelopes are ``InvalidResponse``.
4. With a schema, the text is sanitized, parsed and validated.
5. ``InvalidResponse`` and ``SchemaValidationError`` get exactly one retry at
   temperature 0 with a JSON-only instruction appended.
"""

import json
import logging
from typing import Any, Dict, Optional

from .models import RunContext
from .prompt_engine import PromptEngine
from .rate_limiter import RateLimiter
from ..providers.base import LLMProvider, ProviderResponse
from ..utils.errors import (
    AppError,
    InvalidResponse,
    RateLimited,
    Result,
    SchemaValidationError,
    classify_http_error,
)
from ..utils.json_validator import sanitize_json_response, schema_errors

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.3
RETRY_TEMPERATURE = 0.0
MAX_ATTEMPTS = 2  # first call plus one retry


class ClassificationClient:
    """
    Wraps an ``LLMProvider`` with envelope parsing, schema validation and a
    single bounded retry.

    Args:
        provider: Transport to the model service
        rate_limiter: Consulted before every send
        temperature: Temperature for the first attempt
        max_output_tokens: Passed through to the provider
        acquire_timeout: Seconds to wait for a rate-limit slot before failing
    """

    def __init__(
        self,
        provider: LLMProvider,
        rate_limiter: Optional[RateLimiter] = None,
        temperature: float = DEFAULT_TEMPERATURE,
        max_output_tokens: int = 2048,
        acquire_timeout: float = 30.0,
    ):
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.acquire_timeout = acquire_timeout

    def call(
        self,
        prompt: str,
        schema: Optional[Dict[str, Any]] = None,
        context: Optional[RunContext] = None,
    ) -> Result:
        """
        Send ``prompt`` and return the parsed answer.

        Returns:
            Result with the trimmed text (no schema) or the decoded JSON value
            (schema given), or a Result carrying the classified error.
        """
        log = context.logger if context else logger

        error: Optional[AppError] = None
        for attempt in range(MAX_ATTEMPTS):
            is_retry = attempt > 0
            attempt_prompt = PromptEngine.with_strict_json(prompt, schema) if is_retry else prompt
            temperature = RETRY_TEMPERATURE if is_retry else self.temperature

            result = self._attempt(attempt_prompt, schema, temperature)
            if result.ok:
                if is_retry:
                    log.info("Model answer accepted on retry")
                return result

            error = result.error
            if not isinstance(error, (InvalidResponse, SchemaValidationError)):
                return result
            if not is_retry:
                log.warning(f"Model answer rejected ({error.message}); retrying once at temperature 0")

        log.error(f"Model answer still invalid after retry: {error.message}")
        return Result.failure(error)

    def _attempt(self, prompt: str, schema: Optional[Dict[str, Any]], temperature: float) -> Result:
        if self.rate_limiter is not None and not self.rate_limiter.acquire(timeout=self.acquire_timeout):
            return Result.failure(RateLimited("Local rate limit slot not available"))

        generation_config = {
            "temperature": temperature,
            "max_output_tokens": self.max_output_tokens,
        }
        if schema is not None:
            generation_config["response_mime_type"] = "application/json"

        try:
            response = self.provider.generate(prompt, generation_config)
        except AppError as e:
            return Result.failure(e)

        if not 200 <= response.status_code < 300:
            error = classify_http_error(response.status_code, response.body)
            logger.warning(f"{self.provider.get_name()} call failed: {error.message}")
            return Result.failure(error)

        try:
            text = extract_text(response)
        except InvalidResponse as e:
            return Result.failure(e)

        if schema is None:
            return Result.success(text)
        return parse_and_validate(text, schema)


def extract_text(response: ProviderResponse) -> str:
    """
    Pull the completion out of ``{candidates: [{content: {parts: [{text}]}}]}``.

    Raises:
        InvalidResponse: empty candidates, missing parts or blank text.
    """
    body = response.body
    if not isinstance(body, dict):
        raise InvalidResponse("Response body is not a JSON object")
    if body.get("error"):
        message = body["error"].get("message") if isinstance(body["error"], dict) else body["error"]
        raise InvalidResponse(f"Model returned an error: {message}")

    candidates = body.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        raise InvalidResponse("No candidates in model response")

    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list) or not parts:
        raise InvalidResponse("No content parts in model response")

    text = "".join(p.get("text", "") for p in parts if isinstance(p, dict)).strip()
    if not text:
        raise InvalidResponse("Empty completion")
    return text


def parse_and_validate(text: str, schema: Dict[str, Any]) -> Result:
    """Sanitize, decode and schema-check a completion."""
    cleaned = sanitize_json_response(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        return Result.failure(
            SchemaValidationError(f"Response is not valid JSON: {e.msg}", {"preview": text[:120]})
        )

    errors = schema_errors(data, schema)
    if errors:
        return Result.failure(
            SchemaValidationError(f"Response does not match schema: {errors[0]}", {"errors": errors[:5]})
        )
    return Result.success(data)
