"""LLM-backed content generator using LiteLLM.

Renders the brand system prompt and the agent-type prompt, calls
litellm.acompletion with retry and exponential backoff, and parses the
{"subject", "body"} JSON answer. The whole call, retries included, is
bounded by the configured timeout.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re

import litellm
from pydantic import BaseModel, ValidationError

# Suppress LiteLLM's "Give Feedback / Get Help" and "Provider List" banners
litellm.suppress_debug_info = True

from abo.errors import GenerationFailed, GenerationTimeout
from abo.prompts import render_prompt
from abo.providers.base import ContentGenerator, GenerationRequest
from abo.schemas.actions import GeneratedContent
from abo.settings import GenerationSettings

logger = logging.getLogger(__name__)

# First {...} span in the answer, across lines
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

_BASE_BACKOFF = 1.0  # seconds


class _EmailPayload(BaseModel):
    subject: str
    body: str


def _short_error_reason(error: Exception) -> str:
    """Short, log-friendly reason for a LiteLLM error."""
    error_str = str(error).lower()
    if "rate" in error_str or "429" in error_str:
        return "rate limit"
    if "overloaded" in error_str or "529" in error_str:
        return "overloaded"
    if "timeout" in error_str or isinstance(error, TimeoutError):
        return "timeout"
    if "503" in error_str or "unavailable" in error_str:
        return "service unavailable"
    if "500" in error_str or "internal" in error_str:
        return "server error"
    if "connection" in error_str:
        return "connection error"
    return str(error)[:80]


def parse_email_response(content: str, company_name: str = "") -> GeneratedContent:
    """Extract subject and body from a model answer.

    Falls back to wrapping the raw text in a paragraph when the answer is
    not the expected JSON object.
    """
    match = _JSON_OBJECT_RE.search(content)
    if match:
        try:
            payload = _EmailPayload.model_validate(json.loads(match.group(0)))
            if payload.subject.strip() and payload.body.strip():
                return GeneratedContent(
                    subject=payload.subject.strip(), body=payload.body.strip(), generator="litellm"
                )
        except (json.JSONDecodeError, ValidationError):
            pass

    logger.debug("Email response was not valid JSON, using raw text")
    return GeneratedContent(
        subject=f"A message from {company_name or 'our team'}",
        body=f"<p>{content.strip()}</p>",
        generator="litellm",
    )


class LiteLLMContentGenerator(ContentGenerator):
    """Writes messages with any LiteLLM-routable model.

    API keys are read by LiteLLM from the provider's usual environment
    variable (GROQ_API_KEY, OPENAI_API_KEY, ...).
    """

    name = "litellm"

    def __init__(self, settings: GenerationSettings | None = None) -> None:
        self._settings = settings or GenerationSettings()

    async def generate(self, request: GenerationRequest) -> GeneratedContent:
        """Generate content, bounded by the configured timeout.

        Raises:
            GenerationTimeout: The call and its retries exceeded the timeout.
            GenerationFailed: The model rejected the request or kept failing.
        """
        variables = request.template_variables()
        messages = [
            {"role": "system", "content": render_prompt("system", **variables)},
            {"role": "user", "content": render_prompt(request.agent_type.value, **variables)},
        ]
        kwargs = {
            "model": self._settings.model,
            "messages": messages,
            "temperature": self._settings.temperature,
            "max_tokens": self._settings.max_tokens,
            "timeout": self._settings.timeout,
        }

        try:
            response = await asyncio.wait_for(
                self._call_with_retry(kwargs), timeout=self._settings.timeout
            )
        except TimeoutError as e:
            raise GenerationTimeout(self._settings.timeout, str(e)) from e

        content = self._extract_content(response)
        if not content:
            raise GenerationFailed(f"{self._settings.model} returned an empty answer")
        return parse_email_response(content, request.brand.company_name)

    async def _call_with_retry(self, kwargs: dict) -> litellm.ModelResponse:
        """Call litellm.acompletion with exponential backoff retry.

        Transient errors (rate limits, server errors, timeouts) are
        retried. Authentication, bad requests and anything unexpected
        are raised immediately as GenerationFailed.

        Raises:
            TimeoutError: If the last attempt timed out.
            GenerationFailed: On non-retryable errors or exhausted retries.
        """
        max_retries = self._settings.max_retries
        last_error: Exception | None = None

        for attempt in range(max_retries):
            try:
                return await litellm.acompletion(**kwargs)
            except (TimeoutError, litellm.Timeout):
                last_error = TimeoutError(
                    f"Model call timed out (attempt {attempt + 1}/{max_retries})"
                )
            except litellm.AuthenticationError:
                raise GenerationFailed(
                    f"Authentication failed for {self._settings.model}. "
                    "Check the provider API key in the environment."
                ) from None
            except litellm.BadRequestError as e:
                raise GenerationFailed(f"Bad request to {self._settings.model}: {e}") from e
            except (
                litellm.RateLimitError,
                litellm.ServiceUnavailableError,
                litellm.InternalServerError,
                litellm.APIConnectionError,
            ) as e:
                last_error = e
            except Exception as e:
                raise GenerationFailed(
                    f"Unexpected error from {self._settings.model}: {_short_error_reason(e)}"
                ) from e

            if attempt < max_retries - 1:
                backoff = _BASE_BACKOFF * (2**attempt)
                logger.warning(
                    "Retry %d/%d for %s (%s, backoff: %.1fs)",
                    attempt + 1,
                    max_retries,
                    self._settings.model,
                    _short_error_reason(last_error),
                    backoff,
                )
                await asyncio.sleep(backoff)

        if isinstance(last_error, TimeoutError):
            raise last_error
        raise GenerationFailed(
            f"Content generation with {self._settings.model} failed after "
            f"{max_retries} attempts: {_short_error_reason(last_error)}"
        ) from last_error

    def _extract_content(self, response: litellm.ModelResponse) -> str:
        if not response.choices:
            return ""
        message = response.choices[0].message
        return (message.content or "") if message else ""
