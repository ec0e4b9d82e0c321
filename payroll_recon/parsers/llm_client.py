"""Model client for structured extraction.

Everything that talks to the generative model goes through here. Callers get
back a validated pydantic model or one of the typed errors from
`payroll_recon.exceptions`; raw model JSON never leaves this module.
"""

import base64
import json
import logging
from typing import Any, Optional, Type, TypeVar

import litellm
from litellm import acompletion
from pydantic import BaseModel, ValidationError

from payroll_recon.config import settings
from payroll_recon.exceptions import MalformedResponse, ModelCallError, RateLimited
from payroll_recon.services.key_pool import KeyPool

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_RATE_LIMIT_MARKERS = ("429", "rate limit", "ratelimit", "quota", "resource_exhausted", "too many requests")


def extract_json_block(text: str) -> dict[str, Any]:
    """
    Parse the first balanced {...} block in a model response.

    Prose or markdown fences around the object are ignored. Braces inside
    JSON strings do not count towards the balance.

    Raises:
        MalformedResponse: If no complete object is found or it is not valid JSON
    """
    if not text:
        raise MalformedResponse("Model returned an empty response")

    start = text.find("{")
    if start == -1:
        raise MalformedResponse("No JSON object found in model response", preview=text)

    depth = 0
    in_string = False
    escaped = False
    end = None
    for position in range(start, len(text)):
        char = text[position]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                end = position + 1
                break

    if end is None:
        raise MalformedResponse("Model response JSON is truncated (unbalanced braces)", preview=text[start:])

    block = text[start:end]
    try:
        data = json.loads(block)
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"Model returned invalid JSON: {e}", preview=block) from e

    if not isinstance(data, dict):
        raise MalformedResponse("Model response is not a JSON object", preview=block)
    return data


def is_rate_limit_error(error: BaseException) -> bool:
    if isinstance(error, litellm.RateLimitError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)


def text_message(prompt: str) -> list[dict[str, Any]]:
    return [{"role": "user", "content": prompt}]


def image_message(prompt: str, contents: bytes, media_type: str) -> list[dict[str, Any]]:
    """User message carrying the prompt and an inline base64 image."""
    encoded = base64.b64encode(contents).decode("ascii")
    return [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": f"data:{media_type};base64,{encoded}"}},
            ],
        }
    ]


async def call_model(
    messages: list[dict[str, Any]],
    key_pool: KeyPool,
    *,
    timeout: Optional[float] = None,
    temperature: float = 0.1,
    max_tokens: int = 8192,
) -> str:
    """
    Send messages to the extraction model and return the response text.

    On failure the key is reported to the pool, the pool rotates, and the
    call is retried once with the next key.

    Raises:
        RateLimited: If both attempts hit quota errors
        ModelCallError: If both attempts failed for any other reason
        MalformedResponse: If the model answered with no content
    """
    timeout = timeout or settings.llm_timeout_seconds
    last_error: Optional[Exception] = None

    for attempt in range(2):
        key = key_pool.next()
        try:
            response = await acompletion(
                model=settings.extraction_model,
                messages=messages,
                api_base=settings.api_base,
                api_key=key or None,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=timeout,
            )
        except Exception as e:
            last_error = e
            key_pool.report_failure(key)
            key_pool.rotate()
            logger.warning("Model call failed (attempt %d/2, key ...%s): %s", attempt + 1, key[-4:], e)
            continue

        key_pool.report_success(key)
        content = response.choices[0].message.content
        if not content or not content.strip():
            raise MalformedResponse("Model returned an empty response")
        return content

    if last_error is not None and is_rate_limit_error(last_error):
        raise RateLimited("Model API rate limit reached", api_error=str(last_error))
    raise ModelCallError(f"Model call failed: {last_error}", api_error=str(last_error))


async def llm_extract_json(
    messages: list[dict[str, Any]],
    response_model: Type[T],
    key_pool: KeyPool,
    *,
    timeout: Optional[float] = None,
) -> T:
    """
    Call the model and validate its JSON answer into `response_model`.

    Args:
        messages: Chat messages (see `text_message` / `image_message`)
        response_model: Pydantic adapter the JSON must satisfy
        key_pool: Pool supplying API keys
        timeout: Per-call timeout in seconds

    Returns:
        Instance of response_model

    Raises:
        MalformedResponse: If the response holds no valid JSON object or fails validation
        RateLimited / ModelCallError: If the model call itself failed
    """
    content = await call_model(messages, key_pool, timeout=timeout)
    data = extract_json_block(content)

    try:
        return response_model.model_validate(data)
    except ValidationError as e:
        logger.error("Model JSON failed %s validation: %s", response_model.__name__, e)
        raise MalformedResponse(
            f"Model response did not match {response_model.__name__}: {e.error_count()} errors",
            preview=json.dumps(data)[:200],
        ) from e
