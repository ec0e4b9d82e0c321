"""Tests for the model client."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from payroll_recon.exceptions import MalformedResponse, ModelCallError, RateLimited
from payroll_recon.parsers.document_types import RawReceiptExtraction
from payroll_recon.parsers.llm_client import (
    call_model,
    extract_json_block,
    image_message,
    is_rate_limit_error,
    llm_extract_json,
    text_message,
)
from payroll_recon.services.key_pool import KeyPool


def _response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class TestExtractJsonBlock:
    """Test JSON extraction from model responses."""

    def test_plain_object(self):
        """Should parse a bare JSON object."""
        assert extract_json_block('{"amount": "1,200"}') == {"amount": "1,200"}

    def test_ignores_surrounding_prose_and_fences(self):
        """Should find the object inside markdown and prose."""
        text = 'Here you go:\n```json\n{"a": {"b": 1}}\n```\nHope that helps {not json}'
        assert extract_json_block(text) == {"a": {"b": 1}}

    def test_braces_inside_strings(self):
        """Braces inside JSON strings should not affect balancing."""
        assert extract_json_block('{"note": "closing } brace {", "x": "\\"}"}') == {
            "note": "closing } brace {",
            "x": '"}',
        }

    @pytest.mark.parametrize(
        "text,match",
        [
            ("", "empty"),
            ("no json here", "No JSON object"),
            ('{"a": {"b": 1}', "truncated"),
            ("{'a': 1}", "invalid JSON"),
        ],
    )
    def test_malformed(self, text, match):
        """Should raise MalformedResponse for unusable responses."""
        with pytest.raises(MalformedResponse, match=match):
            extract_json_block(text)

    def test_malformed_is_recoverable(self):
        """A malformed response is worth retrying."""
        with pytest.raises(MalformedResponse) as exc_info:
            extract_json_block("nothing")
        assert exc_info.value.recoverable is True


class TestMessages:
    """Test message construction."""

    def test_text_message(self):
        """Should wrap the prompt as one user message."""
        assert text_message("hi") == [{"role": "user", "content": "hi"}]

    def test_image_message_inlines_base64(self):
        """Should attach the image as a data URL."""
        message = image_message("read this", b"\x89PNG", "image/png")[0]
        assert message["content"][0] == {"type": "text", "text": "read this"}
        assert message["content"][1]["image_url"]["url"] == "data:image/png;base64,iVBORw=="

    def test_rate_limit_detection(self):
        """Should recognize quota errors by message."""
        assert is_rate_limit_error(Exception("429 Too Many Requests"))
        assert is_rate_limit_error(Exception("RESOURCE_EXHAUSTED: quota"))
        assert not is_rate_limit_error(Exception("connection reset"))


@pytest.mark.asyncio
class TestCallModel:
    """Test model calls with key rotation."""

    async def test_returns_content_and_reports_success(self):
        """Should return response text and keep the key healthy."""
        pool = KeyPool(["k1", "k2"])
        with patch(
            "payroll_recon.parsers.llm_client.acompletion", new=AsyncMock(return_value=_response('{"a": 1}'))
        ) as mock:
            content = await call_model(text_message("x"), pool)

        assert content == '{"a": 1}'
        assert mock.call_args.kwargs["api_key"] == "k1"
        assert pool.snapshot()[0].failure_count == 0

    async def test_retries_once_with_next_key(self):
        """A failed call is retried once on the following key."""
        pool = KeyPool(["k1", "k2"])
        mock = AsyncMock(side_effect=[Exception("boom"), _response("ok")])
        with patch("payroll_recon.parsers.llm_client.acompletion", new=mock):
            content = await call_model(text_message("x"), pool)

        assert content == "ok"
        assert [call.kwargs["api_key"] for call in mock.call_args_list] == ["k1", "k2"]
        assert pool.snapshot()[0].failure_count == 1

    async def test_rate_limited_after_two_failures(self):
        """Two quota failures raise RateLimited."""
        pool = KeyPool(["k1", "k2"])
        mock = AsyncMock(side_effect=Exception("429 rate limit exceeded"))
        with patch("payroll_recon.parsers.llm_client.acompletion", new=mock):
            with pytest.raises(RateLimited):
                await call_model(text_message("x"), pool)
        assert mock.await_count == 2

    async def test_model_error_after_two_failures(self):
        """Two non-quota failures raise ModelCallError."""
        pool = KeyPool(["only"])
        with patch("payroll_recon.parsers.llm_client.acompletion", new=AsyncMock(side_effect=Exception("timeout"))):
            with pytest.raises(ModelCallError, match="timeout"):
                await call_model(text_message("x"), pool)

    async def test_empty_key_is_sent_as_none(self):
        """Keyless providers call the model without an api_key."""
        pool = KeyPool([""])
        mock = AsyncMock(return_value=_response("ok"))
        with patch("payroll_recon.parsers.llm_client.acompletion", new=mock):
            await call_model(text_message("x"), pool)
        assert mock.call_args.kwargs["api_key"] is None

    async def test_empty_content_is_malformed(self):
        """A response with no text is a malformed response."""
        pool = KeyPool(["k1"])
        with patch("payroll_recon.parsers.llm_client.acompletion", new=AsyncMock(return_value=_response("  "))):
            with pytest.raises(MalformedResponse):
                await call_model(text_message("x"), pool)


@pytest.mark.asyncio
class TestLlmExtractJson:
    """Test validated JSON extraction."""

    async def test_validates_into_model(self):
        """Should return the response model instance."""
        pool = KeyPool(["k1"])
        text = 'Result: {"amount": "1,200", "payment_mode": "Mpesa", "extraction_confidence": "high"}'
        with patch("payroll_recon.parsers.llm_client.acompletion", new=AsyncMock(return_value=_response(text))):
            result = await llm_extract_json(text_message("x"), RawReceiptExtraction, pool)

        assert isinstance(result, RawReceiptExtraction)
        assert result.amount == "1,200"
        assert result.extraction_confidence.value == "HIGH"

    async def test_schema_mismatch_is_malformed(self):
        """JSON that fails validation raises MalformedResponse."""
        pool = KeyPool(["k1"])
        text = '{"amount": "1", "page_count": "several"}'
        with patch("payroll_recon.parsers.llm_client.acompletion", new=AsyncMock(return_value=_response(text))):
            with pytest.raises(MalformedResponse, match="did not match"):
                await llm_extract_json(text_message("x"), _StrictModel, pool)


class _StrictModel(RawReceiptExtraction):
    """Receipt adapter that requires an integer page count."""

    page_count: int
