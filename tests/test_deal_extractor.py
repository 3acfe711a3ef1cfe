"""Tests for Gemini deal extraction with a mocked client."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from google.genai import errors as genai_errors

from dealmail.core.deal_extractor import DEAL_RESPONSE_SCHEMA, DealExtractor, DealRecord, parse_deal_response
from dealmail.core.errors import ApiKeyError, SchemaParseError, TransportError

DEAL_JSON = json.dumps({
    "sender": "Acme Store",
    "sales": [{"description": "Fall sale", "discount": "20% off", "endDate": "2026-10-31"}],
    "couponCodes": [{"code": "FALL20", "discount": "20% off"}],
})


def _extractor(*responses, max_attempts=3):
    client = MagicMock()
    client.aio.models.generate_content = AsyncMock(side_effect=list(responses))
    extractor = DealExtractor(
        api_key="test-key",
        max_attempts=max_attempts,
        retry_wait_min=0,
        retry_wait_max=0,
        client=client
    )
    return extractor, client.aio.models.generate_content


def _response(text):
    return SimpleNamespace(text=text)


def _api_error(code):
    return genai_errors.APIError(code, {"error": {"code": code, "message": "boom", "status": "ERROR"}})


class TestParseDealResponse:

    def test_parses_camel_case_fields(self):
        deal = parse_deal_response(DEAL_JSON)
        assert deal.sender == "Acme Store"
        assert deal.sales[0].end_date == "2026-10-31"
        assert deal.coupon_codes[0].code == "FALL20"

    def test_strips_markdown_fences(self):
        deal = parse_deal_response(f"```json\n{DEAL_JSON}\n```")
        assert deal.sender == "Acme Store"

    def test_empty_lists_allowed(self):
        deal = parse_deal_response('{"sender": "Acme", "sales": [], "couponCodes": []}')
        assert deal.to_dict() == {"sender": "Acme", "sales": [], "couponCodes": []}

    def test_invalid_json_keeps_raw_text(self):
        with pytest.raises(SchemaParseError) as excinfo:
            parse_deal_response("Sorry, I cannot help with that")
        assert excinfo.value.raw_text == "Sorry, I cannot help with that"
        assert "Sorry, I cannot help with that" in str(excinfo.value)

    def test_missing_required_field(self):
        with pytest.raises(SchemaParseError):
            parse_deal_response('{"sales": [], "couponCodes": []}')

    def test_to_dict_uses_camel_case_and_drops_nulls(self):
        data = parse_deal_response(DEAL_JSON).to_dict()
        assert data["couponCodes"] == [{"code": "FALL20", "discount": "20% off"}]
        assert data["sales"][0]["endDate"] == "2026-10-31"


def test_response_schema_requires_top_level_fields():
    assert DEAL_RESPONSE_SCHEMA["required"] == ["sender", "sales", "couponCodes"]
    assert DEAL_RESPONSE_SCHEMA["properties"]["couponCodes"]["items"]["required"] == ["code"]


class TestDealExtractor:

    @pytest.mark.parametrize("api_key", [None, "", "   "])
    def test_missing_api_key(self, api_key):
        with pytest.raises(ApiKeyError):
            DealExtractor(api_key=api_key, client=MagicMock())

    @pytest.mark.asyncio
    async def test_extracts_deal(self):
        extractor, generate = _extractor(_response(DEAL_JSON))
        deal = await extractor.extract_deal(b"\x89PNG")
        assert isinstance(deal, DealRecord)
        assert deal.sender == "Acme Store"

        kwargs = generate.call_args.kwargs
        assert kwargs["model"] == "gemini-2.0-flash"
        assert kwargs["config"].response_mime_type == "application/json"
        image_part = kwargs["contents"][0]
        assert image_part.inline_data.mime_type == "image/png"
        assert image_part.inline_data.data == b"\x89PNG"

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        extractor, generate = _extractor(_api_error(503), _api_error(429), _response(DEAL_JSON))
        deal = await extractor.extract_deal(b"png")
        assert deal.sender == "Acme Store"
        assert generate.await_count == 3

    @pytest.mark.asyncio
    async def test_persistent_server_error_raises_transport_error(self):
        extractor, generate = _extractor(_api_error(503), _api_error(503), max_attempts=2)
        with pytest.raises(TransportError):
            await extractor.extract_deal(b"png")
        assert generate.await_count == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        extractor, generate = _extractor(_api_error(400), _response(DEAL_JSON))
        with pytest.raises(TransportError):
            await extractor.extract_deal(b"png")
        assert generate.await_count == 1

    @pytest.mark.asyncio
    async def test_network_error_is_retried(self):
        extractor, generate = _extractor(httpx.ConnectError("refused"), _response(DEAL_JSON))
        deal = await extractor.extract_deal(b"png")
        assert deal.sender == "Acme Store"
        assert generate.await_count == 2

    @pytest.mark.asyncio
    async def test_malformed_response_not_retried(self):
        extractor, generate = _extractor(_response("not json"), _response(DEAL_JSON))
        with pytest.raises(SchemaParseError):
            await extractor.extract_deal(b"png")
        assert generate.await_count == 1
