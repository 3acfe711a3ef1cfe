"""
Gemini Vision Deal Extractor.

Sends an email screenshot to Gemini with a fixed response schema and
parses the structured deal information (sender, sales, coupon codes).
"""

import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .errors import ApiKeyError, SchemaParseError, TransportError

logger = logging.getLogger(__name__)


DEAL_EXTRACTION_PROMPT = """Analyze this promotional email screenshot and extract every deal it offers.

Return:
- sender: the brand or company that sent the email
- sales: each sale or promotion, with a short description, the discount if stated
  (e.g. "20% off", "$10 off $50"), and the end date if stated
- couponCodes: each coupon or promo code exactly as printed, with its discount and
  expiration date if stated

Use empty lists when the email has no sales or no coupon codes.
Respond ONLY with JSON matching the schema."""


DEAL_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "sender": {"type": "STRING"},
        "sales": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "description": {"type": "STRING"},
                    "discount": {"type": "STRING"},
                    "endDate": {"type": "STRING"}
                },
                "required": ["description"]
            }
        },
        "couponCodes": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "code": {"type": "STRING"},
                    "discount": {"type": "STRING"},
                    "expirationDate": {"type": "STRING"}
                },
                "required": ["code"]
            }
        }
    },
    "required": ["sender", "sales", "couponCodes"]
}


class Sale(BaseModel):
    description: str
    discount: Optional[str] = None
    end_date: Optional[str] = Field(default=None, alias="endDate")

    class Config:
        populate_by_name = True


class CouponCode(BaseModel):
    code: str
    discount: Optional[str] = None
    expiration_date: Optional[str] = Field(default=None, alias="expirationDate")

    class Config:
        populate_by_name = True


class DealRecord(BaseModel):
    """Structured deal information extracted from one email."""
    sender: str
    sales: List[Sale] = Field(default_factory=list)
    coupon_codes: List[CouponCode] = Field(default_factory=list, alias="couponCodes")

    class Config:
        populate_by_name = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for the sidecar file."""
        return self.model_dump(by_alias=True, exclude_none=True)


def _is_retryable(error: genai_errors.APIError) -> bool:
    return error.code == 429 or (error.code or 0) >= 500


def _should_retry(error: BaseException) -> bool:
    return isinstance(error, TransportError) and error.details.get("retryable", True)


def parse_deal_response(text: str) -> DealRecord:
    """
    Parse model output into a DealRecord.

    Raises:
        SchemaParseError: with the raw text when parsing fails
    """
    result_text = (text or "").strip()

    # Clean up response (remove markdown code blocks if present)
    if result_text.startswith('```'):
        lines = result_text.split('\n')
        result_text = '\n'.join(lines[1:-1] if lines[-1].startswith('```') else lines[1:])

    try:
        return DealRecord.model_validate(json.loads(result_text))
    except (json.JSONDecodeError, PydanticValidationError) as e:
        raise SchemaParseError(
            f"Could not parse deal JSON from response: {text!r}",
            cause=e,
            raw_text=text
        ) from e


class DealExtractor:
    """
    Gemini Vision-based deal extractor.

    Requests JSON constrained to DEAL_RESPONSE_SCHEMA.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model_name: str = "gemini-2.0-flash",
        temperature: float = 0.2,
        max_output_tokens: int = 2048,
        max_attempts: int = 3,
        retry_wait_min: float = 1.0,
        retry_wait_max: float = 10.0,
        client: Optional[genai.Client] = None
    ):
        """
        Initialize extractor with the Gemini API.

        Args:
            api_key: Gemini API key
            model_name: Model to use
            temperature: Generation temperature (lower = more deterministic)
            max_output_tokens: Maximum tokens in response
            max_attempts: Attempts for rate-limit, server and network failures
            retry_wait_min: Minimum backoff between attempts in seconds
            retry_wait_max: Maximum backoff between attempts in seconds
            client: Optional pre-built genai client (used by tests)

        Raises:
            ApiKeyError: if no API key is supplied
        """
        if not api_key or not api_key.strip():
            raise ApiKeyError("Gemini API key is required")

        self.model_name = model_name
        self.max_attempts = max(1, max_attempts)
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max
        self.client = client or genai.Client(api_key=api_key)
        self.config = types.GenerateContentConfig(
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            response_mime_type="application/json",
            response_schema=DEAL_RESPONSE_SCHEMA
        )

        logger.info(f"DealExtractor initialized with model: {model_name}")

    async def _generate(self, image_bytes: bytes) -> str:
        try:
            response = await self.client.aio.models.generate_content(
                model=self.model_name,
                contents=[
                    types.Part.from_bytes(data=image_bytes, mime_type="image/png"),
                    DEAL_EXTRACTION_PROMPT
                ],
                config=self.config
            )
        except genai_errors.APIError as e:
            if _is_retryable(e):
                raise TransportError(f"Gemini API error (HTTP {e.code})", cause=e, status_code=e.code) from e
            raise TransportError(f"Gemini API rejected request (HTTP {e.code})", cause=e,
                                 status_code=e.code, retryable=False) from e
        except (httpx.TransportError, OSError) as e:
            raise TransportError("Gemini API unreachable", cause=e) from e
        return response.text or ""

    async def extract_deal(self, image_bytes: bytes) -> DealRecord:
        """
        Extract deal information from a PNG screenshot.

        Raises:
            TransportError: on network or service failure after retries
            SchemaParseError: if the response is not valid deal JSON
        """
        logger.debug(f"Submitting {len(image_bytes)} byte image to {self.model_name}")

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_min, min=self.retry_wait_min, max=self.retry_wait_max),
            retry=retry_if_exception(_should_retry),
            reraise=True
        ):
            with attempt:
                text = await self._generate(image_bytes)

        return parse_deal_response(text)

