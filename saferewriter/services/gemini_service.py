"""
Google Gemini gateway: turns a raw message + region into a validated
AnalysisResult with exactly one generateContent call.
"""

import json
import re
import time
import uuid
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from saferewriter.errors import (
    AIAuthError,
    AIParseError,
    AIRateLimitError,
    AIServiceError,
    NetworkError,
    ValidationError,
)
from saferewriter.schemas.rewrite_schemas import AnalysisResult
from saferewriter.utils.logging_config import StructuredLogger, metrics

logger = StructuredLogger(__name__)

DEFAULT_REGION = "US"

REGION_CONTEXTS: Dict[str, str] = {
    "US": "US banking regulations, FDIC insurance, official bank websites (.com domains)",
    "UK": "UK banking regulations, FCA oversight, official bank websites (.co.uk domains)",
    "CA": "Canadian banking regulations, CDIC insurance, official bank websites (.ca domains)",
    "AU": "Australian banking regulations, APRA oversight, official bank websites (.com.au domains)",
    "IN": "Indian banking regulations, RBI oversight, UPI, official bank websites (.in domains)",
    "SG": "Singapore banking regulations, MAS oversight, official bank websites (.sg domains)",
    "DE": "German banking regulations, BaFin oversight, official bank websites (.de domains)",
    "FR": "French banking regulations, ACPR oversight, official bank websites (.fr domains)",
    "ES": "Spanish banking regulations, CNMV oversight, official bank websites (.es domains)",
    "IT": "Italian banking regulations, Banca d'Italia oversight, official bank websites (.it domains)",
    "JP": "Japanese banking regulations, FSA oversight, official bank websites (.jp domains)",
    "KR": "Korean banking regulations, FSC oversight, official bank websites (.kr domains)",
    "BR": "Brazilian banking regulations, BCB oversight, official bank websites (.br domains)",
    "MX": "Mexican banking regulations, CNBV oversight, official bank websites (.mx domains)",
}

RESPONSE_SCHEMA_EXAMPLE = """{
  "original_message": "string",
  "safe_version": "string",
  "differences": [
    {
      "aspect": "Links",
      "scam": "Contains suspicious link",
      "official": "No external links",
      "status": "Fixed"
    }
  ],
  "red_flags_fixed": 4,
  "tone_comparison": {
    "scam": "Urgent, Fearful, Demanding",
    "official": "Professional, Calm, Helpful"
  },
  "key_learning": "string"
}"""

_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)
_RETRY_DELAY = re.compile(r"^\s*(\d+(?:\.\d+)?)s\s*$")

MAX_RED_FLAGS = 10


def get_region_context(region: Optional[str]) -> str:
    return REGION_CONTEXTS.get((region or "").upper(), REGION_CONTEXTS[DEFAULT_REGION])


def build_prompt(message: str, region: str = DEFAULT_REGION) -> str:
    """Instruction prompt asking Gemini for the rewrite as strict JSON."""
    return (
        "You are a financial security expert specializing in scam detection and official "
        "bank communication standards. Analyze this suspicious message and rewrite it as a "
        "proper official bank communication.\n\n"
        f'Original message: "{message}"\n\n'
        f"Context: {get_region_context(region)}\n\n"
        "Please analyze the message and return a JSON response with the following exact structure:\n"
        f"{RESPONSE_SCHEMA_EXAMPLE}\n\n"
        "Focus on:\n"
        "1. Identifying suspicious elements (links, urgency, pressure tactics, grammar errors)\n"
        "2. Rewriting with professional bank communication standards\n"
        "3. Highlighting key differences and red flags\n"
        "4. Providing educational insights about scam detection\n"
        "5. Using appropriate regional banking terminology and contact methods\n\n"
        "Return only valid JSON, no additional text."
    )


def validate_message(message: Any, max_length: int) -> str:
    """Reject messages that are not text, blank, or too long."""
    if not isinstance(message, str):
        raise ValidationError("Message is required and must be a string", field="message")
    if len(message.strip()) == 0:
        raise ValidationError("Message cannot be empty", field="message", value=message)
    if len(message) > max_length:
        raise ValidationError(
            f"Message too long. Maximum {max_length} characters allowed.",
            field="message",
            value=len(message),
        )
    return message


def _coerce_red_flags(value: Any, differences_count: int) -> int:
    # bool is an int subclass but never a meaningful count
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        value = differences_count
    return max(0, min(MAX_RED_FLAGS, int(round(value))))


def parse_analysis_text(text: str) -> AnalysisResult:
    """
    Extract and validate the JSON payload embedded in the model's text.

    Raises:
        AIParseError: no JSON block, undecodable JSON, or missing/invalid fields
    """
    match = _JSON_BLOCK.search(text or "")
    if not match:
        raise AIParseError("Failed to parse Gemini response: No JSON found in Gemini response")

    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise AIParseError(f"Failed to parse Gemini response: {e.msg}") from e

    if not isinstance(payload, dict):
        raise AIParseError("Failed to parse Gemini response: payload is not an object")

    if not payload.get("original_message") or not payload.get("safe_version"):
        raise AIParseError("Failed to parse Gemini response: Missing required fields in Gemini response")

    differences = payload.get("differences")
    if not isinstance(differences, list):
        raise AIParseError("Failed to parse Gemini response: Differences must be an array")

    tone = payload.get("tone_comparison")
    if (
        not isinstance(tone, dict)
        or not isinstance(tone.get("scam"), str)
        or not isinstance(tone.get("official"), str)
        or not tone["scam"]
        or not tone["official"]
    ):
        raise AIParseError("Failed to parse Gemini response: Invalid tone comparison in response")

    key_learning = payload.get("key_learning")
    try:
        return AnalysisResult(
            original_message=payload["original_message"],
            safe_version=payload["safe_version"],
            differences=differences,
            red_flags_fixed=_coerce_red_flags(payload.get("red_flags_fixed"), len(differences)),
            tone_comparison={"scam": tone["scam"], "official": tone["official"]},
            key_learning=key_learning if isinstance(key_learning, str) else "",
        )
    except PydanticValidationError as e:
        raise AIParseError(f"Failed to parse Gemini response: {e.errors()[0]['msg']}") from e


def extract_candidate_text(envelope: Any) -> str:
    """Return candidates[0].content.parts[0].text from a generateContent response."""
    try:
        text = envelope["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        raise AIParseError("Invalid response format from Gemini API")
    if not isinstance(text, str):
        raise AIParseError("Invalid response format from Gemini API")
    return text


def _retry_after_seconds(response: httpx.Response, default: int) -> int:
    """Retry hint from the Retry-After header, else RetryInfo in the error body."""
    header = response.headers.get("retry-after")
    if header:
        try:
            return max(0, int(float(header)))
        except ValueError:
            pass

    try:
        details = response.json().get("error", {}).get("details", [])
    except (ValueError, AttributeError):
        details = []

    for detail in details if isinstance(details, list) else []:
        if isinstance(detail, dict) and str(detail.get("@type", "")).endswith("RetryInfo"):
            match = _RETRY_DELAY.match(str(detail.get("retryDelay", "")))
            if match:
                return max(0, int(float(match.group(1))))
    return default


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        return response.json().get("error", {}).get("message") or fallback
    except (ValueError, AttributeError):
        return fallback


class GeminiService:
    """
    Gateway to the Gemini generateContent endpoint.

    Owns its httpx.AsyncClient unless one is injected.
    """

    def __init__(self, settings, client: Optional[httpx.AsyncClient] = None):
        self.api_key = settings.gemini_api_key
        self.base_url = settings.gemini_base_url.rstrip("/")
        self.model = settings.gemini_model
        self.max_tokens = settings.gemini_max_tokens
        self.temperature = settings.gemini_temperature
        self.top_p = settings.gemini_top_p
        self.top_k = settings.gemini_top_k
        self.max_message_length = settings.max_message_length
        self.default_retry_after = settings.gemini_default_retry_after

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.gemini_timeout)

    @property
    def _generate_url(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self.api_key}

    def validate_message(self, message: Any) -> str:
        return validate_message(message, self.max_message_length)

    async def _call_api(self, prompt: str) -> Dict[str, Any]:
        request_id = f"gemini_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_tokens,
                "topP": self.top_p,
                "topK": self.top_k,
            },
        }

        start = time.time()
        success = False
        try:
            response = await self._client.post(self._generate_url, json=body, headers=self._headers)
        except httpx.TimeoutException as e:
            raise NetworkError("Network error: Gemini API request timed out") from e
        except httpx.RequestError as e:
            raise NetworkError() from e
        else:
            if response.is_success:
                try:
                    envelope = response.json()
                except ValueError as e:
                    raise AIParseError("Invalid response format from Gemini API") from e
                success = True
                return envelope
            self._raise_for_status(response)
        finally:
            duration = time.time() - start
            self._record_call(request_id, len(prompt), duration, success)

    def _raise_for_status(self, response: httpx.Response):
        status = response.status_code
        if status == 400:
            raise AIServiceError(
                f"Invalid request to Gemini API: {_error_message(response, 'Bad Request')}",
                upstream_status=status,
            )
        if status == 401:
            raise AIAuthError("Invalid Gemini API key", upstream_status=status)
        if status == 403:
            raise AIAuthError("Gemini API access forbidden", upstream_status=status)
        if status == 429:
            raise AIRateLimitError(retry_after=_retry_after_seconds(response, self.default_retry_after))
        if status >= 500:
            raise AIServiceError("Gemini API internal server error", upstream_status=status)
        raise AIServiceError(
            f"Gemini API error: {status} - {_error_message(response, 'Unknown error')}",
            upstream_status=status,
        )

    def _record_call(self, request_id: str, prompt_length: int, duration: float, success: bool):
        metrics.increment("gemini.requests.total")
        if not success:
            metrics.increment("gemini.requests.errors")
        metrics.timing("gemini.latency", duration)

        fields = dict(
            request_id=request_id,
            prompt_length=prompt_length,
            response_time_ms=round(duration * 1000, 2),
            success=success,
        )
        if success:
            logger.info("Gemini AI request", **fields)
        else:
            logger.error("Gemini AI request", **fields)

    async def rewrite(self, message: str, region: str = DEFAULT_REGION) -> AnalysisResult:
        """
        Rewrite a scam message into an official-style message.

        Raises:
            ValidationError: bad input (no network call is made)
            AIServiceError / AIRateLimitError / NetworkError: upstream failures
        """
        self.validate_message(message)

        prompt = build_prompt(message, region)
        envelope = await self._call_api(prompt)
        result = parse_analysis_text(extract_candidate_text(envelope))

        logger.info(
            "Message successfully rewritten",
            message_length=len(message),
            region=region,
            red_flags_fixed=result.red_flags_fixed,
        )
        return result

    async def check_health(self) -> bool:
        """Cheap reachability probe against the model metadata endpoint."""
        if not self.api_key:
            return False
        try:
            response = await self._client.get(
                f"{self.base_url}/models/{self.model}",
                headers={"x-goog-api-key": self.api_key},
            )
        except httpx.HTTPError as e:
            logger.warning("Gemini API connection test failed", error=str(e))
            return False
        return response.is_success

    def get_stats(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "maxTokens": self.max_tokens,
            "temperature": self.temperature,
            "baseURL": self.base_url,
        }

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()
