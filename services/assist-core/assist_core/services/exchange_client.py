"""
Message exchange client for the hosted AI responder
"""
import httpx
import re
from typing import Optional, Any, Union
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from assist_core.core.config import settings
from assist_core.core.errors import TransportError

import logging

logger = logging.getLogger(__name__)


_SECONDS_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(?:s|sec|secs|second|seconds)?\s*$")
_CLOCK_RE = re.compile(r"^\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)\s*$")


def parse_duration(value: Union[int, float, str, None]) -> float:
    """
    Normalize a processing time to seconds

    Accepts plain numbers, "3 seconds" style strings and "HH:MM:SS" interval
    strings. Anything else counts as zero.
    """
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    match = _SECONDS_RE.match(value)
    if match:
        return float(match.group(1))
    match = _CLOCK_RE.match(value)
    if match:
        hours, minutes, seconds = match.groups()
        return int(hours) * 3600 + int(minutes) * 60 + float(seconds)
    return 0.0


def reply_duration(value: Union[int, float, str, None]) -> float:
    """Responder processing time in seconds; bare numbers are milliseconds"""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value / 1000.0
    return parse_duration(value)


class ExchangeReply(BaseModel):
    """Structured reply from the AI responder"""
    response_text: str
    conversation_id: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    processing_time_seconds: float = 0.0
    tokens_used: int = 0
    knowledge_base_id: Optional[str] = None


class ExchangeClient:
    """Client for the AI turn endpoint"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.AI_RESPONDER_URL).rstrip("/")
        self.api_key = settings.AI_RESPONDER_API_KEY if api_key is None else api_key
        self.timeout = timeout or settings.AI_REQUEST_TIMEOUT_SECONDS
        self.client = httpx.AsyncClient(timeout=self.timeout, transport=transport)

    async def send_message(
        self,
        conversation_id: Optional[str],
        customer_id: Optional[str],
        agent_id: Optional[str],
        text: str,
    ) -> ExchangeReply:
        """
        Send one user utterance to the responder

        Without a conversation_id the responder creates the conversation and
        returns its id.

        Raises:
            TransportError: non-2xx status, timeout, network failure or an
                unparseable reply
        """
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = {
            "message": text,
            "customer_id": customer_id,
            "agent_id": agent_id,
        }
        if conversation_id:
            payload["conversation_id"] = conversation_id

        try:
            response = await self.client.post(
                f"{self.base_url}/ai-chat",
                json=payload,
                headers=headers,
            )
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.warning("AI responder returned HTTP %s", status_code)
            raise TransportError(f"Error: {status_code}", status_code=status_code) from exc
        except httpx.TimeoutException as exc:
            logger.warning("AI responder timed out after %ss", self.timeout)
            raise TransportError("AI responder timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("AI responder request failed: %s", exc)
            raise TransportError(f"AI responder unreachable: {exc}") from exc
        except ValueError as exc:
            raise TransportError("AI responder returned invalid JSON") from exc

        return self._parse_reply(result)

    def _parse_reply(self, result: Any) -> ExchangeReply:
        if not isinstance(result, dict):
            raise TransportError("AI responder returned an unexpected body")
        try:
            return ExchangeReply(
                response_text=result.get("response", ""),
                conversation_id=str(result.get("conversation_id") or ""),
                confidence=float(result.get("confidence", 0.0)),
                processing_time_seconds=reply_duration(result.get("processing_time")),
                tokens_used=int(result.get("tokens_used") or 0),
                knowledge_base_id=result.get("knowledge_base_id"),
            )
        except (PydanticValidationError, TypeError, ValueError) as exc:
            raise TransportError(f"AI responder reply rejected: {exc}") from exc

    async def close(self):
        """Close HTTP client"""
        await self.client.aclose()


# Singleton instance
_exchange_client: Optional[ExchangeClient] = None


def get_exchange_client() -> ExchangeClient:
    """Get singleton exchange client instance"""
    global _exchange_client
    if _exchange_client is None:
        _exchange_client = ExchangeClient()
    return _exchange_client
