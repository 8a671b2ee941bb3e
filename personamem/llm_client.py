"""Client for the external LLM collaborator.

Talks to any provider with an OpenAI-compatible chat completions
endpoint. Used for memory extraction, conversation summaries, title
generation and the semantic-search fallback; the engine never generates
user-facing text itself.

Key classes:
    LLMResponse: Pydantic model wrapping a provider response.
    LLMClient: Manages the HTTP session, request payloads and response
        parsing for the configured provider.

Key functions:
    get_llm_client: Singleton accessor for the global instance.
"""

import asyncio
import json
from typing import Dict, List, Optional
from urllib.parse import urlparse

import aiohttp
import structlog
from pydantic import BaseModel

from .exceptions import ConfigurationError, ErrorCategory, LLMError, UpstreamTimeout

logger = structlog.get_logger("personamem.llm")

ChatMessage = Dict[str, str]


class LLMResponse(BaseModel):
    """Structured response from the provider."""

    content: str
    tokens_used: Optional[int] = None
    model: str


class LLMClient:
    """Async chat completions client with explicit per-call timeouts."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str,
    ):
        """Initialize the client with provider credentials.

        Args:
            api_url: Full URL to the chat completions endpoint.
                Must use HTTPS.
            api_key: Bearer token for the provider API.
            model: Default model identifier.

        Raises:
            ConfigurationError: If api_url is not HTTPS or has no host.
        """
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self._session: Optional[aiohttp.ClientSession] = None

        parsed = urlparse(self.api_url)
        if parsed.scheme != "https":
            logger.warning("insecure_api_url", url=self.api_url)
            raise ConfigurationError("API URL must use HTTPS", setting_name="llm.api_url")
        if not parsed.hostname:
            logger.warning("invalid_api_url", url=self.api_url)
            raise ConfigurationError(
                "API URL must have a valid hostname", setting_name="llm.api_url"
            )
        logger.info("llm_api_configured", host=parsed.hostname, model=model)

        if not self.api_key:
            logger.warning("llm_api_key_not_found")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create a shared aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        """Close the shared HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    def _build_headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(
        self,
        messages: List[ChatMessage],
        model: Optional[str],
        temperature: float,
        max_tokens: int,
        json_mode: bool,
    ) -> dict:
        payload = {
            "model": model or self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    def _parse_response(self, data: dict, requested_model: str) -> LLMResponse:
        """Parse an OpenAI-compatible response body.

        Raises:
            LLMError: The body is not an object, has no choices or no content.
        """
        if not isinstance(data, dict):
            logger.error("llm_malformed_response", body_type=type(data).__name__)
            raise LLMError("malformed provider response", category=ErrorCategory.PERMANENT)

        choices = data.get("choices")
        if not choices or not isinstance(choices, list) or not isinstance(choices[0], dict):
            logger.error("llm_malformed_response", data_keys=list(data.keys()))
            raise LLMError("malformed provider response", category=ErrorCategory.PERMANENT)

        message = choices[0].get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not content or not isinstance(content, str):
            logger.warning("llm_empty_response")
            raise LLMError("empty provider response", category=ErrorCategory.PERMANENT)

        usage = data.get("usage") or {}
        return LLMResponse(
            content=content,
            tokens_used=usage.get("total_tokens"),
            model=data.get("model", requested_model),
        )

    async def complete(
        self,
        messages: List[ChatMessage],
        *,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1024,
        json_mode: bool = False,
        timeout: float = 30,
    ) -> LLMResponse:
        """Run one chat completion.

        Args:
            messages: Chat messages ({"role", "content"} dicts).
            model: Model override; defaults to the client's model.
            temperature: Sampling temperature.
            max_tokens: Response token cap.
            json_mode: Request ``response_format: json_object``.
            timeout: Total seconds for the call, enforced both by the HTTP
                client and by an outer ``asyncio.wait_for``.

        Raises:
            ConfigurationError: No API key is configured.
            UpstreamTimeout: The call exceeded ``timeout``.
            LLMError: Non-200 status, transport error or unusable body.
        """
        if not self.api_key:
            raise ConfigurationError(
                "LLM API key is not configured", setting_name="llm.api_key"
            )

        payload = self._build_payload(messages, model, temperature, max_tokens, json_mode)
        try:
            return await asyncio.wait_for(
                self._post(payload, timeout), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            logger.warning("llm_timeout", timeout=timeout, model=payload["model"])
            raise UpstreamTimeout(
                "LLM call timed out", timeout=timeout, module="llm_client"
            ) from e

    async def _post(self, payload: dict, timeout: float) -> LLMResponse:
        session = await self._get_session()
        try:
            async with session.post(
                self.api_url,
                json=payload,
                headers=self._build_headers(),
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if resp.status != 200:
                    error_text = await resp.text()
                    logger.error("llm_api_error", status=resp.status, error=error_text[:500])
                    raise LLMError(
                        f"provider returned status {resp.status}", status=resp.status
                    )
                try:
                    data = await resp.json()
                except (json.JSONDecodeError, ValueError) as e:
                    logger.error("llm_invalid_body", error=str(e)[:200])
                    raise LLMError(
                        "provider returned a non-JSON body", category=ErrorCategory.PERMANENT
                    ) from e
        except aiohttp.ClientError as e:
            logger.error("llm_transport_error", error=str(e))
            raise LLMError(f"transport error: {e}") from e

        parsed = self._parse_response(data, payload["model"])
        logger.info(
            "llm_response_success",
            length=len(parsed.content),
            tokens_used=parsed.tokens_used,
            model=parsed.model,
        )
        return parsed


# Global instance
_llm_client: Optional[LLMClient] = None


def get_llm_client() -> LLMClient:
    """Get or create the global LLM client from configuration."""
    global _llm_client
    if _llm_client is None:
        from .config import get_config
        config = get_config()
        _llm_client = LLMClient(
            api_url=config.llm_api_url,
            api_key=config.llm_api_key,
            model=config.llm_model,
        )
    return _llm_client
