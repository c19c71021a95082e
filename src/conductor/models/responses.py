"""Production client that speaks the OpenAI Responses API."""

from __future__ import annotations

import json
import logging
import os
import time
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional

from .llm_client import (
    LLMClient,
    LLMRawResponse,
    LLMResponseFormatError,
    LLMTransportError,
    LLMUsage,
)

__all__ = ["ResponsesClient"]

LOGGER = logging.getLogger(__name__)

Transport = Callable[[Dict[str, Any]], str]

RETRYABLE_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})


class ResponsesClient(LLMClient):
    """Thin adapter around the Responses API with usage extraction."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1/responses",
        model: str = "gpt-5-mini",
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        super().__init__(
            model=model,
            max_attempts=max_attempts,
            retry_delay=retry_delay,
            sleep=sleep or time.sleep,
        )
        self._api_key = api_key or os.getenv("CONDUCTOR_API_KEY") or os.getenv("OPENAI_API_KEY")
        self._base_url = base_url
        timeout_override = os.getenv("CONDUCTOR_TIMEOUT")
        if timeout_override:
            try:
                parsed = float(timeout_override)
                if parsed > 0:
                    timeout = parsed
            except ValueError:
                LOGGER.warning("Ignoring invalid CONDUCTOR_TIMEOUT value %r", timeout_override)
        self._timeout = timeout
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    def _raw_invoke(self, payload: Dict[str, Any]) -> LLMRawResponse:
        """Send the request over the configured transport."""
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except Exception as error:  # pragma: no cover
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        text = self._extract_model_payload(raw_response)
        if text is None:
            raise LLMResponseFormatError("Response did not contain output text.")
        return LLMRawResponse(text=text, usage=self._extract_usage(raw_response))

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """Default HTTP transport that targets the Responses API."""
        if os.getenv("CONDUCTOR_DEBUG_PAYLOAD"):
            LOGGER.debug("Request payload:\n%s", json.dumps(payload, indent=2, sort_keys=True))

        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self._base_url,
            data=data,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
                "User-Agent": "sprint-conductor/0.1",
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Model response timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(
                f"HTTP {error.code}: {message}",
                status=error.code,
                retryable=error.code in RETRYABLE_STATUS_CODES,
            ) from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach model endpoint: {error.reason}") from error

        if status >= 400:
            raise LLMTransportError(
                f"Unexpected HTTP status {status}",
                status=status,
                retryable=status in RETRYABLE_STATUS_CODES,
            )

        return raw.decode("utf-8")

    def _extract_model_payload(self, raw_response: str) -> Optional[str]:
        """Extract the output text returned by the Responses API."""
        if not raw_response:
            return None

        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError:
            return raw_response

        if isinstance(data, dict):
            output_text = data.get("output_text")
            if isinstance(output_text, str) and output_text.strip():
                return output_text

            # Responses API uses `output` for ordered events.
            output_events = data.get("output") or data.get("outputs")
            text_payload = self._first_text_content(output_events)
            if text_payload:
                return text_payload

            response_container = data.get("response")
            if isinstance(response_container, dict):
                text_payload = self._first_text_content(
                    response_container.get("output") or response_container.get("outputs")
                )
                if text_payload:
                    return text_payload

            candidate = data.get("content") or data.get("choices")
            text_payload = self._first_text_content(candidate)
            if text_payload:
                return text_payload

            if "output" in data or "response" in data:
                return None

        return raw_response

    @staticmethod
    def _extract_usage(raw_response: str) -> LLMUsage:
        """Read token usage from the response envelope when present."""
        try:
            data = json.loads(raw_response)
        except (json.JSONDecodeError, TypeError):
            return LLMUsage()
        if not isinstance(data, dict):
            return LLMUsage()

        usage = data.get("usage")
        if not isinstance(usage, dict):
            container = data.get("response")
            usage = container.get("usage") if isinstance(container, dict) else None
        if not isinstance(usage, dict):
            return LLMUsage()

        details = usage.get("input_tokens_details") or {}
        cached = details.get("cached_tokens", 0) if isinstance(details, dict) else 0
        return LLMUsage(
            input_tokens=_as_int(usage.get("input_tokens")),
            output_tokens=_as_int(usage.get("output_tokens")),
            cached_input_tokens=_as_int(cached),
        )

    @staticmethod
    def _first_text_content(container: Any) -> Optional[str]:
        """Return the first text field found within the responses container."""
        if not container:
            return None

        if isinstance(container, dict):
            container = [container]

        for item in container:
            if not isinstance(item, dict):
                continue

            contents = item.get("content")
            if isinstance(contents, list):
                for content_item in contents:
                    if isinstance(content_item, dict):
                        json_payload = content_item.get("json")
                        if isinstance(json_payload, (dict, list)):
                            try:
                                return json.dumps(json_payload)
                            except (TypeError, ValueError):
                                pass

                        text = content_item.get("text")
                        if isinstance(text, str) and text.strip():
                            return text

            # Reasoning entries may embed text directly.
            text_value = item.get("text")
            if isinstance(text_value, str) and text_value.strip():
                return text_value

            # Choices-like payloads.
            message = item.get("message") if isinstance(item.get("message"), dict) else None
            if message:
                text = message.get("content") or message.get("text")
                if isinstance(text, str) and text.strip():
                    return text

        return None


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0
