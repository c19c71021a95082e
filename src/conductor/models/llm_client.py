"""Typed client base class shared by all language-model integrations."""

from __future__ import annotations

import ast
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Type

from pydantic.type_adapter import TypeAdapter

__all__ = [
    "AttemptLogger",
    "LLMClient",
    "LLMClientError",
    "LLMCompletion",
    "LLMRawResponse",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "LLMUsage",
    "effort_for_budget",
    "extract_json_object",
]

LOGGER = logging.getLogger(__name__)


def _close_schema(value: Any) -> Any:
    """Recursively tighten JSON Schema objects to disallow unknown keys."""
    if isinstance(value, dict):
        schema_type = value.get("type")
        if schema_type == "object":
            value["additionalProperties"] = False
            properties = value.get("properties")
            if isinstance(properties, dict):
                required = value.get("required")
                all_keys = list(properties.keys())
                if not isinstance(required, list):
                    required = all_keys
                else:
                    missing = [key for key in all_keys if key not in required]
                    if missing:
                        required.extend(missing)
                value["required"] = required
                for key, child in list(properties.items()):
                    properties[key] = _close_schema(child)
        for key, child in list(value.items()):
            if key == "properties":
                continue
            value[key] = _close_schema(child)
    elif isinstance(value, list):
        return [_close_schema(item) for item in value]
    return value


def _decomposition_schema() -> Dict[str, Any]:
    """Hand-authored JSON schema for the task decomposition payload."""
    string = {"type": "string"}
    number = {"type": "number"}

    task_schema: Dict[str, Any] = {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "id": {"type": "integer", "description": "Sequential task ID starting from 1"},
            "title": {"type": "string", "description": "Imperative task title"},
            "description": {
                "type": "string",
                "description": "Detailed description with acceptance criteria",
            },
            "activeForm": {"type": "string", "description": "Present continuous form"},
            "type": {
                "type": "string",
                "enum": ["feature", "fix", "refactor", "test", "docs", "migration"],
            },
            "files": {
                "type": "array",
                "items": string,
                "description": "Files this task will modify",
            },
            "dependsOn": {
                "type": "array",
                "items": {"type": "integer"},
                "description": "Task IDs that must complete first",
            },
            "estimateMinutes": {**number, "description": "Estimated minutes to complete"},
        },
        "required": [
            "id",
            "title",
            "description",
            "activeForm",
            "type",
            "files",
            "dependsOn",
            "estimateMinutes",
        ],
    }

    return {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "tasks": {"type": "array", "items": task_schema},
            "executionStrategy": {"type": "string", "enum": ["sequential", "parallel", "mixed"]},
            "rationale": {**string, "description": "Brief explanation of the decomposition approach"},
            "totalEstimateMinutes": {
                **number,
                "description": "Total wall-clock estimate (accounting for parallelism)",
            },
            "teamRecommendation": {
                **string,
                "description": "Whether to use a team of executors and how to staff it",
            },
        },
        "required": [
            "tasks",
            "executionStrategy",
            "rationale",
            "totalEstimateMinutes",
            "teamRecommendation",
        ],
    }


def _schema_override_for_model(model: Type[Any]) -> Optional[Dict[str, Any]]:
    """Return schema overrides for specific response models when required."""
    name = getattr(model, "__name__", "")
    if name == "Decomposition":
        return _decomposition_schema()
    return None


def effort_for_budget(budget: int) -> str:
    """Translate a reasoning token budget into a Responses API effort level."""
    if budget <= 1024:
        return "low"
    if budget <= 4096:
        return "medium"
    return "high"


class LLMClientError(RuntimeError):
    """Base error raised for structured LLM client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""

    def __init__(self, message: str, *, status: int | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class LLMResponseFormatError(LLMClientError):
    """Raised when the model returns a payload without usable output."""


class LLMRetryError(LLMClientError):
    """Raised after exhausting retries due to repeated transient failures."""


@dataclass(slots=True)
class LLMUsage:
    """Token accounting reported by the provider for a single call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0


@dataclass(slots=True)
class LLMRawResponse:
    """Transport-level result returned by ``LLMClient._raw_invoke``."""

    text: str
    usage: LLMUsage = field(default_factory=LLMUsage)


@dataclass(slots=True)
class LLMCompletion:
    """Completed model call: output text, optional JSON payload, and usage."""

    text: str
    model: str
    usage: LLMUsage = field(default_factory=LLMUsage)
    structured: Any | None = None


AttemptLogger = Callable[
    [Dict[str, Any], Optional[LLMCompletion], Optional[Exception], int], None
]


@dataclass(slots=True)
class LLMRequest:
    """Typed request payload sent to an LLM."""

    prompt: str
    response_model: Optional[Type[Any]] = None
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    temperature: float = 0.0
    max_output_tokens: Optional[int] = None
    reasoning_effort: Optional[str] = None
    reasoning_budget: Optional[int] = None
    cache_key: Optional[str] = None
    max_attempts: Optional[int] = None

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render a transport-ready payload for the Responses API."""
        def _message(role: str, text: str) -> Dict[str, Any]:
            return {
                "role": role,
                "content": [
                    {
                        "type": "input_text",
                        "text": text,
                    }
                ],
            }

        messages: list[Dict[str, Any]] = []
        if self.system_prompt:
            messages.append(_message("system", self.system_prompt))
        messages.append(_message("user", self.prompt))

        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "input": messages,
        }

        if self.response_model is not None:
            schema_name = getattr(self.response_model, "__name__", "conductor_response")
            schema_override = _schema_override_for_model(self.response_model)
            if schema_override is not None:
                schema = schema_override
            else:
                try:
                    adapter = TypeAdapter(self.response_model)
                    schema = adapter.json_schema(by_alias=True)
                except Exception:  # pragma: no cover
                    schema = {"type": "object"}
                schema = _close_schema(schema)
            payload["text"] = {
                "format": {
                    "type": "json_schema",
                    "name": schema_name,
                    "schema": schema,
                    "strict": True,
                }
            }

        if self.temperature not in (None, 0.0):
            payload["temperature"] = self.temperature
        if self.max_output_tokens:
            payload["max_output_tokens"] = self.max_output_tokens

        effort = self.reasoning_effort
        if self.reasoning_budget:
            effort = effort_for_budget(self.reasoning_budget)
        if effort:
            payload["reasoning"] = {"effort": effort}
        if self.cache_key:
            payload["prompt_cache_key"] = self.cache_key

        metadata = dict(self.metadata)
        if self.reasoning_budget:
            metadata.setdefault("thinking_budget", self.reasoning_budget)
        if metadata:
            max_metadata_len = 512
            serialised_metadata: Dict[str, Any] = {}
            for key, value in metadata.items():
                formatted: str
                if isinstance(value, str):
                    formatted = value
                else:
                    formatted = json.dumps(value, separators=(",", ":"), sort_keys=True)
                if len(formatted) > max_metadata_len:
                    formatted = f"{formatted[: max_metadata_len - 3]}..."
                serialised_metadata[key] = formatted
            payload["metadata"] = serialised_metadata
        return payload


class LLMClient:
    """High-level helper that retries transient failures and decodes JSON output."""

    def __init__(
        self,
        model: str,
        *,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._model = model
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay
        self._sleep = sleep

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def complete(
        self,
        request: LLMRequest,
        *,
        logger: Optional[AttemptLogger] = None,
    ) -> LLMCompletion:
        """Invoke the model, retrying transient failures with exponential backoff.

        When the request declares a ``response_model`` the output text is decoded
        into ``LLMCompletion.structured``; undecodable output leaves it ``None``
        rather than raising, so callers decide how strict to be.
        """
        attempts = request.max_attempts or self._max_attempts
        payload = request.to_payload(self._model)
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                raw = self._raw_invoke(payload)
                if not raw.text.strip():
                    raise LLMResponseFormatError("Model returned an empty response.")
                structured = None
                if request.response_model is not None:
                    structured = extract_json_object(raw.text)
                completion = LLMCompletion(
                    text=raw.text,
                    model=str(payload["model"]),
                    usage=raw.usage,
                    structured=structured,
                )
                if logger:
                    logger(payload, completion, None, attempt)
                return completion
            except (LLMResponseFormatError, LLMTransportError) as error:
                last_error = error
                if logger:
                    logger(payload, None, error, attempt)
                if isinstance(error, LLMTransportError) and not error.retryable:
                    raise
                if attempt >= attempts:
                    break
                delay = self._retry_delay * (2 ** (attempt - 1))
                LOGGER.warning(
                    "LLM call failed (attempt %d/%d), retrying in %.2fs: %s",
                    attempt,
                    attempts,
                    delay,
                    error,
                )
                self._sleep(delay)

        error_message = (
            f"Model call failed after {attempts} attempt(s) for model "
            f"{payload['model']}: {last_error}"
        )
        raise LLMRetryError(error_message) from last_error

    def _raw_invoke(self, payload: Dict[str, Any]) -> LLMRawResponse:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    @staticmethod
    def _parse_json(raw_response: str) -> Any:
        """Parse JSON payloads and normalize errors."""
        text = raw_response.strip()
        if not text:
            raise LLMResponseFormatError("Model returned an empty response.")

        text = _normalise_json_string(text)
        candidates = [text]
        repaired = _repair_json_payload(text)
        if repaired and repaired not in candidates:
            candidates.append(_normalise_json_string(repaired))

        for candidate in candidates:
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                pythonic = _coerce_python_literal(candidate)
                if pythonic is not None:
                    return pythonic

        snippet = text[:200]
        raise LLMResponseFormatError(f"Model returned invalid JSON: {snippet}")


def extract_json_object(text: str) -> Any | None:
    """Return the first JSON value salvageable from ``text`` or ``None``."""
    try:
        return LLMClient._parse_json(text)
    except LLMResponseFormatError:
        return None


def _strip_code_fence(payload: str) -> str:
    """Remove Markdown-style code fences that wrap JSON payloads."""
    if not payload.startswith("```"):
        return payload
    fence_header_match = re.match(r"```(?:json)?", payload[:10], re.IGNORECASE)
    if not fence_header_match:
        return payload
    fence_end = payload.find("```", len(fence_header_match.group(0)))
    if fence_end == -1:
        return payload
    content_start = payload.find("\n", len(fence_header_match.group(0)))
    if content_start == -1:
        return payload
    return payload[content_start + 1 : fence_end].strip()


def _normalise_json_string(payload: str) -> str:
    """Normalise common non-JSON characters emitted by models."""
    if not payload:
        return payload
    translation = {
        0x201C: '"',
        0x201D: '"',
        0x2018: "'",
        0x2019: "'",
        0xFF07: "'",
        0x2014: "-",
        0x2013: "-",
        0x2026: "...",
        0x00A0: " ",
        0xFEFF: "",
    }
    return payload.translate(str.maketrans(translation))


def _strip_trailing_commas(payload: str) -> str:
    """Remove trailing commas before closing braces/brackets."""
    if not payload:
        return payload
    return re.sub(r",(\s*[}\]])", r"\1", payload)


def _repair_json_payload(raw: str) -> str | None:
    """Attempt to salvage the first JSON object embedded in noisy output."""
    stripped = _strip_code_fence(raw.strip())
    if stripped == raw and "```" in raw:
        stripped = _strip_code_fence(raw)
    if not stripped:
        return None

    try:
        json.loads(stripped)
    except json.JSONDecodeError:
        pass
    else:
        return stripped

    opening_idx = None
    expected: list[str] = []
    for index, char in enumerate(stripped):
        if opening_idx is None:
            if char == "{":
                opening_idx = index
                expected.append("}")
            continue
        if char in "{[":
            expected.append("}" if char == "{" else "]")
        elif expected and char == expected[-1]:
            expected.pop()
            if not expected:
                candidate = stripped[opening_idx : index + 1]
                return _strip_trailing_commas(candidate.strip())
    return None


def _coerce_python_literal(candidate: str) -> Any | None:
    """Fall back to Python literal parsing when JSON decoding fails."""
    try:
        literal = ast.literal_eval(candidate)
    except (SyntaxError, ValueError, TypeError, MemoryError, RecursionError):
        return None
    return _normalise_literal(literal)


def _normalise_literal(value: Any) -> Any:
    """Convert Python literals into JSON-compatible structures recursively."""
    if isinstance(value, dict):
        return {str(key): _normalise_literal(sub) for key, sub in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalise_literal(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)
