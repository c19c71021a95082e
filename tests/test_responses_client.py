from __future__ import annotations

import json

import pytest

from conductor.models.llm_client import (
    LLMRequest,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
    extract_json_object,
)
from conductor.models.responses import ResponsesClient
from conductor.planning.schemas import Decomposition, EvalResult


def _make_response_payload(text: str, *, cached: int = 0) -> str:
    response = {
        "id": "resp_mock",
        "object": "response",
        "status": "completed",
        "output": [
            {"id": "rs_mock", "type": "reasoning", "summary": []},
            {
                "id": "msg_mock",
                "type": "message",
                "role": "assistant",
                "content": [
                    {
                        "type": "output_text",
                        "text": text,
                    }
                ],
            },
        ],
        "usage": {
            "input_tokens": 1200,
            "output_tokens": 300,
            "input_tokens_details": {"cached_tokens": cached},
        },
    }
    return json.dumps(response)


def test_responses_client_extracts_text_structured_and_usage() -> None:
    verdict = {"score": 9, "passed": True, "feedback": "ok", "strengths": [], "weaknesses": []}

    def transport(_: dict) -> str:
        return _make_response_payload(json.dumps(verdict), cached=1000)

    client = ResponsesClient(model="gpt-5-mini", transport=transport)
    completion = client.complete(LLMRequest(prompt="score this", response_model=EvalResult))

    assert completion.structured == verdict
    assert completion.model == "gpt-5-mini"
    assert completion.usage.input_tokens == 1200
    assert completion.usage.output_tokens == 300
    assert completion.usage.cached_input_tokens == 1000


def test_responses_client_extracts_from_output_json_block() -> None:
    payload = {"tasks": [], "executionStrategy": "sequential"}

    def transport(_: dict) -> str:
        response = {
            "output": [
                {
                    "id": "msg_json",
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "output_json", "json": payload}],
                }
            ]
        }
        return json.dumps(response)

    client = ResponsesClient(model="gpt-5-mini", transport=transport)
    completion = client.complete(LLMRequest(prompt="{}", response_model=Decomposition))

    assert completion.structured == payload
    assert completion.usage.input_tokens == 0


def test_plain_text_completion_leaves_structured_empty() -> None:
    client = ResponsesClient(model="gpt-5-nano", transport=lambda _: _make_response_payload("# Spec"))
    completion = client.complete(LLMRequest(prompt="write a spec"))

    assert completion.text == "# Spec"
    assert completion.structured is None


def test_retryable_transport_error_is_retried_with_backoff() -> None:
    calls = []
    delays = []

    def transport(_: dict) -> str:
        calls.append(1)
        if len(calls) < 3:
            raise LLMTransportError("HTTP 503", status=503, retryable=True)
        return _make_response_payload("done")

    client = ResponsesClient(
        model="gpt-5-mini",
        transport=transport,
        max_attempts=3,
        retry_delay=0.5,
        sleep=delays.append,
    )
    completion = client.complete(LLMRequest(prompt="hello"))

    assert completion.text == "done"
    assert len(calls) == 3
    assert delays == [0.5, 1.0]


def test_non_retryable_error_fails_immediately() -> None:
    calls = []

    def transport(_: dict) -> str:
        calls.append(1)
        raise LLMTransportError("HTTP 400: bad request", status=400, retryable=False)

    client = ResponsesClient(model="gpt-5-mini", transport=transport, sleep=lambda _: None)

    with pytest.raises(LLMTransportError):
        client.complete(LLMRequest(prompt="hello"))
    assert len(calls) == 1


def test_exhausted_retries_raise_retry_error_chained_to_last_failure() -> None:
    def transport(_: dict) -> str:
        return json.dumps({"output": []})

    client = ResponsesClient(model="gpt-5-mini", transport=transport, max_attempts=2, sleep=lambda _: None)

    with pytest.raises(LLMRetryError) as excinfo:
        client.complete(LLMRequest(prompt="hello"))
    assert isinstance(excinfo.value.__cause__, LLMResponseFormatError)
    assert "2 attempt(s)" in str(excinfo.value)


def test_missing_api_key_without_transport_is_rejected(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("CONDUCTOR_API_KEY", raising=False)

    with pytest.raises(ValueError, match="API key"):
        ResponsesClient(model="gpt-5-mini")


def test_payload_carries_strict_schema_reasoning_and_cache_key() -> None:
    request = LLMRequest(
        prompt="<content>x</content>",
        response_model=EvalResult,
        model="gpt-5",
        system_prompt="You are a strict quality evaluator.",
        reasoning_budget=2048,
        cache_key="eval-opt-abc",
        metadata={"phase": "evaluate"},
    )

    payload = request.to_payload("gpt-5-mini")

    assert payload["model"] == "gpt-5"
    assert [message["role"] for message in payload["input"]] == ["system", "user"]
    schema_format = payload["text"]["format"]
    assert schema_format["type"] == "json_schema"
    assert schema_format["strict"] is True
    assert schema_format["schema"]["additionalProperties"] is False
    assert set(schema_format["schema"]["required"]) == {
        "score",
        "passed",
        "feedback",
        "strengths",
        "weaknesses",
    }
    assert payload["reasoning"] == {"effort": "medium"}
    assert payload["prompt_cache_key"] == "eval-opt-abc"
    assert payload["metadata"] == {"phase": "evaluate", "thinking_budget": "2048"}


def test_decomposition_schema_uses_camel_case_fields() -> None:
    payload = LLMRequest(prompt="spec", response_model=Decomposition).to_payload("gpt-5-nano")
    schema = payload["text"]["format"]["schema"]
    task_properties = schema["properties"]["tasks"]["items"]["properties"]

    assert "executionStrategy" in schema["properties"]
    assert {"activeForm", "dependsOn", "estimateMinutes"} <= set(task_properties)


@pytest.mark.parametrize(
    "text, expected",
    [
        ('```json\n{"score": 6}\n```', {"score": 6}),
        ('Here you go: {"score": 7, "weaknesses": ["a",],} thanks', {"score": 7, "weaknesses": ["a"]}),
        ("{'score': 4, 'passed': False}", {"score": 4, "passed": False}),
        ("no json at all", None),
    ],
)
def test_extract_json_object_salvages_noisy_output(text: str, expected: object) -> None:
    assert extract_json_object(text) == expected
