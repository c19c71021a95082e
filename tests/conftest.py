from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence, Union

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from conductor.models.llm_client import LLMClient, LLMRawResponse, LLMUsage  # noqa: E402

Scripted = Union[str, LLMRawResponse, Exception]


class ScriptedClient(LLMClient):
    """Fake client replaying canned responses in order and recording payloads."""

    def __init__(self, responses: Sequence[Scripted], *, max_attempts: int = 1) -> None:
        super().__init__("scripted", max_attempts=max_attempts, retry_delay=0.0, sleep=lambda _: None)
        self._responses: List[Scripted] = list(responses)
        self.payloads: List[Dict[str, Any]] = []

    def _raw_invoke(self, payload: Dict[str, Any]) -> LLMRawResponse:
        self.payloads.append(payload)
        if not self._responses:
            raise AssertionError("ScriptedClient ran out of responses")
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            return LLMRawResponse(text=item, usage=LLMUsage(input_tokens=1000, output_tokens=500))
        return item

    def phases(self) -> List[str]:
        return [str((payload.get("metadata") or {}).get("phase")) for payload in self.payloads]


def eval_json(score: float, **extra: Any) -> str:
    payload: Dict[str, Any] = {
        "score": score,
        "passed": score >= 7,
        "feedback": extra.pop("feedback", f"Scored {score}"),
        "strengths": extra.pop("strengths", ["Clear structure"]),
        "weaknesses": extra.pop("weaknesses", [] if score >= 7 else ["Missing edge cases"]),
    }
    payload.update(extra)
    return json.dumps(payload)


@pytest.fixture()
def scripted_client() -> Callable[..., ScriptedClient]:
    """Factory building a ``ScriptedClient`` from canned responses."""

    def _factory(responses: Sequence[Scripted], **kwargs: Any) -> ScriptedClient:
        return ScriptedClient(responses, **kwargs)

    return _factory


@pytest.fixture()
def task_payload() -> Callable[..., Dict[str, Any]]:
    """Factory for camelCase task dictionaries as returned by the model."""

    def _factory(task_id: int, *, files: Sequence[str] = (), depends_on: Sequence[int] = (), **extra: Any) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": task_id,
            "title": extra.pop("title", f"Task {task_id}"),
            "description": extra.pop("description", f"Do task {task_id}"),
            "activeForm": extra.pop("activeForm", f"Doing task {task_id}"),
            "type": extra.pop("type", "feature"),
            "files": list(files),
            "dependsOn": list(depends_on),
            "estimateMinutes": extra.pop("estimateMinutes", 30),
        }
        payload.update(extra)
        return payload

    return _factory


@pytest.fixture()
def eval_payload() -> Callable[..., str]:
    """Factory rendering an evaluator JSON response."""
    return eval_json
