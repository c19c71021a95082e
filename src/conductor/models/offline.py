"""Deterministic stand-in client used for demos and offline runs."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List

from .llm_client import LLMClient, LLMRawResponse, LLMUsage

__all__ = ["OfflineLLMClient"]

_FEATURE_PATTERN = re.compile(r"<feature>\s*(.*?)\s*</feature>", re.DOTALL)


class OfflineLLMClient(LLMClient):
    """Local stub that synthesizes deterministic responses per pipeline phase."""

    def __init__(self) -> None:
        super().__init__("offline", max_attempts=1)

    def _raw_invoke(self, payload: Dict[str, Any]) -> LLMRawResponse:
        metadata = payload.get("metadata") or {}
        phase = str(metadata.get("phase", "unknown"))
        prompt = _user_text(payload)
        response = self._build_response(phase, prompt)
        usage = LLMUsage(
            input_tokens=max(1, len(prompt) // 4),
            output_tokens=max(1, len(response) // 4),
        )
        return LLMRawResponse(text=response, usage=usage)

    def _build_response(self, phase: str, prompt: str) -> str:
        if phase == "evaluate":
            return json.dumps(
                {
                    "score": 8,
                    "passed": True,
                    "feedback": "Offline evaluation: content accepted without model review.",
                    "strengths": ["Covers the requested sections"],
                    "weaknesses": [],
                }
            )
        if phase == "decompose":
            return json.dumps(_sample_decomposition())
        if phase == "spec":
            feature = _feature_from_prompt(prompt)
            return "\n".join(
                [
                    f"# Spec: {feature}",
                    "",
                    "## Scope",
                    f"- Deliver: {feature}",
                    "",
                    "## Data Model",
                    "- Add the fields required to persist the feature state.",
                    "",
                    "## API Endpoints",
                    "- Expose create and list handlers for the new records.",
                    "",
                    "## UI Components",
                    "- Render the records and a form to create them.",
                    "",
                    "## Edge Cases",
                    "- Empty input, duplicate submissions, unauthorized access.",
                    "",
                    "## Migration Strategy",
                    "- Additive schema change; no backfill required.",
                    "",
                    "## Testing Plan",
                    "- Unit tests for handlers and an end-to-end happy path.",
                ]
            )
        return f"Offline response for phase '{phase}'."


def _user_text(payload: Dict[str, Any]) -> str:
    parts: List[str] = []
    for message in payload.get("input") or []:
        if not isinstance(message, dict) or message.get("role") != "user":
            continue
        for content in message.get("content") or []:
            if isinstance(content, dict) and isinstance(content.get("text"), str):
                parts.append(content["text"])
    return "\n".join(parts)


def _feature_from_prompt(prompt: str) -> str:
    match = _FEATURE_PATTERN.search(prompt)
    if match and match.group(1).strip():
        return match.group(1).strip()
    first_line = prompt.strip().splitlines()[0] if prompt.strip() else ""
    return first_line[:80] or "feature"


def _sample_decomposition() -> Dict[str, Any]:
    return {
        "tasks": [
            {
                "id": 1,
                "title": "Add data model for the feature",
                "description": "Create the schema and migration for the new records.",
                "activeForm": "Adding data model",
                "type": "migration",
                "files": ["app/models.py", "migrations/0002_feature.py"],
                "dependsOn": [],
                "estimateMinutes": 20,
            },
            {
                "id": 2,
                "title": "Add API handlers",
                "description": "Expose create and list endpoints backed by the new model.",
                "activeForm": "Adding API handlers",
                "type": "feature",
                "files": ["app/api/routes.py"],
                "dependsOn": [1],
                "estimateMinutes": 30,
            },
            {
                "id": 3,
                "title": "Build UI components",
                "description": "Render the records and a creation form.",
                "activeForm": "Building UI components",
                "type": "feature",
                "files": ["web/components/FeatureList.tsx", "web/components/FeatureForm.tsx"],
                "dependsOn": [1],
                "estimateMinutes": 30,
            },
            {
                "id": 4,
                "title": "Write tests",
                "description": "Cover handlers and the end-to-end happy path.",
                "activeForm": "Writing tests",
                "type": "test",
                "files": ["tests/test_feature_api.py"],
                "dependsOn": [2, 3],
                "estimateMinutes": 25,
            },
        ],
        "executionStrategy": "mixed",
        "rationale": "Schema first, then handlers and UI in parallel, tests last.",
        "totalEstimateMinutes": 75,
        "teamRecommendation": "Two executors for the parallel wave.",
    }
