"""Per-attempt JSON logs of model requests and responses."""

from __future__ import annotations

import json
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .models.llm_client import LLMCompletion

__all__ = ["ExchangeLogger", "format_prompt_sections"]

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


class ExchangeLogger:
    """Write one JSON file per model attempt under ``<logs>/llm``."""

    def __init__(self, logs_root: Path, *, run_id: Optional[str] = None) -> None:
        self.root = logs_root / "llm"
        self.run_id = run_id or datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        self.written: list[Path] = []

    def record(
        self,
        payload: Dict[str, Any],
        completion: Optional[LLMCompletion],
        error: Optional[Exception],
        attempt: int,
    ) -> None:
        """Persist a single attempt; filesystem errors are ignored."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError:
            return

        metadata = payload.get("metadata") or {}
        phase = str(metadata.get("phase") or "call")
        timestamp = datetime.now(timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": timestamp.isoformat(),
            "run_id": self.run_id,
            "phase": phase,
            "attempt": attempt,
            "model": payload.get("model"),
            "metadata": metadata,
            "prompt": format_prompt_sections(payload.get("input")),
        }
        if completion is not None:
            entry["response"] = completion.text
            entry["structured"] = completion.structured
            entry["usage"] = {
                "input_tokens": completion.usage.input_tokens,
                "output_tokens": completion.usage.output_tokens,
                "cached_input_tokens": completion.usage.cached_input_tokens,
            }
        if error is not None:
            entry["error"] = str(error)

        file_name = "__".join(
            [
                _slug(self.run_id),
                _slug(phase),
                f"attempt-{attempt}",
                timestamp.strftime("%Y%m%dT%H%M%S%fZ"),
                uuid.uuid4().hex[:8],
            ]
        )
        log_path = self.root / f"{file_name}.json"
        try:
            with log_path.open("w", encoding="utf-8") as handle:
                json.dump(entry, handle, indent=2, sort_keys=True, ensure_ascii=False, default=str)
        except OSError:
            return
        self.written.append(log_path)


def format_prompt_sections(messages: Any) -> list[str]:
    """Return formatted prompt sections extracted from the request payload."""
    sections: list[str] = []
    if not isinstance(messages, list):
        return sections

    for message in messages:
        if not isinstance(message, dict):
            continue
        role = str(message.get("role") or "").strip()
        heading = f"{role.title()} Prompt:" if role else "Prompt:"

        content_items = message.get("content")
        if not isinstance(content_items, list):
            continue

        text_fragments = [
            item["text"].strip()
            for item in content_items
            if isinstance(item, dict) and isinstance(item.get("text"), str) and item["text"].strip()
        ]
        if not text_fragments:
            continue
        sections.append(f"{heading}\n" + "\n\n".join(text_fragments))
    return sections


def _slug(value: str) -> str:
    slug = _SLUG_PATTERN.sub("-", value.lower()).strip("-")
    return slug or "entry"
