"""Boundary to the external semantic-diff oracle.

The oracle is untrusted: whatever it returns is passed on as an opaque value
and validated by :mod:`vcc.guardrails`. Nothing here interprets the response.
"""

from __future__ import annotations

import json
import os
from hashlib import sha256
from typing import Any, Dict, List, Optional, Protocol

import structlog
from openai import OpenAI

logger = structlog.get_logger(__name__)

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"

RESPONSE_SHAPE = {
    "change_type": "added|removed|modified|relocated|merged|split|unchanged",
    "obligation_changes": [
        {"entity": "str", "old_obligation": "str|null", "new_obligation": "str|null", "severity": "low|medium|high"}
    ],
    "permission_changes": [
        {"entity": "str", "old_obligation": "str|null", "new_obligation": "str|null", "severity": "low|medium|high"}
    ],
    "numeric_changes": [
        {"field": "str", "old_value": "number|null", "new_value": "number|null", "significance": "low|medium|high"}
    ],
    "risk_level": "low|medium|high",
    "human_summary": "str",
    "confidence": "number between 0 and 1",
}

SYSTEM_PROMPT = (
    "You compare two versions of a document clause. Describe factual differences in legal effect. "
    "Do not give legal advice and do not repeat personal data. "
    "Answer with a single JSON object of this shape: " + json.dumps(RESPONSE_SHAPE)
)


class SemanticDiffOracle(Protocol):
    model_version: str

    def compare(self, old_text: str, new_text: str, metadata: Dict[str, Any], hint: Dict[str, Any]) -> Any:
        ...


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str, separators=(",", ":"))


def hash_payload(value: Any) -> str:
    return sha256(canonical_json(value).encode("utf-8")).hexdigest()


def strict_augmentation(errors: List[str], attempt: int) -> str:
    """Instruction appended to the hint when re-asking after a bad answer."""

    problems = ", ".join(errors) if errors else "unknown fields"
    return (
        f"Attempt {attempt}: the previous answer was rejected ({problems}). "
        "Return ONLY a JSON object with every required key: "
        + ", ".join(RESPONSE_SHAPE)
        + ". confidence must be a number between 0 and 1. "
        "change_type must agree with the clause ids given in metadata."
    )


def build_messages(old_text: str, new_text: str, metadata: Dict[str, Any], hint: Dict[str, Any]) -> List[Dict[str, str]]:
    user = {
        "old_clause": old_text,
        "new_clause": new_text,
        "metadata": metadata,
        "rule_hints": hint,
    }
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": canonical_json(user)},
    ]


class OpenAISemanticOracle:
    """Semantic-diff oracle backed by the OpenAI chat completions API."""

    def __init__(
        self,
        model: Optional[str] = None,
        client: Optional[OpenAI] = None,
        temperature: float = 0.0,
    ) -> None:
        self.model = model or os.environ.get("VCC_OPENAI_MODEL", DEFAULT_OPENAI_MODEL)
        self.temperature = temperature
        if client is None:
            api_key = os.environ.get("OPENAI_API_KEY")
            if not api_key:
                raise RuntimeError("OPENAI_API_KEY not configured for the semantic oracle")
            client = OpenAI(api_key=api_key)
        self._client = client

    @property
    def model_version(self) -> str:
        return f"openai:{self.model}"

    def compare(self, old_text: str, new_text: str, metadata: Dict[str, Any], hint: Dict[str, Any]) -> Any:
        response = self._client.chat.completions.create(
            model=self.model,
            messages=build_messages(old_text, new_text, metadata, hint),
            temperature=self.temperature,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content or ""
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            logger.warning("oracle returned non-JSON content", model=self.model, length=len(content))
            return content
