# -*- coding: utf-8 -*-
"""AI service boundary for belief analysis and dispute generation.

Services speak plain JSON-shaped mappings (camelCase keys). Transport,
auth and rate limiting belong to the concrete service; this module only
defines the contract, builds request payloads and validates responses.
"""
from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol, Union

from .errors import AiServiceError
from .models import AnalyzeBeliefResult, DisputeBeliefResult, Entry, ThinkingPattern


class AiService(Protocol):
    mode: str

    async def analyze(self, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        """Return an analysis payload for ``{adversity, belief, consequence?}``."""
        ...

    async def dispute(self, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        """Return a dispute payload for the belief and its prior analysis."""
        ...


# ---------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------

def analysis_request(entry: Entry) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"adversity": entry.adversity, "belief": entry.belief}
    if entry.consequence:
        payload["consequence"] = entry.consequence
    return payload


def dispute_request(entry: Entry) -> Dict[str, Any]:
    payload = analysis_request(entry)
    if entry.ai_response is not None:
        payload["restatedBelief"] = entry.ai_response.restated_belief
        payload["thinkingPatterns"] = [p.to_dict() for p in entry.ai_response.thinking_patterns]
    return payload


# ---------------------------------------------------------------------
# Response normalization
# ---------------------------------------------------------------------

def _invalid(message: str) -> AiServiceError:
    return AiServiceError("invalid-response", message)


def _text(value: Any, name: str, required: bool = True) -> str:
    if value is None and not required:
        return ""
    if not isinstance(value, str):
        raise _invalid(f"Expected string for {name}")
    if required and not value.strip():
        raise _invalid(f"Empty {name}")
    return value.strip()


def _unwrap(raw: Any) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise _invalid("AI response was not an object")
    output = raw.get("output")
    return output if isinstance(output, Mapping) else raw


def normalize_analysis(raw: Any) -> AnalyzeBeliefResult:
    """Validate an analysis payload; raise AiServiceError('invalid-response') if malformed."""
    data = _unwrap(raw)
    patterns_raw = data.get("thinkingPatterns") or []
    if not isinstance(patterns_raw, list):
        raise _invalid("thinkingPatterns must be a list")
    patterns = []
    for item in patterns_raw:
        if not isinstance(item, Mapping):
            raise _invalid("thinking pattern was not an object")
        patterns.append(
            ThinkingPattern(
                label=_text(item.get("label"), "label"),
                quote=_text(item.get("quote"), "quote"),
                explanation=_text(item.get("explanation"), "explanation", required=False),
            )
        )
    return AnalyzeBeliefResult(
        restated_belief=_text(data.get("restatedBelief"), "restatedBelief"),
        thinking_patterns=tuple(patterns),
        educational_summary=_text(data.get("educationalSummary"), "educationalSummary", required=False),
    )


def normalize_dispute(raw: Any) -> DisputeBeliefResult:
    """Validate a dispute payload; raise AiServiceError('invalid-response') if malformed."""
    data = _unwrap(raw)
    disputes_raw = data.get("disputes") or []
    if not isinstance(disputes_raw, list):
        raise _invalid("disputes must be a list")
    disputes = tuple(d.strip() for d in disputes_raw if isinstance(d, str) and d.strip())
    if not disputes:
        raise _invalid("No disputes returned")
    return DisputeBeliefResult(
        acknowledgement=_text(data.get("acknowledgement"), "acknowledgement", required=False),
        disputes=disputes,
        alternative_belief=_text(data.get("alternativeBelief"), "alternativeBelief"),
        encouragement=_text(data.get("encouragement"), "encouragement", required=False),
    )


# ---------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------

class OfflineAiService:
    """Used when AI is disabled; every call fails without side effects."""

    mode = "offline"

    async def analyze(self, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        raise AiServiceError("offline", "AI is disabled in offline mode")

    async def dispute(self, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        raise AiServiceError("offline", "AI is disabled in offline mode")


DEFAULT_ANALYSIS: Dict[str, Any] = {
    "restatedBelief": "",
    "thinkingPatterns": [
        {
            "label": "Global labeling",
            "quote": "",
            "explanation": "One setback is treated as a verdict on your whole self.",
        }
    ],
    "educationalSummary": (
        "Beliefs formed in the moment often describe a feeling, not a fact. "
        "Naming the pattern is the first step to testing it."
    ),
}

DEFAULT_DISPUTE: Dict[str, Any] = {
    "acknowledgement": "It makes sense that this hurts.",
    "disputes": [
        "What evidence do you have that this is permanent?",
        "Would you judge a friend in the same situation this harshly?",
    ],
    "alternativeBelief": "This was a hard event, and it does not define my worth.",
    "encouragement": "You have handled difficult things before.",
}


class FixtureAiService:
    """Returns canned payloads for development and demos.

    The fixture file, when given, is a JSON object with optional
    ``analysis`` and ``dispute`` keys overriding the built-in samples.
    Empty ``restatedBelief``/``quote`` values are filled from the request.
    """

    mode = "fixture"

    def __init__(
        self,
        analysis: Optional[Mapping[str, Any]] = None,
        dispute: Optional[Mapping[str, Any]] = None,
        path: Optional[Union[str, Path]] = None,
    ) -> None:
        loaded: Dict[str, Any] = {}
        if path is not None:
            with Path(path).open("r", encoding="utf-8") as f:
                loaded = json.load(f)
        self._analysis = dict(analysis or loaded.get("analysis") or DEFAULT_ANALYSIS)
        self._dispute = dict(dispute or loaded.get("dispute") or DEFAULT_DISPUTE)

    async def analyze(self, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        data = copy.deepcopy(self._analysis)
        belief = str(payload.get("belief", ""))
        if not data.get("restatedBelief"):
            data["restatedBelief"] = belief
        for pattern in data.get("thinkingPatterns") or []:
            if isinstance(pattern, dict) and not pattern.get("quote"):
                pattern["quote"] = belief
        return data

    async def dispute(self, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        return copy.deepcopy(self._dispute)
