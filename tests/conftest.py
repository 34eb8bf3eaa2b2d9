"""
Pytest fixtures shared by the abcjournal tests.
"""

from typing import Any, Dict, List, Mapping

import pytest
import pytest_asyncio

from abcjournal.errors import AiServiceError
from abcjournal.testing import BACKENDS, make_backend, make_memory, make_sqlite


@pytest_asyncio.fixture(params=BACKENDS)
async def backend(request, tmp_path):
    """One AdapterContext per storage backend; contract tests run against each."""
    ctx = await make_backend(request.param, tmp_path)
    yield ctx
    await ctx.cleanup()


@pytest_asyncio.fixture
async def memory_ctx():
    ctx = await make_memory()
    yield ctx
    await ctx.cleanup()


@pytest_asyncio.fixture
async def sqlite_ctx(tmp_path):
    ctx = await make_sqlite(tmp_path / "journal.db")
    yield ctx
    await ctx.cleanup()


def analysis_payload(belief: str = "I'm worthless") -> Dict[str, Any]:
    return {
        "restatedBelief": "You believe losing the job means you have no value.",
        "thinkingPatterns": [
            {
                "label": "Global labeling",
                "quote": belief,
                "explanation": "A single event becomes a verdict on the whole self.",
            }
        ],
        "educationalSummary": "Labels hide the specific, changeable facts.",
    }


def dispute_payload(alternative: str = "Losing a job is an event, not an identity.") -> Dict[str, Any]:
    return {
        "acknowledgement": "That is a painful thing to go through.",
        "disputes": ["Plenty of capable people lose jobs.", "Your skills did not vanish."],
        "alternativeBelief": alternative,
        "encouragement": "One step at a time.",
    }


class ScriptedAiService:
    """AI service double that replays a script of payloads or exceptions."""

    mode = "scripted"

    def __init__(self, analyze: List[Any] = None, dispute: List[Any] = None) -> None:
        self.analyze_script = list(analyze or [])
        self.dispute_script = list(dispute or [])
        self.analyze_calls: List[Mapping[str, Any]] = []
        self.dispute_calls: List[Mapping[str, Any]] = []

    @staticmethod
    def _next(script: List[Any]) -> Any:
        if not script:
            raise AiServiceError("exhausted", "no scripted response left")
        step = script.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step

    async def analyze(self, payload):
        self.analyze_calls.append(dict(payload))
        return self._next(self.analyze_script)

    async def dispute(self, payload):
        self.dispute_calls.append(dict(payload))
        return self._next(self.dispute_script)


@pytest.fixture
def scripted_service():
    return ScriptedAiService()
