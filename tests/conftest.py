import copy
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _parameter(score: int, **extra) -> dict:
    payload = {
        "score": score,
        "observation": "Measured delivery was steady across the recording.",
        "coaching": "Open with the decision, then give the reason.",
        "reference": "Carmine Gallo, Talk Like TED",
    }
    payload.update(extra)
    return payload


FULL_PAYLOAD = {
    "communication": {
        "overall_score": 80,
        "parameters": {
            "speaking_rate": _parameter(95, raw_value="160 WPM"),
            "vocal_variety": _parameter(70),
            "verbal_clarity": _parameter(75),
            "filler_words": _parameter(35, raw_value="3 fillers (37.5%)"),
            "strategic_pauses": _parameter(85),
            "confidence_language": _parameter(65),
        },
    },
    "appearance_nonverbal": {
        "overall_score": 60,
        "note": "Analysis based on speech patterns and linguistic cues.",
        "parameters": {
            "presence_projection": _parameter(60),
            "engagement_cues": _parameter(55),
            "first_impression_impact": _parameter(65),
            "energy_consistency": _parameter(60),
        },
    },
    "storytelling": {
        "overall_score": 100,
        "parameters": {
            "narrative_structure": _parameter(100),
            "cognitive_ease": _parameter(100),
            "self_disclosure_authenticity": _parameter(100),
            "memorability_concreteness": _parameter(100),
            "story_placement_pacing": _parameter(100),
        },
    },
    "summary": "Clear opening, heavy filler use in the middle section.",
    "top_strengths": ["Clear structure", "Concrete examples"],
    "priority_development": "Replace fillers with silent pauses.",
}

SCENARIO_PAYLOAD = {
    "score": 72,
    "analysis": {
        "commanding_presence": {"score": 70, "feedback": "Authoritative opening."},
        "strategic_thinking": {"score": 75, "feedback": "Named the long-term risk."},
        "composure": {"score": 80, "feedback": "Calm under pressure."},
        "decisiveness": {"score": 60, "feedback": "Hedged on the final call."},
        "stakeholder_management": {"score": 65, "feedback": "Board view covered, staff view missing."},
    },
    "strengths": ["Calm tone", "Clear framing"],
    "improvements": ["Commit to one option", "Address employees"],
}

SAMPLE_TRANSCRIPT = {
    "text": "um so I think we should um go",
    "duration_seconds": 3.0,
    "words": [
        {"word": "um", "start": 0.0, "end": 0.2},
        {"word": "so", "start": 0.25, "end": 0.4},
        {"word": "I", "start": 0.45, "end": 0.5},
        {"word": "think", "start": 0.55, "end": 0.8},
        {"word": "we", "start": 1.3, "end": 1.4},
        {"word": "should", "start": 1.45, "end": 1.7},
        {"word": "um", "start": 1.75, "end": 1.9},
        {"word": "go", "start": 2.6, "end": 3.0},
    ],
}

SAMPLE_SCENARIO = {
    "scenario_id": "layoffs-board",
    "title": "Restructuring Announcement",
    "category": "Crisis Leadership",
    "difficulty": "Advanced",
    "context": "Quarterly board meeting after a missed revenue target.",
    "question": "The board wants a 15% headcount cut. What do you recommend?",
}


def full_payload() -> dict:
    return copy.deepcopy(FULL_PAYLOAD)


def scenario_payload() -> dict:
    return copy.deepcopy(SCENARIO_PAYLOAD)


class FakeChatClient:
    """Returns queued replies in order and records every prompt it was given."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def complete(self, *, system_prompt: str, user_prompt: str) -> str:
        self.calls.append({"system_prompt": system_prompt, "user_prompt": user_prompt})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            return json.dumps(reply)
        return reply


class MutableClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("PRESENCE_LLM_API_KEY", raising=False)
    monkeypatch.setenv("PRESENCE_RUN_INLINE", "true")


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_service(clock):
    from app.presence.analysis import QualitativeAnalyzer
    from app.presence.pipeline import AssessmentService
    from app.presence.storage import InMemoryAssessmentStore, InMemoryUsageStore
    from app.presence.usage import InMemoryEntitlementProvider, PlanEntitlement, UsageGate

    def _make(*replies, plan: str = "basic", transcriber=None):
        entitlements = InMemoryEntitlementProvider()
        entitlements.set_plan("user-1", PlanEntitlement.for_plan(plan))
        client = FakeChatClient(*replies)
        service = AssessmentService(
            store=InMemoryAssessmentStore(),
            gate=UsageGate(entitlements, InMemoryUsageStore(), clock=clock),
            analyzer=QualitativeAnalyzer(client),
            transcriber=transcriber,
            clock=clock,
            run_inline=True,
        )
        return service, client

    return _make
