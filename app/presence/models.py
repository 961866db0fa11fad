from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .lifecycle import AssessmentStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def duration_to_seconds(duration) -> float:
    if duration is None:
        return 0.0
    seconds = getattr(duration, "seconds", 0) or 0
    nanos = getattr(duration, "nanos", 0) or 0
    microseconds = getattr(duration, "microseconds", 0) or 0
    return float(seconds) + (float(nanos) / 1_000_000_000.0) + (float(microseconds) / 1_000_000.0)


FULL_MODE = "full"
SCENARIO_MODE = "scenario"


class WordTiming(BaseModel):
    word: str
    start: float
    end: float


class TranscriptSource(BaseModel):
    """Transcript plus word timings, either submitted directly or produced by transcription."""

    text: str = ""
    duration_seconds: float
    words: List[WordTiming] = Field(default_factory=list)


class LexicalMetrics(BaseModel):
    word_count: int
    duration_seconds: float
    speaking_rate_wpm: float
    filler_count: int
    filler_rate_pct: float
    hedge_count: int
    confidence_count: int = 0
    filler_breakdown: Dict[str, int] = Field(default_factory=dict)
    hedge_breakdown: Dict[str, int] = Field(default_factory=dict)
    lexicon_version: str


class PauseMetrics(BaseModel):
    pause_count: int
    total_pause_seconds: float
    avg_pause_seconds: float
    pauses_per_minute: float
    longest_pause_seconds: float = 0.0
    brief_pauses: int = 0
    strategic_pauses: int = 0
    long_pauses: int = 0


class SentenceMetrics(BaseModel):
    total_sentences: int
    average_words_per_sentence: float
    short_sentences: int
    medium_sentences: int
    long_sentences: int


class DecisivenessMetrics(BaseModel):
    decisive_phrases: int
    tentative_phrases: int
    decisiveness_ratio: float
    decisiveness_score: int


class ParameterScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: int
    raw_value: Optional[str] = None
    observation: str
    coaching: str
    reference: Optional[str] = None
    metrics: Optional[dict] = None


class BucketAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    overall_score: float
    parameters: Dict[str, ParameterScore]
    note: Optional[str] = None


class ScenarioDimension(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: int
    feedback: str


class Scenario(BaseModel):
    scenario_id: str
    title: str
    category: str
    difficulty: str
    context: str
    question: str


class FullAssessmentAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["full"] = "full"
    communication: BucketAnalysis
    appearance: BucketAnalysis
    storytelling: BucketAnalysis
    summary: str
    top_strengths: List[str] = Field(default_factory=list)
    priority_development: Optional[str] = None


class ScenarioAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["scenario"] = "scenario"
    score: int
    dimensions: Dict[str, ScenarioDimension]
    strengths: List[str]
    improvements: List[str]


QualitativeAnalysis = Union[FullAssessmentAnalysis, ScenarioAnalysis]


class Narrative(BaseModel):
    summary: str
    top_strengths: List[str] = Field(default_factory=list)
    priority_development: Optional[str] = None


class ScenarioScore(BaseModel):
    score: int
    dimensions: Dict[str, ScenarioDimension]
    # Display only; never substituted for `score`.
    dimension_average: float
    strengths: List[str]
    improvements: List[str]


@dataclass
class AssessmentRecord:
    assessment_id: str
    user_id: str
    mode: str
    status: AssessmentStatus
    created_at: datetime
    updated_at: datetime
    transcript: str = ""
    duration_seconds: Optional[float] = None
    scenario_brief: Optional[Scenario] = None
    lexical_metrics: Optional[LexicalMetrics] = None
    pause_metrics: Optional[PauseMetrics] = None
    communication: Optional[BucketAnalysis] = None
    appearance: Optional[BucketAnalysis] = None
    storytelling: Optional[BucketAnalysis] = None
    overall_score: Optional[int] = None
    scenario: Optional[ScenarioScore] = None
    narrative: Optional[Narrative] = None
    scoring_version: Optional[str] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class SubmitAssessmentRequest(BaseModel):
    transcript: TranscriptSource


class SubmitScenarioRequest(BaseModel):
    transcript: TranscriptSource
    scenario: Scenario


class CreateAssessmentResponse(BaseModel):
    assessment_id: str
    status: str


class AssessmentStatusResponse(BaseModel):
    assessment_id: str
    status: str
    progress: int
    error_message: Optional[str]
    poll_after_seconds: Optional[int]


class AssessmentResultResponse(BaseModel):
    assessment_id: str
    user_id: str
    mode: str
    status: str
    overall_score: Optional[int]
    communication: Optional[BucketAnalysis]
    appearance: Optional[BucketAnalysis]
    storytelling: Optional[BucketAnalysis]
    scenario: Optional[ScenarioScore]
    narrative: Optional[Narrative]
    lexical_metrics: Optional[LexicalMetrics]
    pause_metrics: Optional[PauseMetrics]
    scoring_version: Optional[str]
    transcript: str
    duration_seconds: Optional[float]
    created_at: datetime
    completed_at: Optional[datetime]


class UsageResponse(BaseModel):
    user_id: str
    capability: str
    period_key: str
    used: int
    limit: Optional[int]
    may_consume: bool
