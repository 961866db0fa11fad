"""Qualitative analysis adapter.

Builds one deterministic prompt per assessment, makes exactly one model call
and validates the reply against one of two document shapes.  Anything that
does not validate is a hard failure; there is no repair prompt and no
best-effort default.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Mapping, Optional, Sequence

from .errors import SchemaViolationError, UpstreamError
from .llm_client import ChatCompletionClient
from .metrics import (
    compute_decisiveness_metrics,
    compute_sentence_metrics,
    confidence_score,
    filler_score,
    first_impression_text,
    pause_score,
    speaking_rate_score,
)
from .models import (
    BucketAnalysis,
    FullAssessmentAnalysis,
    LexicalMetrics,
    ParameterScore,
    PauseMetrics,
    Scenario,
    ScenarioAnalysis,
    ScenarioDimension,
)
from .prompts import assessment as assessment_prompt
from .prompts import scenario as scenario_prompt
from .scoring import SCENARIO_DIMENSIONS


logger = logging.getLogger("uvicorn.error")

# Wire key -> record attribute.
FULL_BUCKETS = {
    "communication": "communication",
    "appearance_nonverbal": "appearance",
    "storytelling": "storytelling",
}
_CODE_FENCE = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?```$", re.DOTALL | re.IGNORECASE)


def _json_block(value: Any) -> str:
    return json.dumps(value, indent=2, sort_keys=True)


def _fmt(value: float, digits: int = 1) -> str:
    return f"{value:.{digits}f}"


def build_full_prompt(
    transcript: str,
    lexical: LexicalMetrics,
    pauses: PauseMetrics,
    words: Sequence = (),
) -> tuple[str, Dict[str, dict]]:
    """Return the user prompt and the metric objects to re-attach to parameters."""
    sentences = compute_sentence_metrics(transcript)
    decisiveness = compute_decisiveness_metrics(transcript)
    first_impression = first_impression_text(words)

    rate_score = speaking_rate_score(lexical.speaking_rate_wpm)
    fill_score = filler_score(lexical.filler_rate_pct)
    paus_score = pause_score(pauses.pauses_per_minute, pauses.avg_pause_seconds)
    conf_score = confidence_score(lexical.hedge_count, lexical.confidence_count, lexical.word_count)

    speaking_rate = {
        "wpm": round(lexical.speaking_rate_wpm),
        "total_words": lexical.word_count,
        "duration_seconds": lexical.duration_seconds,
        "optimal_range": "140-160 WPM",
    }
    fillers = {
        "total_count": lexical.filler_count,
        "filler_rate_percent": round(lexical.filler_rate_pct, 2),
        "breakdown": lexical.filler_breakdown,
        "lexicon_version": lexical.lexicon_version,
        "benchmark": "Professional speakers: <2% filler rate",
    }
    pause_block = {
        "total_pauses": pauses.pause_count,
        "pauses_per_minute": round(pauses.pauses_per_minute, 1),
        "average_duration": round(pauses.avg_pause_seconds, 2),
        "total_pause_time": round(pauses.total_pause_seconds, 2),
        "brief_pauses": pauses.brief_pauses,
        "strategic_pauses": pauses.strategic_pauses,
        "long_pauses": pauses.long_pauses,
        "benchmark": "Optimal: 3-5 strategic pauses per minute, 0.5-1.0s duration",
    }
    confidence = {
        "hedge_count": lexical.hedge_count,
        "confidence_count": lexical.confidence_count,
        "hedge_breakdown": lexical.hedge_breakdown,
    }

    replacements = {
        "{duration_minutes}": _fmt(lexical.duration_seconds / 60.0),
        "{word_count}": str(lexical.word_count),
        "{transcript}": transcript.strip(),
        "{first_impression}": first_impression,
        "{speaking_rate_json}": _json_block(speaking_rate),
        "{speaking_rate_score}": str(rate_score),
        "{filler_json}": _json_block(fillers),
        "{filler_score}": str(fill_score),
        "{pause_json}": _json_block(pause_block),
        "{pause_score}": str(paus_score),
        "{sentence_json}": _json_block(sentences.model_dump()),
        "{confidence_json}": _json_block(confidence),
        "{confidence_score}": str(conf_score),
        "{decisiveness_json}": _json_block(decisiveness.model_dump()),
        "{wpm_raw}": f"{round(lexical.speaking_rate_wpm)} WPM",
        "{clarity_raw}": f"Avg {_fmt(sentences.average_words_per_sentence)} words/sentence",
        "{filler_raw}": f"{lexical.filler_count} fillers ({_fmt(lexical.filler_rate_pct)}%)",
        "{pause_raw}": (
            f"{_fmt(pauses.pauses_per_minute)} pauses/min, avg {_fmt(pauses.avg_pause_seconds, 2)}s"
        ),
        "{confidence_raw}": (
            f"{lexical.hedge_count} hedges vs {lexical.confidence_count} confidence markers"
        ),
        "{first_impression_raw}": f"First 40s: {len(first_impression.split())} words",
    }
    prompt = assessment_prompt.USER_PROMPT_TEMPLATE
    for placeholder, value in replacements.items():
        prompt = prompt.replace(placeholder, value)

    attached_metrics = {
        "speaking_rate": speaking_rate,
        "filler_words": fillers,
        "strategic_pauses": pause_block,
        "verbal_clarity": sentences.model_dump(),
        "confidence_language": confidence,
    }
    return prompt, attached_metrics


def build_scenario_prompt(
    transcript: str,
    scenario: Scenario,
    lexical: LexicalMetrics,
    pauses: PauseMetrics,
) -> str:
    replacements = {
        "{title}": scenario.title,
        "{category}": scenario.category,
        "{difficulty}": scenario.difficulty,
        "{context}": scenario.context,
        "{question}": scenario.question,
        "{duration_seconds}": str(round(lexical.duration_seconds)),
        "{word_count}": str(lexical.word_count),
        "{transcript}": transcript.strip(),
        "{wpm}": str(round(lexical.speaking_rate_wpm)),
        "{filler_count}": str(lexical.filler_count),
        "{filler_rate}": _fmt(lexical.filler_rate_pct),
        "{hedge_count}": str(lexical.hedge_count),
        "{pause_count}": str(pauses.pause_count),
        "{pauses_per_minute}": _fmt(pauses.pauses_per_minute),
        "{avg_pause}": _fmt(pauses.avg_pause_seconds, 2),
    }
    prompt = scenario_prompt.USER_PROMPT_TEMPLATE
    for placeholder, value in replacements.items():
        prompt = prompt.replace(placeholder, value)
    return prompt


def parse_json_document(raw_content: str) -> dict:
    """Parse the whole reply as one JSON object; a single wrapping code fence is tolerated."""
    text = (raw_content or "").strip()
    fenced = _CODE_FENCE.match(text)
    if fenced:
        text = fenced.group(1).strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise UpstreamError(f"Failed to parse AI analysis response: {exc.msg}.") from exc
    if not isinstance(parsed, dict):
        raise SchemaViolationError("Analysis JSON root must be an object.")
    return parsed


def _require_mapping(payload: Mapping, key: str, where: str) -> Mapping:
    value = payload.get(key)
    if not isinstance(value, dict):
        raise SchemaViolationError(f'{where} must contain an object "{key}".')
    return value


def _require_string(payload: Mapping, key: str, where: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise SchemaViolationError(f'{where} must contain a non-empty string "{key}".')
    return value.strip()


def _optional_string(payload: Mapping, key: str, where: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise SchemaViolationError(f'"{key}" in {where} must be a string.')
    return value.strip() or None


def _require_string_list(payload: Mapping, key: str, where: str, *, required: bool = True) -> list[str]:
    value = payload.get(key)
    if value is None and not required:
        return []
    if not isinstance(value, list):
        raise SchemaViolationError(f'{where} must contain "{key}" as an array of strings.')
    cleaned: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            raise SchemaViolationError(f"{where}.{key}[{index}] must be a non-empty string.")
        cleaned.append(item.strip())
    return cleaned


def _require_int_score(payload: Mapping, key: str, where: str) -> int:
    value = payload.get(key)
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise SchemaViolationError(f'"{key}" in {where} must be an integer.')
    if not (0 <= value <= 100):
        raise SchemaViolationError(f'"{key}" in {where} is {value}, outside [0, 100].')
    return value


def _require_number_score(payload: Mapping, key: str, where: str) -> float:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SchemaViolationError(f'"{key}" in {where} must be a number.')
    if not (0 <= value <= 100):
        raise SchemaViolationError(f'"{key}" in {where} is {value}, outside [0, 100].')
    return float(value)


def _validate_parameter(payload: Any, where: str, metrics: Optional[dict]) -> ParameterScore:
    if not isinstance(payload, dict):
        raise SchemaViolationError(f"{where} must be an object.")
    raw_value = payload.get("raw_value")
    return ParameterScore(
        score=_require_int_score(payload, "score", where),
        raw_value=None if raw_value is None else str(raw_value),
        observation=_require_string(payload, "observation", where),
        coaching=_require_string(payload, "coaching", where),
        reference=_optional_string(payload, "reference", where),
        metrics=metrics,
    )


def _validate_bucket(payload: Mapping, key: str, attached_metrics: Mapping[str, dict]) -> BucketAnalysis:
    bucket = _require_mapping(payload, key, "Analysis")
    parameters_payload = _require_mapping(bucket, "parameters", key)
    missing = [name for name in assessment_prompt.REQUIRED_PARAMETERS[key] if name not in parameters_payload]
    if missing:
        raise SchemaViolationError(f'"{key}.parameters" is missing: ' + ", ".join(missing) + ".")
    parameters = {
        str(name): _validate_parameter(value, f"{key}.parameters.{name}", attached_metrics.get(name))
        for name, value in parameters_payload.items()
    }
    return BucketAnalysis(
        overall_score=_require_number_score(bucket, "overall_score", key),
        parameters=parameters,
        note=_optional_string(bucket, "note", key),
    )


def validate_full_payload(
    payload: Any,
    attached_metrics: Optional[Mapping[str, dict]] = None,
) -> FullAssessmentAnalysis:
    if not isinstance(payload, dict):
        raise SchemaViolationError("Analysis JSON root must be an object.")
    attached = attached_metrics or {}
    buckets = {attr: _validate_bucket(payload, key, attached) for key, attr in FULL_BUCKETS.items()}
    return FullAssessmentAnalysis(
        communication=buckets["communication"],
        appearance=buckets["appearance"],
        storytelling=buckets["storytelling"],
        summary=_require_string(payload, "summary", "Analysis"),
        top_strengths=_require_string_list(payload, "top_strengths", "Analysis", required=False),
        priority_development=_optional_string(payload, "priority_development", "Analysis"),
    )


def validate_scenario_payload(payload: Any) -> ScenarioAnalysis:
    if not isinstance(payload, dict):
        raise SchemaViolationError("Scenario JSON root must be an object.")
    analysis = _require_mapping(payload, "analysis", "Scenario analysis")
    dimensions: Dict[str, ScenarioDimension] = {}
    for name in SCENARIO_DIMENSIONS:
        where = f"analysis.{name}"
        entry = _require_mapping(analysis, name, "analysis")
        dimensions[name] = ScenarioDimension(
            score=_require_int_score(entry, "score", where),
            feedback=_require_string(entry, "feedback", where),
        )
    return ScenarioAnalysis(
        score=_require_int_score(payload, "score", "Scenario analysis"),
        dimensions=dimensions,
        strengths=_require_string_list(payload, "strengths", "Scenario analysis"),
        improvements=_require_string_list(payload, "improvements", "Scenario analysis"),
    )


class QualitativeAnalyzer:
    def __init__(self, client: ChatCompletionClient) -> None:
        self._client = client

    def analyze_full(
        self,
        transcript: str,
        lexical: LexicalMetrics,
        pauses: PauseMetrics,
        words: Sequence = (),
    ) -> FullAssessmentAnalysis:
        user_prompt, attached_metrics = build_full_prompt(transcript, lexical, pauses, words)
        raw_output = self._client.complete(
            system_prompt=assessment_prompt.SYSTEM_PROMPT,
            user_prompt=user_prompt,
        )
        analysis = validate_full_payload(parse_json_document(raw_output), attached_metrics)
        logger.info(
            "analysis_done kind=full prompt_version=%s communication=%s appearance=%s storytelling=%s",
            assessment_prompt.ASSESSMENT_PROMPT_VERSION,
            analysis.communication.overall_score,
            analysis.appearance.overall_score,
            analysis.storytelling.overall_score,
        )
        return analysis

    def analyze_scenario(
        self,
        transcript: str,
        scenario: Scenario,
        lexical: LexicalMetrics,
        pauses: PauseMetrics,
    ) -> ScenarioAnalysis:
        raw_output = self._client.complete(
            system_prompt=scenario_prompt.SYSTEM_PROMPT,
            user_prompt=build_scenario_prompt(transcript, scenario, lexical, pauses),
        )
        analysis = validate_scenario_payload(parse_json_document(raw_output))
        logger.info(
            "analysis_done kind=scenario prompt_version=%s scenario_id=%s score=%s",
            scenario_prompt.SCENARIO_PROMPT_VERSION,
            scenario.scenario_id,
            analysis.score,
        )
        return analysis
