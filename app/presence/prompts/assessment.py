ASSESSMENT_PROMPT_VERSION = "assessment_v3"

# Parameter names each bucket in the reply must carry, in prompt order.
REQUIRED_PARAMETERS = {
    "communication": (
        "speaking_rate",
        "vocal_variety",
        "verbal_clarity",
        "filler_words",
        "strategic_pauses",
        "confidence_language",
    ),
    "appearance_nonverbal": (
        "presence_projection",
        "engagement_cues",
        "first_impression_impact",
        "energy_consistency",
    ),
    "storytelling": (
        "narrative_structure",
        "cognitive_ease",
        "self_disclosure_authenticity",
        "memorability_concreteness",
        "story_placement_pacing",
    ),
}

SYSTEM_PROMPT = (
    "You are an expert executive coach. Provide data-driven assessments backed by specific "
    "metrics. Return ONLY valid JSON. No markdown. No code fences. No extra text. "
    "Use double quotes for all JSON strings."
)

USER_PROMPT_TEMPLATE = """You are a world-class Executive Presence assessment expert. Analyze this leadership recording transcript with scientific rigor.

TRANSCRIPT ({duration_minutes} minutes, {word_count} words):
<<<{transcript}>>>

FIRST IMPRESSION TEXT (0-40 seconds):
<<<{first_impression}>>>

===== MEASURED METRICS (ground truth, do not recompute) =====

SPEAKING RATE:
{speaking_rate_json}
Pre-calculated score: {speaking_rate_score}/100

FILLER WORDS:
{filler_json}
Pre-calculated score: {filler_score}/100

PAUSES:
{pause_json}
Pre-calculated score: {pause_score}/100

SENTENCE STRUCTURE (VERBAL CLARITY):
{sentence_json}

CONFIDENCE LANGUAGE:
{confidence_json}
Pre-calculated score: {confidence_score}/100

DECISIVENESS:
{decisiveness_json}

===== RESPONSE REQUIREMENTS =====

Return a single JSON object with exactly this shape. Every "score" is an integer 0-100. Every
"overall_score" is a number 0-100. Observations must cite the measured metrics above.

{
  "communication": {
    "overall_score": <average of the communication parameters>,
    "parameters": {
      "speaking_rate": {"score": {speaking_rate_score}, "raw_value": "{wpm_raw}", "observation": "<cite the WPM>", "coaching": "<technique>", "reference": "<source>"},
      "vocal_variety": {"score": <0-100>, "observation": "<...>", "coaching": "<...>", "reference": "<source>"},
      "verbal_clarity": {"score": <0-100>, "raw_value": "{clarity_raw}", "observation": "<...>", "coaching": "<...>", "reference": "<source>"},
      "filler_words": {"score": {filler_score}, "raw_value": "{filler_raw}", "observation": "<...>", "coaching": "<...>", "reference": "<source>"},
      "strategic_pauses": {"score": {pause_score}, "raw_value": "{pause_raw}", "observation": "<...>", "coaching": "<...>", "reference": "<source>"},
      "confidence_language": {"score": {confidence_score}, "raw_value": "{confidence_raw}", "observation": "<...>", "coaching": "<...>", "reference": "<source>"}
    }
  },
  "appearance_nonverbal": {
    "overall_score": <average>,
    "note": "Analysis based on speech patterns and linguistic cues.",
    "parameters": {
      "presence_projection": {"score": <0-100>, "observation": "<...>", "coaching": "<...>", "reference": "<source>"},
      "engagement_cues": {"score": <0-100>, "observation": "<...>", "coaching": "<...>", "reference": "<source>"},
      "first_impression_impact": {"score": <0-100>, "raw_value": "{first_impression_raw}", "observation": "<...>", "coaching": "<...>", "reference": "<source>"},
      "energy_consistency": {"score": <0-100>, "observation": "<...>", "coaching": "<...>", "reference": "<source>"}
    }
  },
  "storytelling": {
    "overall_score": <average>,
    "parameters": {
      "narrative_structure": {"score": <0-100>, "observation": "<...>", "coaching": "<...>", "reference": "<source>"},
      "cognitive_ease": {"score": <0-100>, "observation": "<...>", "coaching": "<...>", "reference": "<source>"},
      "self_disclosure_authenticity": {"score": <0-100>, "observation": "<...>", "coaching": "<...>", "reference": "<source>"},
      "memorability_concreteness": {"score": <0-100>, "observation": "<...>", "coaching": "<...>", "reference": "<source>"},
      "story_placement_pacing": {"score": <0-100>, "observation": "<...>", "coaching": "<...>", "reference": "<source>"}
    }
  },
  "summary": "<3-4 sentences with specific evidence>",
  "top_strengths": ["<strength 1>", "<strength 2>"],
  "priority_development": "<single most impactful area>"
}
"""
