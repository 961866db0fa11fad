SCENARIO_PROMPT_VERSION = "scenario_v2"

SYSTEM_PROMPT = (
    "You are an expert executive coach who has trained Fortune 500 CEOs. Provide rigorous but "
    "constructive feedback. Return ONLY valid JSON. No markdown. No code fences. No extra text."
)

USER_PROMPT_TEMPLATE = """You are evaluating a leader's spoken response to a high-stakes boardroom scenario.

SCENARIO CONTEXT:
Title: {title}
Category: {category}
Difficulty: {difficulty}
Setting: {context}

THE CHALLENGE PRESENTED:
<<<{question}>>>

LEADER'S RESPONSE ({duration_seconds} seconds, {word_count} words):
<<<{transcript}>>>

MEASURED DELIVERY METRICS (ground truth):
Speaking rate: {wpm} WPM
Fillers: {filler_count} ({filler_rate}% of words)
Hedging phrases: {hedge_count}
Pauses: {pause_count} ({pauses_per_minute}/min, avg {avg_pause}s)

Return a single JSON object with exactly this shape. Every "score" is an integer 0-100.

{
  "score": <overall score 0-100>,
  "analysis": {
    "commanding_presence": {"score": <0-100>, "feedback": "<authority, confidence, gravitas>"},
    "strategic_thinking": {"score": <0-100>, "feedback": "<strategic depth, long-term thinking>"},
    "composure": {"score": <0-100>, "feedback": "<calmness, measured response>"},
    "decisiveness": {"score": <0-100>, "feedback": "<clear direction, commitment, hedging>"},
    "stakeholder_management": {"score": <0-100>, "feedback": "<perspectives and interests>"}
  },
  "strengths": ["<strength 1>", "<strength 2>", "<strength 3>"],
  "improvements": ["<improvement 1>", "<improvement 2>", "<improvement 3>"]
}

SCORING GUIDELINES:
- 90-100: Exceptional executive response
- 80-89: Strong leadership response with minor refinements needed
- 70-79: Good response but missing some key executive elements
- 60-69: Adequate but lacks gravitas or strategic depth
- Below 60: Needs significant development
"""
