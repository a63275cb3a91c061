"""
Stage catalogue: instructions and response schemas for each analysis stage.

The analysis collaborator returns raw text. ``parse_stage_response`` accepts
JSON optionally wrapped in a markdown code fence and validates it against the
stage's pydantic schema; anything else raises ``AnalysisResponseError``.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..common_tools.errors import AnalysisResponseError
from ..common_tools.models import WhisperCategory


class _LenientModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class Pattern(_LenientModel):
    type: str = "unknown"
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    description: str = ""
    significance: Optional[str] = None


class Insight(_LenientModel):
    type: str = "unknown"
    description: str = ""
    impact: Optional[str] = None
    data_points: List[Any] = Field(default_factory=list, alias="dataPoints")


class PatternAnalysis(_LenientModel):
    """Output of the communication and development stages."""
    patterns: List[Pattern]
    insights: List[Insight] = Field(default_factory=list)


class Anomaly(_LenientModel):
    type: str = "unknown"
    severity: Optional[float] = Field(None, ge=0.0, le=1.0)
    description: str = ""
    significance: Optional[str] = None
    indicators: List[Any] = Field(default_factory=list)
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


class AnomalyReport(_LenientModel):
    """Output of the correlation stage."""
    anomalies: List[Anomaly]


class WhisperCandidateContent(_LenientModel):
    message: str = ""
    suggested_actions: List[str] = Field(default_factory=list, alias="suggestedActions")
    rationale: Optional[str] = None


class WhisperCandidate(_LenientModel):
    title: str = Field(..., min_length=1, max_length=300)
    category: WhisperCategory = WhisperCategory.IMPROVEMENT
    priority: int = Field(3, ge=1, le=5)
    content: WhisperCandidateContent = Field(default_factory=WhisperCandidateContent)
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    timeframe: Optional[str] = None


class WhisperBatch(_LenientModel):
    """Output of the terminal stage."""
    whispers: List[WhisperCandidate]


@dataclass(frozen=True)
class StageDefinition:
    stage_id: str
    system_instructions: str
    task_instructions: str
    response_model: Type[BaseModel]


_JSON_ONLY = (
    "Your entire response must be a single valid JSON object and nothing else. "
    "Do not add explanatory text outside the JSON."
)

PULSE_STAGE = StageDefinition(
    stage_id="pulse",
    system_instructions=f"""You analyse team communication metadata (Slack and similar tools).

You only ever see metadata: timestamps, channel and participant ids, counts,
message lengths and reactions. Message text is never available. Report
team-level trends, never individual behaviour.

Look for:
- message frequency by hour, day and week
- response gaps, including delayed responses of two hours or more
- thread depth and engagement over time
- reaction and emoji usage, including declining usage
- after-hours and weekend activity as work-life balance signals

Respond with:
{{
  "patterns": [{{"type": "frequency|timing|participation|emoji|interaction",
                 "confidence": 0.0-1.0, "description": "...", "significance": "..."}}],
  "insights": [{{"type": "teamDynamics|workloadDistribution|communicationFlow|workLifeBalance",
                 "description": "...", "impact": "...", "dataPoints": ["..."]}}]
}}

{_JSON_ONLY} Only report patterns backed by enough data to be meaningful.""",
    task_instructions=(
        "Analyse the communication metadata records below. Focus on timing, response "
        "patterns, reactions and after-hours activity."
    ),
    response_model=PatternAnalysis,
)

INTEL_STAGE = StageDefinition(
    stage_id="intel",
    system_instructions=f"""You analyse development workflow metadata (GitHub and similar tools).

You only ever see metadata: timestamps, event types, counts and durations.
Source code is never available. Report team-level trends, never individual
behaviour.

Look for:
- commit cadence by hour, day and week
- pull request lifecycle: time to first review, time to merge, review load
- issue resolution times and reopen rates
- collaboration spread across contributors and reviewers

Respond with:
{{
  "patterns": [{{"type": "frequency|timing|collaboration|quality|cicd",
                 "confidence": 0.0-1.0, "description": "...", "significance": "..."}}],
  "insights": [{{"type": "workflowEfficiency|codeQuality|teamCollaboration|deliveryPredictability",
                 "description": "...", "impact": "...", "dataPoints": ["..."]}}]
}}

{_JSON_ONLY} Only report patterns backed by enough data to be meaningful.""",
    task_instructions=(
        "Analyse the development metadata records below. Focus on workflow efficiency, "
        "review process, delivery cadence and bottlenecks."
    ),
    response_model=PatternAnalysis,
)

SENTINEL_STAGE = StageDefinition(
    stage_id="sentinel",
    system_instructions=f"""You correlate communication and development patterns found by earlier analyses.

You see only the pattern and insight summaries, not raw metadata. Flag an
anomaly only when several independent indicators converge on it.

Anomaly types: workflow bottlenecks, communication and development disconnect,
team strain or burnout signals, siloing, quality risks, process friction.

Respond with:
{{
  "anomalies": [{{"type": "workflow|communication|team_health|quality|process",
                  "severity": 0.0-1.0, "description": "...", "significance": "...",
                  "indicators": ["..."], "confidence": 0.0-1.0}}]
}}

{_JSON_ONLY} Be conservative. An empty list is a valid answer.""",
    task_instructions=(
        "Review the communication results (pulse_results) and development results "
        "(intel_results) below and report cross-domain anomalies."
    ),
    response_model=AnomalyReport,
)

WHISPR_STAGE = StageDefinition(
    stage_id="whispr",
    system_instructions=f"""You turn team insights and anomalies into short, actionable recommendations called whispers.

Each whisper names one concrete, practical action a team can take now. Prefer
positive improvements over complaints, address patterns and never
individuals, and put high-impact, easy changes first.

Respond with:
{{
  "whispers": [{{
    "title": "short title",
    "category": "improvement|optimization|health|collaboration|recognition",
    "priority": 1-5 (1 is most urgent),
    "confidence": 0.0-1.0,
    "timeframe": "period the observation covers, e.g. 7 days",
    "content": {{"message": "...", "suggestedActions": ["..."], "rationale": "..."}}
  }}]
}}

{_JSON_ONLY} Produce two or three high-quality whispers rather than many weak ones.""",
    task_instructions=(
        "Create whispers from the communication results, development results and "
        "anomalies below."
    ),
    response_model=WhisperBatch,
)

STAGE_CATALOGUE: Dict[str, StageDefinition] = {
    stage.stage_id: stage
    for stage in (PULSE_STAGE, INTEL_STAGE, SENTINEL_STAGE, WHISPR_STAGE)
}


def get_stage_definition(stage_id: str) -> StageDefinition:
    try:
        return STAGE_CATALOGUE[stage_id]
    except KeyError:
        raise KeyError(f"No stage definition for {stage_id}") from None


_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL | re.IGNORECASE)


def strip_code_fence(text: str) -> str:
    match = _FENCE_RE.match(text)
    return match.group(1) if match else text.strip()


def parse_stage_response(stage_id: str, raw: str, response_model: Type[BaseModel]) -> Dict[str, Any]:
    """
    Decode and validate a raw analysis response.

    Returns:
        The validated result as plain JSON-compatible data

    Raises:
        AnalysisResponseError: the text is not JSON or does not match the schema
    """
    if raw is None or not raw.strip():
        raise AnalysisResponseError("Empty analysis response", stage_id=stage_id, raw_response=raw)
    try:
        data = json.loads(strip_code_fence(raw))
    except json.JSONDecodeError as e:
        raise AnalysisResponseError(f"Response is not valid JSON: {e}", stage_id=stage_id,
                                    raw_response=raw) from e
    if not isinstance(data, dict):
        raise AnalysisResponseError(f"Expected a JSON object, got {type(data).__name__}",
                                    stage_id=stage_id, raw_response=raw)
    try:
        model = response_model.model_validate(data)
    except ValidationError as e:
        raise AnalysisResponseError(f"Response does not match {response_model.__name__}: "
                                    f"{e.error_count()} validation errors",
                                    stage_id=stage_id, raw_response=raw) from e
    return model.model_dump(mode="json")
