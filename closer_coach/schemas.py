from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import List, Optional, Dict, Any, Literal, Union
from datetime import datetime
from enum import Enum


Speaker = Literal["rep", "prospect"]

Phase = Literal[
    "opening",
    "clarify",
    "label",
    "overview",
    "sell_vacation",
    "price_presentation",
    "explain",
    "reinforce",
]

ALL_PHASES = (
    "opening",
    "clarify",
    "label",
    "overview",
    "sell_vacation",
    "price_presentation",
    "explain",
    "reinforce",
)

PHASE_NAMES = {
    "opening": "Opening",
    "clarify": "Clarify",
    "label": "Label",
    "overview": "Overview / Pain Cycle",
    "sell_vacation": "Sell the Vacation",
    "price_presentation": "Price Presentation",
    "explain": "Explain / AAA Objection Handling",
    "reinforce": "Reinforce + Close",
}

ObjectionCategory = Literal[
    "price",
    "timing",
    "spouse",
    "skepticism",
    "past_failures",
    "competition",
    "commitment",
    "other",
]

OBJECTION_CATEGORIES = (
    "price",
    "timing",
    "spouse",
    "skepticism",
    "past_failures",
    "competition",
    "commitment",
    "other",
)

ObjectionOutcome = Literal["handled_well", "handled_poorly", "unresolved"]


class CallContext(str, Enum):
    """How the conversation started; decides which phases are in the rubric."""
    NEW_LEAD = "new_lead"
    BOOKED_CALL = "booked_call"
    WARM_LEAD = "warm_lead"
    FOLLOW_UP = "follow_up"


# =============================================================================
# TRANSCRIPTS
# =============================================================================

class TranscriptSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    speaker: Speaker = Field(..., description="Resolved role: rep or prospect")
    text: str = Field(..., description="Utterance text")
    start_time: float = Field(0, ge=0, description="Start offset in seconds")
    end_time: float = Field(0, ge=0, description="End offset in seconds (equal to start when unknown)")

    @model_validator(mode="after")
    def _check_times(self):
        if self.end_time < self.start_time:
            raise ValueError("end_time must be >= start_time")
        return self


class RawSegment(BaseModel):
    """Segment with the literal speaker token from the source, before role resolution."""
    raw_label: str = Field(..., description="Speaker token as found in the source")
    text: str = Field(..., description="Utterance text")
    start_time: float = Field(0, ge=0, description="Start offset in seconds")
    end_time: Optional[float] = Field(None, ge=0, description="End offset if the source carries one")


class AsrSegment(BaseModel):
    start: float = Field(..., description="Segment start in seconds")
    end: float = Field(..., description="Segment end in seconds")
    text: str = Field("", description="Recognised text")


class AsrResult(BaseModel):
    """Timestamped output of a speech-to-text service (no diarization)."""
    segments: List[AsrSegment] = Field(default_factory=list)
    text: str = Field("", description="Full recognised text")
    duration: float = Field(0, description="Audio duration in seconds")


class CallRecord(BaseModel):
    """A normalized call as exchanged between the parse and score commands."""
    call_id: str = Field(..., description="Unique call identifier")
    rep_id: Optional[str] = Field(None, description="Salesperson identifier")
    rep_name: Optional[str] = Field(None, description="Salesperson display name")
    call_date: Optional[str] = Field(None, description="Call date (ISO 8601)")
    call_context: CallContext = Field(CallContext.NEW_LEAD, description="Call context classifier")
    outcome: Optional[str] = Field(None, description="Recorded call outcome")
    source: str = Field(..., description="Source of the transcript (plaintext, asr, ringover)")
    duration_seconds: Optional[float] = Field(None, description="Call duration in seconds")
    segments: List[TranscriptSegment] = Field(default_factory=list, description="Resolved transcript")


# =============================================================================
# REFERENCE SCRIPT
# =============================================================================

class TeacherInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = ""
    credentials: Union[List[str], str] = Field(default_factory=list)


class CourseDetails(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    teacher: Optional[TeacherInfo] = None
    teachers: Optional[Dict[str, TeacherInfo]] = Field(None, description="Teachers keyed by subject")
    schedule: Optional[Union[Dict[str, Any], str]] = None


class ScriptPhase(BaseModel):
    model_config = ConfigDict(extra="allow")

    exact_script: Union[List[str], str] = Field(default_factory=list)
    common_objections: Optional[Dict[str, Any]] = None


class ConvictionTonality(BaseModel):
    model_config = ConfigDict(extra="allow")

    banned_phrases: List[str] = Field(default_factory=list)


class ReferenceScript(BaseModel):
    """Approved phrasing, pricing and credentials used to ground prompt suggestions."""
    model_config = ConfigDict(extra="allow")

    course_details: CourseDetails = Field(default_factory=CourseDetails)
    pricing: Dict[str, Dict[str, Any]] = Field(default_factory=dict, description="Tier name -> {price, ...}")
    closer_phases: Dict[str, ScriptPhase] = Field(default_factory=dict)
    conviction_tonality: Optional[ConvictionTonality] = None
    banned_phrases: List[str] = Field(default_factory=list)
    currency: str = Field("£", description="Currency symbol used when rendering prices")


# =============================================================================
# SCORING
# =============================================================================

class Quote(BaseModel):
    text: str
    sentiment: Literal["positive", "negative", "neutral"]
    timestamp: Optional[float] = None


class PhaseScore(BaseModel):
    phase: Phase = Field(..., description="CLOSER phase id")
    score: float = Field(..., ge=0, le=100, description="Phase score (0-100)")
    feedback: str = Field(..., description="Specific feedback for the rep")
    highlights: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    quotes: List[Quote] = Field(default_factory=list)


class Objection(BaseModel):
    objection: str = Field(..., description="The objection as raised by the prospect")
    category: ObjectionCategory = Field(..., description="Objection category")
    handling_score: float = Field(..., ge=0, le=100, description="How well the rep handled it (0-100)")
    used_aaa: bool = Field(False, description="Acknowledge / Associate / Ask was used")
    rep_response: str = Field("", description="Summary of the rep's response")
    outcome_after: ObjectionOutcome = Field("unresolved")
    feedback: Optional[str] = Field(None, description="Coaching note on the handling")


class ScoringResponse(BaseModel):
    """Payload returned by the reasoning service, validated strictly."""
    overall_score: float = Field(..., ge=0, le=100)
    scores: List[PhaseScore]
    objections_detected: List[Objection] = Field(default_factory=list)
    summary: str


FALLBACK_FEEDBACK = "Unable to analyze"
FALLBACK_SUMMARY = "Unable to analyze this call. Please try again or contact support."


class ScoringResult(BaseModel):
    overall_score: float = Field(..., ge=0, le=100, description="Weighted score recomputed locally")
    scores: List[PhaseScore] = Field(default_factory=list)
    objections_detected: List[Objection] = Field(default_factory=list)
    summary: str = ""

    # Processing metadata
    call_context: CallContext = Field(CallContext.NEW_LEAD)
    llm_model: Optional[str] = Field(None, description="LLM model used for scoring")
    scored_at: Optional[datetime] = Field(None, description="When scoring was performed")

    @property
    def is_fallback(self) -> bool:
        """True when this is the inert result produced after every attempt failed"""
        return bool(self.scores) and all(s.feedback == FALLBACK_FEEDBACK for s in self.scores)


class ScoredCall(BaseModel):
    call_id: str
    rep_id: Optional[str] = None
    rep_name: Optional[str] = None
    call_context: CallContext = CallContext.NEW_LEAD
    result: ScoringResult
    objections: List[Objection] = Field(default_factory=list)


# =============================================================================
# OBJECTION ANALYTICS
# =============================================================================

class CallObjectionData(BaseModel):
    call_id: str
    rep_id: str = "unknown"
    rep_name: str = "Unknown Rep"
    call_date: Optional[str] = None
    outcome: Optional[str] = None
    objections: List[Objection] = Field(default_factory=list)


class CategoryStats(BaseModel):
    category: ObjectionCategory
    count: int
    avg_score: int
    success_rate: int
    aaa_rate: int


class RepObjectionStats(BaseModel):
    rep_id: str
    rep_name: str
    total_objections: int
    avg_handling_score: int
    success_rate: int
    aaa_rate: int
    strongest_category: str
    weakest_category: str


class TopObjection(BaseModel):
    objection: str
    category: ObjectionCategory
    frequency: int
    avg_handling_score: int


class BestResponse(BaseModel):
    objection: str
    category: ObjectionCategory
    response: str
    score: float
    rep_name: str


class ObjectionStats(BaseModel):
    total_objections: int = 0
    avg_handling_score: int = 0
    aaa_usage_rate: int = 0
    by_category: List[CategoryStats] = Field(default_factory=list)
    by_rep: List[RepObjectionStats] = Field(default_factory=list)
    top_objections: List[TopObjection] = Field(default_factory=list)
    best_responses: List[BestResponse] = Field(default_factory=list)


# =============================================================================
# QUEUE
# =============================================================================

class QueueItem(BaseModel):
    call_id: str
    status: Literal["pending", "processing", "complete", "error"] = "pending"
    added_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    score: Optional[float] = None
