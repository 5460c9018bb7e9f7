"""
Pydantic models for AI insight requests, results and usage records.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from app.models.chart import ChartSnapshot, TransitSnapshot


class AnalysisKind(str, Enum):
    BIRTH_CHART_ANALYSIS = "BIRTH_CHART_ANALYSIS"
    PREDICTIONS_TRANSITS = "PREDICTIONS_TRANSITS"
    COMPATIBILITY_ANALYSIS = "COMPATIBILITY_ANALYSIS"
    REMEDIAL_MEASURES = "REMEDIAL_MEASURES"

    @property
    def label(self) -> str:
        """'PREDICTIONS_TRANSITS' → 'predictions transits'"""
        return self.value.lower().replace("_", " ")


class PlanTier(str, Enum):
    FREE_TRIAL = "free_trial"
    BASIC = "basic"
    PREMIUM = "premium"


def is_premium(plan_tier: Union[PlanTier, str, None]) -> bool:
    """Only "premium" counts; None and unknown plan ids are treated as non-premium."""
    return plan_tier == PlanTier.PREMIUM.value


def tier_label(plan_tier: Union[PlanTier, str, None]) -> str:
    return str(getattr(plan_tier, "value", plan_tier))


class ConversationTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class InsightRequest(BaseModel):
    """Everything needed to build the prompt pair for one AI call."""
    kind: AnalysisKind
    charts: List[ChartSnapshot] = Field(min_length=1, max_length=2)
    names: List[Optional[str]] = Field(default_factory=list)     # aligned with charts
    genders: List[Optional[str]] = Field(default_factory=list)
    history: List[ConversationTurn] = Field(default_factory=list)
    plan_tier: Union[PlanTier, str, None] = PlanTier.FREE_TRIAL   # stored plan ids pass through
    transit: Optional[TransitSnapshot] = None
    query: Optional[str] = None

    @model_validator(mode="after")
    def _check_chart_count(self) -> "InsightRequest":
        expected = 2 if self.kind is AnalysisKind.COMPATIBILITY_ANALYSIS else 1
        if len(self.charts) != expected:
            raise ValueError(f"{self.kind.value} needs {expected} chart(s), got {len(self.charts)}")
        if self.kind is AnalysisKind.PREDICTIONS_TRANSITS and self.transit is None:
            raise ValueError("PREDICTIONS_TRANSITS needs a transit snapshot")
        return self


class InsightResult(BaseModel):
    text: str
    model: str                  # model actually used, may be the fallback
    input_tokens: int
    output_tokens: int
    cost: float                 # USD
    success: bool = True
    attempts: int = 1


class UsageRecord(BaseModel):
    """One audited external call (model, geolocation or ephemeris)."""
    user_id: Optional[str] = None
    service: str                # "OpenAI", "GoogleMaps", "SwissEphemeris", ...
    endpoint: str               # model id or endpoint name
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    success: bool
    error_message: Optional[str] = None
    request_payload: Any = None
    response_payload: Any = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ReportRequest(BaseModel):
    """Request body for POST /insights/report"""
    user_id: str
    chart_id: str
    kind: AnalysisKind = AnalysisKind.BIRTH_CHART_ANALYSIS
    plan_tier: PlanTier = PlanTier.FREE_TRIAL
    partner_chart_id: Optional[str] = None   # COMPATIBILITY_ANALYSIS only
    transit_date: Optional[str] = None       # PREDICTIONS_TRANSITS, default today
    query: Optional[str] = Field(default=None, max_length=2000)


class QuestionRequest(BaseModel):
    """Request body for POST /insights/question"""
    user_id: str
    chart_id: str
    question: str = Field(min_length=1, max_length=2000)
    plan_tier: PlanTier = PlanTier.FREE_TRIAL
    conversation_id: Optional[str] = None
    kind: Optional[AnalysisKind] = None


class InsightResponse(BaseModel):
    """Returned by POST /insights/report and /insights/question"""
    text: str
    conversation_id: str
    model: str
    input_tokens: int
    output_tokens: int
    cost: float
    credits_decremented: bool = False
