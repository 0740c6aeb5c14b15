from pydantic import BaseModel, Field, ConfigDict, field_validator
from datetime import datetime, date
from typing import Optional, List, Dict, Any
from enum import Enum
import re

# Salesforce timestamps carry offsets like +0000
_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


class AccountStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    CHURNED = "churned"
    PROSPECT = "prospect"


class TrendDirection(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    WORSENING = "worsening"


class AlertType(str, Enum):
    HIGH_FRICTION = "high_friction"
    CRITICAL_SEVERITY = "critical_severity"
    TRENDING_WORSE = "trending_worse"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    NO_CASES = "no_cases"
    FAILED = "failed"
    SNAPSHOT_ERROR = "snapshot_error"


class Account(BaseModel):
    """Customer account synced from the CRM."""
    id: str
    user_id: Optional[str] = None
    salesforce_id: str
    name: str
    arr: Optional[float] = None
    vertical: Optional[str] = None
    status: str = AccountStatus.ACTIVE.value


class Portfolio(BaseModel):
    user_id: str
    account_ids: List[str]
    portfolio_type: str


class Theme(BaseModel):
    theme_key: str
    label: str


class IntegrationCredentials(BaseModel):
    """Resolved CRM connection for one user."""
    integration_id: str
    token_id: str
    instance_url: str
    access_token: str
    refresh_token: Optional[str] = None


class CaseRecord(BaseModel):
    """One support case as returned by the CRM query."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., alias="Id", min_length=1)
    case_number: Optional[str] = Field(None, alias="CaseNumber")
    subject: Optional[str] = Field(None, alias="Subject")
    description: Optional[str] = Field(None, alias="Description")
    status: Optional[str] = Field(None, alias="Status")
    priority: Optional[str] = Field(None, alias="Priority")
    created_date: Optional[datetime] = Field(None, alias="CreatedDate")
    origin: Optional[str] = Field(None, alias="Origin")

    @field_validator("created_date", mode="before")
    @classmethod
    def _normalize_offset(cls, value):
        if isinstance(value, str):
            return _COMPACT_OFFSET.sub(r"\1:\2", value)
        return value

    @property
    def text_content(self) -> str:
        return f"Case #{self.case_number}: {self.subject}\n\n{self.description or 'No description'}"


class RawInput(BaseModel):
    """Ingested case text awaiting (or done with) classification."""
    id: Optional[str] = None
    account_id: str
    user_id: Optional[str] = None
    source_type: str
    source_id: str
    source_url: Optional[str] = None
    text_content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    processed: bool = False
    created_at: Optional[datetime] = None


class FrictionJudgment(BaseModel):
    """Validated classification of one support record."""
    summary: str
    theme_key: str = "other"
    severity: int = Field(3, ge=1, le=5)
    sentiment: str = "neutral"
    root_cause: str = "Unknown"
    is_friction: bool = True
    confidence: float = Field(0.7, ge=0.0, le=1.0)
    evidence: List[str] = Field(default_factory=list, max_length=2)


class FrictionCard(BaseModel):
    """Persisted classification result for one raw input."""
    id: Optional[str] = None
    account_id: str
    user_id: Optional[str] = None
    raw_input_id: str
    summary: str
    theme_key: str
    severity: int = Field(..., ge=1, le=5)
    sentiment: str
    root_cause: str
    is_friction: bool = True
    confidence_score: float = Field(..., ge=0.0, le=1.0)
    evidence_snippets: List[str] = Field(default_factory=list)
    reasoning: Optional[str] = None
    created_at: Optional[datetime] = None


class ThemeSummary(BaseModel):
    theme_key: str
    count: int
    avg_severity: float


class ScoreBreakdown(BaseModel):
    """Intermediate values of the OFI calculation, shown verbatim in the UI."""
    base_score: float = 0
    friction_density: float = 0
    density_multiplier: float = 0
    high_severity_boost: int = 0
    severity_weighted: int = 0
    card_count: int = 0


class AccountSnapshot(BaseModel):
    """One scored observation of an account for a calendar day."""
    model_config = ConfigDict(use_enum_values=True)

    id: Optional[str] = None
    account_id: str
    snapshot_date: date
    ofi_score: int = Field(..., ge=0, le=100)
    friction_card_count: int = 0
    high_severity_count: int = 0
    case_volume: int = 0
    top_themes: List[ThemeSummary] = Field(default_factory=list)
    score_breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)
    trend_vs_prior_period: Optional[int] = None
    trend_direction: TrendDirection = TrendDirection.STABLE


class Alert(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: Optional[str] = None
    account_id: str
    user_id: Optional[str] = None
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    evidence: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    expires_at: datetime


class AccountOutcome(BaseModel):
    """Terminal result of processing one account in a run."""
    model_config = ConfigDict(use_enum_values=True)

    account_id: str
    account: Optional[str] = None
    status: OutcomeStatus
    reason: Optional[str] = None
    error: Optional[str] = None
    cases: Optional[int] = None
    new_cases: Optional[int] = None
    analyzed: Optional[int] = None
    ofi: Optional[int] = None
    trend: Optional[str] = None
    alerts: int = 0
    consumed_budget: bool = Field(False, exclude=True)


class RunSummary(BaseModel):
    """Accumulated outcomes of one orchestrator run."""
    results: List[AccountOutcome] = Field(default_factory=list)
    processed_count: int = 0
    stopped_at_cap: bool = False

    def record(self, outcome: AccountOutcome) -> "RunSummary":
        """Return a new summary with the outcome appended."""
        return self.model_copy(update={
            "results": [*self.results, outcome],
            "processed_count": self.processed_count + (1 if outcome.consumed_budget else 0),
        })

    def stopped(self) -> "RunSummary":
        return self.model_copy(update={"stopped_at_cap": True})

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for r in self.results if r.status == status.value)

    def to_response(self) -> dict:
        return {
            "success": True,
            "results": [r.model_dump(exclude_none=True) for r in self.results],
            "total": len(self.results),
            "summary": {
                "analyzed": self.count(OutcomeStatus.SUCCESS),
                "skipped": self.count(OutcomeStatus.SKIPPED),
                "no_cases": self.count(OutcomeStatus.NO_CASES),
                "failed": self.count(OutcomeStatus.FAILED),
                "snapshot_error": self.count(OutcomeStatus.SNAPSHOT_ERROR),
            },
            "stopped_at_cap": self.stopped_at_cap,
        }
