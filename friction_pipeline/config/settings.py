# friction_pipeline/config/settings.py
from typing import Dict, List
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Get project root (2 levels up from this file)
PROJECT_ROOT = Path(__file__).parent.parent.parent


class PipelineConfig(BaseModel):
    """Caps, backoff schedule and scoring constants for one analysis run."""

    # Run budget
    run_cap: int = 50
    record_cap: int = 2000
    lookback_days: int = 90
    portfolio_types: List[str] = ["top_25_edge", "top_25_sitelink"]
    source_type: str = "salesforce_case"

    # Classification
    max_text_chars: int = 2000
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    inter_call_delay_seconds: float = 0.2
    default_confidence: float = Field(0.7, ge=0.0, le=1.0)

    # Scoring
    severity_weights: Dict[int, int] = {1: 1, 2: 2, 3: 4, 4: 8, 5: 16}
    high_severity_threshold: int = 4
    top_themes_limit: int = 5

    # Trend & alerts
    trend_threshold: int = 5
    high_friction_threshold: int = 70
    critical_severity_count: int = 3
    trending_worse_delta: int = 10
    alert_ttl_days: int = 7


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # OpenAI
    openai_api_key: str
    openai_llm_model: str = "gpt-4o-mini"
    openai_timeout_seconds: float = 60.0

    # PostgreSQL (friction store)
    postgres_host: str
    postgres_port: int = 5432
    postgres_database: str
    postgres_username: str
    postgres_password: str
    postgres_sslmode: str = "require"

    # Salesforce
    salesforce_client_id: str = ""
    salesforce_client_secret: str = ""
    salesforce_token_url: str = "https://login.salesforce.com/services/oauth2/token"
    salesforce_api_version: str = "v59.0"
    salesforce_timeout_seconds: float = 30.0

    # Pipeline config
    pipeline: PipelineConfig = PipelineConfig()
