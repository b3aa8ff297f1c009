"""Application configuration."""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    DRY_RUN: bool = False

    # Record store
    STORE_BASE_URL: str = "http://localhost:8080/crm/v3"
    STORE_API_TOKEN: str = ""
    STORE_TIMEOUT_SECONDS: float = 30.0
    STORE_PAGE_SIZE: int = 100
    STORE_READ_RETRIES: int = 3
    STORE_RETRY_INTERVAL_SECONDS: float = 1.0
    SCHEMA_NEGOTIATION_MAX_ATTEMPTS: int = 5

    # Schedule window
    FORECAST_HARD_CAP: int = 24
    FORECAST_HORIZON_YEARS: int = 2
    BILLING_TZ: str = "America/Montevideo"

    # Manual pipeline
    MANUAL_PIPELINE_ID: str = "billing_manual"
    MANUAL_FORECAST_25_STAGE: str = "manual_forecast_25"
    MANUAL_FORECAST_50_STAGE: str = "manual_forecast_50"
    MANUAL_FORECAST_75_STAGE: str = "manual_forecast_75"
    MANUAL_FORECAST_95_STAGE: str = "manual_forecast_95"
    MANUAL_READY_STAGE: str = "manual_ready"
    MANUAL_INVOICED_STAGE: str = "manual_invoiced"
    MANUAL_CANCELLED_STAGE: str = "manual_cancelled"

    # Automated pipeline
    AUTOMATED_PIPELINE_ID: str = "billing_automated"
    AUTOMATED_FORECAST_25_STAGE: str = "automated_forecast_25"
    AUTOMATED_FORECAST_50_STAGE: str = "automated_forecast_50"
    AUTOMATED_FORECAST_75_STAGE: str = "automated_forecast_75"
    AUTOMATED_FORECAST_95_STAGE: str = "automated_forecast_95"
    AUTOMATED_READY_STAGE: str = "automated_ready"
    AUTOMATED_INVOICED_STAGE: str = "automated_invoiced"
    AUTOMATED_CANCELLED_STAGE: str = "automated_cancelled"

    # Parent progress -> forecast bucket (JSON in the environment)
    PROGRESS_BUCKETS: Dict[str, str] = {
        "appointmentscheduled": "25",
        "qualifiedtobuy": "25",
        "presentationscheduled": "25",
        "decisionmakerboughtin": "50",
        "contractsent": "75",
        "closedwon": "95",
    }

    # Parent progress values that mean the deal was lost (JSON in the environment)
    LOST_PROGRESS_STAGES: List[str] = ["closedlost"]

    # Invoices in these stages do not count as billed
    INVOICE_CANCELLED_STAGES: List[str] = ["cancelled"]

    # Batch runner
    BATCH_CONCURRENCY: int = 4

    # Error reporting
    ERROR_REPORT_MAX_LINES: int = 30
    ERROR_REPORT_MAX_CHARS: int = 6500

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True
    )


@dataclass(frozen=True)
class PipelineStages:
    """Stage ids of one forecast pipeline."""
    pipeline_id: str
    forecast: Dict[str, str]  # bucket -> stage id
    ready: str
    invoiced: str
    cancelled: str


@dataclass(frozen=True)
class ForecastStages:
    """
    Resolved pipeline/stage configuration.

    Built once from Settings and handed to every component that needs to
    tell forecast stages from protected ones or pick a target stage.
    """
    manual: PipelineStages
    automated: PipelineStages
    progress_buckets: Dict[str, str] = field(default_factory=dict)
    lost_progress: FrozenSet[str] = frozenset()

    @classmethod
    def from_settings(cls, s: Settings) -> "ForecastStages":
        return cls(
            manual=PipelineStages(
                pipeline_id=s.MANUAL_PIPELINE_ID,
                forecast={
                    "25": s.MANUAL_FORECAST_25_STAGE,
                    "50": s.MANUAL_FORECAST_50_STAGE,
                    "75": s.MANUAL_FORECAST_75_STAGE,
                    "95": s.MANUAL_FORECAST_95_STAGE,
                },
                ready=s.MANUAL_READY_STAGE,
                invoiced=s.MANUAL_INVOICED_STAGE,
                cancelled=s.MANUAL_CANCELLED_STAGE,
            ),
            automated=PipelineStages(
                pipeline_id=s.AUTOMATED_PIPELINE_ID,
                forecast={
                    "25": s.AUTOMATED_FORECAST_25_STAGE,
                    "50": s.AUTOMATED_FORECAST_50_STAGE,
                    "75": s.AUTOMATED_FORECAST_75_STAGE,
                    "95": s.AUTOMATED_FORECAST_95_STAGE,
                },
                ready=s.AUTOMATED_READY_STAGE,
                invoiced=s.AUTOMATED_INVOICED_STAGE,
                cancelled=s.AUTOMATED_CANCELLED_STAGE,
            ),
            progress_buckets={k.lower(): v for k, v in s.PROGRESS_BUCKETS.items()},
            lost_progress=frozenset(p.strip().lower() for p in s.LOST_PROGRESS_STAGES),
        )

    def pipeline(self, automated: bool) -> PipelineStages:
        return self.automated if automated else self.manual

    def by_pipeline_id(self, pipeline_id: Optional[str]) -> Optional[PipelineStages]:
        if pipeline_id == self.manual.pipeline_id:
            return self.manual
        if pipeline_id == self.automated.pipeline_id:
            return self.automated
        return None

    @property
    def forecast_stage_ids(self) -> FrozenSet[str]:
        return frozenset(self.manual.forecast.values()) | frozenset(
            self.automated.forecast.values()
        )

    def is_forecast_stage(self, stage: Optional[str]) -> bool:
        """True while a record is still a forecast placeholder."""
        if not stage:
            return False
        return str(stage) in self.forecast_stage_ids

    def is_ready_stage(self, stage: Optional[str]) -> bool:
        return bool(stage) and stage in (self.manual.ready, self.automated.ready)

    def bucket_for_progress(self, progress: Optional[str]) -> Optional[str]:
        if not progress:
            return None
        return self.progress_buckets.get(str(progress).strip().lower())

    def target_stage(self, progress: Optional[str], automated: bool) -> Optional[str]:
        """
        Forecast stage an editable record should sit in.

        Pure function of the parent's progress and the automated flag.
        Returns None when the progress value has no forecast bucket.
        """
        bucket = self.bucket_for_progress(progress)
        if bucket is None:
            return None
        return self.pipeline(automated).forecast.get(bucket)

    def cancelled_stage(self, pipeline_id: Optional[str]) -> str:
        """Cancelled stage for a pipeline; unknown pipelines fall back to manual."""
        stages = self.by_pipeline_id(pipeline_id) or self.manual
        return stages.cancelled

    def ready_stage(self, pipeline_id: Optional[str]) -> str:
        stages = self.by_pipeline_id(pipeline_id) or self.manual
        return stages.ready


settings = Settings()
