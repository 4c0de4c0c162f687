from pydantic import BaseModel


class HealthOut(BaseModel):
    status: str = "ok"
    uptime_seconds: float
    loop_count: int
    items_processed: int
    items_failed: int
    last_batch_size: int
    last_batch_duration_ms: float
    stale_reset_count: int
    last_batch_at: float | None = None
    background_tasks_pending: int = 0


class TimingStatsOut(BaseModel):
    count: int
    avg_ms: float
    p95_ms: float
    min_ms: float
    max_ms: float


class WindowReportOut(BaseModel):
    window_seconds: float
    inbound_per_min: float
    matches_per_min: float
    drain_per_min: float
    inbound_processing: TimingStatsOut
    matching: TimingStatsOut


class ReadyOut(BaseModel):
    status: str
    error: str | None = None
