from datetime import datetime

from pydantic import BaseModel

from chairtime.services.reminder_service import FullRunResult, WindowResult


class WindowSummary(BaseModel):
    kind: str
    window_start: datetime
    window_end: datetime
    selected: int
    sent: int
    failed: int
    skipped: int
    errors: list[str]

    @classmethod
    def from_result(cls, result: WindowResult) -> "WindowSummary":
        return cls(
            kind=result.kind.value,
            window_start=result.window.start,
            window_end=result.window.end,
            selected=result.selected,
            sent=result.sent,
            failed=result.failed,
            skipped=result.skipped,
            errors=result.errors,
        )


class ReminderRunResponse(BaseModel):
    timestamp: datetime
    total_selected: int
    total_sent: int
    total_failed: int
    total_skipped: int
    windows: list[WindowSummary]

    @classmethod
    def from_result(cls, result: FullRunResult, now: datetime) -> "ReminderRunResponse":
        return cls(
            timestamp=now,
            total_selected=result.selected,
            total_sent=result.sent,
            total_failed=result.failed,
            total_skipped=result.skipped,
            windows=[WindowSummary.from_result(w) for w in result.windows],
        )
