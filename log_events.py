"""
Event helpers for the caption pipeline.

Every pipeline step reports through evt() so that records carry an `event`
field that JsonFormatter places right after the session context. Failures
that are handled rather than raised go through error_evt(), and strategy
attempts are bracketed by StageTimer.
"""

import logging
import time
from typing import Any, Dict, Optional

# Events go through the root logger so JsonFormatter sees every one
logger = logging.getLogger()

DETAIL_LIMIT = 120


def evt(event: str, level: int = logging.INFO, **fields) -> None:
    """
    Emit a structured event.

    Example:
        evt("rpc_request_posted", action="GET_TRANSCRIPT", correlation_id="9f2c...")
        evt("relay_unacknowledged", level=logging.WARNING, posts=30)
    """
    event_data = {"event": event}
    event_data.update(fields)
    logger.log(level, "", extra=event_data)


def error_evt(event: str, error: BaseException, **fields) -> None:
    """Report a handled exception: its type plus a truncated message, at WARNING."""
    evt(event,
        level=logging.WARNING,
        error_type=type(error).__name__,
        detail=str(error)[:DETAIL_LIMIT],
        **fields)


class StageTimer:
    """
    Brackets one strategy attempt with stage_start / stage_result events.

    `outcome` defaults to "success" and becomes "error" when the block raises;
    callers that return a failure without raising set it themselves. Fields
    passed to note() are added to stage_result.

    Example:
        with StageTimer("caption_tracks", video_id="dQw4w9WgXcQ") as timer:
            outcome = await extractor.run_caption_fallback(video_id)
            timer.note(segments_count=len(outcome.items))
    """

    def __init__(self, stage: str, **context_fields):
        self.stage = stage
        self.context_fields = context_fields
        self.result_fields: Dict[str, Any] = {}
        self.start_time: Optional[float] = None
        self.outcome: Optional[str] = None

    def note(self, **fields) -> None:
        self.result_fields.update(fields)

    @property
    def elapsed_ms(self) -> int:
        if self.start_time is None:
            return 0
        return int((time.monotonic() - self.start_time) * 1000)

    def __enter__(self):
        self.start_time = time.monotonic()
        evt("stage_start", stage=self.stage, **self.context_fields)
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        fields = dict(self.context_fields)
        fields.update(self.result_fields)
        fields["stage"] = self.stage
        fields["dur_ms"] = self.elapsed_ms

        if exc_type is None:
            fields["outcome"] = self.outcome or "success"
            evt("stage_result", **fields)
        else:
            fields["outcome"] = "error"
            fields["detail"] = f"{exc_type.__name__}: {str(exc_value)[:200]}"
            evt("stage_result", level=logging.ERROR, **fields)

        return False
