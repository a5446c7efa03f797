"""
Core logging infrastructure for the caption pipeline.

Provides minimal JSON logging with per-task session context,
rate limiting, and third-party library noise suppression.
"""

import json
import logging
import threading
import time
from collections import defaultdict, deque
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Deque, Dict, Optional, Set


# Per-task context; both realms share one event loop, so thread-locals would leak across sessions
_session_ctx: ContextVar[Optional[Dict[str, str]]] = ContextVar("caption_session_ctx", default=None)

CONTEXT_FIELDS = ('video_id', 'session_id', 'correlation_id')

# Extras that always lead, in this order, right after ts/lvl and the session context
LEADING_FIELDS = ('stage', 'event', 'outcome', 'dur_ms', 'detail', 'attempt', 'profile', 'strategy', 'action')

# Attributes every LogRecord carries; anything else on a record came in via extra=
_RECORD_ATTRS = frozenset(logging.LogRecord('', 0, '', 0, '', (), None).__dict__) | {'message', 'asctime', 'taskName'}

PLAIN_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def set_session_ctx(video_id: str = None, session_id: str = None, correlation_id: str = None):
    """
    Set context for log correlation in the current task.

    Args:
        video_id: Video identifier being processed
        session_id: Extraction session identifier
        correlation_id: RPC correlation id of the in-flight request
    """
    context = dict(_session_ctx.get() or {})

    if video_id is not None:
        context['video_id'] = video_id
    if session_id is not None:
        context['session_id'] = session_id
    if correlation_id is not None:
        context['correlation_id'] = correlation_id

    _session_ctx.set(context)


def clear_session_ctx():
    """Clear the current task's context."""
    _session_ctx.set({})


def get_session_ctx() -> Dict[str, str]:
    """Get the current task's context."""
    return dict(_session_ctx.get() or {})


def _iso_millis(created: float) -> str:
    dt = datetime.fromtimestamp(created, tz=timezone.utc)
    return dt.strftime('%Y-%m-%dT%H:%M:%S') + f'.{dt.microsecond // 1000:03d}Z'


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line.

    Key order: ts, lvl, session context (video_id, session_id, correlation_id),
    LEADING_FIELDS, then any other extras in the order they were passed. A
    plain message becomes `detail` when the record has none of its own.
    """

    def format(self, record: logging.LogRecord) -> str:
        try:
            log_data = {'ts': _iso_millis(record.created), 'lvl': record.levelname}
            context = get_session_ctx()
            for key in CONTEXT_FIELDS:
                if key in context:
                    log_data[key] = context[key]

            extras = {
                key: value for key, value in record.__dict__.items()
                if key not in _RECORD_ATTRS and not key.startswith('_')
                and value is not None and not callable(value)
            }
            for key in LEADING_FIELDS:
                if key in extras:
                    log_data[key] = extras.pop(key)
            for key, value in extras.items():
                log_data.setdefault(key, value)

            message = record.getMessage()
            if 'detail' not in log_data and message:
                log_data['detail'] = message

            return json.dumps(log_data, separators=(',', ':'), ensure_ascii=False, default=str)

        except Exception:
            fallback = {'ts': datetime.now(timezone.utc).isoformat(), 'lvl': record.levelname, 'detail': str(record.msg)}
            return json.dumps(fallback, default=str)


class RateLimitFilter(logging.Filter):
    """
    Caps how often one event may repeat.

    Records are keyed on level plus event name (or message prefix for plain
    records). Within a sliding window the first `per_key` records pass, the
    next one passes once tagged "[suppressed]", and the rest are dropped until
    the window slides.
    """

    def __init__(self, per_key: int = 5, window_sec: int = 60):
        super().__init__()
        self.per_key = per_key
        self.window_sec = window_sec
        self.counts: Dict[str, Deque[float]] = defaultdict(deque)
        self.suppressed: Set[str] = set()
        self._lock = threading.Lock()

    @staticmethod
    def _key(record: logging.LogRecord) -> str:
        event = getattr(record, 'event', None)
        if event:
            return f"{record.levelname}:evt:{event}"
        return f"{record.levelname}:{record.getMessage()[:100]}"

    def filter(self, record: logging.LogRecord) -> bool:
        key = self._key(record)
        now = time.time()

        with self._lock:
            seen = self.counts[key]
            while seen and seen[0] <= now - self.window_sec:
                seen.popleft()

            if len(seen) < self.per_key:
                seen.append(now)
                self.suppressed.discard(key)
                return True

            if key in self.suppressed:
                return False

            self.suppressed.add(key)

        record.msg = f"{record.getMessage()} [suppressed]"
        record.args = ()
        return True


def configure_logging(log_level: str = "INFO", use_json: bool = True) -> logging.Logger:
    """
    Install a single stderr handler on the root logger.

    JSON output gets the rate limiter; plain output is meant for a terminal and
    passes everything through.
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(getattr(logging, str(log_level).upper(), logging.INFO))

    handler = logging.StreamHandler()
    if use_json:
        handler.setFormatter(JsonFormatter())
        handler.addFilter(RateLimitFilter())
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT))
    root_logger.addHandler(handler)

    _suppress_library_noise()
    return root_logger


def _suppress_library_noise():
    """Suppress verbose logging from the browser driver and HTTP stack."""
    for library in ('playwright', 'asyncio', 'httpx', 'httpcore'):
        logging.getLogger(library).setLevel(logging.WARNING)


def get_logger(name: str = None) -> logging.Logger:
    return logging.getLogger(name)
