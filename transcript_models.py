"""
Shared data model for the caption pipeline.

Everything that crosses the realm boundary is expressed here together with its
wire (camelCase dict) form, since the message bus only carries plain data.
"""

import asyncio
import re
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import httpx


class ErrorKind(str, Enum):
    """Typed failure reasons carried in StrategyOutcome and RPC payloads."""

    NO_IDENTIFIER = "NoIdentifier"
    NO_CONFIG = "NoConfig"
    NO_CONTINUATION_TOKEN = "NoContinuationToken"
    EMPTY_UPSTREAM_RESPONSE = "EmptyUpstreamResponse"
    NETWORK_ERROR = "NetworkError"
    PARSE_FAILURE = "ParseFailure"
    TIMEOUT = "Timeout"

    @classmethod
    def from_wire(cls, value: Optional[str]) -> Optional['ErrorKind']:
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return cls.EMPTY_UPSTREAM_RESPONSE


class CaptionParseError(Exception):
    """A body matched a parser's format but could not be parsed."""

    def __init__(self, parser: str, reason: str):
        super().__init__(f"{parser}: {reason}")
        self.parser = parser
        self.reason = reason


class UpstreamError(Exception):
    """An upstream endpoint call failed or returned nothing usable."""

    def __init__(self, kind: ErrorKind, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


def classify_exception(error: BaseException) -> ErrorKind:
    """Map an exception raised inside a stage to the ErrorKind it reports."""
    if isinstance(error, UpstreamError):
        return error.kind
    if isinstance(error, CaptionParseError):
        return ErrorKind.PARSE_FAILURE
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT
    if isinstance(error, (httpx.HTTPError, OSError)):
        return ErrorKind.NETWORK_ERROR
    if isinstance(error, (ValueError, KeyError, TypeError)):
        return ErrorKind.PARSE_FAILURE
    return ErrorKind.EMPTY_UPSTREAM_RESPONSE


@dataclass(frozen=True)
class TranscriptSegment:
    """One timed unit of transcript text."""

    text: str
    start_seconds: float = 0.0
    duration_seconds: float = 0.0

    def __post_init__(self):
        if not self.text or self.text != self.text.strip():
            raise ValueError("segment text must be non-empty and trimmed")
        if self.start_seconds < 0 or self.duration_seconds < 0:
            raise ValueError("segment timing must be non-negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "startSeconds": self.start_seconds,
            "durationSeconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TranscriptSegment':
        return cls(
            text=str(data["text"]).strip(),
            start_seconds=float(data.get("startSeconds", 0) or 0),
            duration_seconds=float(data.get("durationSeconds", 0) or 0),
        )


def new_correlation_id() -> str:
    return secrets.token_hex(16)


@dataclass(frozen=True)
class ExtractionRequest:
    """A single extraction attempt; build a new one for every attempt."""

    video_identifier: str
    correlation_id: str = field(default_factory=new_correlation_id)


@dataclass(frozen=True)
class CaptionTrackDescriptor:
    """A caption track as listed by the player metadata."""

    base_url: str
    language_code: str
    kind: str = ""
    name: str = ""
    source: str = "player"

    FORCED_FORMATS = ("json3", "srv3", "vtt")

    @property
    def is_asr(self) -> bool:
        return self.kind.lower() == "asr"

    def with_format(self, fmt: str) -> str:
        """Return base_url with its fmt query parameter replaced by fmt."""
        parsed = urlparse(self.base_url)
        query = parse_qs(parsed.query, keep_blank_values=True)
        query["fmt"] = [fmt]
        return urlunparse(parsed._replace(query=urlencode(query, doseq=True)))

    def format_variants(self) -> List[str]:
        """Native URL first, then each forced format; duplicates dropped."""
        urls = [self.base_url]
        for fmt in self.FORCED_FORMATS:
            url = self.with_format(fmt)
            if url not in urls:
                urls.append(url)
        return urls

    @classmethod
    def from_player_track(cls, track: Dict[str, Any], source: str = "player") -> Optional['CaptionTrackDescriptor']:
        base_url = track.get("baseUrl") or ""
        if not base_url:
            return None
        name = track.get("name") or {}
        if isinstance(name, dict):
            name = name.get("simpleText") or "".join(r.get("text", "") for r in name.get("runs", []))
        if base_url.startswith("/"):
            base_url = "https://www.youtube.com" + base_url
        return cls(
            base_url=base_url,
            language_code=track.get("languageCode") or "",
            kind=track.get("kind") or "",
            name=name or track.get("languageCode") or "",
            source=source,
        )


def select_caption_track(tracks: Sequence[CaptionTrackDescriptor], locale: str) -> Optional[CaptionTrackDescriptor]:
    """
    Pick the track whose language matches locale, else the first track.

    An exact language code match wins over a primary-subtag match
    ("en" matches "en-US"), and a human-made track wins over ASR within
    the same tier.
    """
    if not tracks:
        return None

    wanted = (locale or "").lower()
    primary = wanted.split("-")[0]

    exact = [t for t in tracks if t.language_code.lower() == wanted]
    loose = [t for t in tracks if t.language_code.lower().split("-")[0] == primary]

    for tier in (exact, loose):
        if tier:
            return next((t for t in tier if not t.is_asr), tier[0])

    return tracks[0]


@dataclass(frozen=True)
class StrategyOutcome:
    """Result of one strategy; items and error are never both set."""

    items: Optional[List[TranscriptSegment]] = None
    error: Optional[ErrorKind] = None

    def __post_init__(self):
        if self.items is not None and self.error is not None:
            raise ValueError("StrategyOutcome cannot carry both items and an error")

    @classmethod
    def success(cls, items: Sequence[TranscriptSegment]) -> 'StrategyOutcome':
        return cls(items=list(items), error=None)

    @classmethod
    def failure(cls, error: ErrorKind) -> 'StrategyOutcome':
        return cls(items=None, error=error)

    @property
    def ok(self) -> bool:
        return bool(self.items)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "items": [s.to_dict() for s in self.items] if self.items is not None else None,
            "error": self.error.value if self.error is not None else None,
        }

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> 'StrategyOutcome':
        """Rebuild an outcome from an RPC payload; None means the call timed out."""
        if payload is None:
            return cls.failure(ErrorKind.TIMEOUT)
        raw_items = payload.get("items")
        error = ErrorKind.from_wire(payload.get("error"))
        if not raw_items:
            return cls.failure(error or ErrorKind.EMPTY_UPSTREAM_RESPONSE)
        try:
            items = [TranscriptSegment.from_dict(item) for item in raw_items]
        except (KeyError, TypeError, ValueError):
            return cls.failure(ErrorKind.PARSE_FAILURE)
        return cls.success(items)


@dataclass(frozen=True)
class TranscriptResult:
    """What the pipeline hands to the delivery relay."""

    transcript: str
    segments: List[TranscriptSegment]
    sufficient: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transcript": self.transcript,
            "segments": [s.to_dict() for s in self.segments],
            "sufficient": self.sufficient,
        }

    @classmethod
    def empty(cls) -> 'TranscriptResult':
        return cls(transcript="", segments=[], sufficient=False)


def build_transcript_result(segments: Optional[Sequence[TranscriptSegment]], min_chars: int = 50) -> TranscriptResult:
    """Join segment texts with spaces; sufficient only above min_chars."""
    segments = list(segments or [])
    transcript = " ".join(s.text for s in segments)
    return TranscriptResult(
        transcript=transcript,
        segments=segments,
        sufficient=len(transcript) > min_chars,
    )


_VIDEO_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{11}$")
_VIDEO_URL_PATTERNS = [
    re.compile(r"(?:https?://)?(?:www\.|m\.)?youtube\.com/watch\?(?:.*&)?v=([a-zA-Z0-9_-]{11})"),
    re.compile(r"(?:https?://)?(?:www\.)?youtu\.be/([a-zA-Z0-9_-]{11})"),
    re.compile(r"(?:https?://)?(?:www\.|m\.)?youtube\.com/embed/([a-zA-Z0-9_-]{11})"),
    re.compile(r"(?:https?://)?(?:www\.|m\.)?youtube\.com/v/([a-zA-Z0-9_-]{11})"),
    re.compile(r"(?:https?://)?(?:www\.|m\.)?youtube\.com/shorts/([a-zA-Z0-9_-]{11})"),
    re.compile(r"(?:https?://)?(?:www\.|m\.)?youtube\.com/live/([a-zA-Z0-9_-]{11})"),
]


def extract_video_id(url_or_id: Optional[str]) -> Optional[str]:
    """Resolve a video identifier from a URL or a bare id; None if unresolvable."""
    if not url_or_id:
        return None
    candidate = url_or_id.strip()
    if _VIDEO_ID_RE.match(candidate):
        return candidate
    for pattern in _VIDEO_URL_PATTERNS:
        match = pattern.search(candidate)
        if match:
            return match.group(1)
    return None
