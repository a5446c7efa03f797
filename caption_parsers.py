"""
Subtitle body parsers.

Each parser takes the raw body text and returns:
- None when the body is not in its format, so the next parser can try it;
- a list of TranscriptSegment (possibly empty) when it is;
- raises CaptionParseError when the body is in its format but malformed.

parse_caption_body() runs PARSER_CASCADE in order and stops at the first
non-empty result. Supporting another serialization means appending a parser.
"""

import html
import json
import re
import xml.etree.ElementTree as ET
from typing import Any, Callable, Iterable, List, Optional, Sequence

from log_events import evt
from transcript_models import CaptionParseError, TranscriptSegment

Segments = List[TranscriptSegment]
CaptionParser = Callable[[str], Optional[Segments]]

_TIMESTAMP = r"(?:\d+:)?\d{1,2}:\d{2}(?:[.,]\d{1,3})?"
CUE_TIMING_RE = re.compile(rf"^\s*({_TIMESTAMP})\s*-->\s*({_TIMESTAMP})(?:\s.*)?$")
INLINE_TAG_RE = re.compile(r"<[^>]+>")
XML_ROOTS = {"transcript", "timedtext", "tt"}


def normalize_text(text: Optional[str]) -> str:
    """Unescape entities (twice, for double-escaped bodies) and collapse whitespace."""
    if not text:
        return ""
    unescaped = html.unescape(html.unescape(text))
    return " ".join(unescaped.split())


def parse_timestamp(value: str) -> float:
    """
    Convert a caption timestamp to seconds.

    Accepts hh:mm:ss.mmm, mm:ss.mmm, "Nms", "Ns" and bare seconds.
    A comma may stand in for the decimal point. Raises ValueError otherwise.
    """
    raw = (value or "").strip()
    if not raw:
        raise ValueError("empty timestamp")

    if raw.endswith("ms"):
        return float(raw[:-2]) / 1000.0
    if raw.endswith("s"):
        return float(raw[:-1])

    raw = raw.replace(",", ".")
    if ":" in raw:
        parts = raw.split(":")
        if len(parts) == 3:
            hours, minutes, seconds = parts
        elif len(parts) == 2:
            hours, minutes, seconds = "0", parts[0], parts[1]
        else:
            raise ValueError(f"unsupported timestamp: {value!r}")
        return int(hours) * 3600 + int(minutes) * 60 + float(seconds)

    return float(raw)


def _make_segment(text: str, start: float, duration: float) -> Optional[TranscriptSegment]:
    clean = normalize_text(text)
    if not clean:
        return None
    return TranscriptSegment(
        text=clean,
        start_seconds=max(0.0, start),
        duration_seconds=max(0.0, duration),
    )


def _finalize(segments: Iterable[TranscriptSegment]) -> Segments:
    # sorted() is stable, so cues sharing a start keep their source order
    return sorted(segments, key=lambda s: s.start_seconds)


# --- JSON events (fmt=json3) ---

def parse_json3(raw: str) -> Optional[Segments]:
    """Parse {"events": [{"tStartMs", "dDurationMs", "segs": [{"utf8"}]}]}."""
    body = (raw or "").lstrip("\ufeff").strip()
    if not body.startswith("{"):
        return None

    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise CaptionParseError("json3", f"invalid JSON: {e}")

    if not isinstance(data, dict) or not isinstance(data.get("events"), list):
        return None

    segments = []
    for event in data["events"]:
        if not isinstance(event, dict) or not event.get("segs"):
            continue
        text = "".join(seg.get("utf8", "") for seg in event["segs"] if isinstance(seg, dict))
        try:
            start = float(event.get("tStartMs", 0)) / 1000.0
            duration = float(event.get("dDurationMs", 0)) / 1000.0
        except (TypeError, ValueError) as e:
            raise CaptionParseError("json3", f"bad event timing: {e}")
        segment = _make_segment(text, start, duration)
        if segment:
            segments.append(segment)

    return _finalize(segments)


# --- XML dialects (srv1 <text>, srv3 <p t d>, TTML <p begin end>) ---

def _local_name(tag: Any) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _element_text(elem: ET.Element) -> str:
    """Concatenate text of elem and its children, turning <br/> into a space."""
    parts = [elem.text or ""]
    for child in elem:
        if _local_name(child.tag) == "br":
            parts.append(" ")
        else:
            parts.append(_element_text(child))
        parts.append(child.tail or "")
    return "".join(parts)


def _xml_timing(elem: ET.Element) -> Optional[tuple]:
    """Return (start, duration) in seconds for a timed element, or None."""
    tag = _local_name(elem.tag)
    attrs = elem.attrib

    if tag == "text" and "start" in attrs:
        return float(attrs["start"]), float(attrs.get("dur", 0) or 0)

    if tag == "p":
        if "t" in attrs:
            return float(attrs["t"]) / 1000.0, float(attrs.get("d", 0) or 0) / 1000.0
        if "begin" in attrs:
            start = parse_timestamp(attrs["begin"])
            if "end" in attrs:
                return start, parse_timestamp(attrs["end"]) - start
            if "dur" in attrs:
                return start, parse_timestamp(attrs["dur"])
            return start, 0.0

    return None


def parse_timed_xml(raw: str) -> Optional[Segments]:
    body = (raw or "").lstrip("\ufeff").strip()
    if not body.startswith("<"):
        return None
    head = body[:64].lower()
    if head.startswith("<!doctype html") or head.startswith("<html"):
        return None

    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise CaptionParseError("xml", f"invalid XML: {e}")

    segments = []
    matched = False
    for elem in root.iter():
        try:
            timing = _xml_timing(elem)
        except ValueError as e:
            raise CaptionParseError("xml", f"bad timing on <{_local_name(elem.tag)}>: {e}")
        if timing is None:
            continue
        matched = True
        segment = _make_segment(_element_text(elem), *timing)
        if segment:
            segments.append(segment)

    if not matched and _local_name(root.tag) not in XML_ROOTS:
        return None

    return _finalize(segments)


# --- Line-based cue sheets (WebVTT, SRT) ---

def parse_webvtt(raw: str) -> Optional[Segments]:
    lines = (raw or "").lstrip("\ufeff").replace("\r\n", "\n").replace("\r", "\n").split("\n")

    has_header = bool(lines) and lines[0].strip().startswith("WEBVTT")
    if not has_header and not any(CUE_TIMING_RE.match(line) for line in lines):
        return None

    segments = []
    i = 0
    while i < len(lines):
        line = lines[i].strip()
        if "-->" not in line:
            i += 1
            continue

        match = CUE_TIMING_RE.match(line)
        if not match:
            raise CaptionParseError("webvtt", f"bad cue timing line: {line[:60]!r}")
        try:
            start = parse_timestamp(match.group(1))
            end = parse_timestamp(match.group(2))
        except ValueError as e:
            raise CaptionParseError("webvtt", str(e))

        i += 1
        text_lines = []
        while i < len(lines) and lines[i].strip():
            text_lines.append(lines[i].strip())
            i += 1

        segment = _make_segment(INLINE_TAG_RE.sub("", " ".join(text_lines)), start, end - start)
        if segment:
            segments.append(segment)

    return _finalize(segments)


PARSER_CASCADE: Sequence[CaptionParser] = (parse_json3, parse_timed_xml, parse_webvtt)


def parse_caption_body(raw: str, parsers: Sequence[CaptionParser] = PARSER_CASCADE) -> Optional[Segments]:
    """
    Run parsers in order and return the first non-empty result.

    Returns None when no parser recognized the body. Raises the first
    CaptionParseError when a parser recognized the body as malformed and
    no later parser produced segments.
    """
    failures = []
    for parser in parsers:
        try:
            segments = parser(raw)
        except CaptionParseError as e:
            evt("caption_parser_failed", parser=e.parser, detail=e.reason[:120])
            failures.append(e)
            continue
        if segments:
            evt("caption_parser_matched", parser=parser.__name__, segments_count=len(segments))
            return segments

    if failures:
        raise failures[0]
    return None


# --- get_transcript responses ---

def _runs_text(node: Any) -> str:
    if not isinstance(node, dict):
        return ""
    if "simpleText" in node:
        return node.get("simpleText") or ""
    return "".join((r or {}).get("text", "") for r in node.get("runs") or [])


def _iter_renderers(node: Any, key: str):
    if isinstance(node, dict):
        for k, v in node.items():
            if k == key and isinstance(v, dict):
                yield v
            else:
                yield from _iter_renderers(v, key)
    elif isinstance(node, list):
        for item in node:
            yield from _iter_renderers(item, key)


def parse_transcript_renderer(data: Any) -> Optional[Segments]:
    """
    Extract segments from a get_transcript response.

    Handles transcriptSegmentRenderer (startMs/endMs, snippet runs) and the
    older transcriptCueRenderer (startOffsetMs/durationMs, cue text) wherever
    they appear in the response tree. Returns None when neither is present.
    """
    if not isinstance(data, dict):
        return None

    segments = []
    found = False

    for renderer in _iter_renderers(data, "transcriptSegmentRenderer"):
        found = True
        try:
            start_ms = float(renderer.get("startMs", 0) or 0)
            end_ms = float(renderer.get("endMs", start_ms) or start_ms)
        except (TypeError, ValueError) as e:
            raise CaptionParseError("transcript_renderer", f"bad segment timing: {e}")
        segment = _make_segment(_runs_text(renderer.get("snippet")), start_ms / 1000.0, (end_ms - start_ms) / 1000.0)
        if segment:
            segments.append(segment)

    if not found:
        for renderer in _iter_renderers(data, "transcriptCueRenderer"):
            found = True
            try:
                start = float(renderer.get("startOffsetMs", 0) or 0) / 1000.0
                duration = float(renderer.get("durationMs", 0) or 0) / 1000.0
            except (TypeError, ValueError) as e:
                raise CaptionParseError("transcript_renderer", f"bad cue timing: {e}")
            segment = _make_segment(_runs_text(renderer.get("cue")), start, duration)
            if segment:
                segments.append(segment)

    if not found:
        return None

    evt("transcript_renderer_parsed", segments_count=len(segments))
    return _finalize(segments)
