#!/usr/bin/env python3
"""
Tests for the shared data model: segments, outcomes, track selection,
result building and video id resolution.
"""

import asyncio
import os
import sys
import unittest

import httpx

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from transcript_models import (
    CaptionParseError,
    CaptionTrackDescriptor,
    ErrorKind,
    ExtractionRequest,
    StrategyOutcome,
    TranscriptResult,
    TranscriptSegment,
    UpstreamError,
    build_transcript_result,
    classify_exception,
    extract_video_id,
    select_caption_track,
)


class TestTranscriptSegment(unittest.TestCase):

    def test_rejects_empty_or_untrimmed_text(self):
        for text in ("", " padded", "padded "):
            with self.subTest(text=text):
                with self.assertRaises(ValueError):
                    TranscriptSegment(text=text)

    def test_rejects_negative_times(self):
        with self.assertRaises(ValueError):
            TranscriptSegment(text="x", start_seconds=-1)
        with self.assertRaises(ValueError):
            TranscriptSegment(text="x", duration_seconds=-0.5)

    def test_wire_form_uses_camel_case(self):
        segment = TranscriptSegment(text="Hi", start_seconds=1.5, duration_seconds=2.0)
        wire = segment.to_dict()
        self.assertEqual(wire, {"text": "Hi", "startSeconds": 1.5, "durationSeconds": 2.0})
        self.assertEqual(TranscriptSegment.from_dict(wire), segment)


class TestStrategyOutcome(unittest.TestCase):

    def test_items_and_error_are_exclusive(self):
        with self.assertRaises(ValueError):
            StrategyOutcome(items=[TranscriptSegment(text="x")], error=ErrorKind.TIMEOUT)

    def test_empty_items_with_error_rejected(self):
        with self.assertRaises(ValueError):
            StrategyOutcome(items=[], error=ErrorKind.EMPTY_UPSTREAM_RESPONSE)
        self.assertFalse(StrategyOutcome(items=[], error=None).ok)

    def test_constructors(self):
        ok = StrategyOutcome.success([TranscriptSegment(text="x")])
        self.assertTrue(ok.ok)
        self.assertIsNone(ok.error)

        failed = StrategyOutcome.failure(ErrorKind.NO_CONFIG)
        self.assertFalse(failed.ok)
        self.assertEqual(failed.to_payload(), {"items": None, "error": "NoConfig"})

    def test_from_payload(self):
        self.assertEqual(StrategyOutcome.from_payload(None).error, ErrorKind.TIMEOUT)
        self.assertEqual(StrategyOutcome.from_payload({"items": [], "error": None}).error,
                         ErrorKind.EMPTY_UPSTREAM_RESPONSE)
        self.assertEqual(StrategyOutcome.from_payload({"items": None, "error": "NoContinuationToken"}).error,
                         ErrorKind.NO_CONTINUATION_TOKEN)
        self.assertEqual(StrategyOutcome.from_payload({"items": None, "error": "Whatever"}).error,
                         ErrorKind.EMPTY_UPSTREAM_RESPONSE)
        self.assertEqual(StrategyOutcome.from_payload({"items": [{"text": ""}], "error": None}).error,
                         ErrorKind.PARSE_FAILURE)

        outcome = StrategyOutcome.from_payload({
            "items": [{"text": "Hello", "startSeconds": 1, "durationSeconds": 2}],
            "error": None,
        })
        self.assertEqual(outcome.items, [TranscriptSegment(text="Hello", start_seconds=1.0, duration_seconds=2.0)])


class TestErrorClassification(unittest.TestCase):

    def test_classify_exception(self):
        self.assertEqual(classify_exception(UpstreamError(ErrorKind.NO_CONFIG, "x")), ErrorKind.NO_CONFIG)
        self.assertEqual(classify_exception(CaptionParseError("vtt", "bad")), ErrorKind.PARSE_FAILURE)
        self.assertEqual(classify_exception(asyncio.TimeoutError()), ErrorKind.TIMEOUT)
        self.assertEqual(classify_exception(httpx.ConnectError("down")), ErrorKind.NETWORK_ERROR)
        self.assertEqual(classify_exception(KeyError("items")), ErrorKind.PARSE_FAILURE)
        self.assertEqual(classify_exception(RuntimeError("?")), ErrorKind.EMPTY_UPSTREAM_RESPONSE)

    def test_error_kind_from_wire(self):
        self.assertIsNone(ErrorKind.from_wire(None))
        self.assertEqual(ErrorKind.from_wire("Timeout"), ErrorKind.TIMEOUT)


class TestCaptionTracks(unittest.TestCase):

    BASE = "https://www.youtube.com/api/timedtext?v=abc&lang=en"

    def test_format_variants(self):
        track = CaptionTrackDescriptor(base_url=self.BASE, language_code="en")
        urls = track.format_variants()
        self.assertEqual(len(urls), 4)
        self.assertEqual(urls[0], self.BASE)
        self.assertTrue(urls[1].endswith("fmt=json3"))
        self.assertTrue(urls[2].endswith("fmt=srv3"))
        self.assertTrue(urls[3].endswith("fmt=vtt"))

    def test_format_variants_drop_duplicate_of_native(self):
        track = CaptionTrackDescriptor(base_url=self.BASE + "&fmt=srv3", language_code="en")
        urls = track.format_variants()
        self.assertEqual(len(urls), 3)
        self.assertEqual(len(set(urls)), 3)

    def test_from_player_track(self):
        track = CaptionTrackDescriptor.from_player_track({
            "baseUrl": "/api/timedtext?v=abc&lang=ko",
            "languageCode": "ko",
            "kind": "asr",
            "name": {"runs": [{"text": "Korean (auto-generated)"}]},
        })
        self.assertEqual(track.base_url, "https://www.youtube.com/api/timedtext?v=abc&lang=ko")
        self.assertTrue(track.is_asr)
        self.assertEqual(track.name, "Korean (auto-generated)")
        self.assertIsNone(CaptionTrackDescriptor.from_player_track({"languageCode": "en"}))

    def test_select_caption_track(self):
        en_asr = CaptionTrackDescriptor(base_url="u1", language_code="en", kind="asr")
        en_us = CaptionTrackDescriptor(base_url="u2", language_code="en-US")
        ko = CaptionTrackDescriptor(base_url="u3", language_code="ko")
        tracks = [ko, en_asr, en_us]

        self.assertIs(select_caption_track(tracks, "en-US"), en_us)
        self.assertIs(select_caption_track(tracks, "en"), en_asr)
        self.assertIs(select_caption_track(tracks, "en-GB"), en_us)
        self.assertIs(select_caption_track(tracks, "ko"), ko)
        self.assertIs(select_caption_track(tracks, "fr"), ko)
        self.assertIs(select_caption_track([en_asr, ko], "fr"), en_asr)
        self.assertIsNone(select_caption_track([], "en"))


class TestTranscriptResult(unittest.TestCase):

    def test_sufficiency_threshold_is_strict(self):
        fifty = [TranscriptSegment(text="a" * 24), TranscriptSegment(text="b" * 25)]
        result = build_transcript_result(fifty)
        self.assertEqual(len(result.transcript), 50)
        self.assertFalse(result.sufficient)

        fifty_one = fifty + [TranscriptSegment(text="c")]
        self.assertTrue(build_transcript_result(fifty_one).sufficient)

    def test_transcript_joins_with_spaces(self):
        result = build_transcript_result([TranscriptSegment(text="Hello"), TranscriptSegment(text="world")], min_chars=5)
        self.assertEqual(result.transcript, "Hello world")
        self.assertTrue(result.sufficient)
        self.assertEqual(result.to_dict()["segments"][1]["text"], "world")

    def test_empty(self):
        self.assertEqual(TranscriptResult.empty().to_dict(), {"transcript": "", "segments": [], "sufficient": False})
        self.assertFalse(build_transcript_result(None).sufficient)


class TestVideoIdentifiers(unittest.TestCase):

    def test_url_forms(self):
        for url in (
            "dQw4w9WgXcQ",
            "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
            "https://www.youtube.com/watch?feature=share&v=dQw4w9WgXcQ&t=10",
            "https://m.youtube.com/watch?v=dQw4w9WgXcQ",
            "https://youtu.be/dQw4w9WgXcQ?si=abc",
            "https://www.youtube.com/embed/dQw4w9WgXcQ",
            "https://www.youtube.com/v/dQw4w9WgXcQ",
            "https://www.youtube.com/shorts/dQw4w9WgXcQ",
            "https://www.youtube.com/live/dQw4w9WgXcQ",
        ):
            with self.subTest(url=url):
                self.assertEqual(extract_video_id(url), "dQw4w9WgXcQ")

    def test_unresolvable(self):
        self.assertIsNone(extract_video_id(None))
        self.assertIsNone(extract_video_id(""))
        self.assertIsNone(extract_video_id("https://www.youtube.com/feed/subscriptions"))
        self.assertIsNone(extract_video_id("https://example.com/watch"))

    def test_requests_get_fresh_correlation_ids(self):
        first = ExtractionRequest(video_identifier="dQw4w9WgXcQ")
        second = ExtractionRequest(video_identifier="dQw4w9WgXcQ")
        self.assertNotEqual(first.correlation_id, second.correlation_id)
        self.assertEqual(len(first.correlation_id), 32)


if __name__ == "__main__":
    unittest.main()
