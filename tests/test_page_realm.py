#!/usr/bin/env python3
"""
Tests for the page-realm extractor: page configuration, continuation token
discovery, the primary strategy, the caption-track fallback and the RPC
handlers. Upstream is an httpx.MockTransport.
"""

import asyncio
import json
import os
import sys
import unittest
from unittest.mock import AsyncMock
from urllib.parse import parse_qs

import httpx

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from extraction_config import ExtractionConfig
from page_realm import (
    STRATEGY_CAPTION_TRACKS,
    STRATEGY_PRIMARY,
    PageConfig,
    PageRealmExtractor,
    caption_tracks_from_player,
    find_continuation_token,
)
from rpc_channel import ACTION_GET_CONFIG, ACTION_GET_TRANSCRIPT, MessageBus, RpcChannel, RpcResponder
from transcript_models import ErrorKind

VIDEO_ID = "dQw4w9WgXcQ"

NEXT_WITH_TOKEN = {
    "engagementPanels": [{"engagementPanelSectionListRenderer": {"content": {"continuationItemRenderer": {
        "continuationEndpoint": {"getTranscriptEndpoint": {"params": "abc123"}}}}}}]
}

TRANSCRIPT_RESPONSE = {"actions": [{"updateEngagementPanelAction": {"content": {"transcriptRenderer": {
    "content": {"transcriptSearchPanelRenderer": {"body": {"transcriptSegmentListRenderer": {"initialSegments": [
        {"transcriptSegmentRenderer": {"startMs": "0", "endMs": "2000", "snippet": {"runs": [{"text": "Never gonna"}]}}},
        {"transcriptSegmentRenderer": {"startMs": "2000", "endMs": "4000", "snippet": {"runs": [{"text": "give you up"}]}}},
    ]}}}}}}}}]}

CAPTION_BASE = "https://www.youtube.com/api/timedtext?v=dQw4w9WgXcQ&lang=en"

PLAYER_RESPONSE = {
    "videoDetails": {"videoId": VIDEO_ID},
    "captions": {"playerCaptionsTracklistRenderer": {"captionTracks": [
        {"baseUrl": CAPTION_BASE.replace("lang=en", "lang=ko"), "languageCode": "ko", "name": {"simpleText": "Korean"}},
        {"baseUrl": CAPTION_BASE, "languageCode": "en", "kind": "asr", "name": {"simpleText": "English"}},
    ]}},
}

JSON3_BODY = json.dumps({"events": [
    {"tStartMs": 0, "dDurationMs": 1500, "segs": [{"utf8": "caption one"}]},
    {"tStartMs": 1500, "dDurationMs": 1500, "segs": [{"utf8": "caption two"}]},
]})


def page_config(**overrides) -> PageConfig:
    values = dict(api_key="KEY", client_name="WEB", client_version="2.20250101.00.00", hl="en")
    values.update(overrides)
    return PageConfig(**values)


class FakeUpstream:
    """Routes MockTransport requests to per-endpoint callables and records them."""

    def __init__(self, **routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        name = "timedtext" if path == "/api/timedtext" else path.rsplit("/", 1)[-1]
        self.requests.append((name, request))
        route = self.routes.get(name)
        if route is None:
            return httpx.Response(404)
        return route(request)

    def calls(self, name):
        return [r for n, r in self.requests if n == name]


def make_extractor(upstream: FakeUpstream, config: PageConfig = None, provider=None) -> PageRealmExtractor:
    if provider is None:
        resolved = config or page_config()

        async def provider():
            return resolved

    http = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    return PageRealmExtractor(
        provider,
        http,
        locale="en",
        config=ExtractionConfig(upstream_retry_attempts=1, upstream_timeout_seconds=1.0),
    )


def json_response(data):
    return lambda request: httpx.Response(200, json=data)


class TestContinuationToken(unittest.TestCase):

    def test_bootstrap_json_scenario(self):
        self.assertEqual(find_continuation_token('{"getTranscriptEndpoint":{"params":"abc123"}}'), "abc123")

    def test_nested_structure(self):
        self.assertEqual(find_continuation_token(NEXT_WITH_TOKEN), "abc123")
        self.assertEqual(find_continuation_token(json.dumps(NEXT_WITH_TOKEN)), "abc123")

    def test_pattern_fallback_on_non_json_body(self):
        raw = ')]}\'\n{"a": 1, "getTranscriptEndpoint": { "params" : "xyz789" }, "b": ['
        self.assertEqual(find_continuation_token(raw), "xyz789")

    def test_missing_token(self):
        self.assertIsNone(find_continuation_token('{"contents": {}}'))
        self.assertIsNone(find_continuation_token(""))
        self.assertIsNone(find_continuation_token({"getTranscriptEndpoint": {"params": ""}}))


class TestPageConfig(unittest.TestCase):

    def test_from_html(self):
        html = (
            '<html><script>ytcfg.set({"INNERTUBE_API_KEY": "KEY", "INNERTUBE_CLIENT_NAME": "WEB", '
            '"INNERTUBE_CLIENT_VERSION": "2.20250101.00.00", "HL": "ko"});'
            'ytcfg.set({"VISITOR_DATA": "VISITOR"});</script>'
            '<script>var ytInitialPlayerResponse = {"videoDetails": {"videoId": "dQw4w9WgXcQ"}, "note": "a};b"};'
            'var meta = 1;</script>'
            '<script>var ytInitialData = {"contents": {}};</script></html>'
        )
        config = PageConfig.from_html(html)
        self.assertEqual(config.api_key, "KEY")
        self.assertEqual(config.client_name, "WEB")
        self.assertEqual(config.hl, "ko")
        self.assertEqual(config.visitor_data, "VISITOR")
        self.assertEqual(config.initial_player_response["note"], "a};b")
        self.assertEqual(config.initial_data, {"contents": {}})

    def test_from_html_without_client_identity(self):
        self.assertIsNone(PageConfig.from_html("<html><body>consent wall</body></html>"))
        self.assertIsNone(PageConfig.from_html(""))

    def test_from_ytcfg_uses_innertube_context(self):
        config = PageConfig.from_ytcfg({"INNERTUBE_CONTEXT": {"client": {
            "clientName": "MWEB", "clientVersion": "2.1", "hl": "de", "visitorData": "V"}}})
        self.assertEqual((config.client_name, config.client_version, config.hl, config.visitor_data),
                         ("MWEB", "2.1", "de", "V"))

    def test_from_page(self):
        async def run_test():
            page = AsyncMock()
            page.evaluate = AsyncMock(return_value={
                "ytcfg": {"INNERTUBE_CLIENT_NAME": "WEB", "INNERTUBE_CLIENT_VERSION": "2.2", "HL": None},
                "player": PLAYER_RESPONSE,
                "data": None,
            })
            config = await PageConfig.from_page(page)
            self.assertEqual(config.client_version, "2.2")
            self.assertEqual(config.hl, "en")
            self.assertIs(config.initial_player_response, PLAYER_RESPONSE)

            page.evaluate = AsyncMock(return_value=None)
            self.assertIsNone(await PageConfig.from_page(page))

        asyncio.run(run_test())

    def test_caption_tracks_from_player(self):
        tracks = caption_tracks_from_player(PLAYER_RESPONSE, "player")
        self.assertEqual([t.language_code for t in tracks], ["ko", "en"])
        self.assertEqual(caption_tracks_from_player({}, "player"), [])
        self.assertEqual(caption_tracks_from_player(None, "embedded"), [])


class TestPrimaryStrategy(unittest.TestCase):

    def test_token_then_transcript_body(self):
        async def run_test():
            upstream = FakeUpstream(
                next=json_response(NEXT_WITH_TOKEN),
                get_transcript=lambda request: httpx.Response(
                    200, json=TRANSCRIPT_RESPONSE if json.loads(request.content)["params"] == "abc123" else {}),
            )
            outcome = await make_extractor(upstream).run_primary(VIDEO_ID)

            self.assertTrue(outcome.ok)
            self.assertEqual([s.text for s in outcome.items], ["Never gonna", "give you up"])
            self.assertEqual(outcome.items[1].start_seconds, 2.0)
            self.assertEqual(len(upstream.calls("get_transcript")), 1)
            self.assertEqual(upstream.calls("player"), [])

        asyncio.run(run_test())

    def test_no_token_anywhere(self):
        async def run_test():
            upstream = FakeUpstream(next=json_response({"contents": {}}))
            outcome = await make_extractor(upstream).run_primary(VIDEO_ID)
            self.assertEqual(outcome.error, ErrorKind.NO_CONTINUATION_TOKEN)
            self.assertEqual(upstream.calls("get_transcript"), [])

        asyncio.run(run_test())

    def test_embedded_initial_data_used_when_bootstrap_fails(self):
        async def run_test():
            upstream = FakeUpstream(
                next=lambda request: httpx.Response(500),
                get_transcript=json_response(TRANSCRIPT_RESPONSE),
            )
            extractor = make_extractor(upstream, page_config(initial_data=NEXT_WITH_TOKEN))
            outcome = await extractor.run_primary(VIDEO_ID)
            self.assertTrue(outcome.ok)

        asyncio.run(run_test())

    def test_every_profile_tried_before_empty(self):
        async def run_test():
            upstream = FakeUpstream(
                next=json_response(NEXT_WITH_TOKEN),
                get_transcript=json_response({"responseContext": {}}),
            )
            outcome = await make_extractor(upstream).run_primary(VIDEO_ID)

            self.assertEqual(outcome.error, ErrorKind.EMPTY_UPSTREAM_RESPONSE)
            client_names = [r.headers["X-YouTube-Client-Name"] for r in upstream.calls("get_transcript")]
            self.assertEqual(client_names, ["1", "2", "3", "5"])

        asyncio.run(run_test())

    def test_rejected_profile_falls_through_to_next(self):
        async def run_test():
            def get_transcript(request):
                if request.headers["X-YouTube-Client-Name"] == "1":
                    return httpx.Response(400)
                return httpx.Response(200, json=TRANSCRIPT_RESPONSE)

            upstream = FakeUpstream(next=json_response(NEXT_WITH_TOKEN), get_transcript=get_transcript)
            outcome = await make_extractor(upstream).run_primary(VIDEO_ID)
            self.assertTrue(outcome.ok)
            self.assertEqual(len(upstream.calls("get_transcript")), 2)

        asyncio.run(run_test())

    def test_missing_page_config(self):
        async def run_test():
            async def no_config():
                return None

            upstream = FakeUpstream()
            extractor = make_extractor(upstream, provider=no_config)
            self.assertEqual((await extractor.run_primary(VIDEO_ID)).error, ErrorKind.NO_CONFIG)
            self.assertEqual((await extractor.run_caption_fallback(VIDEO_ID)).error, ErrorKind.NO_CONFIG)
            self.assertEqual(upstream.requests, [])

        asyncio.run(run_test())

    def test_config_provider_error_reads_as_missing_config(self):
        async def run_test():
            async def broken():
                raise RuntimeError("page closed")

            outcome = await make_extractor(FakeUpstream(), provider=broken).run_primary(VIDEO_ID)
            self.assertEqual(outcome.error, ErrorKind.NO_CONFIG)

        asyncio.run(run_test())


class TestCaptionFallback(unittest.TestCase):

    def test_first_parseable_candidate_wins(self):
        async def run_test():
            def timedtext(request):
                fmt = parse_qs(request.url.query.decode()).get("fmt", [None])[0]
                if fmt == "json3":
                    return httpx.Response(200, text=JSON3_BODY)
                return httpx.Response(200, text="")

            upstream = FakeUpstream(player=json_response(PLAYER_RESPONSE), timedtext=timedtext)
            outcome = await make_extractor(upstream).run_caption_fallback(VIDEO_ID)

            self.assertTrue(outcome.ok)
            self.assertEqual([s.text for s in outcome.items], ["caption one", "caption two"])

            fetched = [parse_qs(r.url.query.decode()) for r in upstream.calls("timedtext")]
            self.assertEqual([q.get("fmt", [None])[0] for q in fetched], [None, "json3"])
            self.assertTrue(all(q["lang"] == ["en"] for q in fetched))

        asyncio.run(run_test())

    def test_malformed_bodies_report_parse_failure(self):
        async def run_test():
            upstream = FakeUpstream(
                player=json_response(PLAYER_RESPONSE),
                timedtext=lambda request: httpx.Response(200, text='{"events": ['),
            )
            outcome = await make_extractor(upstream).run_caption_fallback(VIDEO_ID)
            self.assertEqual(outcome.error, ErrorKind.PARSE_FAILURE)
            self.assertEqual(len(upstream.calls("timedtext")), 4)

        asyncio.run(run_test())

    def test_no_tracks(self):
        async def run_test():
            upstream = FakeUpstream(player=json_response({"playabilityStatus": {"status": "OK"}}))
            outcome = await make_extractor(upstream).run_caption_fallback(VIDEO_ID)
            self.assertEqual(outcome.error, ErrorKind.EMPTY_UPSTREAM_RESPONSE)
            self.assertEqual(len(upstream.calls("player")), 4)
            self.assertEqual(upstream.calls("timedtext"), [])

        asyncio.run(run_test())

    def test_embedded_tracks_used_when_player_fails(self):
        async def run_test():
            upstream = FakeUpstream(
                player=lambda request: httpx.Response(403),
                timedtext=lambda request: httpx.Response(200, text=JSON3_BODY),
            )
            extractor = make_extractor(upstream, page_config(initial_player_response=PLAYER_RESPONSE))
            outcome = await extractor.run_caption_fallback(VIDEO_ID)
            self.assertTrue(outcome.ok)

        asyncio.run(run_test())

    def test_stale_embedded_tracks_ignored(self):
        async def run_test():
            stale = dict(PLAYER_RESPONSE, videoDetails={"videoId": "otherVideo1"})
            upstream = FakeUpstream(
                player=lambda request: httpx.Response(403),
                timedtext=lambda request: httpx.Response(200, text=JSON3_BODY),
            )
            extractor = make_extractor(upstream, page_config(initial_player_response=stale))
            outcome = await extractor.run_caption_fallback(VIDEO_ID)
            self.assertEqual(outcome.error, ErrorKind.EMPTY_UPSTREAM_RESPONSE)
            self.assertEqual(upstream.calls("timedtext"), [])

        asyncio.run(run_test())


class TestHandlers(unittest.TestCase):

    def test_get_transcript_without_strategy_falls_back(self):
        async def run_test():
            upstream = FakeUpstream(
                next=json_response({"contents": {}}),
                player=json_response(PLAYER_RESPONSE),
                timedtext=lambda request: httpx.Response(200, text=JSON3_BODY),
            )
            payload = await make_extractor(upstream).handle_get_transcript({"videoIdentifier": VIDEO_ID})
            self.assertIsNone(payload["error"])
            self.assertEqual(payload["items"][0], {"text": "caption one", "startSeconds": 0.0, "durationSeconds": 1.5})

        asyncio.run(run_test())

    def test_get_transcript_strategy_selects_one_path(self):
        async def run_test():
            upstream = FakeUpstream(next=json_response({"contents": {}}), player=json_response(PLAYER_RESPONSE))
            extractor = make_extractor(upstream)

            payload = await extractor.handle_get_transcript({"videoIdentifier": VIDEO_ID, "strategy": STRATEGY_PRIMARY})
            self.assertEqual(payload, {"items": None, "error": "NoContinuationToken"})
            self.assertEqual(upstream.calls("player"), [])

            upstream.requests.clear()
            await extractor.handle_get_transcript({"videoIdentifier": VIDEO_ID, "strategy": STRATEGY_CAPTION_TRACKS})
            self.assertEqual(upstream.calls("next"), [])

        asyncio.run(run_test())

    def test_get_transcript_without_identifier(self):
        async def run_test():
            payload = await make_extractor(FakeUpstream()).handle_get_transcript({})
            self.assertEqual(payload, {"items": None, "error": "NoIdentifier"})

        asyncio.run(run_test())

    def test_get_config(self):
        async def run_test():
            payload = await make_extractor(FakeUpstream()).handle_get_config({})
            self.assertIsNone(payload["error"])
            self.assertEqual(payload["config"]["clientName"], "WEB")
            self.assertTrue(payload["config"]["apiKey"])
            self.assertEqual([p["name"] for p in payload["profiles"]], ["WEB", "MWEB", "ANDROID", "IOS"])

            async def no_config():
                return None

            payload = await make_extractor(FakeUpstream(), provider=no_config).handle_get_config({})
            self.assertEqual(payload["error"], "NoConfig")

        asyncio.run(run_test())

    def test_over_the_bus(self):
        async def run_test():
            upstream = FakeUpstream(
                next=json_response(NEXT_WITH_TOKEN),
                get_transcript=json_response(TRANSCRIPT_RESPONSE),
            )
            bus = MessageBus()
            responder = RpcResponder(bus, make_extractor(upstream).handlers())
            responder.start()
            channel = RpcChannel(bus, timeout=2.0)

            payload = await channel.call(ACTION_GET_TRANSCRIPT, VIDEO_ID, strategy=STRATEGY_PRIMARY)
            config = await channel.call(ACTION_GET_CONFIG)
            await responder.stop()

            self.assertEqual(len(payload["items"]), 2)
            self.assertEqual(config["config"]["clientVersion"], "2.20250101.00.00")

        asyncio.run(run_test())


if __name__ == "__main__":
    unittest.main()
