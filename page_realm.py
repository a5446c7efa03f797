"""
Page-realm transcript extractor.

Runs with access to the page's own configuration (ytcfg, ytInitialPlayerResponse,
ytInitialData) and session, and answers RPC requests from the DOM realm.

Strategies:
- primary: continuation token from the bootstrap (/next) data, then the
  transcript body (/get_transcript) across client identity profiles
- caption_tracks: caption tracks from /player across profiles (or, failing that,
  from the page's embedded player response), then the track body in up to four
  formats through the parser cascade

Neither strategy raises; each returns a StrategyOutcome.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from caption_parsers import PARSER_CASCADE, CaptionParser, parse_caption_body, parse_transcript_renderer
from client_profiles import (
    ALTERNATE_PROFILES,
    ClientIdentityProfile,
    ClientIdentityRotator,
    native_profile,
    profiles_for,
)
from extraction_config import ExtractionConfig, get_extraction_config
from logging_setup import set_session_ctx
from log_events import error_evt, evt, StageTimer
from rpc_channel import ACTION_GET_CONFIG, ACTION_GET_TRANSCRIPT
from transcript_models import (
    CaptionParseError,
    CaptionTrackDescriptor,
    ErrorKind,
    StrategyOutcome,
    UpstreamError,
    select_caption_track,
)
from youtubei_client import InnertubeClient, mask_url_for_logging


STRATEGY_PRIMARY = "primary"
STRATEGY_CAPTION_TRACKS = "caption_tracks"

CONTINUATION_TOKEN_RE = re.compile(r'"getTranscriptEndpoint"\s*:\s*\{\s*"params"\s*:\s*"([^"]+)"')

_HTML_MARKERS = {
    "ytcfg": re.compile(r"ytcfg\.set\(\s*(?=\{)"),
    "player": re.compile(r"ytInitialPlayerResponse\s*=\s*(?=\{)"),
    "data": re.compile(r"ytInitialData\s*=\s*(?=\{)"),
}

# Reads the page's globals; movie_player reflects SPA navigations, the initial globals may not
_PAGE_STATE_SCRIPT = """
() => {
    const state = { ytcfg: null, player: null, data: null };
    try {
        if (typeof ytcfg !== 'undefined' && ytcfg.get) {
            state.ytcfg = {
                INNERTUBE_API_KEY: ytcfg.get('INNERTUBE_API_KEY'),
                INNERTUBE_CLIENT_NAME: ytcfg.get('INNERTUBE_CLIENT_NAME'),
                INNERTUBE_CLIENT_VERSION: ytcfg.get('INNERTUBE_CLIENT_VERSION'),
                HL: ytcfg.get('HL'),
                VISITOR_DATA: ytcfg.get('VISITOR_DATA'),
            };
        }
        const player = document.getElementById('movie_player');
        if (player && typeof player.getPlayerResponse === 'function') {
            state.player = player.getPlayerResponse() || null;
        }
        if (!state.player && window.ytInitialPlayerResponse) {
            state.player = window.ytInitialPlayerResponse;
        }
        state.data = window.ytInitialData || null;
    } catch (e) {
        console.error('page state read failed:', e);
    }
    return state;
}
"""


def _decode_object_after(pattern: re.Pattern, text: str) -> Optional[Dict[str, Any]]:
    match = pattern.search(text)
    if not match:
        return None
    try:
        value, _ = json.JSONDecoder().raw_decode(text, match.end())
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


@dataclass
class PageConfig:
    """What the page realm knows about its own page."""
    api_key: Optional[str] = None
    client_name: Optional[str] = None
    client_version: Optional[str] = None
    hl: str = "en"
    visitor_data: Optional[str] = None
    initial_player_response: Optional[Dict[str, Any]] = None
    initial_data: Optional[Dict[str, Any]] = None

    @classmethod
    def from_ytcfg(cls, ytcfg: Optional[Dict[str, Any]], player_response: Optional[Dict[str, Any]] = None,
                   initial_data: Optional[Dict[str, Any]] = None) -> Optional['PageConfig']:
        """Build from ytcfg values; None when the page exposes no client identity at all."""
        ytcfg = ytcfg or {}
        context_client = (ytcfg.get("INNERTUBE_CONTEXT") or {}).get("client") or {}
        client_name = ytcfg.get("INNERTUBE_CLIENT_NAME") or context_client.get("clientName")
        client_version = ytcfg.get("INNERTUBE_CLIENT_VERSION") or context_client.get("clientVersion")
        if not client_name or not client_version:
            return None
        return cls(
            api_key=ytcfg.get("INNERTUBE_API_KEY"),
            client_name=str(client_name),
            client_version=str(client_version),
            hl=ytcfg.get("HL") or context_client.get("hl") or "en",
            visitor_data=ytcfg.get("VISITOR_DATA") or context_client.get("visitorData"),
            initial_player_response=player_response,
            initial_data=initial_data,
        )

    @classmethod
    def from_html(cls, html: str) -> Optional['PageConfig']:
        """Read ytcfg.set({...}) and the ytInitial* globals out of watch-page HTML."""
        if not html:
            return None
        ytcfg = {}
        for match in _HTML_MARKERS["ytcfg"].finditer(html):
            try:
                value, _ = json.JSONDecoder().raw_decode(html, match.end())
            except json.JSONDecodeError:
                continue
            if isinstance(value, dict):
                ytcfg.update(value)
        return cls.from_ytcfg(
            ytcfg,
            player_response=_decode_object_after(_HTML_MARKERS["player"], html),
            initial_data=_decode_object_after(_HTML_MARKERS["data"], html),
        )

    @classmethod
    async def from_page(cls, page) -> Optional['PageConfig']:
        """Read the configuration from a live Playwright page."""
        state = await page.evaluate(_PAGE_STATE_SCRIPT)
        if not state:
            return None
        return cls.from_ytcfg(state.get("ytcfg"), state.get("player"), state.get("data"))

    def summary(self) -> Dict[str, Any]:
        return {
            "apiKey": bool(self.api_key),
            "clientName": self.client_name,
            "clientVersion": self.client_version,
            "hl": self.hl,
            "hasPlayerResponse": self.initial_player_response is not None,
            "hasInitialData": self.initial_data is not None,
        }


def _walk_for_token(node: Any) -> Optional[str]:
    if isinstance(node, dict):
        endpoint = node.get("getTranscriptEndpoint")
        if isinstance(endpoint, dict) and isinstance(endpoint.get("params"), str) and endpoint["params"]:
            return endpoint["params"]
        for value in node.values():
            token = _walk_for_token(value)
            if token:
                return token
    elif isinstance(node, list):
        for item in node:
            token = _walk_for_token(item)
            if token:
                return token
    return None


def find_continuation_token(body: Any) -> Optional[str]:
    """
    Find the transcript continuation token in bootstrap data.

    Accepts the raw response text or an already-decoded dict. Walks the
    structure for getTranscriptEndpoint.params first, then falls back to a
    pattern search over the serialized body.
    """
    if isinstance(body, (dict, list)):
        data, text = body, json.dumps(body)
    else:
        text = body or ""
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            data = None

    token = _walk_for_token(data) if data is not None else None
    if token:
        return token

    match = CONTINUATION_TOKEN_RE.search(text)
    if match:
        evt("continuation_token_pattern_match")
        return match.group(1)
    return None


def caption_tracks_from_player(data: Optional[Dict[str, Any]], source: str) -> List[CaptionTrackDescriptor]:
    if not isinstance(data, dict):
        return []
    renderer = (data.get("captions") or {}).get("playerCaptionsTracklistRenderer") or {}
    tracks = []
    for raw in renderer.get("captionTracks") or []:
        if isinstance(raw, dict):
            track = CaptionTrackDescriptor.from_player_track(raw, source=source)
            if track:
                tracks.append(track)
    return tracks


ConfigProvider = Callable[[], Awaitable[Optional[PageConfig]]]


class PageRealmExtractor:
    """
    Executes transcript strategies on behalf of the DOM realm.

    Args:
        config_provider: Coroutine function returning the current PageConfig (or None)
        http: AsyncClient carrying the page's session cookies
        locale: Preferred caption language
        alternates: Client identity profiles tried after the page's own
        parsers: Caption body parser cascade
    """

    def __init__(self, config_provider: ConfigProvider, http: httpx.AsyncClient,
                 locale: Optional[str] = None,
                 alternates: Sequence[ClientIdentityProfile] = ALTERNATE_PROFILES,
                 parsers: Sequence[CaptionParser] = PARSER_CASCADE,
                 config: Optional[ExtractionConfig] = None):
        self.config_provider = config_provider
        self.http = http
        self.config = config or get_extraction_config()
        self.locale = locale or self.config.transcript_locale
        self.alternates = tuple(alternates)
        self.parsers = tuple(parsers)

    def handlers(self) -> Dict[str, Callable]:
        """RPC handlers for RpcResponder."""
        return {
            ACTION_GET_TRANSCRIPT: self.handle_get_transcript,
            ACTION_GET_CONFIG: self.handle_get_config,
        }

    async def handle_get_config(self, request: Dict[str, Any]) -> Dict[str, Any]:
        prepared = await self._prepare()
        if prepared is None:
            return {"items": None, "error": ErrorKind.NO_CONFIG.value}
        page_config, _, rotator = prepared
        return {
            "items": None,
            "error": None,
            "config": page_config.summary(),
            "profiles": rotator.describe(),
        }

    async def handle_get_transcript(self, request: Dict[str, Any]) -> Dict[str, Any]:
        video_id = request.get("videoIdentifier")
        if not video_id:
            return StrategyOutcome.failure(ErrorKind.NO_IDENTIFIER).to_payload()

        strategy = request.get("strategy")
        if strategy == STRATEGY_PRIMARY:
            outcome = await self.run_primary(video_id)
        elif strategy == STRATEGY_CAPTION_TRACKS:
            outcome = await self.run_caption_fallback(video_id)
        else:
            outcome = await self.get_transcript(video_id)
        return outcome.to_payload()

    async def get_transcript(self, video_id: str) -> StrategyOutcome:
        """Primary strategy, then the caption-track fallback when it yields nothing."""
        outcome = await self.run_primary(video_id)
        if outcome.ok:
            return outcome
        return await self.run_caption_fallback(video_id)

    async def _load_page_config(self) -> Optional[PageConfig]:
        try:
            page_config = await self.config_provider()
        except Exception as e:
            error_evt("page_config_error", e)
            return None
        if page_config is None:
            evt("page_config_unavailable")
        return page_config

    async def _prepare(self) -> Optional[Tuple[PageConfig, InnertubeClient, ClientIdentityRotator]]:
        page_config = await self._load_page_config()
        if page_config is None:
            return None
        client = InnertubeClient(
            self.http,
            api_key=page_config.api_key,
            hl=page_config.hl,
            visitor_data=page_config.visitor_data,
            config=self.config,
        )
        native = native_profile(page_config.client_name, page_config.client_version)
        rotator = ClientIdentityRotator(profiles_for(native, self.alternates))
        return page_config, client, rotator

    async def run_primary(self, video_id: str) -> StrategyOutcome:
        set_session_ctx(video_id=video_id)
        prepared = await self._prepare()
        if prepared is None:
            return StrategyOutcome.failure(ErrorKind.NO_CONFIG)
        page_config, client, rotator = prepared

        with StageTimer(STRATEGY_PRIMARY, video_id=video_id) as timer:
            token = await self.discover_continuation_token(client, video_id, page_config, rotator.profiles[0])
            if not token:
                timer.outcome = "no_token"
                return StrategyOutcome.failure(ErrorKind.NO_CONTINUATION_TOKEN)

            async def fetch_body(profile: ClientIdentityProfile):
                data = await client.fetch_transcript(token, profile, video_id)
                return parse_transcript_renderer(data)

            hit = await rotator.first_success(fetch_body, "get_transcript")
            if hit is None:
                timer.outcome = "empty"
                return StrategyOutcome.failure(ErrorKind.EMPTY_UPSTREAM_RESPONSE)

            segments, profile = hit
            timer.note(profile=profile.name, segments_count=len(segments))
            evt("primary_transcript_success", video_id=video_id, profile=profile.name, segments_count=len(segments))
            return StrategyOutcome.success(segments)

    async def discover_continuation_token(self, client: InnertubeClient, video_id: str,
                                          page_config: PageConfig, profile: ClientIdentityProfile) -> Optional[str]:
        """Token from the /next response, else from the page's embedded ytInitialData."""
        sources = []
        try:
            sources.append(("next", await client.fetch_next(video_id, profile)))
        except UpstreamError as e:
            error_evt("bootstrap_fetch_failed", e, video_id=video_id, error_kind=e.kind.value)

        if page_config.initial_data:
            sources.append(("embedded", page_config.initial_data))

        for source, body in sources:
            token = find_continuation_token(body)
            if token:
                evt("continuation_token_found", video_id=video_id, token_source=source, token_length=len(token))
                return token

        evt("continuation_token_missing", video_id=video_id, sources_checked=len(sources))
        return None

    async def resolve_caption_tracks(self, client: InnertubeClient, video_id: str, page_config: PageConfig,
                                     rotator: ClientIdentityRotator) -> List[CaptionTrackDescriptor]:
        """Tracks from /player across profiles, else the page's embedded (possibly stale) player response."""

        async def fetch_tracks(profile: ClientIdentityProfile):
            data = await client.fetch_player(video_id, profile)
            return caption_tracks_from_player(data, "player")

        hit = await rotator.first_success(fetch_tracks, "player")
        if hit is not None:
            return hit[0]

        embedded = page_config.initial_player_response or {}
        embedded_video = (embedded.get("videoDetails") or {}).get("videoId")
        if embedded_video and embedded_video != video_id:
            # Left over from before an in-page navigation
            evt("embedded_tracks_stale", video_id=video_id, embedded_video_id=embedded_video)
            return []

        tracks = caption_tracks_from_player(embedded, "embedded")
        if tracks:
            evt("embedded_tracks_used", video_id=video_id, tracks_count=len(tracks))
        return tracks

    async def run_caption_fallback(self, video_id: str) -> StrategyOutcome:
        set_session_ctx(video_id=video_id)
        prepared = await self._prepare()
        if prepared is None:
            return StrategyOutcome.failure(ErrorKind.NO_CONFIG)
        page_config, client, rotator = prepared

        with StageTimer(STRATEGY_CAPTION_TRACKS, video_id=video_id) as timer:
            tracks = await self.resolve_caption_tracks(client, video_id, page_config, rotator)
            track = select_caption_track(tracks, self.locale)
            if track is None:
                timer.outcome = "no_tracks"
                return StrategyOutcome.failure(ErrorKind.EMPTY_UPSTREAM_RESPONSE)

            evt("caption_track_selected",
                video_id=video_id,
                lang=track.language_code,
                asr=track.is_asr,
                track_source=track.source,
                tracks_count=len(tracks))

            parse_failed = False
            for url in track.format_variants():
                try:
                    body = await client.fetch_caption_body(url, video_id)
                except UpstreamError as e:
                    evt("caption_candidate_failed", url=mask_url_for_logging(url), error_kind=e.kind.value)
                    continue

                try:
                    segments = parse_caption_body(body, self.parsers)
                except CaptionParseError as e:
                    parse_failed = True
                    error_evt("caption_candidate_unparseable", e, url=mask_url_for_logging(url))
                    continue

                if segments:
                    timer.note(segments_count=len(segments))
                    evt("caption_fallback_success", video_id=video_id, segments_count=len(segments))
                    return StrategyOutcome.success(segments)

                evt("caption_candidate_empty", url=mask_url_for_logging(url))

            timer.outcome = "parse_failure" if parse_failed else "empty"
            return StrategyOutcome.failure(ErrorKind.PARSE_FAILURE if parse_failed else ErrorKind.EMPTY_UPSTREAM_RESPONSE)
