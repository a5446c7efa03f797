"""
Upstream endpoint client used from the page realm.

Wraps the four undocumented endpoints the extractor depends on:
- /youtubei/v1/next          bootstrap data that carries the transcript continuation token
- /youtubei/v1/get_transcript transcript body for a continuation token
- /youtubei/v1/player        player metadata listing caption tracks
- caption track URLs         timedtext bodies (json3 / srv1 / srv3 / vtt)

Transport errors are retried with tenacity; anything else surfaces as an
UpstreamError carrying the ErrorKind the caller should report.
"""

import json
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from client_profiles import ClientIdentityProfile
from extraction_config import ExtractionConfig, get_extraction_config
from logging_setup import get_logger
from log_events import evt
from transcript_models import ErrorKind, UpstreamError

logger = get_logger(__name__)

YOUTUBE_ORIGIN = "https://www.youtube.com"
INNERTUBE_BASE = f"{YOUTUBE_ORIGIN}/youtubei/v1"
BACKOFF_MIN = 0.25
BACKOFF_MAX = 1.0

SENSITIVE_PARAMS = {'key', 'token', 'auth', 'session', 'sig', 'signature', 'ei', 'pot'}


def mask_url_for_logging(url: str) -> str:
    """Mask sensitive query parameters in URLs for logging."""
    try:
        parsed = urlparse(url)
        if not parsed.query:
            return url
        params = parse_qs(parsed.query, keep_blank_values=True)
        masked_params = {
            key: ['***MASKED***'] * len(values) if key.lower() in SENSITIVE_PARAMS else values
            for key, values in params.items()
        }
        return urlunparse(parsed._replace(query=urlencode(masked_params, doseq=True)))
    except Exception:
        return f"{url.split('?')[0]}?***MASKED_QUERY***" if '?' in url else url


class InnertubeClient:
    """
    Thin async client over the page's session.

    The httpx.AsyncClient is owned by the caller and should already carry the
    page's cookies, so every call rides on whatever session the page has.
    """

    def __init__(self, http: httpx.AsyncClient, api_key: Optional[str] = None,
                 hl: str = "en", visitor_data: Optional[str] = None,
                 config: Optional[ExtractionConfig] = None):
        self.http = http
        self.api_key = api_key
        self.hl = hl
        self.visitor_data = visitor_data
        self.config = config or get_extraction_config()

    def _endpoint(self, name: str) -> str:
        url = f"{INNERTUBE_BASE}/{name}"
        if self.api_key:
            url += f"?key={self.api_key}&prettyPrint=false"
        else:
            url += "?prettyPrint=false"
        return url

    def _headers(self, profile: ClientIdentityProfile, video_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Origin": YOUTUBE_ORIGIN,
            **profile.headers(),
        }
        if video_id:
            headers["Referer"] = f"{YOUTUBE_ORIGIN}/watch?v={video_id}"
        if self.visitor_data:
            headers["X-Goog-Visitor-Id"] = self.visitor_data
        return headers

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request, retrying transport errors only."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.upstream_retry_attempts),
            wait=wait_exponential_jitter(initial=BACKOFF_MIN, max=BACKOFF_MAX),
            retry=retry_if_exception_type(httpx.TransportError),
            before_sleep=lambda s: logger.info(f"Upstream request failed, retrying in {s.next_action.sleep:.2f}s..."),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self.http.request(
                        method, url, timeout=self.config.upstream_timeout_seconds, **kwargs
                    )
        except httpx.TimeoutException as e:
            evt("upstream_timeout", url=mask_url_for_logging(url))
            raise UpstreamError(ErrorKind.TIMEOUT, f"timeout: {type(e).__name__}")
        except httpx.TransportError as e:
            evt("upstream_transport_error", url=mask_url_for_logging(url), error_type=type(e).__name__)
            raise UpstreamError(ErrorKind.NETWORK_ERROR, f"transport error: {type(e).__name__}")

        if not response.is_success:
            evt("upstream_http_error",
                url=mask_url_for_logging(url),
                status_code=response.status_code,
                preview=response.text[:80])
            raise UpstreamError(ErrorKind.NETWORK_ERROR, f"status={response.status_code}", response.status_code)

        return response

    async def _post_json(self, name: str, payload: Dict[str, Any], profile: ClientIdentityProfile,
                         video_id: Optional[str] = None) -> httpx.Response:
        body = {"context": profile.context(self.hl, self.visitor_data), **payload}
        return await self._send("POST", self._endpoint(name), json=body,
                                headers=self._headers(profile, video_id))

    @staticmethod
    def _json(response: httpx.Response, endpoint: str) -> Dict[str, Any]:
        if not response.text.strip():
            raise UpstreamError(ErrorKind.EMPTY_UPSTREAM_RESPONSE, f"{endpoint}: empty body")
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise UpstreamError(ErrorKind.PARSE_FAILURE, f"{endpoint}: invalid JSON: {e}")
        if not isinstance(data, dict):
            raise UpstreamError(ErrorKind.PARSE_FAILURE, f"{endpoint}: unexpected JSON shape")
        return data

    async def fetch_next(self, video_id: str, profile: ClientIdentityProfile) -> str:
        """Bootstrap data for the video, returned as raw text so callers can pattern-search it."""
        response = await self._post_json("next", {"videoId": video_id}, profile, video_id)
        evt("upstream_next_fetched", video_id=video_id, profile=profile.name, bytes=len(response.content))
        return response.text

    async def fetch_transcript(self, params: str, profile: ClientIdentityProfile,
                               video_id: Optional[str] = None) -> Dict[str, Any]:
        response = await self._post_json("get_transcript", {"params": params}, profile, video_id)
        return self._json(response, "get_transcript")

    async def fetch_player(self, video_id: str, profile: ClientIdentityProfile) -> Dict[str, Any]:
        payload = {"videoId": video_id, "contentCheckOk": True, "racyCheckOk": True}
        response = await self._post_json("player", payload, profile, video_id)
        return self._json(response, "player")

    async def fetch_caption_body(self, url: str, video_id: Optional[str] = None) -> str:
        """GET a caption track URL; raises UpstreamError on failure or an empty body."""
        headers = {"Accept": "*/*"}
        if video_id:
            headers["Referer"] = f"{YOUTUBE_ORIGIN}/watch?v={video_id}"
        response = await self._send("GET", url, headers=headers)
        body = response.text or ""
        if not body.strip():
            evt("caption_body_empty", url=mask_url_for_logging(url), status_code=response.status_code)
            raise UpstreamError(ErrorKind.EMPTY_UPSTREAM_RESPONSE, "caption body empty")
        evt("caption_body_fetched",
            url=mask_url_for_logging(url),
            content_type=response.headers.get("content-type", "unknown"),
            bytes=len(body))
        return body
