"""
DOM-realm orchestration.

The DOM realm owns the extraction session for the current video view and
drives the strategy chain:

    IDLE -> TRY_PRIMARY -> TRY_CAPTION_FALLBACK -> TRY_DOM_SCRAPE -> DONE_SUCCESS | DONE_EMPTY

The first two states are RPC calls into the page realm; the last one scrapes
the rendered transcript panel. The chain only moves forward and never retries
a state; a retry is a new session.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from caption_parsers import normalize_text
from extraction_config import ExtractionConfig, get_extraction_config
from logging_setup import set_session_ctx
from log_events import error_evt, evt, StageTimer
from page_realm import STRATEGY_CAPTION_TRACKS, STRATEGY_PRIMARY
from polling import poll_until
from rpc_channel import ACTION_GET_TRANSCRIPT, RpcChannel
from transcript_models import (
    ErrorKind,
    StrategyOutcome,
    TranscriptResult,
    TranscriptSegment,
    build_transcript_result,
    classify_exception,
    extract_video_id,
)


STRATEGY_DOM_SCRAPE = "dom_scrape"

# Label phrases for the transcript affordance and the overflow menu (English, Korean)
TRANSCRIPT_LABELS = ("Show transcript", "Open transcript", "스크립트 표시")
MORE_ACTIONS_LABELS = ("More actions", "추가 작업")

BUTTON_SELECTOR = "button, tp-yt-paper-button, ytd-button-renderer, yt-button-shape"
MENU_ITEM_SELECTOR = 'tp-yt-paper-item, ytd-menu-service-item-renderer, [role="menuitem"]'

# Our own button carries this attribute and is never clicked by label
AFFORDANCE_ATTRIBUTE = "data-caption-pipeline"
AFFORDANCE_LABEL = "Extract transcript"

# Insertion points for the affordance, most specific first (current and older watch layouts)
AFFORDANCE_TARGETS = (
    "ytd-watch-metadata #owner",
    "#above-the-fold #owner",
    "#above-the-fold ytd-video-owner-renderer",
    "#above-the-fold #top-row",
    "ytd-watch-metadata #top-row",
    "#info-contents ytd-video-owner-renderer",
    "#info-contents #top-row",
    "#meta-contents #container",
    "ytd-video-primary-info-renderer",
)

READ_SEGMENTS_SCRIPT = """
() => Array.from(
    document.querySelectorAll('ytd-transcript-segment-renderer .segment-text')
).map(node => (node.textContent || '').trim()).filter(Boolean)
"""

CLICK_LABELED_SCRIPT = """
({ labels, selector, exclude }) => {
    const wanted = labels.map(label => label.toLowerCase());
    for (const el of document.querySelectorAll(selector)) {
        if (exclude && el.closest('[' + exclude + ']')) continue;
        const text = ((el.getAttribute('aria-label') || '') + ' ' + (el.textContent || '')).toLowerCase();
        if (wanted.some(label => text.includes(label))) {
            el.click();
            return true;
        }
    }
    return false;
}
"""

INSERT_AFFORDANCE_SCRIPT = """
({ handle, targets, attribute, label }) => {
    if (document.getElementById(handle)) return true;
    for (const selector of targets) {
        const target = document.querySelector(selector);
        if (!target) continue;
        const button = document.createElement('button');
        button.id = handle;
        button.type = 'button';
        button.setAttribute(attribute, '');
        button.textContent = label;
        target.insertAdjacentElement('beforebegin', button);
        return true;
    }
    return false;
}
"""

REMOVE_AFFORDANCE_SCRIPT = """
(handle) => {
    const el = document.getElementById(handle);
    if (el) el.remove();
    return true;
}
"""


class ChainState(str, Enum):
    IDLE = "idle"
    TRY_PRIMARY = "try_primary"
    TRY_CAPTION_FALLBACK = "try_caption_fallback"
    TRY_DOM_SCRAPE = "try_dom_scrape"
    DONE_SUCCESS = "done_success"
    DONE_EMPTY = "done_empty"


def _new_session_id() -> str:
    return secrets.token_hex(8)


@dataclass
class ExtractionSession:
    """State for one video view; replaced, never reused, when the video changes."""
    video_identifier: str
    session_id: str = field(default_factory=_new_session_id)
    attempted_strategies: Set[str] = field(default_factory=set)
    inserted_ui_handle: Optional[str] = None
    state: ChainState = ChainState.IDLE
    result: Optional[TranscriptResult] = None


class SessionRegistry:
    """
    Current session plus the per-view "extraction already offered" marks.

    The offered marks are the only state kept across sessions, and a mark is
    dropped as soon as the view moves to a different video.
    """

    def __init__(self):
        self.current: Optional[ExtractionSession] = None
        self._offered: Dict[str, str] = {}

    def on_navigate(self, url: str) -> Optional[ExtractionSession]:
        video_id = extract_video_id(url)
        previous = self.current

        if previous is not None and previous.video_identifier == video_id:
            return previous

        if previous is not None:
            self._offered.pop(previous.video_identifier, None)
            evt("session_discarded", session_id=previous.session_id, video_id=previous.video_identifier)

        if video_id is None:
            self.current = None
            return None

        self.current = ExtractionSession(video_identifier=video_id)
        evt("session_created", session_id=self.current.session_id, video_id=video_id)
        return self.current

    def restart(self) -> Optional[ExtractionSession]:
        """Fresh session for the same video (user retry); the inserted UI carries over."""
        previous = self.current
        if previous is None:
            return None
        self.current = ExtractionSession(
            video_identifier=previous.video_identifier,
            inserted_ui_handle=previous.inserted_ui_handle,
        )
        evt("session_restarted", session_id=self.current.session_id, video_id=previous.video_identifier)
        return self.current

    def mark_offered(self, session: ExtractionSession, handle: str) -> None:
        session.inserted_ui_handle = handle
        self._offered[session.video_identifier] = handle

    def has_offered(self, video_id: str) -> bool:
        return video_id in self._offered


Strategy = Callable[[ExtractionSession], Awaitable[StrategyOutcome]]


class StrategyChain:
    """Runs strategies in order on a session until one yields segments."""

    def __init__(self, steps: Sequence[Tuple[ChainState, str, Strategy]], min_chars: int = 50):
        self.steps = tuple(steps)
        self.min_chars = min_chars

    async def run(self, session: ExtractionSession) -> TranscriptResult:
        if session.state is not ChainState.IDLE:
            evt("chain_already_started", session_id=session.session_id, state=session.state.value)
            return session.result or TranscriptResult.empty()

        set_session_ctx(video_id=session.video_identifier, session_id=session.session_id)

        for state, name, strategy in self.steps:
            session.state = state
            session.attempted_strategies.add(name)
            outcome = await self._attempt(session, name, strategy)
            if outcome.ok:
                session.state = ChainState.DONE_SUCCESS
                session.result = build_transcript_result(outcome.items, self.min_chars)
                evt("chain_done",
                    state=session.state.value,
                    strategy=name,
                    segments_count=len(session.result.segments),
                    sufficient=session.result.sufficient)
                return session.result

        session.state = ChainState.DONE_EMPTY
        session.result = TranscriptResult.empty()
        evt("chain_done", state=session.state.value, attempted=sorted(session.attempted_strategies))
        return session.result

    @staticmethod
    async def _attempt(session: ExtractionSession, name: str, strategy: Strategy) -> StrategyOutcome:
        with StageTimer(name, video_id=session.video_identifier) as timer:
            try:
                outcome = await strategy(session)
            except Exception as e:
                kind = classify_exception(e)
                error_evt("strategy_raised", e, strategy=name, error_kind=kind.value)
                outcome = StrategyOutcome.failure(kind)

            if not outcome.ok:
                timer.outcome = outcome.error.value if outcome.error is not None else "empty"
            return outcome


class CaptionPanelScraper:
    """Reads transcript text from the rendered panel, opening it if needed."""

    def __init__(self, page, config: Optional[ExtractionConfig] = None):
        self.page = page
        config = config or get_extraction_config()
        self.interval = config.dom_poll_interval
        self.max_attempts = config.dom_poll_max_attempts

    async def _read_segment_texts(self) -> List[str]:
        texts = await self.page.evaluate(READ_SEGMENTS_SCRIPT)
        return [t for t in texts or [] if isinstance(t, str)]

    async def _click_labeled(self, labels: Sequence[str], selector: str) -> bool:
        return bool(await self.page.evaluate(
            CLICK_LABELED_SCRIPT,
            {"labels": list(labels), "selector": selector, "exclude": AFFORDANCE_ATTRIBUTE},
        ))

    async def _open_panel(self) -> bool:
        if await self._click_labeled(TRANSCRIPT_LABELS, BUTTON_SELECTOR):
            evt("dom_transcript_button_clicked")
            return True

        if not await self._click_labeled(MORE_ACTIONS_LABELS, BUTTON_SELECTOR):
            evt("dom_transcript_affordance_missing")
            return False

        evt("dom_more_actions_clicked")
        clicked = await poll_until(
            lambda: self._click_labeled(TRANSCRIPT_LABELS, MENU_ITEM_SELECTOR),
            self.interval,
            self.max_attempts,
        )
        if not clicked:
            evt("dom_transcript_menu_item_missing")
            return False
        evt("dom_transcript_menu_item_clicked")
        return True

    async def scrape(self) -> List[TranscriptSegment]:
        texts = await self._read_segment_texts()
        if not texts:
            if not await self._open_panel():
                return []
            texts = await poll_until(self._read_segment_texts, self.interval, self.max_attempts) or []

        segments = []
        for text in texts:
            clean = normalize_text(text)
            if clean:
                segments.append(TranscriptSegment(text=clean))
        evt("dom_scrape_complete", segments_count=len(segments))
        return segments


class DomRealmOrchestrator:
    """
    Runs extraction sessions from the DOM realm.

    After attach(), every main-frame navigation moves the registry to the new
    view and offers the extraction affordance there.

    Args:
        channel: RpcChannel into the page realm
        page: Playwright page the scraper and UI affordance work against
        relay: Optional TranscriptRelay every result is handed to
        config: ExtractionConfig (defaults to the environment)
        scraper: Scraping fallback (defaults to a CaptionPanelScraper on page)
        registry: SessionRegistry tracking the current view
    """

    def __init__(self, channel: RpcChannel, page, relay=None,
                 config: Optional[ExtractionConfig] = None,
                 scraper: Optional[CaptionPanelScraper] = None,
                 registry: Optional[SessionRegistry] = None):
        self.channel = channel
        self.page = page
        self.relay = relay
        self.config = config or get_extraction_config()
        self.scraper = scraper or CaptionPanelScraper(page, self.config)
        self.registry = registry or SessionRegistry()
        self._nav_tasks: Set[asyncio.Task] = set()
        self._attached = False

    def build_chain(self) -> StrategyChain:
        return StrategyChain(
            [
                (ChainState.TRY_PRIMARY, STRATEGY_PRIMARY, self._page_realm_strategy(STRATEGY_PRIMARY)),
                (ChainState.TRY_CAPTION_FALLBACK, STRATEGY_CAPTION_TRACKS, self._page_realm_strategy(STRATEGY_CAPTION_TRACKS)),
                (ChainState.TRY_DOM_SCRAPE, STRATEGY_DOM_SCRAPE, self._scrape),
            ],
            min_chars=self.config.sufficient_transcript_chars,
        )

    def _page_realm_strategy(self, strategy: str) -> Strategy:
        async def request(session: ExtractionSession) -> StrategyOutcome:
            payload = await self.channel.call(ACTION_GET_TRANSCRIPT, session.video_identifier, strategy=strategy)
            return StrategyOutcome.from_payload(payload)
        return request

    async def _scrape(self, session: ExtractionSession) -> StrategyOutcome:
        segments = await self.scraper.scrape()
        if not segments:
            return StrategyOutcome.failure(ErrorKind.EMPTY_UPSTREAM_RESPONSE)
        return StrategyOutcome.success(segments)

    def attach(self) -> None:
        """Follow the page's navigations, starting with the view it is on now."""
        if self._attached:
            return
        self.page.on("framenavigated", self._on_frame_navigated)
        self._attached = True
        self._schedule_navigation(self.page.url)

    async def detach(self) -> None:
        if self._attached:
            self.page.remove_listener("framenavigated", self._on_frame_navigated)
            self._attached = False
        tasks = list(self._nav_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _on_frame_navigated(self, frame) -> None:
        if frame is not self.page.main_frame:
            return
        self._schedule_navigation(frame.url)

    def _schedule_navigation(self, url: str) -> None:
        task = asyncio.ensure_future(self.handle_navigation(url))
        self._nav_tasks.add(task)
        task.add_done_callback(self._nav_tasks.discard)

    async def handle_navigation(self, url: str) -> Optional[ExtractionSession]:
        session = await self.navigate(url)
        if session is not None:
            await self.offer_extraction(session)
        return session

    async def navigate(self, url: str) -> Optional[ExtractionSession]:
        """Track a navigation; removes the previous view's affordance when the video changes."""
        previous = self.registry.current
        session = self.registry.on_navigate(url)
        if previous is not None and previous is not session and previous.inserted_ui_handle:
            await self._remove_affordance(previous.inserted_ui_handle)
        return session

    async def _remove_affordance(self, handle: str) -> None:
        try:
            await self.page.evaluate(REMOVE_AFFORDANCE_SCRIPT, handle)
        except Exception as e:
            error_evt("affordance_remove_failed", e)

    def _is_current(self, session: ExtractionSession) -> bool:
        current = self.registry.current
        return current is not None and current.video_identifier == session.video_identifier

    async def offer_extraction(self, session: ExtractionSession) -> Optional[str]:
        """
        Insert the extraction affordance once per view; returns its handle.

        The watch page renders its header late, so insertion is retried until
        one of AFFORDANCE_TARGETS exists. Gives up when the view moves on.
        """
        if self.registry.has_offered(session.video_identifier):
            return session.inserted_ui_handle

        handle = f"caption-pipeline-{session.session_id}"
        args = {
            "handle": handle,
            "targets": list(AFFORDANCE_TARGETS),
            "attribute": AFFORDANCE_ATTRIBUTE,
            "label": AFFORDANCE_LABEL,
        }

        async def try_insert():
            if not self._is_current(session):
                return True
            return await self.page.evaluate(INSERT_AFFORDANCE_SCRIPT, args)

        try:
            inserted = await poll_until(
                try_insert,
                self.config.affordance_retry_interval,
                self.config.affordance_retry_max_attempts,
            )
        except Exception as e:
            error_evt("affordance_insert_failed", e)
            return None

        if not self._is_current(session):
            await self._remove_affordance(handle)
            evt("affordance_abandoned", session_id=session.session_id, reason="navigated_away")
            return None
        if not inserted:
            evt("affordance_target_missing",
                level=logging.WARNING,
                video_id=session.video_identifier,
                attempts=self.config.affordance_retry_max_attempts)
            return None

        # A retry may have replaced the session for this video meanwhile
        session = self.registry.current
        self.registry.mark_offered(session, handle)
        evt("affordance_inserted", session_id=session.session_id, video_id=session.video_identifier)
        return handle

    async def extract(self, session: ExtractionSession) -> TranscriptResult:
        result = await self.build_chain().run(session)
        if self.relay is not None:
            await self.relay.deliver(result)
        return result

    async def extract_for_url(self, url: str) -> TranscriptResult:
        session = await self.navigate(url)
        if session is None:
            evt("extraction_skipped", error_kind=ErrorKind.NO_IDENTIFIER.value)
            result = TranscriptResult.empty()
            if self.relay is not None:
                await self.relay.deliver(result)
            return result
        return await self.extract(session)

    async def retry(self) -> TranscriptResult:
        session = self.registry.restart()
        if session is None:
            return TranscriptResult.empty()
        return await self.extract(session)
