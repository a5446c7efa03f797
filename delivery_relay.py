"""
Delivery relay between the pipeline and the host application.

The host side may not be listening yet when a transcript is ready, so the
relay rebroadcasts until the receiver acknowledges or the wait runs out.
"""

import logging
from typing import Any, Callable, Dict, Optional

from extraction_config import ExtractionConfig, get_extraction_config
from log_events import error_evt, evt
from polling import poll_until
from rpc_channel import BusMessage, MessageBus
from transcript_models import TranscriptResult


TRANSCRIPT_DATA = "TRANSCRIPT_DATA"
TRANSCRIPT_RECEIVED = "TRANSCRIPT_RECEIVED"


class TranscriptRelay:
    """Posts {type: TRANSCRIPT_DATA, data} until a TRANSCRIPT_RECEIVED ack arrives."""

    def __init__(self, bus: MessageBus, interval: Optional[float] = None,
                 max_wait: Optional[float] = None, config: Optional[ExtractionConfig] = None):
        config = config or get_extraction_config()
        self.bus = bus
        self.interval = interval if interval is not None else config.relay_interval
        self.max_wait = max_wait if max_wait is not None else config.relay_max_wait_seconds

    async def deliver(self, result: TranscriptResult) -> bool:
        """
        Broadcast result immediately and then every interval.

        Returns:
            True once acknowledged, False if max_wait elapsed without an ack
        """
        message = {"type": TRANSCRIPT_DATA, "data": result.to_dict()}
        max_posts = max(1, int(self.max_wait / self.interval))
        posts = 0
        acked = False

        def on_message(incoming: BusMessage) -> None:
            nonlocal acked
            if incoming.source is not self.bus.window:
                return
            if isinstance(incoming.data, dict) and incoming.data.get("type") == TRANSCRIPT_RECEIVED:
                acked = True

        def acknowledged_or_repost() -> bool:
            nonlocal posts
            if acked:
                return True
            if posts < max_posts:
                self.bus.post(message)
                posts += 1
            return False

        self.bus.add_listener(on_message)
        try:
            delivered = await poll_until(acknowledged_or_repost, self.interval, max_posts + 1)
        finally:
            self.bus.remove_listener(on_message)

        if delivered:
            evt("relay_acknowledged", posts=posts, sufficient=result.sufficient)
            return True

        evt("relay_unacknowledged", level=logging.WARNING, posts=posts, max_wait_s=self.max_wait)
        return False


class TranscriptReceiver:
    """Host-side end of the relay: acks every delivery, hands data over once."""

    def __init__(self, bus: MessageBus, on_transcript: Callable[[Dict[str, Any]], None]):
        self.bus = bus
        self.on_transcript = on_transcript
        self.received: Optional[Dict[str, Any]] = None

    def start(self) -> None:
        self.bus.add_listener(self._on_message)

    def stop(self) -> None:
        self.bus.remove_listener(self._on_message)

    def _on_message(self, message: BusMessage) -> None:
        if message.source is not self.bus.window:
            return
        data = message.data
        if not isinstance(data, dict) or data.get("type") != TRANSCRIPT_DATA:
            return

        self.bus.post({"type": TRANSCRIPT_RECEIVED})
        if self.received is not None:
            return

        self.received = data.get("data") or {}
        try:
            self.on_transcript(self.received)
        except Exception as e:
            error_evt("receiver_callback_failed", e)
