"""
Cross-realm request/response over a shared message bus.

The DOM realm and the page realm never share objects: they only post plain
messages on a bus that behaves like window.postMessage (asynchronous delivery,
structured-clone copies, a source tag on every event). RpcChannel turns that
into awaitable calls correlated by a random id; RpcResponder serves them on
the page side.

Request:  {"type": "REQUEST", "correlationId", "action", "videoIdentifier"?, ...}
Response: {"type": "RESPONSE", "correlationId", "payload": {"items", "error", ...}}
Cancel:   {"type": "CANCEL", "correlationId"}  (posted by a caller that stopped waiting)

The responder runs one handler at a time and cuts each off at a deadline
shorter than the caller's timeout, so upstream calls made for one request
are finished or cancelled before the next request starts any.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from extraction_config import get_extraction_config
from logging_setup import set_session_ctx
from log_events import error_evt, evt
from transcript_models import ErrorKind, classify_exception, new_correlation_id


REQUEST = "REQUEST"
RESPONSE = "RESPONSE"
CANCEL = "CANCEL"

ACTION_GET_TRANSCRIPT = "GET_TRANSCRIPT"
ACTION_GET_CONFIG = "GET_CONFIG"


@dataclass(frozen=True)
class BusMessage:
    """A delivered message: the cloned data plus the window that posted it."""
    data: Any
    source: Any


Listener = Callable[[BusMessage], None]


class MessageBus:
    """
    In-process stand-in for a page's postMessage channel.

    Delivery is always deferred to the event loop, never synchronous with post().
    Listeners are plain callables; they must not block.
    """

    def __init__(self, window: Any = None):
        self.window = window if window is not None else object()
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def post(self, data: Any, source: Any = None) -> None:
        """Deliver a deep copy of data to every listener on the next loop iteration."""
        message = BusMessage(copy.deepcopy(data), self.window if source is None else source)
        loop = asyncio.get_running_loop()
        for listener in list(self._listeners):
            loop.call_soon(self._dispatch, listener, message)

    def _dispatch(self, listener: Listener, message: BusMessage) -> None:
        if listener not in self._listeners:
            return
        try:
            listener(message)
        except Exception as e:
            error_evt("bus_listener_error", e)


class RpcChannel:
    """
    Awaitable calls from the DOM realm into the page realm.

    call() never raises for transport reasons: it resolves to the response
    payload, or to None when no matching response arrives in time.
    """

    def __init__(self, bus: MessageBus, timeout: Optional[float] = None):
        self.bus = bus
        self.timeout = timeout if timeout is not None else get_extraction_config().rpc_timeout_seconds
        self._pending: Dict[str, asyncio.Future] = {}

    @property
    def pending_ids(self) -> List[str]:
        return list(self._pending)

    def _on_message(self, message: BusMessage) -> None:
        if message.source is not self.bus.window:
            return
        data = message.data
        if not isinstance(data, dict) or data.get("type") != RESPONSE:
            return

        correlation_id = data.get("correlationId")
        future = self._pending.get(correlation_id)
        if future is None:
            evt("rpc_response_discarded", correlation_id=str(correlation_id)[:32], reason="not_pending")
            return
        if not future.done():
            future.set_result(data.get("payload"))

    def _register(self, correlation_id: str) -> asyncio.Future:
        if correlation_id in self._pending:
            raise RuntimeError(f"correlation id already in flight: {correlation_id}")
        future = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = future
        self.bus.add_listener(self._on_message)
        return future

    def _release(self, correlation_id: str) -> None:
        self._pending.pop(correlation_id, None)
        if not self._pending:
            self.bus.remove_listener(self._on_message)

    async def call(self, action: str, video_identifier: Optional[str] = None, **fields) -> Optional[Dict[str, Any]]:
        """
        Post a request and wait for its response.

        Args:
            action: ACTION_GET_TRANSCRIPT or ACTION_GET_CONFIG
            video_identifier: Video the request is about, if any
            **fields: Extra request fields (e.g. strategy="primary")

        Returns:
            The response payload dict, or None on timeout
        """
        correlation_id = new_correlation_id()
        request = {"type": REQUEST, "correlationId": correlation_id, "action": action}
        if video_identifier is not None:
            request["videoIdentifier"] = video_identifier
        request.update(fields)

        future = self._register(correlation_id)
        try:
            self.bus.post(request)
            evt("rpc_request_posted", action=action, correlation_id=correlation_id, **fields)
            payload = await asyncio.wait_for(future, self.timeout)
            evt("rpc_response_received", action=action, correlation_id=correlation_id)
            return payload
        except asyncio.TimeoutError:
            evt("rpc_timeout", level=logging.WARNING, action=action, correlation_id=correlation_id, timeout_s=self.timeout)
            return None
        finally:
            if not future.done() or future.cancelled():
                # Caller gave up; the responder must not keep working on it
                self.bus.post({"type": CANCEL, "correlationId": correlation_id})
            self._release(correlation_id)


Handler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


class RpcResponder:
    """
    Serves RpcChannel requests on the page side.

    Requests are handled strictly one after another, each in its own task. A
    handler that raises yields an error payload instead of an exception
    crossing the boundary; one that outlives `deadline` is cancelled and
    answered with a Timeout error. A CANCEL for a queued or running request
    cancels it without a response.

    Args:
        bus: MessageBus shared with the DOM realm
        handlers: action -> coroutine function taking the request dict
        deadline: Seconds a handler may run (defaults to the configured
                  handler deadline, which is shorter than the RPC timeout)
    """

    def __init__(self, bus: MessageBus, handlers: Dict[str, Handler], deadline: Optional[float] = None):
        self.bus = bus
        self.handlers = dict(handlers)
        self.deadline = deadline if deadline is not None else get_extraction_config().rpc_handler_deadline
        self._tasks: Dict[str, asyncio.Task] = {}
        self._serial: Optional[asyncio.Lock] = None

    def start(self) -> None:
        self.bus.add_listener(self._on_message)

    async def stop(self) -> None:
        self.bus.remove_listener(self._on_message)
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def in_flight(self) -> List[str]:
        return list(self._tasks)

    def _on_message(self, message: BusMessage) -> None:
        if message.source is not self.bus.window:
            return
        data = message.data
        if not isinstance(data, dict) or not data.get("correlationId"):
            return

        correlation_id = data["correlationId"]
        if data.get("type") == CANCEL:
            task = self._tasks.get(correlation_id)
            if task is not None and not task.done():
                task.cancel()
                evt("rpc_request_cancelled", correlation_id=correlation_id)
            return

        if data.get("type") != REQUEST or correlation_id in self._tasks:
            return
        task = asyncio.ensure_future(self._respond(data))
        self._tasks[correlation_id] = task
        task.add_done_callback(lambda _, cid=correlation_id: self._tasks.pop(cid, None))

    async def _respond(self, request: Dict[str, Any]) -> None:
        if self._serial is None:
            self._serial = asyncio.Lock()
        async with self._serial:
            payload = await self._run_handler(request)
        self.bus.post({"type": RESPONSE, "correlationId": request["correlationId"], "payload": payload})

    async def _run_handler(self, request: Dict[str, Any]) -> Dict[str, Any]:
        correlation_id = request["correlationId"]
        action = request.get("action")
        set_session_ctx(video_id=request.get("videoIdentifier"), correlation_id=correlation_id)

        handler = self.handlers.get(action)
        if handler is None:
            evt("rpc_unknown_action", action=action, correlation_id=correlation_id)
            return {"items": None, "error": f"UnknownAction:{action}"}

        try:
            return await asyncio.wait_for(handler(request), self.deadline)
        except asyncio.TimeoutError:
            evt("rpc_handler_deadline",
                level=logging.WARNING,
                action=action,
                correlation_id=correlation_id,
                deadline_s=self.deadline)
            return {"items": None, "error": ErrorKind.TIMEOUT.value}
        except Exception as e:
            kind = classify_exception(e)
            error_evt("rpc_handler_failed", e,
                      action=action,
                      correlation_id=correlation_id,
                      error_kind=kind.value)
            return {"items": None, "error": kind.value}
