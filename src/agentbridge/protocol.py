"""ACP client connection over the agent's stdio.

The JSON-RPC engine is the SDK's ``acp.connection.Connection``: it frames
newline-delimited JSON, correlates request ids, runs every inbound message in
its own task and answers unknown methods with "Method not found". Inbound
calls are routed to an ``acp.Client`` implementation by the SDK's client
router, exactly as ``ClientSideConnection`` does.

What this module adds for the coordinator:

* ``session/update`` notifications are taken from the stream observer, which
  runs inside the read loop. Updates therefore reach subscribers in arrival
  order and ahead of the response that follows them, including update kinds
  the SDK schema does not model (``current_model_update``).
* Frames that are not JSON objects are dropped before the SDK read loop sees
  them.
* End of stream, a failed read and :meth:`ProtocolBridge.close` all fail the
  in-flight calls with :class:`ConnectionClosed` (or :class:`ProtocolError`
  when the stream itself was malformed, e.g. a frame over the buffer limit)
  and fire ``on_close`` exactly once.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Coroutine, TypeVar

from acp import Client
from acp.client.router import build_client_router
from acp.connection import Connection, StreamDirection, StreamEvent
from acp.meta import AGENT_METHODS, CLIENT_METHODS
from acp.utils import notify_model, request_model_from_dict
from pydantic import BaseModel, ValidationError

from agentbridge.errors import BridgeError, ConnectionClosed, ProtocolError
from agentbridge.events import EventEmitter
from agentbridge.log_utils import log_event, log_traffic, traffic_enabled

logger = logging.getLogger(__name__)

T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)
SessionUpdateHandler = Callable[[dict[str, Any]], None]

INITIALIZE = AGENT_METHODS["initialize"]
SESSION_NEW = AGENT_METHODS["session_new"]
SESSION_PROMPT = AGENT_METHODS["session_prompt"]
SESSION_CANCEL = AGENT_METHODS["session_cancel"]
SESSION_SET_MODE = AGENT_METHODS["session_set_mode"]
SESSION_SET_MODEL = AGENT_METHODS["session_set_model"]

SESSION_UPDATE = CLIENT_METHODS["session_update"]


class FrameFilter:
    """Line source for the SDK connection that skips frames it cannot route.

    Blank lines, invalid JSON and JSON values other than objects are logged
    and dropped. A line over the stream's buffer limit still raises
    ``ValueError`` from :meth:`readline`, which fails the connection.
    """

    def __init__(self, reader: asyncio.StreamReader) -> None:
        self._reader = reader

    async def readline(self) -> bytes:
        while True:
            line = await self._reader.readline()
            if not line:
                return line
            if not line.strip():
                continue
            try:
                message = json.loads(line)
            except ValueError as exc:
                logger.warning("%s", ProtocolError(f"Malformed frame: {exc}"))
                continue
            if isinstance(message, dict):
                return line
            logger.warning("%s", ProtocolError(f"Frame is not a JSON object: {type(message).__name__}"))


class ProtocolBridge:
    """One ACP connection to an agent, with typed outbound calls."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        client: Client,
        *,
        on_session_update: SessionUpdateHandler | None = None,
    ) -> None:
        self._on_session_update = on_session_update
        self._conn = Connection(
            build_client_router(client),
            writer,
            FrameFilter(reader),  # type: ignore[arg-type]
            observers=[self._observe],
            listening=False,
        )
        self._read_task: asyncio.Task[None] | None = None
        self._close_task: asyncio.Task[None] | None = None
        self._closed = False
        self._close_reason = ""
        self._malformed_stream = False
        self._closed_future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self.on_close: EventEmitter[str] = EventEmitter("bridge.closed")

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_reason(self) -> str:
        return self._close_reason

    def start(self) -> None:
        if self._read_task is None and not self._closed:
            self._read_task = asyncio.create_task(self._read())

    async def wait_closed(self) -> None:
        """Wait until the bridge is closed and the SDK connection has shut down."""
        await asyncio.shield(self._closed_future)
        if self._close_task is not None:
            await asyncio.shield(self._close_task)

    async def request(self, method: str, params: BaseModel, response_model: type[ModelT]) -> ModelT:
        """Send a request and validate its ``result`` as ``response_model``.

        Raises ``acp.RequestError`` for an error response, :class:`ProtocolError`
        for a result that does not fit the model, and :class:`ConnectionClosed`
        if the connection ends first.
        """
        return await self._call(method, request_model_from_dict(self._conn, method, params, response_model))

    async def notify(self, method: str, params: BaseModel) -> None:
        """Send a notification; returns once the frame is flushed."""
        await self._call(method, notify_model(self._conn, method, params))

    def close(self, reason: str = "Connection closed") -> None:
        """Fail in-flight calls, cancel inbound handlers and stop reading."""
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason
        self._closed_future.set_result(None)
        if self._read_task is not None and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
        self._close_task = asyncio.ensure_future(self._shutdown())
        log_event(logger, "protocol.closed", reason=reason)
        self.on_close.emit(reason)

    async def _call(self, method: str, coro: Coroutine[Any, Any, T]) -> T:
        if self._closed:
            coro.close()
            raise self._closed_error()
        call = asyncio.ensure_future(coro)
        try:
            await asyncio.wait({call, self._closed_future}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            call.cancel()
            raise
        if not call.done():
            call.cancel()
            raise self._closed_error()
        try:
            return call.result()
        except ValidationError as exc:
            raise ProtocolError(f"Malformed {method} response: {exc}") from exc
        except OSError as exc:
            # covers ConnectionError from the SDK rejecting pending calls on close;
            # any other OSError is a failed write, after which the SDK sender stops
            if not self._closed:
                self.close(f"Failed to write to agent: {exc}")
            raise self._closed_error() from exc
        except ValueError as exc:
            if self._closed:
                raise self._closed_error() from exc
            raise

    async def _read(self) -> None:
        reason = "Agent stream closed"
        try:
            await self._conn.main_loop()
        except ValueError as exc:
            self._malformed_stream = True
            reason = f"Malformed agent stream: {exc}"
        except Exception as exc:  # noqa: BLE001
            reason = f"Protocol read loop failed: {exc}"
        self.close(reason)

    async def _shutdown(self) -> None:
        try:
            await self._conn.close()
        except Exception:  # noqa: BLE001
            logger.exception("Closing the agent connection failed")

    def _observe(self, event: StreamEvent) -> None:
        message = event.message
        incoming = event.direction is StreamDirection.INCOMING
        if traffic_enabled():
            log_traffic("recv" if incoming else "send", json.dumps(message, ensure_ascii=False, separators=(",", ":")))
        if incoming and message.get("method") == SESSION_UPDATE and "id" not in message:
            self._dispatch_session_update(message.get("params"))

    def _dispatch_session_update(self, params: Any) -> None:
        if not isinstance(params, dict) or not isinstance(params.get("update"), dict):
            logger.warning("%s", ProtocolError(f"Malformed session/update notification: {params!r}"))
            return
        if self._on_session_update is not None:
            self._on_session_update(params)

    def _closed_error(self) -> BridgeError:
        reason = self._close_reason or "Connection is closed"
        if self._malformed_stream:
            return ProtocolError(reason)
        return ConnectionClosed(reason)
