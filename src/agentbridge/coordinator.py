"""Connection and session lifecycle for one agent process.

The coordinator owns the connection state, the active session id and the
session metadata. It wires the supervisor's streams into a protocol bridge,
drives the ACP handshake, and re-emits state and metadata snapshots to
whatever UI subscribes to it.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from pathlib import Path
from typing import Any, Callable, Coroutine, Literal

from acp import PROTOCOL_VERSION, text_block
from acp.schema import (
    CancelNotification,
    ClientCapabilities,
    FileSystemCapability,
    Implementation,
    InitializeRequest,
    InitializeResponse,
    NewSessionRequest,
    NewSessionResponse,
    PromptRequest,
    PromptResponse,
    SetSessionModelRequest,
    SetSessionModelResponse,
    SetSessionModeRequest,
    SetSessionModeResponse,
)

from agentbridge import protocol
from agentbridge.config import BridgeConfig
from agentbridge.errors import AlreadyConnecting, ConnectionClosed, ProtocolError, SessionError
from agentbridge.events import EventEmitter
from agentbridge.fs import FileAccessProxy
from agentbridge.handlers import ClientHandlers, dump
from agentbridge.log_utils import log_context, log_event, set_traffic_logging
from agentbridge.permissions import Chooser, PermissionMediator
from agentbridge.protocol import ProtocolBridge
from agentbridge.session_state import (
    EMPTY_METADATA,
    SessionMetadata,
    apply_update,
    parse_new_session,
    resolve_preferred_model,
)
from agentbridge.supervisor import ProcessSupervisor
from agentbridge.terminals import TerminalRegistry

logger = logging.getLogger(__name__)

ConnectionState = Literal["disconnected", "connecting", "connected"]

CLIENT_NAME = "agentbridge"
CLIENT_TITLE = "Agent Bridge"
CLIENT_VERSION = "0.1.0"


def client_capabilities() -> ClientCapabilities:
    return ClientCapabilities(
        fs=FileSystemCapability(read_text_file=True, write_text_file=True),
        terminal=True,
    )


class SessionCoordinator:
    """Owns one connection to an agent and at most one live session on it.

    State machine::

        disconnected --connect()--> connecting --handshake--> connected
        connected --(process exit | process error | disconnect())--> disconnected

    Teardown is idempotent: every trigger may fire for the same process and
    only the first one has an effect.
    """

    def __init__(self, config: BridgeConfig | None = None, *, chooser: Chooser | None = None) -> None:
        self.config = config or BridgeConfig()
        self.terminals = TerminalRegistry()
        self.permissions = PermissionMediator(self.config.permission_mode, chooser)
        self.files = FileAccessProxy(self.config.resolve_cwd())
        self.handlers = ClientHandlers(
            terminals=self.terminals,
            permissions=self.permissions,
            files=self.files,
            default_cwd=lambda: self.session_cwd,
        )
        self.on_state_change: EventEmitter[ConnectionState] = EventEmitter("coordinator.state")
        self.on_session_update: EventEmitter[dict[str, Any]] = EventEmitter("coordinator.session_update")
        self.on_metadata_change: EventEmitter[SessionMetadata] = EventEmitter("coordinator.metadata")
        self.agent_info: dict[str, Any] = {}
        self.agent_capabilities: dict[str, Any] = {}

        self._state: ConnectionState = "disconnected"
        self._metadata: SessionMetadata = EMPTY_METADATA
        self._session_cwd: str | None = None
        self._supervisor: ProcessSupervisor | None = None
        self._bridge: ProtocolBridge | None = None
        self._unsubscribers: list[Callable[[], None]] = []
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == "connected"

    @property
    def session_id(self) -> str | None:
        return self._metadata.session_id

    @property
    def metadata(self) -> SessionMetadata:
        return self._metadata.snapshot()

    @property
    def session_cwd(self) -> str:
        return self._session_cwd or self.config.resolve_cwd()

    @property
    def pid(self) -> int | None:
        return self._supervisor.pid if self._supervisor else None

    async def connect(self) -> None:
        """Spawn the agent and run the ``initialize`` handshake.

        A no-op when already connected. Raises :class:`AlreadyConnecting`
        while another attempt is in flight; on any failure the process is
        stopped, state returns to ``disconnected`` and the error propagates.
        """
        if self._state == "connected":
            return
        if self._state == "connecting":
            raise AlreadyConnecting("A connection attempt is already in progress")

        if self.config.log_traffic:
            set_traffic_logging(True)
        self._set_state("connecting")
        supervisor = ProcessSupervisor(stdio_buffer_limit=self.config.stdio_buffer_limit)
        # recorded before start so disconnect() can cancel the attempt
        self._supervisor = supervisor
        try:
            await supervisor.start(self.config.process_config())
        except BaseException:
            if self._supervisor is supervisor:
                self._supervisor = None
                self._set_state("disconnected")
            raise
        if self._supervisor is not supervisor:
            await supervisor.stop()
            raise ConnectionClosed("Disconnected while the agent was starting")

        bridge = ProtocolBridge(
            supervisor.stdout,
            supervisor.stdin,
            self.handlers,
            on_session_update=self._handle_session_update,
        )
        self._bridge = bridge
        self._unsubscribers = [
            supervisor.exited.subscribe(self._on_process_exit),
            supervisor.failed.subscribe(self._on_process_error),
            bridge.on_close.subscribe(self._on_bridge_closed),
        ]
        bridge.start()

        try:
            response = await bridge.request(
                protocol.INITIALIZE,
                InitializeRequest(
                    protocol_version=PROTOCOL_VERSION,
                    client_capabilities=client_capabilities(),
                    client_info=Implementation(name=CLIENT_NAME, title=CLIENT_TITLE, version=CLIENT_VERSION),
                ),
                InitializeResponse,
            )
            self._accept_initialize(response)
        except BaseException as exc:
            self.teardown(f"Handshake failed: {exc}")
            await supervisor.stop()
            await bridge.wait_closed()
            raise

        if self._bridge is not bridge:
            # the process went away between the handshake and here
            raise SessionError("Agent process exited during the handshake")
        self._set_state("connected")
        log_event(logger, "coordinator.connected", pid=supervisor.pid, agent=self.agent_info.get("name"))

    def _accept_initialize(self, response: InitializeResponse) -> None:
        if response.protocol_version != PROTOCOL_VERSION:
            raise ProtocolError(f"Incompatible ACP protocol version from agent: {response.protocol_version!r}")
        self.agent_info = dump(response.agent_info) if response.agent_info else {}
        self.agent_capabilities = dump(response.agent_capabilities) if response.agent_capabilities else {}

    async def new_session(self, cwd: str | None = None) -> str:
        """Create a session, replacing any previous one; returns its id."""
        bridge = self._require_connection()
        session_cwd = cwd or self.config.resolve_cwd()
        response = await bridge.request(
            protocol.SESSION_NEW,
            NewSessionRequest(cwd=session_cwd, mcp_servers=[]),
            NewSessionResponse,
        )
        metadata = parse_new_session(dump(response))
        if self._bridge is not bridge:
            raise SessionError("Connection closed while creating the session")

        self._session_cwd = session_cwd
        self.files.base_dir = Path(session_cwd)
        self._replace_metadata(metadata)
        with log_context(session_id=metadata.session_id):
            log_event(
                logger,
                "session.created",
                cwd=session_cwd,
                modes=len(metadata.available_modes),
                models=len(metadata.available_models),
            )
            await self._apply_default_model()
        return metadata.session_id or ""

    async def _apply_default_model(self) -> None:
        query = (self.config.default_model or "").strip()
        if not query or not self._metadata.available_models:
            return
        model_id = resolve_preferred_model(self._metadata.available_models, query)
        if model_id is None or model_id == self._metadata.current_model_id:
            return
        try:
            await self.set_model(model_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to apply default model %s: %s", model_id, exc)

    async def prompt(self, text: str) -> str:
        """Send one user turn; returns the agent's stop reason."""
        bridge, session_id = self._require_session()
        with log_context(session_id=session_id):
            response = await bridge.request(
                protocol.SESSION_PROMPT,
                PromptRequest(session_id=session_id, prompt=[text_block(text)]),
                PromptResponse,
            )
        return response.stop_reason

    async def cancel(self) -> None:
        """Ask the agent to stop the current turn; returns once the notice is flushed."""
        bridge, session_id = self._require_session()
        await bridge.notify(protocol.SESSION_CANCEL, CancelNotification(session_id=session_id))
        log_event(logger, "session.cancel_sent", session_id=session_id)

    async def set_mode(self, mode_id: str) -> SetSessionModeResponse:
        bridge, session_id = self._require_session()
        response = await bridge.request(
            protocol.SESSION_SET_MODE,
            SetSessionModeRequest(session_id=session_id, mode_id=mode_id),
            SetSessionModeResponse,
        )
        if self._metadata.session_id == session_id:
            self._replace_metadata(self._metadata.model_copy(update={"current_mode_id": mode_id}))
        return response

    async def set_model(self, model_id: str) -> SetSessionModelResponse | None:
        """Switch models; silently returns ``None`` if the agent offers no model selection."""
        bridge, session_id = self._require_session()
        if not self._metadata.supports_models:
            log_event(logger, "session.set_model.unsupported", level=logging.DEBUG, model_id=model_id)
            return None
        response = await bridge.request(
            protocol.SESSION_SET_MODEL,
            SetSessionModelRequest(session_id=session_id, model_id=model_id),
            SetSessionModelResponse,
        )
        if self._metadata.session_id == session_id:
            self._replace_metadata(self._metadata.model_copy(update={"current_model_id": model_id}))
        return response

    async def disconnect(self) -> None:
        """Tear the connection down and wait for the agent process to go away.

        Also cancels a :meth:`connect` still in flight; that call then raises
        :class:`ConnectionClosed`.
        """
        supervisor, bridge = self._supervisor, self._bridge
        self.teardown("Disconnected by client")
        if supervisor is not None:
            await supervisor.stop()
        if bridge is not None:
            await bridge.wait_closed()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def teardown(self, reason: str = "Connection closed") -> None:
        """Drop the connection: fail pending calls, kill terminals, clear the session."""
        bridge, supervisor = self._bridge, self._supervisor
        if bridge is None and supervisor is None:
            return
        self._bridge = None
        self._supervisor = None
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        log_event(logger, "coordinator.teardown", reason=reason)
        if bridge is not None:
            bridge.close(reason)
        self.terminals.kill_all()
        if supervisor is not None and supervisor.running:
            self._spawn(supervisor.stop())
        self._session_cwd = None
        self._set_state("disconnected")
        self._replace_metadata(EMPTY_METADATA)

    def _on_process_exit(self, returncode: int | None) -> None:
        self.teardown(f"Agent process exited with code {returncode}")

    def _on_process_error(self, exc: BaseException) -> None:
        self.teardown(f"Agent process error: {exc}")

    def _on_bridge_closed(self, reason: str) -> None:
        self.teardown(reason)

    def _handle_session_update(self, params: dict[str, Any]) -> None:
        if params.get("sessionId") == self._metadata.session_id:
            patched = apply_update(self._metadata, params["update"])
            if patched is not None:
                self._replace_metadata(patched)
        self.on_session_update.emit(copy.deepcopy(params))

    def _require_connection(self) -> ProtocolBridge:
        if self._state != "connected" or self._bridge is None:
            raise SessionError("Not connected to an agent")
        return self._bridge

    def _require_session(self) -> tuple[ProtocolBridge, str]:
        bridge = self._require_connection()
        session_id = self._metadata.session_id
        if session_id is None:
            raise SessionError("No active session")
        return bridge, session_id

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        log_event(logger, "coordinator.state", previous=previous, state=state)
        self.on_state_change.emit(state)

    def _replace_metadata(self, metadata: SessionMetadata) -> None:
        self._metadata = metadata
        self.on_metadata_change.emit(metadata.snapshot())

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
