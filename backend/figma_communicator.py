"""
Figma Communicator - Channel Transport and Command Correlation

This module owns the single websocket connection to the bridge, joins the
plugin's channel and correlates fire-and-forget command frames with the
broadcast frames that eventually answer them.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from figma_frames import (
    BridgeErrorFrame,
    CommandEchoFrame,
    CommandFailureFrame,
    CommandResultFrame,
    InboundFrame,
    JoinFrame,
    SystemFrame,
    UnknownFrame,
    build_command_frame,
    normalize_result,
    parse_frame,
)

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30.0


class FigmaCommandError(Exception):
    """Base class for failures of a single remote command."""


class CommandExecutionError(FigmaCommandError):
    """
    The plugin answered a command with an error.

    Carries a structured payload: { code: str, message: str, details?: dict }
    """

    def __init__(self, payload: Any, command: str | None = None, params: Dict[str, Any] | None = None):
        self.command = command
        self.params = params

        if isinstance(payload, dict):
            self.code: str = str(payload.get("code", "unknown_plugin_error"))
            self.message: str = str(payload.get("message", ""))
            self.details: Dict[str, Any] = payload.get("details", {}) or {}
            normalized_payload = payload
        else:
            self.code = "unknown_plugin_error"
            self.message = str(payload)
            self.details = {}
            normalized_payload = {"code": self.code, "message": self.message, "details": self.details}

        self.payload = normalized_payload

        text = self.message if self.message else self.code
        super().__init__(text)


class CommandTimeoutError(FigmaCommandError, asyncio.TimeoutError):
    """No answer arrived for a command within its timeout window."""

    def __init__(self, command: str, command_id: str, timeout: float):
        self.command = command
        self.command_id = command_id
        self.timeout = timeout
        super().__init__(f"Command '{command}' (id: {command_id}) timed out after {timeout:.1f} seconds")


class ChannelConnectionError(ConnectionError):
    """The channel could not be opened or joined, or the connection dropped. Fatal for the run."""


@dataclass
class PendingCommand:
    id: str
    command: str
    params: Dict[str, Any]
    future: asyncio.Future
    timeout_handle: Optional[asyncio.TimerHandle] = None
    started_at: float = field(default_factory=time.time)


class FigmaChannelSession:
    """
    One connection, one joined channel, one pending-command table.

    This class manages:
    - Joining the channel on the shared bridge connection
    - Allocating monotonic command ids
    - Tracking pending commands and their timeouts
    - Resolving commands when matching broadcast results arrive

    Sessions never share state, so several may coexist (e.g. in tests).
    """

    def __init__(self, websocket, channel: str, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        """
        Initialize the session around an already-open websocket.

        Args:
            websocket: Object exposing async ``send(str)``, ``recv()`` and ``close()``
            channel: Channel name to join and scope commands to
            timeout: Per-command timeout in seconds (default: 30.0)
        """
        self.websocket = websocket
        self.channel = channel
        self.timeout = timeout
        self.pending: Dict[str, PendingCommand] = {}
        self.channel_confirmed = False
        self._message_id = 0
        self._listen_task: Optional[asyncio.Task] = None
        self._closed = False

    @classmethod
    async def connect(cls, url: str, channel: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> "FigmaChannelSession":
        """Open the websocket, join ``channel`` and start dispatching inbound frames."""
        logger.info(f"🔌 Connecting to bridge at {url}")
        try:
            # Remove size limits: exports come back as base64 payloads
            websocket = await websockets.connect(url, max_size=None)
        except (OSError, asyncio.TimeoutError, InvalidURI, InvalidHandshake) as e:
            raise ChannelConnectionError(f"Failed to connect to {url}: {e}") from e

        session = cls(websocket, channel, timeout=timeout)
        await session.join()
        session.start()
        return session

    def next_id(self) -> str:
        self._message_id += 1
        return str(self._message_id)

    async def join(self) -> None:
        logger.info(f"📡 Joining channel: {self.channel}")
        await self._send_json(JoinFrame(channel=self.channel).model_dump())

    def start(self) -> None:
        """Start the background listen loop."""
        if self._listen_task is None:
            self._listen_task = asyncio.create_task(self.listen())

    async def _send_json(self, payload: Dict[str, Any]) -> None:
        if self._closed or not self.websocket:
            raise ChannelConnectionError("WebSocket connection is not ready")
        try:
            await self.websocket.send(json.dumps(payload, ensure_ascii=False))
        except ConnectionClosed as e:
            raise ChannelConnectionError(f"WebSocket closed while sending: {e}") from e

    async def send_command(self, command: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Send a command to the plugin and wait for its broadcast result.

        Args:
            command: The command name (e.g., "get_node_info")
            params: Optional parameters for the command

        Returns:
            The normalized result from the plugin

        Raises:
            CommandTimeoutError: If no result arrives within the timeout
            CommandExecutionError: If the plugin answers with an error
            ChannelConnectionError: If the connection is gone
        """
        params = params or {}
        command_id = self.next_id()
        loop = asyncio.get_running_loop()
        entry = PendingCommand(id=command_id, command=command, params=params, future=loop.create_future())
        self.pending[command_id] = entry
        entry.timeout_handle = loop.call_later(self.timeout, self._expire, command_id)

        logger.info(f"📤 Sending command: {command} (id: {command_id})")
        logger.debug(f"📤 Command payload: {params}")
        try:
            frame = build_command_frame(command_id, self.channel, command, params)
            await self._send_json(frame.model_dump())
        except BaseException:
            # Unsent commands never get an answer
            self._discard(command_id)
            raise

        return await entry.future

    def _discard(self, command_id: str) -> Optional[PendingCommand]:
        entry = self.pending.pop(command_id, None)
        if entry and entry.timeout_handle:
            entry.timeout_handle.cancel()
        return entry

    def _expire(self, command_id: str) -> None:
        entry = self.pending.pop(command_id, None)
        if entry is None:
            return
        elapsed = time.time() - entry.started_at
        logger.error(f"⏰ Command {entry.command} (id: {command_id}) timed out after {elapsed:.3f}s (limit: {self.timeout}s)")
        if not entry.future.done():
            entry.future.set_exception(CommandTimeoutError(entry.command, command_id, self.timeout))

    def handle_frame(self, frame: InboundFrame) -> None:
        """Route one parsed inbound frame."""
        if isinstance(frame, CommandResultFrame):
            self._resolve(frame)
        elif isinstance(frame, CommandFailureFrame):
            self._reject(frame)
        elif isinstance(frame, CommandEchoFrame):
            logger.debug(f"↩️ Ignoring echo of command {frame.command} (id: {frame.command_id})")
        elif isinstance(frame, SystemFrame):
            if frame.confirms_channel:
                self.channel_confirmed = True
                logger.info(f"✅ Channel confirmed: {frame.channel}")
            else:
                logger.info(f"🔧 System message: {frame.message}")
        elif isinstance(frame, BridgeErrorFrame):
            logger.error(f"Bridge error: {frame.message}")
        elif isinstance(frame, UnknownFrame):
            logger.debug(f"Ignoring unknown message type: {frame.frame_type}")

    def _resolve(self, frame: CommandResultFrame) -> None:
        entry = self._discard(frame.command_id) if frame.command_id else None
        if entry is None:
            logger.warning(f"❌ Received result for unknown or expired ID: {frame.command_id}")
            return
        elapsed = time.time() - entry.started_at
        if entry.future.done():
            logger.debug(f"⚠️ Future already completed for {entry.id}")
            return
        logger.info(f"✅ Got result for command {entry.command} (id: {entry.id}) after {elapsed:.3f}s")
        entry.future.set_result(normalize_result(frame.result))

    def _reject(self, frame: CommandFailureFrame) -> None:
        entry = self._discard(frame.command_id) if frame.command_id else None
        if entry is None:
            logger.warning(f"❌ Received error for unknown or expired ID: {frame.command_id}")
            return
        error_val = frame.error
        if isinstance(error_val, str):
            try:
                error_val = json.loads(error_val)
            except json.JSONDecodeError:
                error_val = {"code": "unknown_plugin_error", "message": error_val}
        logger.error(f"❌ Command {entry.command} (id: {entry.id}) failed: {error_val}")
        if not entry.future.done():
            entry.future.set_exception(CommandExecutionError(error_val, command=entry.command, params=entry.params))

    def handle_raw(self, raw: Any) -> None:
        """Parse and route one raw websocket frame; undecodable frames are logged and dropped."""
        if not raw:
            logger.warning("📡 Received empty WebSocket message")
            return
        try:
            frame = parse_frame(raw)
        except ValueError as e:
            logger.error(f"❌ Failed to decode message: {e}, Raw: {str(raw)[:200]}")
            return
        self.handle_frame(frame)

    async def listen(self) -> None:
        """Receive frames until the connection closes, then fail whatever is still pending."""
        logger.info("🎧 Listening for messages from bridge")
        reason = "connection closed"
        try:
            while not self._closed:
                try:
                    raw_message = await self.websocket.recv()
                except ConnectionClosed as e:
                    reason = f"connection closed: {e}"
                    break
                self.handle_raw(raw_message)
        except asyncio.CancelledError:
            logger.info("🛑 Listen loop cancelled")
            raise
        finally:
            self.fail_pending(ChannelConnectionError(f"Channel {self.channel} lost ({reason})"))

    def fail_pending(self, error: BaseException) -> None:
        """Reject every pending command with ``error``."""
        for command_id in list(self.pending):
            entry = self._discard(command_id)
            if entry and not entry.future.done():
                entry.future.set_exception(error)
                logger.info(f"Failed pending command: {entry.command} (id: {command_id})")

    async def close(self) -> None:
        """Tear the session down: stop listening, cancel pending commands, close the socket."""
        if self._closed:
            return
        self._closed = True
        if self._listen_task and not self._listen_task.done():
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
        self.fail_pending(ChannelConnectionError("Session closed"))
        try:
            await self.websocket.close()
        except ConnectionClosed:
            pass
        logger.info("🔌 WebSocket connection closed")
