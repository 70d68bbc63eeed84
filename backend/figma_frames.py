"""
Figma Frames - Wire Protocol Models

Every JSON text frame exchanged with the bridge is modelled here. Inbound
frames are parsed into a tagged union as soon as they arrive so the rest of
the code dispatches on the frame class instead of probing dict shapes.
"""

import json
import logging
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)

# Message type constants to avoid stringly-typed conditionals
MESSAGE_TYPE_JOIN = "join"
MESSAGE_TYPE_MESSAGE = "message"
MESSAGE_TYPE_BROADCAST = "broadcast"
MESSAGE_TYPE_SYSTEM = "system"
MESSAGE_TYPE_ERROR = "error"


class _Frame(BaseModel):
    model_config = ConfigDict(extra="allow")


# ============================================
# ============ OUTBOUND FRAMES ===============
# ============================================

class JoinFrame(_Frame):
    type: str = MESSAGE_TYPE_JOIN
    channel: str


class CommandBody(_Frame):
    id: str
    command: str
    params: Dict[str, Any] = {}


class CommandFrame(_Frame):
    id: str
    type: str = MESSAGE_TYPE_MESSAGE
    channel: str
    message: CommandBody


def build_command_frame(command_id: str, channel: str, command: str, params: Optional[Dict[str, Any]] = None) -> CommandFrame:
    """Build the request frame for one command; outer and inner ids are identical."""
    return CommandFrame(
        id=command_id,
        channel=channel,
        message=CommandBody(id=command_id, command=command, params=params or {}),
    )


# ============================================
# ============ INBOUND FRAMES ================
# ============================================

class CommandResultFrame(_Frame):
    """Broadcast carrying the answer to a command (``result`` key present, possibly null)."""

    command_id: Optional[str] = None
    result: Any = None


class CommandFailureFrame(_Frame):
    """Broadcast carrying a plugin error for a command."""

    command_id: Optional[str] = None
    error: Any = None


class CommandEchoFrame(_Frame):
    """Broadcast without ``result``: the bridge echoing an outbound request back to us."""

    command_id: Optional[str] = None
    command: Optional[str] = None


class SystemFrame(_Frame):
    channel: Optional[str] = None
    message: Any = None

    @property
    def confirms_channel(self) -> bool:
        return isinstance(self.message, dict) and bool(self.message.get("result"))


class BridgeErrorFrame(_Frame):
    message: Any = None


class UnknownFrame(_Frame):
    frame_type: Optional[str] = None
    raw: Dict[str, Any] = {}


InboundFrame = Union[
    CommandResultFrame,
    CommandFailureFrame,
    CommandEchoFrame,
    SystemFrame,
    BridgeErrorFrame,
    UnknownFrame,
]


def _parse_broadcast(data: Dict[str, Any]) -> InboundFrame:
    inner = data.get("message")
    if not isinstance(inner, dict):
        return UnknownFrame(frame_type=MESSAGE_TYPE_BROADCAST, raw=data)
    command_id = inner.get("id")
    command_id = str(command_id) if command_id is not None else None
    if "result" in inner:
        return CommandResultFrame(command_id=command_id, result=inner.get("result"))
    if "error" in inner:
        return CommandFailureFrame(command_id=command_id, error=inner.get("error"))
    return CommandEchoFrame(command_id=command_id, command=inner.get("command"))


def parse_frame(raw: Union[str, bytes]) -> InboundFrame:
    """
    Parse one raw websocket frame into the inbound union.

    Raises:
        ValueError: If the frame is not a JSON object.
    """
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object frame, got {type(data).__name__}")

    frame_type = data.get("type")
    try:
        if frame_type == MESSAGE_TYPE_BROADCAST:
            return _parse_broadcast(data)
        if frame_type == MESSAGE_TYPE_SYSTEM:
            return SystemFrame.model_validate(data)
        if frame_type == MESSAGE_TYPE_ERROR:
            return BridgeErrorFrame.model_validate(data)
    except ValidationError as e:
        logger.warning(f"⚠️ Malformed '{frame_type}' frame: {e}")
    return UnknownFrame(frame_type=frame_type if isinstance(frame_type, str) else None, raw=data)


# ============================================
# ========= RESULT NORMALIZATION =============
# ============================================

def normalize_result(raw: Any) -> Any:
    """Unwrap tool results the plugin may return as MCP text content or JSON strings."""
    if isinstance(raw, dict):
        content = raw.get("content")
        if isinstance(content, list):
            for entry in content:
                if isinstance(entry, dict) and entry.get("type") == "text" and isinstance(entry.get("text"), str):
                    try:
                        return json.loads(entry["text"])
                    except json.JSONDecodeError as e:
                        logger.warning(f"⚠️ normalize_result text parse failed: {e}")
        nested = raw.get("result")
        if isinstance(nested, dict):
            return nested
        return raw

    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    return raw
