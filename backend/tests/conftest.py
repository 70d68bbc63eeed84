"""
pytest configuration and shared fixtures

The plugin side of the channel is simulated in memory: FakeSocket speaks the
bridge's frame protocol (join confirmation, echo, broadcast result) and
FakePlugin answers commands from handler functions, optionally backed by a
FakeDocument node tree.

Usage:
    def test_something(plugin, connect):
        async def scenario():
            session = await connect(plugin)
            ...
        asyncio.run(scenario())
"""

import asyncio
import copy
import itertools
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from websockets.exceptions import ConnectionClosed

from figma_communicator import FigmaChannelSession

NO_REPLY = object()
_CLOSE = object()


class PluginFailure(Exception):
    """Raised by a handler to answer a command with an error frame."""

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code
        self.message = message or code


class FakePlugin:
    """Answers commands from registered handlers and records every call."""

    def __init__(self):
        self.handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def on(self, command: str, handler: Callable[[Dict[str, Any]], Any]) -> None:
        self.handlers[command] = handler

    def fail(self, command: str, code: str = "plugin_error", message: str = "") -> None:
        def handler(_params):
            raise PluginFailure(code, message)
        self.handlers[command] = handler

    def answer(self, command: str, params: Dict[str, Any]) -> Any:
        self.calls.append((command, params))
        handler = self.handlers.get(command)
        if handler is None:
            return {"error": {"code": "unknown_command", "message": f"Unknown command: {command}"}}
        try:
            result = handler(params)
        except PluginFailure as e:
            return {"error": {"code": e.code, "message": e.message}}
        if result is NO_REPLY:
            return NO_REPLY
        return {"result": result}

    def calls_to(self, command: str) -> List[Dict[str, Any]]:
        return [params for name, params in self.calls if name == command]


class FakeSocket:
    """In-memory websocket standing in for the bridge plus the plugin behind it."""

    def __init__(self, plugin: FakePlugin, echo: bool = True):
        self.plugin = plugin
        self.echo = echo
        self.sent: List[Dict[str, Any]] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, frame: Dict[str, Any]) -> None:
        self.inbox.put_nowait(json.dumps(frame))

    def drop(self) -> None:
        """Simulate the bridge going away."""
        self.inbox.put_nowait(_CLOSE)

    async def send(self, text: str) -> None:
        frame = json.loads(text)
        self.sent.append(frame)
        if frame.get("type") == "join":
            self.push({"type": "system", "message": {"result": True}, "channel": frame["channel"]})
            return
        if frame.get("type") != "message":
            return
        body = frame["message"]
        if self.echo:
            self.push({"type": "broadcast", "message": dict(body)})
        reply = self.plugin.answer(body["command"], body.get("params") or {})
        if reply is not NO_REPLY:
            self.push({"type": "broadcast", "message": {"id": body["id"], **reply}})

    async def recv(self) -> str:
        item = await self.inbox.get()
        if item is _CLOSE:
            raise ConnectionClosed(None, None)
        return item

    async def close(self) -> None:
        self.closed = True


# ============================================================================
# Fake document
# ============================================================================

def node(node_id: str, name: str, node_type: str = "FRAME", children: Optional[List[dict]] = None, **extra) -> dict:
    data = {"id": node_id, "name": name, "type": node_type, "visible": True, "children": children or []}
    data.update(extra)
    return data


class FakeDocument:
    """
    A mutable node tree answering the document commands the pipeline issues.

    Nodes are plain dicts; get_node_info returns a deep copy so callers never
    observe later mutations through an old answer.
    """

    def __init__(self, page: dict, components: Optional[List[dict]] = None):
        self.page = page
        self.components = components or []
        self.property_keys: Dict[str, List[str]] = {}
        self.texts: Dict[str, str] = {}
        self.fills: Dict[str, str] = {}
        self.hidden: List[str] = []
        self._ids = itertools.count(100)

    def find(self, node_id: str, root: Optional[dict] = None) -> Optional[dict]:
        stack = [root or self.page]
        while stack:
            current = stack.pop()
            if current["id"] == node_id:
                return current
            stack.extend(current.get("children") or [])
        return None

    def find_named(self, root_id: str, name: str) -> Optional[dict]:
        root = self.find(root_id)
        stack = list(root.get("children") or []) if root else []
        while stack:
            current = stack.pop(0)
            if current["name"] == name:
                return current
            stack.extend(current.get("children") or [])
        return None

    def _clone(self, source: dict) -> dict:
        cloned = copy.deepcopy(source)
        stack = [cloned]
        while stack:
            current = stack.pop()
            old_id = current["id"]
            current["id"] = f"9:{next(self._ids)}"
            if old_id in self.property_keys:
                self.property_keys[current["id"]] = list(self.property_keys[old_id])
            stack.extend(current.get("children") or [])
        return cloned

    # -- command handlers --------------------------------------------------

    def get_document_info(self, _params):
        return {"id": self.page["id"], "name": self.page["name"], "type": "PAGE",
                "children": [{"id": c["id"], "name": c["name"], "type": c["type"]} for c in self.page["children"]]}

    def get_node_info(self, params):
        found = self.find(params["nodeId"])
        if found is None:
            raise PluginFailure("node_not_found", f"Node {params['nodeId']} not found")
        return copy.deepcopy(found)

    def get_selection(self, _params):
        return {"selection": []}

    def get_local_components(self, _params):
        return {"components": self.components}

    def append_card_to_container(self, params):
        container = self.find(params["containerId"])
        template = self.find(params["templateId"])
        if container is None or template is None:
            raise PluginFailure("node_not_found")
        card = self._clone(template)
        card["name"] = params.get("newName", card["name"])
        index = params.get("insertIndex", len(container["children"]))
        container["children"].insert(index, card)
        return {"success": True, "newCardId": card["id"]}

    def delete_multiple_nodes(self, params):
        doomed = set(params["nodeIds"])
        stack = [self.page]
        while stack:
            current = stack.pop()
            current["children"] = [c for c in current.get("children") or [] if c["id"] not in doomed]
            stack.extend(current["children"])
        return {"nodesDeleted": len(doomed), "nodesFailed": 0}

    def get_component_property_references(self, params):
        keys = self.property_keys.get(params["nodeId"], [])
        return {"success": True, "properties": {key: {"type": "BOOLEAN"} for key in keys}}

    def set_instance_properties(self, params):
        return {"success": True}

    def hide_nodes_by_name(self, params):
        for name in params["names"]:
            found = self.find_named(params["rootId"], name)
            if found:
                found["visible"] = False
                self.hidden.append(name)
        return {"success": True}

    def set_node_visible(self, params):
        found = self.find(params["nodeId"])
        found["visible"] = params["visible"]
        return {"success": True}

    def set_text_content(self, params):
        self.texts[params["nodeId"]] = params["text"]
        return {"success": True}

    def set_image_fill(self, params):
        self.fills[params["nodeId"]] = params.get("imageUrl") or params.get("imageBase64")
        return {"success": True}

    def ok(self, _params):
        return {"success": True}

    def install(self, plugin: FakePlugin) -> None:
        for command in (
            "get_document_info", "get_node_info", "get_selection", "get_local_components",
            "append_card_to_container", "delete_multiple_nodes", "get_component_property_references",
            "set_instance_properties", "hide_nodes_by_name", "set_node_visible", "set_text_content",
            "set_image_fill",
        ):
            plugin.on(command, getattr(self, command))
        for command in ("flush_layout", "set_text_auto_resize", "resize_poster_to_fit"):
            plugin.on(command, self.ok)


def build_poster_document() -> FakeDocument:
    """Working frame with an empty cards stack, plus a seeds frame holding one figure and one body seed."""
    figure_seed = node("2:2", "FigureCard__seedInstance", "INSTANCE", [
        node("2:3", "titleText", "TEXT"),
        node("2:4", "sourceText", "TEXT"),
        node("2:5", "slot:IMAGE_GRID", "FRAME", [node("2:6", "imgSlot1", "FRAME")]),
    ])
    body_seed = node("2:7", "BodyCard__seedInstance", "INSTANCE", [node("2:8", "slot:BODY", "TEXT")])
    page = node("0:1", "Page 1", "PAGE", [
        node("1:1", "ArticlePoster", "FRAME", [
            node("1:2", "ContentAndPlate", "FRAME", [node("1:3", "Cards", "FRAME")]),
        ]),
        node("2:1", "Seeds", "FRAME", [figure_seed, body_seed]),
    ])
    document = FakeDocument(page)
    document.property_keys["2:2"] = ["Showslot:TITLE#10:1", "Showslot:SOURCE#10:2", "ShowimgSlot2#10:3"]
    return document


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def plugin() -> FakePlugin:
    return FakePlugin()


@pytest.fixture
def poster_document(plugin: FakePlugin) -> FakeDocument:
    document = build_poster_document()
    document.install(plugin)
    return document


@pytest.fixture
def connect():
    """Factory opening a joined, listening session on a FakeSocket; must be awaited inside the test's loop."""
    async def _connect(plugin: FakePlugin, timeout: float = 2.0, echo: bool = True) -> FigmaChannelSession:
        socket = FakeSocket(plugin, echo=echo)
        session = FigmaChannelSession(socket, "test-channel", timeout=timeout)
        await session.join()
        session.start()
        return session
    return _connect
