"""
Figma Anchors - Remote node model and name-based node resolution

Nodes in the remote document are located by conventional names. Names are
compared after Unicode normalization so that visually identical names
authored with different code points still match.

Resolution runs in tiers:
1. Immediate children of the root
2. Bounded breadth-first search restricted to acceptable node kinds
3. (working-area lookup only) the user's current selection
"""

import logging
import re
import unicodedata
from collections import deque
from typing import Iterator, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

import figma_commands
from figma_communicator import FigmaChannelSession, FigmaCommandError

logger = logging.getLogger(__name__)

DEFAULT_SCAN_TYPES = ("FRAME", "SECTION", "GROUP", "COMPONENT", "INSTANCE")
CONTAINER_TYPES = frozenset(DEFAULT_SCAN_TYPES + ("COMPONENT_SET", "PAGE", "DOCUMENT"))
DEFAULT_MAX_DEPTH = 3

_INVISIBLE_RE = re.compile(r"[\s\u200B-\u200D\uFEFF]+")


def normalize_name(name: Optional[str]) -> str:
    """
    NFKC-normalize a node name and drop every whitespace and zero-width character.

    Repeats until stable, so ``normalize_name(normalize_name(x)) == normalize_name(x)``.
    """
    text = name or ""
    while True:
        normalized = _INVISIBLE_RE.sub("", unicodedata.normalize("NFKC", text))
        if normalized == text:
            return normalized
        text = normalized


class BoundingBox(BaseModel):
    model_config = ConfigDict(extra="allow")

    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @property
    def bottom(self) -> float:
        return self.y + self.height


class RemoteNode(BaseModel):
    """Read-only projection of one node of the remote tree. Never cached across calls."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    name: str = ""
    type: str = ""
    visible: bool = True
    children: Optional[List["RemoteNode"]] = None
    bounding_box: Optional[BoundingBox] = Field(default=None, alias="absoluteBoundingBox")

    @property
    def normalized_name(self) -> str:
        return normalize_name(self.name)

    @property
    def is_container(self) -> bool:
        return self.type in CONTAINER_TYPES

    def iter_children(self) -> Iterator["RemoteNode"]:
        return iter(self.children or [])

    @classmethod
    def from_result(cls, result) -> Optional["RemoteNode"]:
        """Build a node from a get_node_info response ({...} or { document: {...} })."""
        if isinstance(result, dict) and isinstance(result.get("document"), dict) and "id" not in result:
            result = result["document"]
        if not isinstance(result, dict):
            return None
        try:
            return cls.model_validate(result)
        except ValidationError as e:
            logger.warning(f"⚠️ Unexpected node payload: {e}")
            return None


def find_shallow_by_name(root: RemoteNode, name: str) -> Optional[RemoteNode]:
    """Linear scan of the immediate children of ``root``."""
    target = normalize_name(name)
    for child in root.iter_children():
        if child.normalized_name == target:
            return child
    return None


class AnchorResolver:
    """Locates named nodes under a root by querying the live remote tree."""

    def __init__(self, session: FigmaChannelSession, max_depth: int = DEFAULT_MAX_DEPTH):
        self.session = session
        self.max_depth = max_depth

    async def fetch_node(self, node_id: str) -> Optional[RemoteNode]:
        try:
            result = await figma_commands.get_node_info(self.session, node_id)
        except FigmaCommandError as e:
            logger.warning(f"⚠️ get_node_info failed for {node_id}: {e}")
            return None
        return RemoteNode.from_result(result)

    async def expand(self, node: RemoteNode) -> RemoteNode:
        """Fetch children for a container that came back without them."""
        if node.children is not None or not node.is_container:
            return node
        fetched = await self.fetch_node(node.id)
        return fetched or node

    async def _deep_search(
        self,
        root: RemoteNode,
        name: str,
        kinds: Optional[Sequence[str]],
        max_depth: int,
    ) -> Optional[RemoteNode]:
        target = normalize_name(name)
        queue = deque((child, 1) for child in root.iter_children())
        while queue:
            node, depth = queue.popleft()
            if (kinds is None or node.type in kinds) and node.normalized_name == target:
                return node
            if depth < max_depth and node.is_container:
                node = await self.expand(node)
                queue.extend((child, depth + 1) for child in node.iter_children())
        return None

    async def _from_selection(self, kinds: Optional[Sequence[str]]) -> Optional[RemoteNode]:
        try:
            selection = await figma_commands.get_selection(self.session)
        except FigmaCommandError as e:
            logger.warning(f"⚠️ get_selection failed: {e}")
            return None
        for entry in selection:
            node = RemoteNode.from_result(entry)
            if node and (kinds is None or node.type in kinds):
                return node
        return None

    async def find_node(
        self,
        root_id: str,
        name: str,
        kinds: Optional[Sequence[str]] = None,
        max_depth: Optional[int] = None,
        use_selection_fallback: bool = False,
    ) -> Optional[RemoteNode]:
        """
        Find the best-matching descendant of ``root_id`` named ``name``.

        Args:
            root_id: Node to search under
            name: Target name, compared after normalization
            kinds: Acceptable node types for the deep search and selection fallback (None = any)
            max_depth: Depth cap of the deep search (default: resolver's max_depth)
            use_selection_fallback: Accept the first selected node of an acceptable kind on a total miss

        Returns:
            The matching node, or None when nothing matched
        """
        root = await self.fetch_node(root_id)
        if root is not None:
            shallow = find_shallow_by_name(root, name)
            if shallow is not None:
                return shallow

            deep = await self._deep_search(root, name, kinds, self.max_depth if max_depth is None else max_depth)
            if deep is not None:
                logger.debug(f"🔎 Found '{name}' by deep search under {root_id}: {deep.id}")
                return deep

        if use_selection_fallback:
            selected = await self._from_selection(kinds)
            if selected is not None:
                logger.warning(f"⚠️ '{name}' not found by name; using current selection {selected.name} ({selected.id})")
                return selected

        logger.debug(f"🔎 '{name}' not found under {root_id}")
        return None

    async def find_by_name(
        self,
        root_id: str,
        name: str,
        kinds: Optional[Sequence[str]] = None,
        max_depth: Optional[int] = None,
        use_selection_fallback: bool = False,
    ) -> Optional[str]:
        node = await self.find_node(root_id, name, kinds, max_depth, use_selection_fallback)
        return node.id if node else None

    async def find_first(
        self,
        root_id: str,
        names: Sequence[str],
        kinds: Optional[Sequence[str]] = None,
    ) -> Optional[str]:
        """Try ``names`` in order and return the id of the first one that resolves."""
        for name in names:
            node_id = await self.find_by_name(root_id, name, kinds)
            if node_id:
                return node_id
        return None
