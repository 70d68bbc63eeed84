"""
Figma Images - Image slot discovery and filling

Each asset is placed into the first unused target that accepts it. The plugin
first tries to fetch the asset from the static asset server by URL; when
that fails the local file is sent inline as a base64 data URL, which is far
more expensive, so inline transfers are throttled.
"""

import asyncio
import base64
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import figma_commands
from figma_anchors import AnchorResolver, RemoteNode
from figma_communicator import FigmaChannelSession, FigmaCommandError
from workflow_mapping import ImagesMapping, SlotsMapping

logger = logging.getLogger(__name__)

FRAME_TARGET_TYPES = ("FRAME", "GROUP")
SHAPE_TARGET_TYPES = ("RECTANGLE", "VECTOR", "ELLIPSE", "POLYGON", "STAR")
GRID_SCAN_DEPTH = 4


class InlineThrottle:
    """
    Single-token bucket: at most one inline transfer per ``min_interval`` seconds.

    ``clock`` and ``sleep`` are injectable so tests can run on a fake timeline.
    """

    def __init__(
        self,
        min_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self.clock = clock
        self.sleep = sleep
        self._last: Optional[float] = None

    async def acquire(self) -> None:
        now = self.clock()
        if self._last is not None:
            wait = self.min_interval - (now - self._last)
            if wait > 0:
                await self.sleep(wait)
                now = self.clock()
        self._last = now


class AssetSource:
    """Where an asset id resolves to: a URL on the asset server and a local PNG file."""

    def __init__(self, base_url: str, asset_dir: Optional[Path] = None):
        self.base_url = base_url.rstrip("/")
        self.asset_dir = Path(asset_dir) if asset_dir else None

    def url_for(self, asset_id: str) -> str:
        return f"{self.base_url}/{asset_id}.png"

    def read_inline(self, asset_id: str) -> Optional[str]:
        """Return the asset as a ``data:image/png;base64,...`` URL, or None if it cannot be read."""
        if self.asset_dir is None:
            return None
        path = self.asset_dir / f"{asset_id}.png"
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning(f"⚠️ Cannot read local asset {path}: {e}")
            return None
        return f"data:image/png;base64,{base64.b64encode(data).decode('ascii')}"


@dataclass
class FillReport:
    placed: List[Tuple[str, str]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def placed_count(self) -> int:
        return len(self.placed)


def collect_grid_targets(grid: RemoteNode, needed: int, exclude: Sequence[str] = (), max_depth: int = GRID_SCAN_DEPTH) -> List[str]:
    """
    Breadth-first scan of an image grid for fillable nodes.

    Visible frames and groups come first, then visible shapes, each in
    traversal order. Hidden nodes and their subtrees are skipped.
    """
    frames: List[str] = []
    shapes: List[str] = []
    seen = set(exclude)
    queue = deque((child, 1) for child in grid.iter_children())
    while queue:
        node, depth = queue.popleft()
        if not node.visible:
            continue
        if node.id not in seen:
            if node.type in FRAME_TARGET_TYPES:
                frames.append(node.id)
                seen.add(node.id)
            elif node.type in SHAPE_TARGET_TYPES:
                shapes.append(node.id)
                seen.add(node.id)
        if depth < max_depth:
            queue.extend((child, depth + 1) for child in node.iter_children())
    return (frames + shapes)[:needed]


class ImageFiller:
    def __init__(
        self,
        session: FigmaChannelSession,
        resolver: AnchorResolver,
        assets: AssetSource,
        slots: Optional[SlotsMapping] = None,
        options: Optional[ImagesMapping] = None,
        throttle: Optional[InlineThrottle] = None,
    ):
        self.session = session
        self.resolver = resolver
        self.assets = assets
        self.slots = slots or SlotsMapping()
        self.options = options or ImagesMapping()
        self.throttle = throttle or InlineThrottle(self.options.inline_min_interval)

    async def discover_targets(self, root_id: str, needed: int) -> List[str]:
        """Named visible slots first, then the image grid's contents, up to ``needed`` ids."""
        candidates: List[str] = []
        for name in self.slots.images:
            if len(candidates) >= needed:
                break
            node = await self.resolver.find_node(root_id, name)
            if node is not None and node.visible and node.id not in candidates:
                candidates.append(node.id)

        if len(candidates) < needed:
            grid = await self.resolver.find_node(root_id, self.slots.image_grid)
            if grid is not None:
                grid = await self.resolver.expand(grid)
                candidates.extend(collect_grid_targets(grid, needed - len(candidates), exclude=candidates))

        logger.info(f"🔍 Found {len(candidates)} image target(s) (need {needed})")
        return candidates

    async def fill_images(self, root_id: str, asset_ids: Sequence[str]) -> FillReport:
        """
        Place each asset into one discovered target, never reusing a target.

        Assets that no remaining target accepts are reported as skipped.
        """
        report = FillReport()
        if not asset_ids:
            return report

        candidates = await self.discover_targets(root_id, len(asset_ids))
        used = set()
        inline_cache: Dict[str, Optional[str]] = {}

        for asset_id in asset_ids:
            placed = False
            for node_id in candidates:
                if node_id in used:
                    continue
                if await self._fill_one(node_id, asset_id, inline_cache):
                    used.add(node_id)
                    report.placed.append((asset_id, node_id))
                    placed = True
                    logger.info(f"✅ Image {asset_id} placed in {node_id}")
                    break
                logger.warning(f"⚠️ Image {asset_id} failed on {node_id}, trying next target")
            if not placed:
                report.skipped.append(asset_id)
                logger.warning(f"⚠️ Image {asset_id} skipped: no remaining target accepted it")

        return report

    async def _fill_one(self, node_id: str, asset_id: str, inline_cache: Dict[str, Optional[str]]) -> bool:
        try:
            result = await figma_commands.set_image_fill(
                self.session, node_id, image_url=self.assets.url_for(asset_id), scale_mode=self.options.scale_mode
            )
            if not figma_commands.is_soft_failure(result):
                return True
            logger.warning(f"⚠️ URL fill rejected for {asset_id}: {result.get('message')}")
        except FigmaCommandError as e:
            logger.warning(f"⚠️ URL fill failed for {asset_id}: {e}")

        if asset_id not in inline_cache:
            inline_cache[asset_id] = self.assets.read_inline(asset_id)
        inline = inline_cache[asset_id]
        if inline is None:
            return False

        await self.throttle.acquire()
        try:
            result = await figma_commands.set_image_fill(
                self.session, node_id, image_base64=inline, scale_mode=self.options.scale_mode
            )
        except FigmaCommandError as e:
            logger.warning(f"⚠️ Inline fill failed for {asset_id}: {e}")
            return False
        return not figma_commands.is_soft_failure(result)
