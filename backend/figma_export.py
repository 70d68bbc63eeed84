"""
Figma Export - Resize-to-fit and verified export of finished frames
"""

import asyncio
import base64
import binascii
import logging
import re
from pathlib import Path
from typing import Optional

import figma_commands
from figma_anchors import AnchorResolver
from figma_communicator import FigmaChannelSession, FigmaCommandError
from figma_visibility import LAYOUT_SETTLE_DELAY
from workflow_mapping import AnchorsMapping, ExportMapping

logger = logging.getLogger(__name__)

_DATA_URL_PREFIX_RE = re.compile(r"^data:[\w/+.-]+;base64,")
_WHITESPACE_RE = re.compile(r"\s+")

# A poster within this many pixels of its expected height counts as fitted
HEIGHT_TOLERANCE = 2.0


class PosterFinalizer:
    """
    Resizes a finished frame to its content and exports it.

    Export failures never raise: they are logged and reported as a None path
    so the remaining posters still get exported.
    """

    def __init__(
        self,
        session: FigmaChannelSession,
        resolver: AnchorResolver,
        output_dir: Path,
        export_root: Optional[Path] = None,
        options: Optional[ExportMapping] = None,
        anchors: Optional[AnchorsMapping] = None,
        settle_delay: float = LAYOUT_SETTLE_DELAY,
    ):
        self.session = session
        self.resolver = resolver
        self.output_dir = Path(output_dir)
        self.export_root = Path(export_root) if export_root else Path.cwd()
        self.options = options or ExportMapping()
        self.anchors = anchors or AnchorsMapping()
        self.settle_delay = settle_delay

    @property
    def extension(self) -> str:
        return self.options.format.lower()

    async def find_content_anchor(self, poster_id: str) -> Optional[str]:
        return await self.resolver.find_first(poster_id, self.anchors.content_anchors)

    async def flush(self) -> None:
        try:
            await figma_commands.flush_layout(self.session)
        except FigmaCommandError as e:
            logger.warning(f"⚠️ flush_layout failed: {e}")
        if self.settle_delay:
            await asyncio.sleep(self.settle_delay)

    async def is_short(self, poster_id: str, anchor_id: str) -> bool:
        """True when the poster ends above the anchor's bottom edge plus padding. Unknown bounds count as fitted."""
        poster = await self.resolver.fetch_node(poster_id)
        anchor = await self.resolver.fetch_node(anchor_id)
        if poster is None or anchor is None or poster.bounding_box is None or anchor.bounding_box is None:
            logger.debug(f"📐 No bounds to verify {poster_id} against {anchor_id}")
            return False
        expected = max(0.0, anchor.bounding_box.bottom - poster.bounding_box.y) + self.options.bottom_padding
        height = poster.bounding_box.height
        if height < expected - HEIGHT_TOLERANCE:
            logger.warning(f"⚠️ {poster_id} is {height:.0f}px tall, content needs {expected:.0f}px")
            return True
        return False

    async def resize_to_fit(self, poster_id: str) -> bool:
        """
        Grow or shrink ``poster_id`` to its content plus bottom padding.

        Layout is flushed before measuring. When a content anchor exists the
        result is checked once against the anchor's bottom edge and the resize
        is re-issued if the poster came out short. Failures are soft.
        """
        await self.flush()
        anchor_id = await self.find_content_anchor(poster_id)
        if not anchor_id:
            logger.info(f"📐 No content anchor under {poster_id}; relying on the plugin's content bounds")
        resized = await self._resize(poster_id, anchor_id)
        if not resized or not anchor_id:
            return resized
        await self.flush()
        if await self.is_short(poster_id, anchor_id):
            resized = await self._resize(poster_id, anchor_id)
            await self.flush()
        return resized

    async def _resize(self, poster_id: str, anchor_id: Optional[str]) -> bool:
        try:
            result = await figma_commands.resize_poster_to_fit(
                self.session, poster_id, anchor_id=anchor_id, bottom_padding=self.options.bottom_padding
            )
        except FigmaCommandError as e:
            logger.warning(f"⚠️ resize_poster_to_fit failed for {poster_id}: {e}")
            return False
        if not (isinstance(result, dict) and result.get("success")):
            logger.warning(f"⚠️ resize_poster_to_fit did not report success for {poster_id}: {result}")
            return False
        logger.info(f"📐 Resized {poster_id}")
        return True

    def _verify_server_file(self, file_path: str) -> Optional[Path]:
        path = Path(file_path)
        if not path.is_absolute():
            path = self.export_root / path
        try:
            size = path.stat().st_size
        except OSError as e:
            logger.error(f"❌ Exported file {path} is not accessible: {e}")
            return None
        if size <= 0:
            logger.error(f"❌ Exported file {path} is empty")
            return None
        return path

    def _write_base64(self, data: str, filename: str) -> Optional[Path]:
        try:
            payload = base64.b64decode(_WHITESPACE_RE.sub("", _DATA_URL_PREFIX_RE.sub("", data.strip())), validate=True)
        except (binascii.Error, ValueError) as e:
            logger.error(f"❌ Export payload for {filename} is not valid base64: {e}")
            return None
        path = self.output_dir / filename
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(payload)
            size = path.stat().st_size
        except OSError as e:
            logger.error(f"❌ Cannot write export {path}: {e}")
            return None
        if size <= 0:
            logger.error(f"❌ Export {path} was written empty")
            return None
        return path

    async def export(self, node_id: str, filename: str) -> Optional[Path]:
        """
        Export ``node_id`` and verify the file landed.

        Args:
            node_id: Frame to export
            filename: Local file name used when the plugin returns inline data

        Returns:
            The verified file path, or None on any failure
        """
        try:
            result = await figma_commands.export_frame(
                self.session, node_id, export_format=self.options.format, scale=self.options.scale
            )
        except FigmaCommandError as e:
            logger.error(f"❌ Export of {node_id} failed: {e}")
            return None

        path = None
        if isinstance(result, dict) and isinstance(result.get("filePath"), str) and result["filePath"]:
            path = self._verify_server_file(result["filePath"])
        elif isinstance(result, dict) and isinstance(result.get("base64"), str) and result["base64"]:
            path = self._write_base64(result["base64"], filename)
        else:
            logger.error(f"❌ Unexpected export response for {node_id}: {str(result)[:200]}")

        if path:
            logger.info(f"💾 Exported {node_id} -> {path}")
        return path

    async def finalize(self, node_id: str, filename: str) -> Optional[Path]:
        await self.resize_to_fit(node_id)
        return await self.export(node_id, filename)
