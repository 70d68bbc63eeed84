"""
Content Flow - Content model and card flow builder

Turns the flat, possibly unordered block list of a content file into the
ordered sequence of cards to render: one figure card per group, one body
card per standalone paragraph.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

BLOCK_TYPE_FIGURE = "figure"
BLOCK_TYPE_PARAGRAPH = "paragraph"

SOURCE_FORMAT_PREFIXED = "prefixed"
SOURCE_FORMAT_PLAIN = "plain"

_SOURCE_PREFIX_RE = re.compile(r"^(?:\s*source\s*[:：]\s*)+", re.IGNORECASE)


class ContentError(Exception):
    """Content file is unreadable or does not carry a block list."""


class ImageRef(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    asset_id: Optional[str] = None


class ContentBlock(BaseModel):
    """One block of the content file. Treated as immutable input; numeric ids are read as strings."""

    model_config = ConfigDict(extra="allow", frozen=True, coerce_numbers_to_str=True)

    type: str
    group_id: Optional[str] = None
    group_seq: Optional[float] = None
    title: Optional[str] = None
    credit: Optional[str] = None
    credit_tokens: Optional[List[str]] = None
    image: Optional[ImageRef] = None
    text: Optional[str] = None

    @property
    def asset_id(self) -> Optional[str]:
        if self.image and self.image.asset_id:
            return self.image.asset_id
        return None

    @property
    def has_credit(self) -> bool:
        tokens = [t for t in (self.credit_tokens or []) if t and t.strip()]
        return bool(tokens) or bool((self.credit or "").strip())


class ContentDocument(BaseModel):
    model_config = ConfigDict(extra="allow")

    doc: Dict[str, Any] = Field(default_factory=dict)
    blocks: List[ContentBlock]
    assets: List[Any] = Field(default_factory=list)

    @property
    def title(self) -> str:
        return str(self.doc.get("title") or "")


@dataclass
class ContentGroup:
    """Blocks sharing one group_id, kept sorted by group_seq (missing counts as 0)."""

    group_id: str
    blocks: List[ContentBlock] = field(default_factory=list)

    @property
    def has_title(self) -> bool:
        return any((b.title or "").strip() for b in self.blocks)

    @property
    def has_source(self) -> bool:
        return any(b.has_credit for b in self.blocks)

    @property
    def asset_ids(self) -> List[str]:
        return [b.asset_id for b in self.blocks if b.asset_id]

    @property
    def image_count(self) -> int:
        return len(self.asset_ids)

    @property
    def title(self) -> str:
        for block in self.blocks:
            if (block.title or "").strip():
                return block.title.strip()
        return ""

    def source_text(self, mode: str = SOURCE_FORMAT_PREFIXED) -> str:
        for block in self.blocks:
            if block.has_credit:
                return format_source_text(block, mode)
        return ""


@dataclass
class FigureGroupItem:
    group: ContentGroup

    @property
    def group_id(self) -> str:
        return self.group.group_id

    @property
    def blocks(self) -> List[ContentBlock]:
        return self.group.blocks


@dataclass
class StandaloneParagraphItem:
    block: ContentBlock

    @property
    def text(self) -> str:
        return self.block.text or ""


FlowItem = Union[FigureGroupItem, StandaloneParagraphItem]


def _seq_key(block: ContentBlock) -> float:
    return block.group_seq if block.group_seq is not None else 0


def build_content_flow(blocks: List[ContentBlock]) -> List[FlowItem]:
    """
    Build the ordered card flow for a block list.

    A group contributes exactly one item, at the position of its first block;
    its blocks are sorted by group_seq with a stable sort, so equal sequence
    numbers keep their document order. Paragraphs without a group become
    standalone items in document order. Figures without a group become
    single-block groups keyed ``single_<index>``.
    """
    groups: Dict[str, ContentGroup] = {}
    flow: List[FlowItem] = []

    for index, block in enumerate(blocks):
        group_id = block.group_id
        if not group_id:
            if block.type == BLOCK_TYPE_PARAGRAPH:
                flow.append(StandaloneParagraphItem(block=block))
                continue
            if block.type != BLOCK_TYPE_FIGURE:
                logger.warning(f"⚠️ Skipping block #{index} with unsupported type '{block.type}'")
                continue
            group_id = f"single_{index}"

        group = groups.get(group_id)
        if group is None:
            group = ContentGroup(group_id=group_id)
            groups[group_id] = group
            flow.append(FigureGroupItem(group=group))
        group.blocks.append(block)

    for group in groups.values():
        group.blocks.sort(key=_seq_key)

    return flow


def format_source_text(block: ContentBlock, mode: str = SOURCE_FORMAT_PREFIXED) -> str:
    """
    Format the credit line of a block.

    Non-empty credit_tokens are joined with ", "; otherwise the credit string
    is used. In prefixed mode the result reads "Source: <text>" and any
    prefix already present in the data is collapsed into one.
    """
    tokens = [t.strip() for t in (block.credit_tokens or []) if t and t.strip()]
    text = ", ".join(tokens) if tokens else (block.credit or "").strip()
    if not text:
        return ""
    if mode == SOURCE_FORMAT_PLAIN:
        return text
    stripped = _SOURCE_PREFIX_RE.sub("", text).strip()
    return f"Source: {stripped}" if stripped else ""


def describe_flow_item(item: FlowItem, position: int) -> str:
    """One-line dry-run summary, e.g. ``[#1 figure 2img title:Y source:N]``."""
    if isinstance(item, FigureGroupItem):
        group = item.group
        return (
            f"[#{position} figure {group.image_count}img "
            f"title:{'Y' if group.has_title else 'N'} source:{'Y' if group.has_source else 'N'}]"
        )
    preview = item.text[:40].replace("\n", " ")
    return f"[#{position} body \"{preview}\"]"


def load_content(path: Union[str, Path]) -> ContentDocument:
    """
    Read and validate a content JSON file.

    Raises:
        ContentError: If the file is missing, not JSON, or lacks a valid ``blocks`` list.
    """
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ContentError(f"Cannot read content file {path}: {e}") from e

    if not isinstance(raw, dict) or not isinstance(raw.get("blocks"), list):
        raise ContentError(f"Content file {path} has no 'blocks' list")

    try:
        document = ContentDocument.model_validate(raw)
    except ValidationError as e:
        raise ContentError(f"Invalid content file {path}: {e}") from e

    logger.info(f"📚 Loaded {len(document.blocks)} blocks from {path.name}")
    return document
