"""
Figma Cards - Card instantiation and population

A card is created per flow item, either directly from its component or, when
that is unavailable, by cloning a pre-placed seed instance into the cards
stack. Once created, the card's slots are populated from the content group.
"""

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import figma_commands
from content_flow import ContentGroup, FigureGroupItem, FlowItem, StandaloneParagraphItem
from figma_anchors import DEFAULT_SCAN_TYPES, AnchorResolver, normalize_name
from figma_communicator import FigmaChannelSession, FigmaCommandError
from figma_images import FillReport, ImageFiller
from figma_visibility import VisibilityController, VisibilityOutcome
from workflow_mapping import ComponentRef, WorkflowMapping

logger = logging.getLogger(__name__)

CARD_KIND_FIGURE = "figure"
CARD_KIND_BODY = "body"

GENERATED_CARD_NAME_RE = re.compile(r"^\d+_(Figure|Body)_")
TEXT_NODE_TYPE = "TEXT"


class CardCreationError(Exception):
    """Neither direct instantiation nor seed cloning produced a card."""


def card_kind(item: FlowItem) -> str:
    return CARD_KIND_FIGURE if isinstance(item, FigureGroupItem) else CARD_KIND_BODY


def card_name(item: FlowItem, index: int) -> str:
    """Deterministic card name from its flow position: ``01_Figure_g1`` / ``02_Body_1``."""
    if isinstance(item, FigureGroupItem):
        return f"{index + 1:02d}_Figure_{item.group_id}"
    return f"{index + 1:02d}_Body_{index}"


@dataclass
class CardResult:
    index: int
    kind: str
    name: str
    node_id: Optional[str] = None
    strategy: Optional[str] = None
    error: Optional[str] = None
    images: Optional[FillReport] = None
    visibility: Optional[VisibilityOutcome] = None

    @property
    def ok(self) -> bool:
        return self.node_id is not None and self.error is None


class CardInstantiator:
    """Creates card instances: direct from a component first, seed clone second."""

    def __init__(self, session: FigmaChannelSession, resolver: AnchorResolver, mapping: WorkflowMapping):
        self.session = session
        self.resolver = resolver
        self.mapping = mapping
        self._components: Optional[Dict[str, ComponentRef]] = None
        self._seeds: Optional[Dict[str, str]] = None

    def _configured_ref(self, kind: str) -> ComponentRef:
        return self.mapping.components.figure if kind == CARD_KIND_FIGURE else self.mapping.components.body

    async def resolve_components(self) -> Dict[str, ComponentRef]:
        """Resolve component refs configured only by name to ids, once per run."""
        if self._components is not None:
            return self._components

        resolved: Dict[str, ComponentRef] = {}
        local: Optional[List[Dict]] = None
        for kind in (CARD_KIND_FIGURE, CARD_KIND_BODY):
            ref = self._configured_ref(kind)
            if ref.id or ref.key:
                resolved[kind] = ref
                continue
            if not ref.name:
                continue
            if local is None:
                try:
                    local = await figma_commands.get_local_components(self.session)
                except FigmaCommandError as e:
                    logger.warning(f"⚠️ get_local_components failed, direct creation disabled: {e}")
                    local = []
            wanted = normalize_name(ref.name)
            match = next((c for c in local if normalize_name(c.get("name")) == wanted), None)
            if match and match.get("id"):
                resolved[kind] = ComponentRef(id=match["id"], key=match.get("key"), name=ref.name)
                logger.info(f"🧩 Component {ref.name} -> {match['id']}")
            else:
                logger.warning(f"⚠️ Component '{ref.name}' not found among local components")
        self._components = resolved
        return resolved

    async def resolve_seeds(self, page_id: str) -> Dict[str, str]:
        """Locate the seed instances under the seeds frame of the current page, once per run."""
        if self._seeds is not None:
            return self._seeds

        seeds_mapping = self.mapping.anchors.seeds
        seeds: Dict[str, str] = {}
        frame_id = await self.resolver.find_by_name(page_id, seeds_mapping.frame, kinds=DEFAULT_SCAN_TYPES)
        if frame_id:
            for kind, name in ((CARD_KIND_FIGURE, seeds_mapping.figure_instance), (CARD_KIND_BODY, seeds_mapping.body_instance)):
                seed_id = await self.resolver.find_by_name(frame_id, name)
                if seed_id:
                    seeds[kind] = seed_id
        else:
            logger.warning(f"⚠️ Seeds frame '{seeds_mapping.frame}' not found")
        logger.info(f"🌱 Seed instances: {seeds or 'none'}")
        self._seeds = seeds
        return seeds

    async def _create_direct(self, ref: ComponentRef, container_id: str) -> Optional[str]:
        try:
            result = await figma_commands.create_component_instance(
                self.session, component_id=ref.id, component_key=ref.key, parent_id=container_id
            )
        except FigmaCommandError as e:
            logger.warning(f"⚠️ Direct creation failed: {e}")
            return None
        node_id = figma_commands.extract_node_id(result)
        if not node_id:
            logger.warning(f"⚠️ Direct creation returned no node id: {result}")
        return node_id

    async def _create_from_seed(self, seed_id: str, container_id: str, name: str, insert_index: int) -> Optional[str]:
        try:
            result = await figma_commands.append_card_to_container(
                self.session, container_id, seed_id, new_name=name, insert_index=insert_index
            )
        except FigmaCommandError as e:
            logger.warning(f"⚠️ Seed clone failed: {e}")
            return None
        return figma_commands.extract_node_id(result)

    async def create_card(self, item: FlowItem, index: int, container_id: str, page_id: str) -> CardResult:
        """
        Create the card for one flow item.

        Raises:
            CardCreationError: If neither strategy yields a node id.
        """
        kind = card_kind(item)
        name = card_name(item, index)
        result = CardResult(index=index, kind=kind, name=name)

        components = await self.resolve_components()
        ref = components.get(kind)
        if ref is not None:
            result.node_id = await self._create_direct(ref, container_id)
            result.strategy = "direct"

        if not result.node_id:
            seed_id = (await self.resolve_seeds(page_id)).get(kind)
            if seed_id:
                result.node_id = await self._create_from_seed(seed_id, container_id, name, index)
                result.strategy = "seed"

        if not result.node_id:
            raise CardCreationError(f"Could not create {kind} card #{index + 1} ({name}): no component and no usable seed")

        logger.info(f"🃏 Created {name} ({result.strategy}): {result.node_id}")
        return result

    async def cleanup(self, container_id: str) -> int:
        """Delete previously generated cards from the cards stack; returns how many were removed."""
        container = await self.resolver.fetch_node(container_id)
        if container is None:
            return 0
        component_names = {
            normalize_name(ref.name)
            for ref in (self.mapping.components.figure, self.mapping.components.body)
            if ref.name
        }
        doomed = [
            child for child in container.iter_children()
            if GENERATED_CARD_NAME_RE.match(child.name) or child.normalized_name in component_names
        ]
        if not doomed:
            logger.info("✅ Cards stack already clean")
            return 0
        logger.info(f"🧹 Removing {len(doomed)} generated card(s): {', '.join(c.name for c in doomed)}")
        await figma_commands.delete_multiple_nodes(self.session, [c.id for c in doomed])
        return len(doomed)


class CardFiller:
    """Populates one created card: visibility, title, source, images, body text."""

    def __init__(
        self,
        session: FigmaChannelSession,
        resolver: AnchorResolver,
        visibility: VisibilityController,
        images: ImageFiller,
        mapping: WorkflowMapping,
    ):
        self.session = session
        self.resolver = resolver
        self.visibility = visibility
        self.images = images
        self.mapping = mapping

    async def _write_text(self, node_id: str, text: str, auto_height: bool = False) -> bool:
        try:
            await figma_commands.set_text_content(self.session, node_id, text)
        except FigmaCommandError as e:
            logger.warning(f"⚠️ set_text_content failed on {node_id}: {e}")
            return False
        if auto_height:
            try:
                await figma_commands.set_text_auto_resize(self.session, node_id, "HEIGHT")
            except FigmaCommandError as e:
                logger.warning(f"⚠️ set_text_auto_resize failed on {node_id}: {e}")
        return True

    async def _set_text(self, card_id: str, slot_name: str, text: str, auto_height: bool = False) -> bool:
        node_id = await self.resolver.find_by_name(card_id, slot_name)
        if not node_id:
            logger.warning(f"⚠️ Slot '{slot_name}' not found in card {card_id}, skipping")
            return False
        return await self._write_text(node_id, text, auto_height)

    async def _find_text_by_names(self, root_id: str, names: List[str]) -> Optional[str]:
        for name in names:
            node = await self.resolver.find_node(root_id, name, kinds=(TEXT_NODE_TYPE,))
            if node is not None and node.type == TEXT_NODE_TYPE:
                return node.id
        return None

    async def _first_text_descendant(self, root_id: str) -> Optional[str]:
        root = await self.resolver.fetch_node(root_id)
        if root is None:
            return None
        queue = deque((child, 1) for child in root.iter_children())
        while queue:
            node, depth = queue.popleft()
            if node.type == TEXT_NODE_TYPE:
                return node.id
            if depth < self.resolver.max_depth:
                node = await self.resolver.expand(node)
                queue.extend((child, depth + 1) for child in node.iter_children())
        return None

    async def find_source_text_node(self, card_id: str) -> Optional[str]:
        """
        Locate the text node that receives the source line.

        Inside the source slot frame: the source text name and its fallback
        names (TEXT nodes only), then the first TEXT descendant. Failing
        that, the same names searched from the card root.
        """
        visibility = self.mapping.visibility
        names = [self.mapping.anchors.slots.source_text]
        names += [n for n in visibility.source_fallbacks if n not in names]

        frame_id = await self.resolver.find_by_name(card_id, visibility.source_node)
        if frame_id:
            node_id = await self._find_text_by_names(frame_id, names)
            if node_id is None:
                node_id = await self._first_text_descendant(frame_id)
            if node_id:
                return node_id
        return await self._find_text_by_names(card_id, names)

    async def fill_source(self, card_id: str, text: str) -> bool:
        node_id = await self.find_source_text_node(card_id)
        if not node_id:
            logger.warning(f"⚠️ No source text node in card {card_id}, skipping source")
            return False
        return await self._write_text(node_id, text, auto_height=True)

    async def fill_figure(self, card: CardResult, group: ContentGroup) -> None:
        card_id = card.node_id
        slots = self.mapping.anchors.slots
        source_text = group.source_text(self.mapping.source_format)

        card.visibility = await self.visibility.apply_visibility(
            card_id,
            has_title=group.has_title,
            has_source=group.has_source or bool(source_text),
            image_count=group.image_count,
        )

        if group.has_title:
            await self._set_text(card_id, slots.title_text, group.title, auto_height=True)
        if source_text:
            await self.fill_source(card_id, source_text)

        max_images = self.mapping.images.max_images
        asset_ids = group.asset_ids
        card.images = await self.images.fill_images(card_id, asset_ids[:max_images])
        if len(asset_ids) > max_images:
            card.images.skipped.extend(asset_ids[max_images:])
            logger.warning(f"⚠️ {len(asset_ids) - max_images} image(s) beyond the {max_images}-slot limit skipped")

        await self.visibility.flush()

    async def fill_body(self, card: CardResult, item: StandaloneParagraphItem) -> None:
        await self._set_text(card.node_id, self.mapping.anchors.slots.body, item.text)

    async def fill(self, card: CardResult, item: FlowItem) -> None:
        if isinstance(item, FigureGroupItem):
            await self.fill_figure(card, item.group)
        else:
            await self.fill_body(card, item)
