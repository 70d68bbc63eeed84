"""
Figma Visibility - Property-driven show/hide of card slots

Card components expose boolean properties whose keys carry an opaque
per-component suffix (e.g. "ShowimgSlot2#194:57"). Semantic targets are
matched onto those keys by normalized token; when the property API is
missing or rejects the update, slots that must be hidden are hidden by
node name instead.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import figma_commands
from figma_anchors import AnchorResolver
from figma_communicator import FigmaChannelSession, FigmaCommandError
from workflow_mapping import VisibilityMapping

logger = logging.getLogger(__name__)

LAYOUT_SETTLE_DELAY = 0.08

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]", re.IGNORECASE)


@dataclass(frozen=True)
class VisibilityTarget:
    name: str
    prop_name: str
    should_show: bool
    fallback_names: Tuple[str, ...] = ()


@dataclass
class VisibilityOutcome:
    properties: Dict[str, bool] = field(default_factory=dict)
    properties_applied: bool = False
    hidden_by_name: List[str] = field(default_factory=list)


def build_visibility_targets(
    has_title: bool,
    has_source: bool,
    image_count: int,
    mapping: Optional[VisibilityMapping] = None,
) -> List[VisibilityTarget]:
    """Image slot k is shown iff image_count >= k; title and source follow their flags."""
    mapping = mapping or VisibilityMapping()
    targets = []
    # image_props lists slots 2..N in order; slot 1 has no toggle
    for position, (slot_name, prop_name) in enumerate(mapping.image_props.items()):
        targets.append(VisibilityTarget(name=slot_name, prop_name=prop_name, should_show=image_count >= position + 2))
    targets.append(VisibilityTarget(
        name=mapping.source_node,
        prop_name=mapping.source_prop,
        should_show=has_source,
        fallback_names=tuple(mapping.source_fallbacks),
    ))
    targets.append(VisibilityTarget(
        name=mapping.title_node,
        prop_name=mapping.title_prop,
        should_show=has_title,
        fallback_names=tuple(mapping.title_fallbacks),
    ))
    return targets


def normalize_prop_token(value: Any) -> str:
    return _NON_ALNUM_RE.sub("", str(value or "")).lower()


def match_property_key(target: str, keys: Sequence[str]) -> Optional[str]:
    """
    Resolve a semantic property name against the instance's property keys.

    Exact match on the normalized key or its base (the part before '#') wins;
    otherwise the first key whose normalized form contains, or is contained
    in, the normalized target.
    """
    wanted = normalize_prop_token(target)
    if not wanted:
        return None

    entries = []
    for key in keys:
        base = key.split("#", 1)[0]
        entries.append((key, normalize_prop_token(key), normalize_prop_token(base)))

    for key, normalized, normalized_base in entries:
        if wanted in (normalized, normalized_base):
            return key
    for key, normalized, _ in entries:
        if normalized and (wanted in normalized or normalized in wanted):
            return key
    return None


def extract_property_keys(result: Any) -> List[str]:
    if not isinstance(result, dict):
        return []
    keys = result.get("propertyKeys")
    if isinstance(keys, list):
        return [str(k) for k in keys]
    for field_name in ("properties", "componentProperties", "references"):
        props = result.get(field_name)
        if isinstance(props, dict):
            return list(props.keys())
    return []


class VisibilityController:
    def __init__(
        self,
        session: FigmaChannelSession,
        resolver: AnchorResolver,
        mapping: Optional[VisibilityMapping] = None,
        settle_delay: float = LAYOUT_SETTLE_DELAY,
    ):
        self.session = session
        self.resolver = resolver
        self.mapping = mapping or VisibilityMapping()
        self.settle_delay = settle_delay

    async def apply_visibility(self, root_id: str, has_title: bool, has_source: bool, image_count: int) -> VisibilityOutcome:
        """
        Show or hide the optional slots of one card instance.

        One bulk property update carries every target whose key resolved. Hidden
        targets without a key, or every hidden target when the bulk update fails,
        go through the hide-by-name fallback. Layout is flushed afterwards.
        """
        targets = build_visibility_targets(has_title, has_source, image_count, self.mapping)
        outcome = VisibilityOutcome()

        keys: List[str] = []
        try:
            refs = await figma_commands.get_component_property_references(self.session, root_id)
            keys = extract_property_keys(refs)
            logger.debug(f"📋 Property keys on {root_id}: {', '.join(keys)}")
        except FigmaCommandError as e:
            logger.warning(f"⚠️ Property references unavailable for {root_id}, falling back to hiding: {e}")

        needs_fallback: List[VisibilityTarget] = []
        for target in targets:
            key = match_property_key(target.prop_name, keys)
            if key:
                outcome.properties[key] = target.should_show
            elif not target.should_show:
                needs_fallback.append(target)

        if outcome.properties:
            outcome.properties_applied = await self._set_properties(root_id, outcome.properties)

        if not outcome.properties_applied:
            for target in targets:
                if not target.should_show and target not in needs_fallback:
                    needs_fallback.append(target)

        if needs_fallback:
            outcome.hidden_by_name = await self.hide_by_name(root_id, needs_fallback)

        await self.flush()
        return outcome

    async def _set_properties(self, root_id: str, properties: Dict[str, bool]) -> bool:
        try:
            result = await figma_commands.set_instance_properties(self.session, root_id, properties)
        except FigmaCommandError as e:
            logger.warning(f"⚠️ set_instance_properties failed on {root_id}: {e}")
            return False
        if figma_commands.is_soft_failure(result):
            logger.warning(f"⚠️ set_instance_properties reported failure on {root_id}: {result.get('message')}")
            return False
        return True

    async def hide_by_name(self, root_id: str, targets: Sequence[VisibilityTarget]) -> List[str]:
        """
        Hide ``targets`` under ``root_id``: one bulk call by name, then one
        visibility toggle per node if the bulk call fails.
        """
        names: List[str] = []
        for target in targets:
            name = target.name.strip()
            if name and name not in names:
                names.append(name)
        if not names:
            return []

        try:
            result = await figma_commands.hide_nodes_by_name(self.session, root_id, names)
            if not figma_commands.is_soft_failure(result):
                return names
            logger.warning(f"⚠️ hide_nodes_by_name reported failure: {result.get('message')}")
        except FigmaCommandError as e:
            logger.warning(f"⚠️ hide_nodes_by_name failed, hiding one by one: {e}")

        hidden = []
        for target in targets:
            node_id = await self.resolver.find_first(root_id, [target.name, *target.fallback_names])
            if not node_id:
                logger.debug(f"🔎 Nothing to hide for '{target.name}'")
                continue
            try:
                await figma_commands.set_node_visible(self.session, node_id, False)
                hidden.append(target.name)
            except FigmaCommandError as e:
                logger.warning(f"⚠️ set_node_visible({target.name}) failed: {e}")
        return hidden

    async def flush(self) -> None:
        try:
            await figma_commands.flush_layout(self.session)
        except FigmaCommandError as e:
            logger.warning(f"⚠️ flush_layout failed: {e}")
        if self.settle_delay:
            await asyncio.sleep(self.settle_delay)
