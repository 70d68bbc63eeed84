"""
Workflow Mapping - Conventional names and knobs of a poster template

Every default below matches the reference template. A JSON mapping file may
override any subset, either as the bare mapping or wrapped as
{"workflow": {"mapping": {...}}}.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SeedsMapping(_Section):
    frame: str = "Seeds"
    figure_instance: str = "FigureCard__seedInstance"
    body_instance: str = "BodyCard__seedInstance"


class SlotsMapping(_Section):
    title_text: str = "titleText"
    source_text: str = "sourceText"
    body: str = "slot:BODY"
    images: List[str] = Field(default_factory=lambda: ["imgSlot1", "imgSlot2", "imgSlot3", "imgSlot4"])
    image_grid: str = "slot:IMAGE_GRID"


class AnchorsMapping(_Section):
    frame: str = "ArticlePoster"
    container: str = "ContentAndPlate"
    cards_stack: str = "Cards"
    seeds: SeedsMapping = Field(default_factory=SeedsMapping)
    slots: SlotsMapping = Field(default_factory=SlotsMapping)
    content_anchors: List[str] = Field(
        default_factory=lambda: ["ContentAndPlate", "ContentContainer", "content_anchor", "slot:CONTENT"]
    )


class ComponentRef(_Section):
    """A card component, addressed by node id, published key or name (resolved at run time)."""

    id: Optional[str] = None
    key: Optional[str] = None
    name: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.id or self.key or self.name)


class ComponentsMapping(_Section):
    figure: ComponentRef = Field(default_factory=lambda: ComponentRef(name="FigureCard"))
    body: ComponentRef = Field(default_factory=lambda: ComponentRef(name="BodyCard"))


class VisibilityMapping(_Section):
    title_prop: str = "Showslot:TITLE"
    source_prop: str = "Showslot:SOURCE"
    title_node: str = "slot:TITLE"
    source_node: str = "slot:SOURCE"
    # image slot node name -> boolean property name; slot 1 is always shown
    image_props: Dict[str, str] = Field(
        default_factory=lambda: {"imgSlot2": "ShowimgSlot2", "imgSlot3": "ShowimgSlot3", "imgSlot4": "ShowimgSlot4"}
    )
    title_fallbacks: List[str] = Field(default_factory=lambda: ["titleText", "TITLE", "Title", "标题"])
    source_fallbacks: List[str] = Field(default_factory=lambda: ["sourceText", "SOURCE", "Source", "来源"])


class ImagesMapping(_Section):
    scale_mode: str = "FIT"
    max_images: int = 4
    inline_min_interval: float = 0.1


class ExportMapping(_Section):
    format: str = "PNG"
    scale: float = 2
    scope: Literal["poster", "cards"] = "poster"
    bottom_padding: float = 150


class WorkflowMapping(_Section):
    anchors: AnchorsMapping = Field(default_factory=AnchorsMapping)
    components: ComponentsMapping = Field(default_factory=ComponentsMapping)
    visibility: VisibilityMapping = Field(default_factory=VisibilityMapping)
    source_format: Literal["prefixed", "plain"] = "prefixed"
    images: ImagesMapping = Field(default_factory=ImagesMapping)
    export: ExportMapping = Field(default_factory=ExportMapping)
    cleanup_on_start: bool = True


def load_mapping(path: Optional[Union[str, Path]] = None) -> WorkflowMapping:
    """
    Load a mapping file, or return the defaults when no path is given.

    Raises:
        ValueError: If the file cannot be read or does not validate.
    """
    if not path:
        return WorkflowMapping()

    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Cannot read mapping file {path}: {e}") from e

    if isinstance(raw, dict) and isinstance(raw.get("workflow"), dict) and isinstance(raw["workflow"].get("mapping"), dict):
        raw = raw["workflow"]["mapping"]

    try:
        mapping = WorkflowMapping.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid mapping file {path}: {e}") from e

    logger.info(f"🗺️ Loaded mapping from {path}")
    return mapping
