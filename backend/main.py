import os
import re
import sys
import signal
import logging
import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from content_flow import (
    ContentDocument,
    ContentError,
    FlowItem,
    build_content_flow,
    describe_flow_item,
    load_content,
)
from figma_anchors import DEFAULT_SCAN_TYPES, AnchorResolver
from figma_cards import CardCreationError, CardFiller, CardInstantiator, CardResult, card_kind, card_name
from figma_communicator import DEFAULT_COMMAND_TIMEOUT, ChannelConnectionError, FigmaChannelSession, FigmaCommandError
from figma_export import PosterFinalizer
from figma_images import AssetSource, ImageFiller
from figma_retry import ensure_command_ready
from figma_visibility import VisibilityController
from workflow_mapping import WorkflowMapping, load_mapping

# Configure logging with INFO level (DEBUG was too verbose)
logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] [poster] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%dT%H:%M:%S'
)
logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "en"
_DATED_NAME_RE = re.compile(r"^(\d{6})")


class PosterRunError(Exception):
    """The document does not offer what the run needs (e.g. no working area)."""


@dataclass
class RunConfig:
    bridge_url: str = "ws://localhost:3055"
    channel: str = "figma-poster-default"
    timeout: float = DEFAULT_COMMAND_TIMEOUT
    asset_base_url: str = "http://localhost:3056/assets"
    asset_dir: Optional[Path] = None
    output_dir: Path = Path("exports")
    export_root: Optional[Path] = None
    auto_export: bool = False
    mapping_path: Optional[str] = None
    contents: Dict[str, Path] = field(default_factory=dict)
    dry_run: bool = False

    def asset_dir_for(self, content_path: Path) -> Path:
        return self.asset_dir if self.asset_dir else default_asset_dir(content_path)


@dataclass
class LanguageSummary:
    lang: str
    cards: List[CardResult] = field(default_factory=list)
    exports: List[Path] = field(default_factory=list)
    export_failures: int = 0

    @property
    def created(self) -> int:
        return sum(1 for card in self.cards if card.node_id)

    @property
    def errors(self) -> List[CardResult]:
        return [card for card in self.cards if card.error]


def default_asset_dir(content_path: Path) -> Path:
    """``assets/<YYMMDD>`` beside a dated content file, otherwise the content file's directory."""
    content_path = Path(content_path)
    match = _DATED_NAME_RE.match(content_path.name)
    if match:
        return content_path.parent / "assets" / match.group(1)
    return content_path.parent


def poster_key(content_path: Path) -> str:
    return re.sub(r"[^\w.-]+", "_", Path(content_path).stem) or "poster"


class PosterRunner:
    """
    One job: connect, locate the working area, then for each language version
    rebuild the cards from content and finalize the poster.

    Languages and cards are processed strictly one after another; the remote
    document is a single shared mutable resource.
    """

    def __init__(
        self,
        config: RunConfig,
        mapping: Optional[WorkflowMapping] = None,
        session_factory: Optional[Callable[[], Awaitable[FigmaChannelSession]]] = None,
    ):
        self.config = config
        self.mapping = mapping or WorkflowMapping()
        self.session_factory = session_factory or (
            lambda: FigmaChannelSession.connect(config.bridge_url, config.channel, timeout=config.timeout)
        )
        self.session: Optional[FigmaChannelSession] = None
        self.resolver: Optional[AnchorResolver] = None
        self.page_id: Optional[str] = None
        self.frame_id: Optional[str] = None
        self.cards_stack_id: Optional[str] = None

    def load_contents(self) -> Dict[str, Tuple[Path, ContentDocument]]:
        if not self.config.contents:
            raise ContentError("No content file given (CONTENT_JSON_PATH, --content= or --content-<lang>=)")
        return {lang: (path, load_content(path)) for lang, path in self.config.contents.items()}

    def dry_run(self, contents: Dict[str, Tuple[Path, ContentDocument]]) -> Dict[str, List[str]]:
        """Report the flow per language without touching the document."""
        report = {}
        for lang, (_, document) in contents.items():
            flow = build_content_flow(document.blocks)
            lines = [describe_flow_item(item, index + 1) for index, item in enumerate(flow)]
            logger.info(f"🧪 [{lang}] Dry run: {len(flow)} card(s)")
            for line in lines:
                logger.info(f"   {line}")
            report[lang] = lines
        return report

    async def run(self) -> Dict[str, LanguageSummary]:
        contents = self.load_contents()
        if self.config.dry_run:
            self.dry_run(contents)
            return {}

        self.session = await self.session_factory()
        try:
            await self.prepare()
            summaries = {}
            for lang, (path, document) in contents.items():
                summaries[lang] = await self.process_language(lang, path, document)
                self.log_summary(summaries[lang])
            return summaries
        finally:
            await self.session.close()

    async def prepare(self) -> None:
        """Health-check the channel and locate the working area and cards stack."""
        doc_info = await ensure_command_ready(self.session, "get_document_info")
        if not isinstance(doc_info, dict) or not doc_info.get("id"):
            raise PosterRunError(f"get_document_info returned no page id: {str(doc_info)[:200]}")
        self.page_id = doc_info["id"]
        logger.info(f"📄 Document page: {doc_info.get('name', '')} ({self.page_id})")

        self.resolver = AnchorResolver(self.session)
        anchors = self.mapping.anchors
        self.frame_id = await self.resolver.find_by_name(
            self.page_id, anchors.frame, kinds=DEFAULT_SCAN_TYPES, use_selection_fallback=True
        )
        if not self.frame_id:
            raise PosterRunError(f"Working area '{anchors.frame}' not found and nothing usable is selected")

        container_id = await self.resolver.find_by_name(self.frame_id, anchors.container, kinds=DEFAULT_SCAN_TYPES)
        self.cards_stack_id = await self.resolver.find_by_name(
            container_id or self.frame_id, anchors.cards_stack, kinds=DEFAULT_SCAN_TYPES
        )
        if not self.cards_stack_id:
            self.cards_stack_id = container_id or self.frame_id
            logger.warning(f"⚠️ Cards stack '{anchors.cards_stack}' not found, appending cards to {self.cards_stack_id}")
        logger.info(f"🎯 Working area {self.frame_id}, cards stack {self.cards_stack_id}")

    async def process_language(self, lang: str, content_path: Path, document: ContentDocument) -> LanguageSummary:
        summary = LanguageSummary(lang=lang)
        flow = build_content_flow(document.blocks)
        logger.info(f"🌍 [{lang}] {document.title or content_path.name}: {len(flow)} card(s) from {len(document.blocks)} block(s)")

        instantiator = CardInstantiator(self.session, self.resolver, self.mapping)
        visibility = VisibilityController(self.session, self.resolver, self.mapping.visibility)
        images = ImageFiller(
            self.session,
            self.resolver,
            AssetSource(self.config.asset_base_url, self.config.asset_dir_for(content_path)),
            slots=self.mapping.anchors.slots,
            options=self.mapping.images,
        )
        filler = CardFiller(self.session, self.resolver, visibility, images, self.mapping)

        if self.mapping.cleanup_on_start:
            try:
                await instantiator.cleanup(self.cards_stack_id)
            except FigmaCommandError as e:
                logger.warning(f"⚠️ Cleanup of cards stack failed: {e}")

        for index, item in enumerate(flow):
            summary.cards.append(await self.process_item(instantiator, filler, item, index, len(flow)))

        if self.config.auto_export:
            await self.export(lang, content_path, summary)
        return summary

    async def process_item(
        self,
        instantiator: CardInstantiator,
        filler: CardFiller,
        item: FlowItem,
        index: int,
        total: int,
    ) -> CardResult:
        """Create and fill one card. Command failures are recorded against the card; connection loss propagates."""
        card = CardResult(index=index, kind=card_kind(item), name=card_name(item, index))
        try:
            card = await instantiator.create_card(item, index, self.cards_stack_id, self.page_id)
            await filler.fill(card, item)
        except (FigmaCommandError, CardCreationError) as e:
            card.error = str(e)
            logger.error(f"❌ [{index + 1}/{total}] {card.name}: {e}")
            return card

        skipped = len(card.images.skipped) if card.images else 0
        logger.info(f"✅ [{index + 1}/{total}] {card.name} ok" + (f" ({skipped} image(s) skipped)" if skipped else ""))
        return card

    async def export(self, lang: str, content_path: Path, summary: LanguageSummary) -> None:
        options = self.mapping.export
        finalizer = PosterFinalizer(
            self.session,
            self.resolver,
            self.config.output_dir,
            export_root=self.config.export_root,
            options=options,
            anchors=self.mapping.anchors,
        )
        key = poster_key(content_path)
        if options.scope == "cards":
            targets = [(card.node_id, card.index + 1) for card in summary.cards if card.ok]
        else:
            targets = [(self.frame_id, 1)]

        for node_id, number in targets:
            path = await finalizer.finalize(node_id, f"{key}_{lang}_{number:03d}.{finalizer.extension}")
            if path:
                summary.exports.append(path)
            else:
                summary.export_failures += 1

    def log_summary(self, summary: LanguageSummary) -> None:
        logger.info(f"📊 [{summary.lang}] cards created: {summary.created}, errors: {len(summary.errors)}, exports: {len(summary.exports)}")
        for card in summary.errors:
            logger.info(f"   ❌ #{card.index + 1} {card.name}: {card.error}")
        for path in summary.exports:
            logger.info(f"   💾 {path}")
        if summary.export_failures:
            logger.info(f"   ⚠️ {summary.export_failures} export(s) failed")


def get_config(argv: Optional[List[str]] = None) -> RunConfig:
    """Get configuration from environment variables or CLI args"""
    argv = sys.argv[1:] if argv is None else argv
    config = RunConfig(
        bridge_url=os.getenv("BRIDGE_URL", "ws://localhost:3055"),
        channel=os.getenv("FIGMA_CHANNEL") or "figma-poster-default",
        timeout=float(os.getenv("FIGMA_COMMAND_TIMEOUT", DEFAULT_COMMAND_TIMEOUT)),
        asset_base_url=os.getenv("ASSET_BASE_URL", "http://localhost:3056/assets"),
        asset_dir=Path(os.environ["ASSET_DIR"]) if os.getenv("ASSET_DIR") else None,
        output_dir=Path(os.getenv("OUTPUT_DIR", "exports")),
        export_root=Path(os.environ["EXPORT_ROOT"]) if os.getenv("EXPORT_ROOT") else None,
        auto_export=os.getenv("AUTO_EXPORT", "0") == "1",
        mapping_path=os.getenv("MAPPING_PATH") or None,
    )
    if os.getenv("CONTENT_JSON_PATH"):
        config.contents[DEFAULT_LANGUAGE] = Path(os.environ["CONTENT_JSON_PATH"])

    # Parse CLI args for overrides
    for arg in argv:
        if arg == "--dry-run":
            config.dry_run = True
        elif arg == "--export":
            config.auto_export = True
        elif arg.startswith("--content="):
            config.contents[DEFAULT_LANGUAGE] = Path(arg.split("=", 1)[1])
        elif arg.startswith("--content-") and "=" in arg:
            lang, value = arg[len("--content-"):].split("=", 1)
            config.contents[lang] = Path(value)
        elif arg.startswith("--channel="):
            config.channel = arg.split("=", 1)[1]
        elif arg.startswith("--bridge-url="):
            config.bridge_url = arg.split("=", 1)[1]
        elif arg.startswith("--mapping="):
            config.mapping_path = arg.split("=", 1)[1]
        elif arg.startswith("--output-dir="):
            config.output_dir = Path(arg.split("=", 1)[1])
        elif arg.startswith("--timeout="):
            config.timeout = float(arg.split("=", 1)[1])
        else:
            logger.warning(f"Ignoring unknown argument: {arg}")

    return config


def main():
    config = get_config()

    logger.info("Starting poster run")
    logger.info(f"Bridge URL: {config.bridge_url}")
    logger.info(f"Channel: {config.channel}")
    logger.info(f"Languages: {', '.join(config.contents) or 'none'}")

    try:
        mapping = load_mapping(config.mapping_path)
    except ValueError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)

    runner = PosterRunner(config, mapping)

    # Handle shutdown signals
    def signal_handler(signum, frame):
        logger.info("Received shutdown signal")
        sys.exit(130)

    # Register signal handlers
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        summaries = asyncio.run(runner.run())
    except (ContentError, PosterRunError, ChannelConnectionError, FigmaCommandError) as e:
        logger.error(f"💥 Run failed: {e}")
        sys.exit(1)

    if any(summary.errors or summary.export_failures for summary in summaries.values()):
        sys.exit(2)


if __name__ == "__main__":
    main()
