import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from .catalog import CatalogError, CatalogStore, InMemoryCatalogStore, RemoteCatalogClient
from .config_loader import ConfigError, config_from_dict, load_config
from .images import HttpImageStore, ImageStore, LocalImageStore
from .intake import CardIntakeService, IntakeDraft
from .log_writer import RecognitionAuditLog
from .logger import get_logger, setup_logging
from .models import AppConfig
from .orchestrator import RecognitionOrchestrator
from .price_trends import top_movers
from .recognize import build_recognizers

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default_config.yaml"


class CardCatalogApp:
    def __init__(self, config: AppConfig) -> None:
        self.config = config
        setup_logging(log_dir=config.log_dir)
        mock_str = " (MOCK MODE)" if config.mock_mode else ""
        logger.info(f"Initializing card catalog{mock_str}")

        primary, fallback = build_recognizers(config)
        self.orchestrator = RecognitionOrchestrator.from_config(config, primary, fallback)
        logger.info(
            f"Recognizer ready: primary={primary.name} (>= {config.primary_threshold}), "
            f"fallback={fallback.name} (>= {config.fallback_threshold}), stage timeout {config.stage_timeout_s:g}s"
        )

        self.catalog = self._build_catalog(config)
        self.images = self._build_images(config)
        self.audit_log = RecognitionAuditLog(config.audit_dir)
        logger.info(f"Recognition audit log at {config.audit_dir}")

        self.intake = CardIntakeService(
            orchestrator=self.orchestrator,
            catalog=self.catalog,
            images=self.images,
            audit_log=self.audit_log,
            uncertainty_threshold=config.uncertainty_threshold,
            default_team=config.default_team,
        )

    @classmethod
    def from_path(cls, config_path: Optional[Path], mock_mode: bool = False) -> "CardCatalogApp":
        if config_path is not None and Path(config_path).exists():
            config = load_config(config_path)
        else:
            config = config_from_dict({})
        if mock_mode:
            config.mock_mode = True
        return cls(config)

    @staticmethod
    def _build_catalog(config: AppConfig) -> CatalogStore:
        if config.catalog_base_url and not config.mock_mode:
            logger.info(f"Catalog: {config.catalog_base_url}")
            return RemoteCatalogClient(config.catalog_base_url, timeout_s=config.catalog_timeout_s)
        logger.info("Catalog: in-memory")
        return InMemoryCatalogStore(default_team=config.default_team)

    @staticmethod
    def _build_images(config: AppConfig) -> ImageStore:
        if config.images_base_url and not config.mock_mode:
            logger.info(f"Image store: {config.images_base_url}")
            return HttpImageStore(config.images_base_url)
        logger.info(f"Image store: {config.images_local_dir}")
        return LocalImageStore(config.images_local_dir)


def format_draft(draft: IntakeDraft) -> str:
    result = draft.result
    if draft.manual_entry_required:
        return f"FAILED ({result.error})\n{draft.message}"
    lines = [
        f"method: {result.method}",
        f"confidence: {result.overall_confidence:.0%} ({draft.overall_tier.value})",
        draft.message,
    ]
    for name, review in draft.fields.items():
        flag = "  <- please verify" if review.uncertain else ""
        lines.append(f"  {name:<12} {review.value:<24} {review.confidence:.0%}{flag}")
    return "\n".join(lines)


def _cmd_recognize(app: CardCatalogApp, args: argparse.Namespace) -> int:
    path = Path(args.image)
    if not path.exists():
        print(f"Image not found: {path}", file=sys.stderr)
        return 2
    draft = app.intake.recognize(path.read_bytes(), image_name=path.name)
    if args.json:
        print(json.dumps(draft.result.to_dict(), indent=2))
    else:
        print(format_draft(draft))
    return 0 if draft.result.success else 1


def _cmd_trends(app: CardCatalogApp, args: argparse.Namespace) -> int:
    try:
        cards = app.catalog.get_all_cards()
    except CatalogError as e:
        logger.error(f"Could not load cards: {e}")
        return 1
    movers = top_movers(cards, limit=args.limit)
    if not movers:
        print("No price history yet")
        return 0
    for trend in movers:
        card = trend.card
        print(f"{card.player_name} {card.year} {card.brand}: {trend.change:+.2f} ({trend.percent_change:+.1f}%)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="card-catalog", description="Sports card catalog tools")
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="YAML config file")
    parser.add_argument("--mock", action="store_true", help="Use mock recognizers and local stores")
    sub = parser.add_subparsers(dest="command", required=True)

    recognize = sub.add_parser("recognize", help="Recognize a card image")
    recognize.add_argument("image", help="Path to the card image")
    recognize.add_argument("--json", action="store_true", help="Print the raw result as JSON")

    trends = sub.add_parser("trends", help="Show the biggest recent price moves")
    trends.add_argument("--limit", type=int, default=5)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        app = CardCatalogApp.from_path(args.config, mock_mode=args.mock)
    except ConfigError as e:
        print(f"Invalid config: {e}", file=sys.stderr)
        return 2

    if args.command == "recognize":
        return _cmd_recognize(app, args)
    return _cmd_trends(app, args)


if __name__ == "__main__":
    sys.exit(main())
