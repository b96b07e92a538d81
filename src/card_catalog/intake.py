import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from .catalog import CardNotFoundError, CatalogError, CatalogStore, PermissionDeniedError, validate_card
from .confidence import FIELD_NAMES, UNCERTAINTY_THRESHOLD, ConfidenceTier, describe, is_uncertain, tier_of
from .images import ImageStore
from .log_writer import RecognitionAuditLog
from .logger import get_logger
from .models import CardRecord, ImageRef, ReconciledResult, UserRole
from .orchestrator import RecognitionOrchestrator


logger = get_logger(__name__)

MANUAL_ENTRY_MESSAGE = "Could not recognize the card. Please enter the details manually."

# Card attributes a user may set at intake besides the recognized fields.
EDITABLE_FIELDS = ("team", "serial_number", "card_number", "notes", "is_rookie_card", "is_autographed")


@dataclass
class FieldReview:
    value: str
    confidence: float
    tier: ConfidenceTier
    uncertain: bool


@dataclass
class IntakeDraft:
    """A recognition outcome laid out for the intake form."""

    image: bytes
    result: ReconciledResult
    fields: Dict[str, FieldReview] = field(default_factory=dict)
    overall_tier: Optional[ConfidenceTier] = None
    message: str = MANUAL_ENTRY_MESSAGE

    @property
    def manual_entry_required(self) -> bool:
        return not self.result.success

    @property
    def uncertain_fields(self):
        return [name for name, review in self.fields.items() if review.uncertain]

    def value_of(self, name: str) -> Optional[str]:
        review = self.fields.get(name)
        return review.value if review else None


def review_result(image: bytes, result: ReconciledResult, uncertainty_threshold: float = UNCERTAINTY_THRESHOLD) -> IntakeDraft:
    if not result.success:
        return IntakeDraft(image=image, result=result)

    reviews = {}
    for name in FIELD_NAMES:
        fc = result.fields.get(name)
        if fc is None:
            continue
        reviews[name] = FieldReview(
            value=fc.value,
            confidence=fc.confidence,
            tier=tier_of(fc.confidence),
            uncertain=is_uncertain(fc.confidence, uncertainty_threshold),
        )
    return IntakeDraft(
        image=image,
        result=result,
        fields=reviews,
        overall_tier=tier_of(result.overall_confidence),
        message=describe(result.overall_confidence),
    )


class CardIntakeService:
    def __init__(
        self,
        orchestrator: RecognitionOrchestrator,
        catalog: CatalogStore,
        images: ImageStore,
        audit_log: Optional[RecognitionAuditLog] = None,
        uncertainty_threshold: float = UNCERTAINTY_THRESHOLD,
        default_team: str = "Milwaukee Brewers",
    ) -> None:
        self.orchestrator = orchestrator
        self.catalog = catalog
        self.images = images
        self.audit_log = audit_log
        self.uncertainty_threshold = uncertainty_threshold
        self.default_team = default_team

    def recognize(self, image: bytes, image_name: Optional[str] = None, cancel_event: Optional[threading.Event] = None) -> IntakeDraft:
        result = self.orchestrator.recognize_card(image, cancel_event)
        if result.success:
            logger.info(f"Recognized {result.value_of('player_name') or 'unknown player'} via {result.method} [conf={result.overall_confidence:.2f}]")
        else:
            logger.warning(f"Recognition failed: {result.error}")
        if self.audit_log is not None:
            self.audit_log.append(result, image_name=image_name)
        return review_result(image, result, self.uncertainty_threshold)

    def save(
        self,
        draft: IntakeDraft,
        card_id: str,
        on_progress: Optional[Callable[[int], None]] = None,
        **overrides,
    ) -> CardRecord:
        """Store the image and add the card, with user corrections in ``overrides``.

        Recognized values fill in whatever the user did not override. The
        recognition confidence is kept only when recognition succeeded. The
        card is checked before the image is uploaded, so a rejected card
        leaves nothing behind in the image store.
        """
        unknown = sorted(set(overrides) - set(FIELD_NAMES) - set(EDITABLE_FIELDS))
        if unknown:
            raise CatalogError(f"Unknown card fields: {', '.join(unknown)}")
        values = {name: draft.value_of(name) for name in FIELD_NAMES}
        values.update({k: v for k, v in overrides.items() if k in FIELD_NAMES})
        extras = {k: v for k, v in overrides.items() if k in EDITABLE_FIELDS}

        missing = [name for name in ("player_name", "year", "brand") if not values.get(name)]
        if missing:
            raise CatalogError(f"Missing required fields: {', '.join(missing)}")
        try:
            year = int(values["year"])
        except (TypeError, ValueError):
            raise CatalogError(f"Invalid year: {values['year']}") from None

        image = ImageRef.from_bytes(draft.image)
        if on_progress is not None:
            image = image.with_upload_progress(on_progress)
        card = CardRecord(
            id=card_id,
            year=year,
            player_name=values["player_name"],
            brand=values["brand"],
            card_series=values.get("card_series"),
            image=image,
            recognition_confidence=draft.result.overall_confidence if draft.result.success else None,
            team=extras.pop("team", None) or self.default_team,
            **extras,
        )
        self._check_can_add(card)

        card.image = self.images.store(image)
        self.catalog.add_card(card)
        logger.info(f"Saved card {card_id}: {card.player_name} {card.year} {card.brand}")
        return card

    def _check_can_add(self, card: CardRecord) -> None:
        problem = validate_card(card)
        if problem:
            raise CatalogError(problem)
        if self.catalog.get_caller_role() == UserRole.GUEST:
            raise PermissionDeniedError("Guests cannot add cards")
        try:
            self.catalog.get_card(card.id)
        except CardNotFoundError:
            return
        raise CatalogError(f"Card already exists: {card.id}")
