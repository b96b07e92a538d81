from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .confidence import FIELD_NAMES, FIELD_WEIGHTS, check_confidence, overall_confidence


METHOD_PRIMARY = "primary"
METHOD_FALLBACK = "fallback"
METHOD_FAILED = "failed"


@dataclass(frozen=True)
class FieldConfidence:
    value: str
    confidence: float

    def __post_init__(self) -> None:
        check_confidence(self.confidence)


@dataclass(frozen=True)
class RecognitionAttempt:
    """Outcome of one recognition stage, or of the whole cascade.

    Successful attempts should be built with ``from_fields`` so the overall
    confidence always follows the field weighting.
    """

    method: str
    success: bool
    overall_confidence: float
    fields: Mapping[str, FieldConfidence] = field(default_factory=dict)
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if self.method not in (METHOD_PRIMARY, METHOD_FALLBACK, METHOD_FAILED):
            raise ValueError(f"Unknown recognition method: {self.method!r}")
        check_confidence(self.overall_confidence)
        unknown = set(self.fields) - set(FIELD_NAMES)
        if unknown:
            raise ValueError(f"Unknown recognition fields: {sorted(unknown)}")

    @classmethod
    def from_fields(cls, method: str, fields: Mapping[str, Optional[FieldConfidence]], weights: Mapping[str, float] = FIELD_WEIGHTS) -> "RecognitionAttempt":
        present = {name: fc for name, fc in fields.items() if fc is not None}
        return cls(
            method=method,
            success=True,
            overall_confidence=overall_confidence({name: fc.confidence for name, fc in present.items()}, weights),
            fields=present,
        )

    @classmethod
    def failure(cls, method: str, error: str) -> "RecognitionAttempt":
        return cls(method=method, success=False, overall_confidence=0.0, fields={}, error=error)

    def value_of(self, name: str) -> Optional[str]:
        fc = self.fields.get(name)
        return fc.value if fc else None

    def to_dict(self) -> Dict:
        return {
            "method": self.method,
            "success": self.success,
            "overall_confidence": self.overall_confidence,
            "fields": {name: {"value": fc.value, "confidence": fc.confidence} for name, fc in self.fields.items()},
            "error": self.error,
        }


# The cascade hands back one of its attempts untouched, so the shapes match.
ReconciledResult = RecognitionAttempt


class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"
    GUEST = "guest"


@dataclass
class UserProfile:
    name: str


@dataclass
class PricePoint:
    timestamp: datetime
    price: Optional[float] = None


@dataclass
class ImageRef:
    """Handle to a card image held by the image store or still in memory."""

    url: Optional[str] = None
    data: Optional[bytes] = None
    on_progress: Optional[Callable[[int], None]] = field(default=None, repr=False, compare=False)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ImageRef":
        return cls(data=bytes(data))

    @classmethod
    def from_url(cls, url: str) -> "ImageRef":
        return cls(url=url)

    def with_upload_progress(self, callback) -> "ImageRef":
        return ImageRef(url=self.url, data=self.data, on_progress=callback)

    @property
    def is_stored(self) -> bool:
        return self.url is not None

    def direct_url(self) -> str:
        if self.url is None:
            raise ValueError("Image has not been uploaded yet")
        return self.url

    def get_bytes(self, store=None) -> bytes:
        """Image bytes, from memory or else downloaded through ``store``."""
        if self.data is not None:
            return self.data
        if store is None:
            raise ValueError("Image bytes are not loaded and no image store was given")
        return store.fetch(self)


@dataclass
class CardRecord:
    id: str
    year: int
    player_name: str
    brand: str
    image: ImageRef
    team: str = "Milwaukee Brewers"
    serial_number: Optional[str] = None
    card_number: Optional[str] = None
    card_series: Optional[str] = None
    notes: Optional[str] = None
    recognition_confidence: Optional[float] = None
    is_rookie_card: bool = False
    is_autographed: bool = False
    average_price: Optional[float] = None
    price_last_updated: Optional[datetime] = None
    price_history: List[PricePoint] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class BulkImportCard:
    id: str
    year: int
    player_name: str
    brand: str
    image: ImageRef
    team: Optional[str] = None
    serial_number: Optional[str] = None
    card_number: Optional[str] = None
    card_series: Optional[str] = None
    notes: Optional[str] = None
    recognition_confidence: Optional[float] = None
    is_rookie_card: bool = False
    is_autographed: bool = False


@dataclass
class BulkImportResult:
    created: int = 0
    updated: int = 0
    failed: int = 0
    errors: List[Tuple[str, str]] = field(default_factory=list)


@dataclass
class CardFilters:
    team: Optional[str] = None
    year: Optional[int] = None
    brand: Optional[str] = None
    card_series: Optional[str] = None
    player_name: Optional[str] = None
    is_rookie_card: Optional[bool] = None
    is_autographed: Optional[bool] = None

    def as_params(self) -> Dict[str, object]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class PaginatedResult:
    cards: List[CardRecord]
    total: int
    has_more: bool


@dataclass
class StageSettings:
    endpoint: Optional[str]
    api_key: Optional[str]
    timeout_s: float


@dataclass
class AppConfig:
    mock_mode: bool
    log_dir: str
    audit_dir: str
    primary_threshold: float
    fallback_threshold: float
    uncertainty_threshold: float
    stage_timeout_s: float
    field_weights: Dict[str, float]
    primary: StageSettings
    fallback: StageSettings
    catalog_base_url: Optional[str]
    catalog_timeout_s: float
    images_base_url: Optional[str]
    images_local_dir: str
    mock_seed: Optional[int] = None
    default_team: str = "Milwaukee Brewers"
