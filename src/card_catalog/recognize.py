import base64
import io
import random
import re
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple

import requests
from PIL import Image, UnidentifiedImageError

from .confidence import FIELD_WEIGHTS
from .logger import get_logger
from .models import METHOD_FALLBACK, METHOD_PRIMARY, FieldConfidence, RecognitionAttempt, StageSettings


logger = get_logger(__name__)

XIMILAR_URL = "https://api.ximilar.com/collectibles/v2/sport_id"
VISION_URL = "https://vision.googleapis.com/v1/images:annotate"

KNOWN_BRANDS = ["Topps", "Upper Deck", "Panini", "Donruss", "Fleer", "Bowman"]
KNOWN_SERIES = ["Stadium Club", "Chrome", "Heritage", "Finest", "Select", "Prizm"]

_YEAR_RE = re.compile(r"\b(?:19|20)\d{2}\b")
_NAME_RE = re.compile(r"(?=\b([A-Z][a-z]+(?:['\-][A-Z]?[a-z]+)?)\s+([A-Z][a-z]+(?:['\-][A-Z]?[a-z]+)?)\b)")

# Parser heuristics for OCR text, not model scores.
_YEAR_CONFIDENCE_SINGLE = 0.8
_YEAR_CONFIDENCE_AMBIGUOUS = 0.5
_BRAND_CONFIDENCE = 0.75
_SERIES_CONFIDENCE = 0.6
_PLAYER_CONFIDENCE = 0.55

MAX_UPLOAD_SIDE = 1600


class RecognitionError(RuntimeError):
    pass


def prepare_image(image: bytes, max_side: int = MAX_UPLOAD_SIDE) -> bytes:
    """Decode, downscale and re-encode an image as JPEG for upload."""
    try:
        img = Image.open(io.BytesIO(image))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise RecognitionError(f"Failed to read image for recognition: {e}") from e
    img = img.convert("RGB")
    if max(img.size) > max_side:
        img.thumbnail((max_side, max_side))
    out = io.BytesIO()
    img.save(out, format="JPEG", quality=90)
    return out.getvalue()


def encode_image(image: bytes) -> str:
    return base64.b64encode(prepare_image(image)).decode("ascii")


class Recognizer:
    name: str
    method: str

    def recognize(self, image: bytes) -> RecognitionAttempt:
        raise NotImplementedError


class XimilarRecognizer(Recognizer):
    """Sports card identification service, used as the primary stage."""

    name = "ximilar"
    method = METHOD_PRIMARY

    def __init__(self, settings: StageSettings, weights: Mapping[str, float] = FIELD_WEIGHTS, session: Optional[requests.Session] = None) -> None:
        self.url = settings.endpoint or XIMILAR_URL
        self.api_key = settings.api_key
        self.timeout_s = settings.timeout_s
        self.weights = weights
        self.session = session or requests.Session()

    def recognize(self, image: bytes) -> RecognitionAttempt:
        if not self.api_key:
            raise RecognitionError("No API key configured for primary recognition")
        payload = {"records": [{"_base64": encode_image(image)}], "slab_id": False}
        headers = {"Authorization": f"Token {self.api_key}"}
        resp = self.session.post(self.url, json=payload, headers=headers, timeout=self.timeout_s)
        resp.raise_for_status()
        records = resp.json().get("records") or []
        if not records:
            return RecognitionAttempt.failure(self.method, "No card detected")

        card = records[0]
        confidence = float(card.get("_confidence", 0.8))
        confidence = min(max(confidence, 0.0), 1.0)
        values = {
            "player_name": card.get("name"),
            "year": card.get("year"),
            "brand": card.get("company"),
            "card_series": card.get("set_name"),
        }
        fields: Dict[str, FieldConfidence] = {}
        for field_name, value in values.items():
            if value in (None, ""):
                continue
            field_conf = confidence * 0.9 if field_name == "card_series" else confidence
            fields[field_name] = FieldConfidence(value=str(value), confidence=field_conf)
        if not fields:
            return RecognitionAttempt.failure(self.method, "Card detected but no fields identified")
        return RecognitionAttempt.from_fields(self.method, fields, self.weights)


def _find_known(text: str, candidates: List[str]) -> Optional[str]:
    lowered = text.lower()
    # Longest first so "Upper Deck" wins over a shorter overlapping name.
    for candidate in sorted(candidates, key=len, reverse=True):
        if re.search(r"\b" + re.escape(candidate.lower()) + r"\b", lowered):
            return candidate
    return None


def parse_card_text(text: str) -> Dict[str, FieldConfidence]:
    """Pull card fields out of free OCR text."""
    fields: Dict[str, FieldConfidence] = {}
    if not text or not text.strip():
        return fields

    max_year = datetime.utcnow().year + 1
    years = [y for y in _YEAR_RE.findall(text) if 1800 <= int(y) <= max_year]
    if years:
        distinct = set(years)
        conf = _YEAR_CONFIDENCE_SINGLE if len(distinct) == 1 else _YEAR_CONFIDENCE_AMBIGUOUS
        fields["year"] = FieldConfidence(value=years[0], confidence=conf)

    brand = _find_known(text, KNOWN_BRANDS)
    if brand:
        fields["brand"] = FieldConfidence(value=brand, confidence=_BRAND_CONFIDENCE)

    series = _find_known(text, KNOWN_SERIES)
    if series:
        fields["card_series"] = FieldConfidence(value=series, confidence=_SERIES_CONFIDENCE)

    reserved = {w.lower() for name in KNOWN_BRANDS + KNOWN_SERIES for w in name.split()}
    for first, last in _NAME_RE.findall(text):
        if first.lower() in reserved or last.lower() in reserved:
            continue
        fields["player_name"] = FieldConfidence(value=f"{first} {last}", confidence=_PLAYER_CONFIDENCE)
        break

    return fields


class VisionOcrRecognizer(Recognizer):
    """General OCR with text parsing, used as the fallback stage."""

    name = "google_vision"
    method = METHOD_FALLBACK

    def __init__(self, settings: StageSettings, weights: Mapping[str, float] = FIELD_WEIGHTS, session: Optional[requests.Session] = None) -> None:
        self.url = settings.endpoint or VISION_URL
        self.api_key = settings.api_key
        self.timeout_s = settings.timeout_s
        self.weights = weights
        self.session = session or requests.Session()

    def recognize(self, image: bytes) -> RecognitionAttempt:
        if not self.api_key:
            raise RecognitionError("No API key configured for fallback recognition")
        payload = {
            "requests": [
                {
                    "image": {"content": encode_image(image)},
                    "features": [
                        {"type": "TEXT_DETECTION", "maxResults": 10},
                        {"type": "LABEL_DETECTION", "maxResults": 10},
                    ],
                }
            ]
        }
        resp = self.session.post(self.url, params={"key": self.api_key}, json=payload, timeout=self.timeout_s)
        resp.raise_for_status()
        responses = resp.json().get("responses") or [{}]
        annotations = responses[0].get("textAnnotations") or []
        full_text = annotations[0].get("description", "") if annotations else ""
        fields = parse_card_text(full_text)
        if not fields:
            return RecognitionAttempt.failure(self.method, "No card text detected")
        logger.debug(f"OCR parsed fields: {sorted(fields)}")
        return RecognitionAttempt.from_fields(self.method, fields, self.weights)


_MOCK_PLAYERS = [
    "Robin Yount",
    "Ryan Braun",
    "Christian Yelich",
    "Paul Molitor",
    "Rollie Fingers",
    "Cecil Cooper",
    "Prince Fielder",
    "Corbin Burnes",
    "Josh Hader",
    "Ben Sheets",
]

# (success rate, {field: (low, high)}) per stage.
_MOCK_PROFILES = {
    METHOD_PRIMARY: (0.8, {
        "player_name": (0.6, 0.95),
        "year": (0.7, 0.95),
        "brand": (0.65, 0.95),
        "card_series": (0.5, 0.9),
    }),
    METHOD_FALLBACK: (0.7, {
        "player_name": (0.4, 0.75),
        "year": (0.5, 0.8),
        "brand": (0.45, 0.8),
        "card_series": (0.3, 0.7),
    }),
}


class MockRecognizer(Recognizer):
    """Random stand-in for a real service, for demos without API access."""

    name = "mock"

    def __init__(self, method: str, seed: Optional[int] = None, weights: Mapping[str, float] = FIELD_WEIGHTS) -> None:
        if method not in _MOCK_PROFILES:
            raise ValueError(f"No mock profile for method {method!r}")
        self.method = method
        self.weights = weights
        self._rng = random.Random(seed)

    def recognize(self, image: bytes) -> RecognitionAttempt:
        success_rate, ranges = _MOCK_PROFILES[self.method]
        if self._rng.random() >= success_rate:
            return RecognitionAttempt.failure(self.method, f"{self.method.capitalize()} recognition failed")

        values = {
            "player_name": self._rng.choice(_MOCK_PLAYERS),
            "year": str(self._rng.randint(1970, datetime.utcnow().year - 1)),
            "brand": self._rng.choice(KNOWN_BRANDS),
            "card_series": self._rng.choice(KNOWN_SERIES),
        }
        fields = {
            name: FieldConfidence(value=values[name], confidence=self._rng.uniform(low, high))
            for name, (low, high) in ranges.items()
        }
        return RecognitionAttempt.from_fields(self.method, fields, self.weights)


def build_recognizers(config) -> Tuple[Recognizer, Recognizer]:
    if config.mock_mode:
        seed = config.mock_seed
        return (
            MockRecognizer(METHOD_PRIMARY, seed=seed, weights=config.field_weights),
            MockRecognizer(METHOD_FALLBACK, seed=None if seed is None else seed + 1, weights=config.field_weights),
        )
    session = requests.Session()
    return (
        XimilarRecognizer(config.primary, weights=config.field_weights, session=session),
        VisionOcrRecognizer(config.fallback, weights=config.field_weights, session=session),
    )
