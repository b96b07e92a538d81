import csv
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from .confidence import FIELD_NAMES, tier_of
from .models import ReconciledResult

FIELDNAMES = [
    "timestamp",
    "image_name",
    "method",
    "success",
    "overall_confidence",
    "tier",
    "player_name",
    "year",
    "brand",
    "card_series",
    "error",
]


class RecognitionAuditLog:
    """Appends one row per recognition to a daily CSV file."""

    def __init__(self, base_dir: Union[Path, str]) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _file_for_today(self) -> Path:
        today = datetime.utcnow().strftime("%Y-%m-%d")
        return self.base_dir / f"recognitions_{today}.csv"

    def append(self, result: ReconciledResult, image_name: Optional[str] = None) -> None:
        record = {
            "timestamp": datetime.utcnow().isoformat(),
            "image_name": image_name,
            "method": result.method,
            "success": result.success,
            "overall_confidence": f"{result.overall_confidence:.4f}",
            "tier": tier_of(result.overall_confidence).value if result.success else None,
            "error": result.error,
        }
        for name in FIELD_NAMES:
            record[name] = result.value_of(name)

        path = self._file_for_today()
        is_new = not path.exists()
        with path.open("a", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=FIELDNAMES)
            if is_new:
                writer.writeheader()
            writer.writerow(record)
