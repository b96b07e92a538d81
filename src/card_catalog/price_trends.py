from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .models import CardRecord, PricePoint


@dataclass
class PriceTrend:
    card: CardRecord
    change: float
    percent_change: float

    @property
    def direction(self) -> str:
        if self.change > 0:
            return "up"
        if self.change < 0:
            return "down"
        return "flat"


def trend_of(card: CardRecord) -> Optional[PriceTrend]:
    """Change between the two newest price points; unknown prices count as 0."""
    history = card.price_history
    if len(history) < 2:
        return None
    latest = history[0].price or 0.0
    previous = history[1].price or 0.0
    change = latest - previous
    percent = (change / previous) * 100 if previous != 0 else 0.0
    return PriceTrend(card=card, change=change, percent_change=percent)


def top_movers(cards: Iterable[CardRecord], limit: int = 5) -> List[PriceTrend]:
    trends = [t for t in (trend_of(card) for card in cards) if t is not None]
    trends.sort(key=lambda t: abs(t.percent_change), reverse=True)
    return trends[:limit]


def chart_series(history: List[PricePoint]) -> List[Tuple[str, float]]:
    # History arrives newest first; charts read oldest to newest.
    return [(p.timestamp.date().isoformat(), p.price or 0.0) for p in reversed(history)]
