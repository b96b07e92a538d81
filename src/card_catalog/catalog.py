import itertools
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests

from .logger import get_logger
from .models import (
    BulkImportCard,
    BulkImportResult,
    CardFilters,
    CardRecord,
    ImageRef,
    PaginatedResult,
    PricePoint,
    UserProfile,
    UserRole,
)


logger = get_logger(__name__)

RECENT_LIMIT = 10
MIN_CARD_YEAR = 1800

_TEXT_FILTERS = ("team", "brand", "card_series", "player_name")
_SEARCHABLE = ("player_name", "brand", "team", "card_series", "notes", "card_number")


class CatalogError(RuntimeError):
    pass


class CardNotFoundError(CatalogError):
    pass


class PermissionDeniedError(CatalogError):
    pass


def max_card_year() -> int:
    return datetime.utcnow().year + 1


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def card_to_dict(card) -> Dict[str, Any]:
    data = {
        "id": card.id,
        "year": card.year,
        "player_name": card.player_name,
        "brand": card.brand,
        "team": card.team,
        "serial_number": card.serial_number,
        "card_number": card.card_number,
        "card_series": card.card_series,
        "notes": card.notes,
        "image_url": card.image.url if card.image else None,
        "recognition_confidence": card.recognition_confidence,
        "is_rookie_card": card.is_rookie_card,
        "is_autographed": card.is_autographed,
    }
    if isinstance(card, CardRecord):
        data.update({
            "average_price": card.average_price,
            "price_last_updated": card.price_last_updated.isoformat() if card.price_last_updated else None,
            "price_history": [price_point_to_dict(p) for p in card.price_history],
            "timestamp": card.timestamp.isoformat(),
        })
    return data


def price_point_to_dict(point: PricePoint) -> Dict[str, Any]:
    return {"timestamp": point.timestamp.isoformat(), "price": point.price}


def price_point_from_dict(row: Dict[str, Any]) -> PricePoint:
    price = row.get("price")
    return PricePoint(timestamp=_parse_time(row["timestamp"]), price=float(price) if price is not None else None)


def card_from_dict(row: Dict[str, Any]) -> CardRecord:
    return CardRecord(
        id=row["id"],
        year=int(row["year"]),
        player_name=row["player_name"],
        brand=row["brand"],
        image=ImageRef.from_url(row["image_url"]) if row.get("image_url") else ImageRef(),
        team=row.get("team") or "",
        serial_number=row.get("serial_number"),
        card_number=row.get("card_number"),
        card_series=row.get("card_series"),
        notes=row.get("notes"),
        recognition_confidence=row.get("recognition_confidence"),
        is_rookie_card=bool(row.get("is_rookie_card", False)),
        is_autographed=bool(row.get("is_autographed", False)),
        average_price=row.get("average_price"),
        price_last_updated=_parse_time(row.get("price_last_updated")),
        price_history=[price_point_from_dict(p) for p in row.get("price_history", [])],
        timestamp=_parse_time(row.get("timestamp")) or datetime.utcnow(),
    )


class CatalogStore:
    """Operations the remote card store exposes."""

    def add_card(self, card: CardRecord) -> None:
        raise NotImplementedError

    def update_card(self, card: CardRecord) -> None:
        raise NotImplementedError

    def delete_card(self, card_id: str) -> None:
        raise NotImplementedError

    def get_card(self, card_id: str) -> CardRecord:
        raise NotImplementedError

    def get_all_cards(self) -> List[CardRecord]:
        raise NotImplementedError

    def filter_cards(self, filters: CardFilters) -> List[CardRecord]:
        raise NotImplementedError

    def search_cards(self, filters: CardFilters, search_term: Optional[str], page_size: int, offset: int) -> PaginatedResult:
        raise NotImplementedError

    def get_price_history(self, card_id: str) -> List[PricePoint]:
        raise NotImplementedError

    def get_recently_changed_cards(self) -> List[CardRecord]:
        raise NotImplementedError

    def refresh_card_price(self, card_id: str) -> None:
        raise NotImplementedError

    def bulk_import_cards(self, cards: List[BulkImportCard]) -> BulkImportResult:
        raise NotImplementedError

    def get_caller_role(self) -> UserRole:
        raise NotImplementedError

    def is_caller_admin(self) -> bool:
        return self.get_caller_role() == UserRole.ADMIN

    def assign_role(self, principal: str, role: UserRole) -> None:
        raise NotImplementedError

    def get_caller_profile(self) -> Optional[UserProfile]:
        raise NotImplementedError

    def save_caller_profile(self, profile: UserProfile) -> None:
        raise NotImplementedError

    def get_user_profile(self, principal: str) -> Optional[UserProfile]:
        raise NotImplementedError


class RemoteCatalogClient(CatalogStore):
    def __init__(self, base_url: str, token: Optional[str] = None, timeout_s: float = 10, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _request(self, method: str, path: str, params=None, json=None) -> Any:
        url = f"{self.base_url}{path}"
        retries = 3
        backoff = 0.5
        resp = None
        # POST is repeated only on 429, which the server did not apply.
        idempotent = method in ("GET", "PUT", "DELETE")
        for attempt in range(retries):
            try:
                resp = self.session.request(method, url, params=params, json=json, timeout=self.timeout_s)
            except requests.RequestException as e:
                if not idempotent or attempt == retries - 1:
                    raise CatalogError(f"{method} {path} failed: {e}") from e
                logger.warning(f"{method} {path} failed ({e}); retrying in {backoff:.1f}s")
                time.sleep(backoff)
                backoff *= 2
                continue
            if resp.status_code == 429 or (idempotent and resp.status_code >= 500):
                if attempt == retries - 1:
                    break
                logger.warning(f"{method} {path} returned {resp.status_code}; retrying in {backoff:.1f}s")
                time.sleep(backoff)
                backoff *= 2
                continue
            break

        if resp.status_code == 404:
            raise CardNotFoundError(f"Not found: {path}")
        if resp.status_code in (401, 403):
            raise PermissionDeniedError(f"Not permitted: {method} {path}")
        if resp.status_code >= 400:
            raise CatalogError(f"{method} {path} returned {resp.status_code}: {resp.text[:200]}")
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def add_card(self, card: CardRecord) -> None:
        self._request("POST", "/cards", json=card_to_dict(card))

    def update_card(self, card: CardRecord) -> None:
        self._request("PUT", f"/cards/{card.id}", json=card_to_dict(card))

    def delete_card(self, card_id: str) -> None:
        self._request("DELETE", f"/cards/{card_id}")

    def get_card(self, card_id: str) -> CardRecord:
        return card_from_dict(self._request("GET", f"/cards/{card_id}"))

    def get_all_cards(self) -> List[CardRecord]:
        return [card_from_dict(row) for row in self._request("GET", "/cards") or []]

    def filter_cards(self, filters: CardFilters) -> List[CardRecord]:
        return [card_from_dict(row) for row in self._request("GET", "/cards", params=filters.as_params()) or []]

    def search_cards(self, filters: CardFilters, search_term: Optional[str], page_size: int, offset: int) -> PaginatedResult:
        params = filters.as_params()
        if search_term:
            params["q"] = search_term
        params.update({"page_size": page_size, "offset": offset})
        data = self._request("GET", "/cards/search", params=params) or {}
        return PaginatedResult(
            cards=[card_from_dict(row) for row in data.get("cards", [])],
            total=int(data.get("total", 0)),
            has_more=bool(data.get("has_more", False)),
        )

    def get_price_history(self, card_id: str) -> List[PricePoint]:
        return [price_point_from_dict(row) for row in self._request("GET", f"/cards/{card_id}/price-history") or []]

    def get_recently_changed_cards(self) -> List[CardRecord]:
        return [card_from_dict(row) for row in self._request("GET", "/cards/recent") or []]

    def refresh_card_price(self, card_id: str) -> None:
        self._request("POST", f"/cards/{card_id}/refresh-price")

    def bulk_import_cards(self, cards: List[BulkImportCard]) -> BulkImportResult:
        data = self._request("POST", "/cards/bulk-import", json=[card_to_dict(c) for c in cards]) or {}
        return BulkImportResult(
            created=int(data.get("created", 0)),
            updated=int(data.get("updated", 0)),
            failed=int(data.get("failed", 0)),
            errors=[(str(card_id), str(msg)) for card_id, msg in data.get("errors", [])],
        )

    def get_caller_role(self) -> UserRole:
        data = self._request("GET", "/users/me/role") or {}
        return UserRole(data.get("role", UserRole.GUEST.value))

    def assign_role(self, principal: str, role: UserRole) -> None:
        self._request("PUT", f"/users/{principal}/role", json={"role": role.value})

    def get_caller_profile(self) -> Optional[UserProfile]:
        data = self._request("GET", "/users/me/profile")
        return UserProfile(name=data["name"]) if data else None

    def save_caller_profile(self, profile: UserProfile) -> None:
        self._request("PUT", "/users/me/profile", json={"name": profile.name})

    def get_user_profile(self, principal: str) -> Optional[UserProfile]:
        try:
            data = self._request("GET", f"/users/{principal}/profile")
        except CardNotFoundError:
            return None
        return UserProfile(name=data["name"]) if data else None


def validate_card(card) -> Optional[str]:
    if not card.id:
        return "Missing card id"
    if not card.player_name or not card.player_name.strip():
        return "Missing player name"
    if not card.brand or not card.brand.strip():
        return "Missing brand"
    if not MIN_CARD_YEAR <= card.year <= max_card_year():
        return f"Invalid year: {card.year}"
    if card.image is None or (card.image.url is None and card.image.data is None):
        return "Missing image"
    return None


def _matches(card: CardRecord, filters: CardFilters) -> bool:
    for name in _TEXT_FILTERS:
        wanted = getattr(filters, name)
        if wanted is not None and (getattr(card, name) or "").lower() != wanted.lower():
            return False
    if filters.year is not None and card.year != filters.year:
        return False
    if filters.is_rookie_card is not None and card.is_rookie_card != filters.is_rookie_card:
        return False
    if filters.is_autographed is not None and card.is_autographed != filters.is_autographed:
        return False
    return True


def _matches_term(card: CardRecord, term: Optional[str]) -> bool:
    if not term or not term.strip():
        return True
    needle = term.strip().lower()
    return any(needle in (getattr(card, name) or "").lower() for name in _SEARCHABLE)


class InMemoryCatalogStore(CatalogStore):
    """Catalog held in process memory, for tests and mock mode."""

    def __init__(self, caller: str = "local", caller_role: UserRole = UserRole.ADMIN, price_source: Optional[Callable[[CardRecord], Optional[float]]] = None, default_team: str = "Milwaukee Brewers") -> None:
        self.caller = caller
        self.price_source = price_source
        self.default_team = default_team
        self._cards: Dict[str, CardRecord] = {}
        self._created_seq: Dict[str, int] = {}
        self._touched_seq: Dict[str, int] = {}
        self._seq = itertools.count()
        self._roles: Dict[str, UserRole] = {caller: caller_role}
        self._profiles: Dict[str, UserProfile] = {}

    def _touch(self, card_id: str) -> None:
        self._touched_seq[card_id] = next(self._seq)

    def _require_admin(self, action: str) -> None:
        if not self.is_caller_admin():
            raise PermissionDeniedError(f"Only admins can {action}")

    def _require_user(self, action: str) -> None:
        if self.get_caller_role() == UserRole.GUEST:
            raise PermissionDeniedError(f"Guests cannot {action}")

    def _newest_first(self, cards: List[CardRecord]) -> List[CardRecord]:
        return sorted(cards, key=lambda c: (c.timestamp, self._created_seq[c.id]), reverse=True)

    def add_card(self, card: CardRecord) -> None:
        self._require_user("add cards")
        problem = validate_card(card)
        if problem:
            raise CatalogError(problem)
        if card.id in self._cards:
            raise CatalogError(f"Card already exists: {card.id}")
        card.team = card.team or self.default_team
        self._cards[card.id] = card
        self._created_seq[card.id] = next(self._seq)
        self._touch(card.id)

    def update_card(self, card: CardRecord) -> None:
        self._require_user("edit cards")
        existing = self.get_card(card.id)
        problem = validate_card(card)
        if problem:
            raise CatalogError(problem)
        # Price data and creation time belong to the store, not the editor.
        card.price_history = existing.price_history
        card.average_price = existing.average_price
        card.price_last_updated = existing.price_last_updated
        card.timestamp = existing.timestamp
        card.team = card.team or self.default_team
        self._cards[card.id] = card
        self._touch(card.id)

    def delete_card(self, card_id: str) -> None:
        self._require_admin("delete cards")
        if card_id not in self._cards:
            raise CardNotFoundError(f"Card not found: {card_id}")
        del self._cards[card_id]
        del self._created_seq[card_id]
        self._touched_seq.pop(card_id, None)

    def get_card(self, card_id: str) -> CardRecord:
        try:
            return self._cards[card_id]
        except KeyError:
            raise CardNotFoundError(f"Card not found: {card_id}") from None

    def get_all_cards(self) -> List[CardRecord]:
        return self._newest_first(list(self._cards.values()))

    def filter_cards(self, filters: CardFilters) -> List[CardRecord]:
        return [c for c in self.get_all_cards() if _matches(c, filters)]

    def search_cards(self, filters: CardFilters, search_term: Optional[str], page_size: int, offset: int) -> PaginatedResult:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        if offset < 0:
            raise ValueError("offset must not be negative")
        hits = [c for c in self.filter_cards(filters) if _matches_term(c, search_term)]
        page = hits[offset:offset + page_size]
        return PaginatedResult(cards=page, total=len(hits), has_more=offset + len(page) < len(hits))

    def get_price_history(self, card_id: str) -> List[PricePoint]:
        return list(self.get_card(card_id).price_history)

    def get_recently_changed_cards(self) -> List[CardRecord]:
        ordered = sorted(self._touched_seq, key=self._touched_seq.get, reverse=True)
        return [self._cards[card_id] for card_id in ordered[:RECENT_LIMIT]]

    def refresh_card_price(self, card_id: str) -> None:
        self._require_user("refresh prices")
        card = self.get_card(card_id)
        if self.price_source is None:
            raise CatalogError("No price source configured")
        price = self.price_source(card)
        now = datetime.utcnow()
        card.price_history.insert(0, PricePoint(timestamp=now, price=price))
        known = [p.price for p in card.price_history if p.price is not None]
        card.average_price = sum(known) / len(known) if known else None
        card.price_last_updated = now
        self._touch(card_id)
        logger.info(f"Price refreshed for {card_id}: {price}")

    def bulk_import_cards(self, cards: List[BulkImportCard]) -> BulkImportResult:
        self._require_admin("bulk import cards")
        result = BulkImportResult()
        for item in cards:
            problem = validate_card(item)
            if problem:
                result.failed += 1
                result.errors.append((item.id or "", problem))
                continue
            record = CardRecord(
                id=item.id,
                year=item.year,
                player_name=item.player_name,
                brand=item.brand,
                image=item.image,
                team=item.team or self.default_team,
                serial_number=item.serial_number,
                card_number=item.card_number,
                card_series=item.card_series,
                notes=item.notes,
                recognition_confidence=item.recognition_confidence,
                is_rookie_card=item.is_rookie_card,
                is_autographed=item.is_autographed,
            )
            if item.id in self._cards:
                self.update_card(record)
                result.updated += 1
            else:
                self.add_card(record)
                result.created += 1
        logger.info(f"Bulk import: {result.created} created, {result.updated} updated, {result.failed} failed")
        return result

    def get_caller_role(self) -> UserRole:
        return self._roles.get(self.caller, UserRole.GUEST)

    def assign_role(self, principal: str, role: UserRole) -> None:
        self._require_admin("assign roles")
        self._roles[principal] = role

    def get_caller_profile(self) -> Optional[UserProfile]:
        return self._profiles.get(self.caller)

    def save_caller_profile(self, profile: UserProfile) -> None:
        self._require_user("save a profile")
        self._profiles[self.caller] = profile

    def get_user_profile(self, principal: str) -> Optional[UserProfile]:
        return self._profiles.get(principal)
