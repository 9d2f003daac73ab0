from __future__ import annotations

from typing import Iterable

from .config import COIN_WHITELIST
from .errors import ValidationError


def normalize_asset_id(raw: str | None) -> str:
    return str(raw or "").strip().lower()


class AssetRegistry:
    """Tradable coins, keyed by their price-feed id (e.g. `bitcoin`)."""

    def __init__(self, symbols: Iterable[str]):
        normalized: list[str] = []
        for symbol in symbols:
            asset = normalize_asset_id(symbol)
            if asset and asset not in normalized:
                normalized.append(asset)
        self._symbols = tuple(normalized)

    @property
    def symbols(self) -> tuple[str, ...]:
        return self._symbols

    def __contains__(self, raw: str) -> bool:
        return normalize_asset_id(raw) in self._symbols

    def for_league(self, league=None) -> list[str]:
        if league is not None and league.coin_symbols:
            return [normalize_asset_id(s) for s in league.coin_symbols if normalize_asset_id(s)]
        return list(self._symbols)

    def validate(self, raw: str | None, league=None) -> str:
        asset = normalize_asset_id(raw)
        if not asset:
            raise ValidationError("asset is required")
        if asset not in self.for_league(league):
            raise ValidationError(f"coin '{asset}' is not tradable in this league")
        return asset


def default_registry() -> AssetRegistry:
    return AssetRegistry(COIN_WHITELIST)
