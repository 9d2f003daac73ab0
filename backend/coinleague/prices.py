"""Price store: latest-price snapshot plus an append-only minute series.

The trading core only reads from here. `record_price` is the write side used by
the poller (`scripts/price_poller.py`).
"""

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from .assets import normalize_asset_id
from .db import utcnow
from .models import PriceLatest, PricePoint

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def minute_bucket(ts: datetime) -> datetime:
    return ts.replace(second=0, microsecond=0)


def latest_price(db: Session, asset: str) -> Decimal | None:
    row = db.execute(
        select(PriceLatest.price_usd).where(PriceLatest.symbol == normalize_asset_id(asset))
    ).scalar_one_or_none()
    return None if row is None else _decimal(row)


def price_at_or_before(db: Session, asset: str, ts: datetime) -> Decimal | None:
    row = db.execute(
        select(PricePoint.price_usd)
        .where(PricePoint.symbol == normalize_asset_id(asset), PricePoint.ts_min <= ts)
        .order_by(PricePoint.ts_min.desc())
        .limit(1)
    ).scalar_one_or_none()
    return None if row is None else _decimal(row)


def price_as_of(db: Session, asset: str, ts: datetime) -> Decimal:
    """Historical bucket at or before `ts`, else the latest snapshot, else zero."""
    price = price_at_or_before(db, asset, ts)
    if price is not None:
        return price

    price = latest_price(db, asset)
    if price is not None:
        logger.warning("no price bucket for %s at or before %s; using latest snapshot", asset, ts.isoformat())
        return price

    logger.warning("no price at all for %s; valuing at zero", asset)
    return ZERO


def latest_prices(db: Session, assets: list[str]) -> dict[str, Decimal]:
    if not assets:
        return {}
    rows = db.execute(
        select(PriceLatest.symbol, PriceLatest.price_usd).where(PriceLatest.symbol.in_(assets))
    ).all()
    return {symbol: _decimal(price) for symbol, price in rows}


def record_price(db: Session, asset: str, price, fetched_at: datetime | None = None) -> bool:
    """
    Upsert the latest snapshot and add the minute bucket for `fetched_at`.

    Returns True if a new bucket was written. An existing bucket is left as is.
    The caller commits.
    """
    symbol = normalize_asset_id(asset)
    value = _decimal(price)
    ts = fetched_at or utcnow()

    latest = db.get(PriceLatest, symbol)
    if latest is None:
        db.add(PriceLatest(symbol=symbol, price_usd=value, fetched_at=ts))
    else:
        latest.price_usd = value
        latest.fetched_at = ts

    bucket = minute_bucket(ts)
    created = db.get(PricePoint, (symbol, bucket)) is None
    if created:
        db.add(PricePoint(symbol=symbol, ts_min=bucket, price_usd=value))
    db.flush()
    return created


def price_history(db: Session, asset: str) -> list[PricePoint]:
    return list(
        db.execute(
            select(PricePoint)
            .where(PricePoint.symbol == normalize_asset_id(asset))
            .order_by(PricePoint.ts_min.asc())
        ).scalars()
    )
