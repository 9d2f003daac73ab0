"""Trade execution against a (user, league) portfolio.

A trade is one transaction: lock the portfolio cash row and the holding row,
check sufficiency against what was just read, write cash and holding, append the
immutable trade record, commit. Any failure rolls the whole thing back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.orm import Session

from .assets import AssetRegistry, default_registry
from .db import utcnow
from .errors import InsufficientFunds, InsufficientHoldings, LeagueNotFound, PriceUnavailable, ValidationError
from .leagues import get_league, is_member
from .models import Holding, Portfolio, Trade
from .prices import latest_price, latest_prices

logger = logging.getLogger(__name__)

SIDES = ("BUY", "SELL")
COST_QUANTUM = Decimal("0.00000001")
QTY_QUANTUM = Decimal("0.000000000001")
ZERO = Decimal("0")


@dataclass
class HoldingValue:
    symbol: str
    qty: Decimal
    price: Decimal | None
    market_value: Decimal


@dataclass
class PortfolioSnapshot:
    user_id: int
    league_id: int
    cash: Decimal
    holdings: list[HoldingValue]
    crypto_value: Decimal
    total_value: Decimal
    price_used: Decimal | None = None


def _decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def normalize_side(raw: str | None) -> str:
    side = (raw or "").strip().upper()
    if side not in SIDES:
        raise ValidationError("side must be BUY or SELL")
    return side


def normalize_quantity(raw) -> Decimal:
    if raw is None or isinstance(raw, bool):
        raise ValidationError("quantity must be > 0")
    try:
        qty = _decimal(raw)
    except (InvalidOperation, ValueError):
        raise ValidationError("quantity must be a number") from None
    if not qty.is_finite() or qty <= 0:
        raise ValidationError("quantity must be > 0")
    qty = qty.quantize(QTY_QUANTUM, rounding=ROUND_HALF_UP)
    if qty <= 0:
        raise ValidationError("quantity is below the smallest tradable unit")
    return qty


def trade_cost(price: Decimal, qty: Decimal) -> Decimal:
    return (price * qty).quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


# Portfolio store


def get_cash(db: Session, user_id: int, league_id: int) -> Decimal:
    cash = db.execute(
        select(Portfolio.cash_usd).where(Portfolio.user_id == user_id, Portfolio.league_id == league_id)
    ).scalar_one_or_none()
    return ZERO if cash is None else _decimal(cash)


def lock_portfolio(db: Session, user_id: int, league_id: int) -> Portfolio:
    return db.execute(
        select(Portfolio)
        .where(Portfolio.user_id == user_id, Portfolio.league_id == league_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()


def set_cash(portfolio: Portfolio, cash: Decimal) -> None:
    portfolio.cash_usd = cash


def get_holding(
    db: Session,
    user_id: int,
    league_id: int,
    symbol: str,
    *,
    for_update: bool = False,
) -> Holding | None:
    stmt = select(Holding).where(
        Holding.user_id == user_id,
        Holding.league_id == league_id,
        Holding.symbol == symbol,
    )
    if for_update:
        # Re-read under the lock; an identity-map copy may predate it.
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return db.execute(stmt).scalar_one_or_none()


def upsert_holding(
    db: Session,
    holding: Holding | None,
    user_id: int,
    league_id: int,
    symbol: str,
    qty: Decimal,
) -> Holding:
    if holding is None:
        holding = Holding(user_id=user_id, league_id=league_id, symbol=symbol, qty=qty)
        db.add(holding)
    else:
        holding.qty = qty
    return holding


def delete_holding(db: Session, holding: Holding | None) -> None:
    if holding is not None:
        db.delete(holding)


# Trade log


def append_trade(
    db: Session,
    *,
    user_id: int,
    league_id: int,
    symbol: str,
    side: str,
    qty: Decimal,
    price: Decimal,
    cost: Decimal,
    executed_at: datetime,
) -> Trade:
    trade = Trade(
        user_id=user_id,
        league_id=league_id,
        symbol=symbol,
        side=side,
        qty=qty,
        price_usd=price,
        cost_usd=cost,
        created_at=executed_at,
    )
    db.add(trade)
    return trade


def trades_for(db: Session, user_id: int, league_id: int, until: datetime | None = None) -> list[Trade]:
    stmt = select(Trade).where(Trade.user_id == user_id, Trade.league_id == league_id)
    if until is not None:
        stmt = stmt.where(Trade.created_at <= until)
    return list(db.execute(stmt.order_by(Trade.created_at.asc(), Trade.id.asc())).scalars())


def recent_trades(db: Session, user_id: int, league_id: int, limit: int = 4) -> list[Trade]:
    return list(
        db.execute(
            select(Trade)
            .where(Trade.user_id == user_id, Trade.league_id == league_id)
            .order_by(Trade.created_at.desc(), Trade.id.desc())
            .limit(limit)
        ).scalars()
    )


def portfolio_snapshot(
    db: Session,
    user_id: int,
    league_id: int,
    *,
    price_used: Decimal | None = None,
) -> PortfolioSnapshot:
    """Current cash plus every holding marked at the latest price."""
    cash = get_cash(db, user_id, league_id)
    holdings = db.execute(
        select(Holding)
        .where(Holding.user_id == user_id, Holding.league_id == league_id)
        .order_by(Holding.symbol.asc())
    ).scalars().all()
    prices = latest_prices(db, [h.symbol for h in holdings])

    rows: list[HoldingValue] = []
    crypto_value = ZERO
    for holding in holdings:
        qty = _decimal(holding.qty)
        price = prices.get(holding.symbol)
        market_value = qty * price if price is not None else ZERO
        crypto_value += market_value
        rows.append(HoldingValue(symbol=holding.symbol, qty=qty, price=price, market_value=market_value))

    return PortfolioSnapshot(
        user_id=user_id,
        league_id=league_id,
        cash=cash,
        holdings=rows,
        crypto_value=crypto_value,
        total_value=cash + crypto_value,
        price_used=price_used,
    )


def execute_trade(
    db: Session,
    user_id: int,
    league_id: int,
    asset: str | None,
    side: str | None,
    quantity,
    *,
    assets: AssetRegistry | None = None,
    now: datetime | None = None,
) -> PortfolioSnapshot:
    registry = assets or default_registry()
    side = normalize_side(side)
    qty = normalize_quantity(quantity)

    # The first read opens the transaction (a write lock on SQLite).
    try:
        league = get_league(db, league_id)
        if not is_member(db, user_id, league.id):
            raise LeagueNotFound("You are not a member of that league")
        symbol = registry.validate(asset, league)

        price = latest_price(db, symbol)
        if price is None or price <= 0:
            raise PriceUnavailable(f"no current price for {symbol}; try again later")
        cost = trade_cost(price, qty)

        portfolio = lock_portfolio(db, user_id, league_id)
        holding = get_holding(db, user_id, league_id, symbol, for_update=True)

        cash = _decimal(portfolio.cash_usd)
        held = _decimal(holding.qty) if holding is not None else ZERO

        if side == "BUY":
            if cash < cost:
                raise InsufficientFunds(f"insufficient cash: need {cost:.2f}, have {cash:.2f}")
            set_cash(portfolio, cash - cost)
            upsert_holding(db, holding, user_id, league_id, symbol, held + qty)
        else:
            if held < qty:
                raise InsufficientHoldings(f"insufficient quantity: trying to sell {qty} but hold {held}")
            set_cash(portfolio, cash + cost)
            remaining = held - qty
            if remaining <= 0:
                delete_holding(db, holding)
            else:
                upsert_holding(db, holding, user_id, league_id, symbol, remaining)

        append_trade(
            db,
            user_id=user_id,
            league_id=league_id,
            symbol=symbol,
            side=side,
            qty=qty,
            price=price,
            cost=cost,
            executed_at=now or utcnow(),
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "trade user=%s league=%s %s %s %s @ %s cost=%s",
        user_id,
        league_id,
        side,
        qty,
        symbol,
        price,
        cost,
    )
    return portfolio_snapshot(db, user_id, league_id, price_used=price)
