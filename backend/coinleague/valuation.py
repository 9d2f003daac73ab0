"""Portfolio value at any instant, rebuilt from the trade log.

There is no stored history of cash or holdings: every past value is recomputed
by replaying the immutable trades up to the requested instant and marking the
remaining holdings at the price in force then.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import STARTING_CASH
from .db import as_naive_utc, utcnow
from .errors import ScheduleError
from .ledger import get_cash, trades_for
from .models import Holding, Portfolio, User
from .prices import latest_prices, price_as_of

ZERO = Decimal("0")
ONE_DAY = timedelta(days=1)
ONE_SECOND = timedelta(seconds=1)


@dataclass
class PortfolioValue:
    user_id: int
    league_id: int
    as_of: datetime
    cash: Decimal
    holdings: dict[str, Decimal] = field(default_factory=dict)
    prices: dict[str, Decimal] = field(default_factory=dict)
    crypto_value: Decimal = ZERO
    total_value: Decimal = ZERO


@dataclass
class LeaderboardRow:
    user_id: int
    username: str
    cash: Decimal
    crypto_value: Decimal
    total_value: Decimal


@dataclass
class HistoryPoint:
    timestamp: datetime
    value: Decimal


def _decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def apply_trade(cash: Decimal, holdings: dict[str, Decimal], trade) -> Decimal:
    """Apply one trade to `holdings` in place and return the new cash balance."""
    qty = _decimal(trade.qty)
    cost = _decimal(trade.cost_usd)
    if trade.side == "BUY":
        holdings[trade.symbol] = holdings.get(trade.symbol, ZERO) + qty
        return cash - cost

    remaining = holdings.get(trade.symbol, ZERO) - qty
    if remaining <= 0:
        holdings.pop(trade.symbol, None)
    else:
        holdings[trade.symbol] = remaining
    return cash + cost


def replay_trades(trades) -> tuple[Decimal, dict[str, Decimal]]:
    """Fold trades (ascending by time) into (cash, holdings) from the starting endowment."""
    cash = STARTING_CASH
    holdings: dict[str, Decimal] = {}
    for trade in trades:
        cash = apply_trade(cash, holdings, trade)
    return cash, holdings


def value_at(db: Session, user_id: int, league_id: int, as_of: datetime | None) -> PortfolioValue:
    if not isinstance(as_of, datetime):
        raise ScheduleError("Invalid asOf timestamp")
    as_of = as_naive_utc(as_of)

    cash, holdings = replay_trades(trades_for(db, user_id, league_id, until=as_of))

    prices: dict[str, Decimal] = {}
    crypto_value = ZERO
    for symbol in sorted(holdings):
        price = price_as_of(db, symbol, as_of)
        prices[symbol] = price
        crypto_value += holdings[symbol] * price

    return PortfolioValue(
        user_id=user_id,
        league_id=league_id,
        as_of=as_of,
        cash=cash,
        holdings=holdings,
        prices=prices,
        crypto_value=crypto_value,
        total_value=cash + crypto_value,
    )


def league_leaderboard(db: Session, league_id: int) -> list[LeaderboardRow]:
    """Live ranking of every member by cash plus holdings at the latest prices."""
    members = db.execute(
        select(Portfolio.user_id, User.username, Portfolio.cash_usd)
        .join(User, User.id == Portfolio.user_id)
        .where(Portfolio.league_id == league_id)
    ).all()
    holdings = db.execute(select(Holding).where(Holding.league_id == league_id)).scalars().all()
    prices = latest_prices(db, sorted({h.symbol for h in holdings}))

    crypto_by_user: dict[int, Decimal] = {}
    for holding in holdings:
        price = prices.get(holding.symbol, ZERO)
        crypto_by_user[holding.user_id] = crypto_by_user.get(holding.user_id, ZERO) + _decimal(holding.qty) * price

    rows = []
    for user_id, username, cash in members:
        crypto_value = crypto_by_user.get(user_id, ZERO)
        rows.append(
            LeaderboardRow(
                user_id=int(user_id),
                username=str(username),
                cash=_decimal(cash),
                crypto_value=crypto_value,
                total_value=_decimal(cash) + crypto_value,
            )
        )
    rows.sort(key=lambda row: (-row.total_value, row.username))
    return rows


def portfolio_history(
    db: Session,
    user_id: int,
    league_id: int,
    *,
    now: datetime | None = None,
) -> list[HistoryPoint]:
    """
    Value after each trade, marked at current prices, bracketed by the starting
    balance just before the first trade and the live value at `now`.
    """
    current = now or utcnow()
    trades = trades_for(db, user_id, league_id)
    if not trades:
        return [
            HistoryPoint(timestamp=current.replace(microsecond=0) - ONE_DAY, value=STARTING_CASH),
            HistoryPoint(timestamp=current, value=STARTING_CASH),
        ]

    prices = latest_prices(db, sorted({t.symbol for t in trades}))
    history = [HistoryPoint(timestamp=trades[0].created_at - ONE_SECOND, value=STARTING_CASH)]
    cash = STARTING_CASH
    holdings: dict[str, Decimal] = {}
    for trade in trades:
        cash = apply_trade(cash, holdings, trade)
        crypto_value = sum((qty * prices.get(symbol, ZERO) for symbol, qty in holdings.items()), ZERO)
        history.append(HistoryPoint(timestamp=trade.created_at, value=cash + crypto_value))

    live_cash = get_cash(db, user_id, league_id)
    live_crypto = sum(
        (
            _decimal(h.qty) * prices.get(h.symbol, ZERO)
            for h in db.execute(
                select(Holding).where(Holding.user_id == user_id, Holding.league_id == league_id)
            ).scalars()
        ),
        ZERO,
    )
    history.append(HistoryPoint(timestamp=current, value=live_cash + live_crypto))
    return history
