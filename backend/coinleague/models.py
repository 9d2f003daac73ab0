from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from .config import STARTING_CASH
from .db import Base, utcnow
from .schedule import LeagueSettings, MatchupFrequency

CASH = Numeric(20, 8)
QTY = Numeric(30, 12)
PRICE = Numeric(20, 8)
COST = Numeric(28, 8)


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    password_hash: Mapped[str | None] = mapped_column(String(512), nullable=True)
    active_league_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    sessions: Mapped[list["UserSession"]] = relationship(back_populates="user")


class UserSession(Base):
    __tablename__ = "user_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    token_hash: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    user: Mapped["User"] = relationship(back_populates="sessions")


class League(Base):
    __tablename__ = "leagues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128))
    owner_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    join_code: Mapped[str] = mapped_column(String(16), unique=True, index=True)
    member_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    coin_symbols: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    matchup_frequency: Mapped[str] = mapped_column(String(8), default=MatchupFrequency.WEEKLY.value)
    matchup_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    status: Mapped[str] = mapped_column(String(16), default="ACTIVE", index=True)  # ACTIVE, COMPLETED
    winner_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    portfolios: Mapped[list["Portfolio"]] = relationship(back_populates="league")

    @property
    def settings(self) -> LeagueSettings:
        return LeagueSettings(
            matchup_frequency=MatchupFrequency(self.matchup_frequency or MatchupFrequency.WEEKLY.value),
            matchup_count=self.matchup_count,
        )

    @property
    def is_completed(self) -> bool:
        return self.status == "COMPLETED"


class Portfolio(Base):
    __tablename__ = "portfolios"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)
    league_id: Mapped[int] = mapped_column(ForeignKey("leagues.id"), primary_key=True, index=True)
    cash_usd: Mapped[Decimal] = mapped_column(CASH, default=STARTING_CASH)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    league: Mapped["League"] = relationship(back_populates="portfolios")


class Holding(Base):
    __tablename__ = "holdings"
    __table_args__ = (CheckConstraint("qty >= 0", name="ck_holding_qty_non_negative"),)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)
    league_id: Mapped[int] = mapped_column(ForeignKey("leagues.id"), primary_key=True)
    symbol: Mapped[str] = mapped_column(String(64), primary_key=True)
    qty: Mapped[Decimal] = mapped_column(QTY, default=0)


class Trade(Base):
    """Append-only ledger entry. Rows are never updated or deleted."""

    __tablename__ = "trades"
    __table_args__ = (
        CheckConstraint("side IN ('BUY', 'SELL')", name="ck_trade_side"),
        CheckConstraint("qty > 0", name="ck_trade_qty_positive"),
        CheckConstraint("price_usd > 0", name="ck_trade_price_positive"),
        Index("idx_trades_user_league_time", "user_id", "league_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    league_id: Mapped[int] = mapped_column(ForeignKey("leagues.id"))
    symbol: Mapped[str] = mapped_column(String(64))
    side: Mapped[str] = mapped_column(String(4))  # BUY, SELL
    qty: Mapped[Decimal] = mapped_column(QTY)
    price_usd: Mapped[Decimal] = mapped_column(PRICE)
    cost_usd: Mapped[Decimal] = mapped_column(COST)  # always positive; side gives direction
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class PriceLatest(Base):
    __tablename__ = "prices_latest"

    symbol: Mapped[str] = mapped_column(String(64), primary_key=True)
    price_usd: Mapped[Decimal] = mapped_column(PRICE)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class PricePoint(Base):
    """One price per asset per minute bucket; the first write for a bucket wins."""

    __tablename__ = "price_points_min"

    symbol: Mapped[str] = mapped_column(String(64), primary_key=True)
    ts_min: Mapped[datetime] = mapped_column(DateTime, primary_key=True)
    price_usd: Mapped[Decimal] = mapped_column(PRICE)
