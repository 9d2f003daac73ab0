from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class UserOut(BaseModel):
    id: int
    username: str
    active_league_id: int | None = None


class AuthRegisterIn(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=8, max_length=128)


class AuthLoginIn(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=128)


class AuthSessionOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserOut


class AuthLogoutOut(BaseModel):
    ok: bool = True


class PortfolioHolding(BaseModel):
    symbol: str
    qty: float
    price_usd: float | None
    market_value: float


class PortfolioOut(BaseModel):
    league_id: int
    cash_usd: float
    crypto_value_usd: float
    total_value_usd: float
    holdings: list[PortfolioHolding]


class TradeIn(BaseModel):
    symbol: str = Field(min_length=1, max_length=64)
    side: str = Field(min_length=1, max_length=8)
    # Validated and quantized by the ledger; a string keeps full decimal precision.
    quantity: float | str


class TradeOut(PortfolioOut):
    success: bool = True
    price_used_usd: float


class TradeRecordOut(BaseModel):
    id: int
    symbol: str
    side: str
    qty: float
    price_usd: float
    cost_usd: float
    created_at: datetime


class HistoryPointOut(BaseModel):
    timestamp: datetime
    value: float


class PriceOut(BaseModel):
    symbol: str
    price_usd: float | None


class PricePointOut(BaseModel):
    symbol: str
    ts_min: datetime
    price_usd: float


class LeagueSettingsOut(BaseModel):
    matchup_frequency: Literal["DAILY", "WEEKLY"]
    matchup_count: int | None = None


class LeagueCreateIn(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    member_count: int | None = None
    matchup_count: int | None = None
    matchup_frequency: str | None = None


class LeagueJoinIn(BaseModel):
    code: str = Field(min_length=1, max_length=16)


class LeagueActiveIn(BaseModel):
    league_id: int


class LeagueCompleteIn(BaseModel):
    league_id: int | None = None


class LeagueOut(BaseModel):
    id: int
    name: str
    owner_user_id: int
    join_code: str
    member_limit: int | None
    member_count: int | None = None
    coin_symbols: list[str]
    settings: LeagueSettingsOut
    created_at: datetime
    status: str
    winner_user_id: int | None = None
    completed_at: datetime | None = None


class LeaderboardRowOut(BaseModel):
    user_id: int
    username: str
    cash: float
    crypto_value: float
    total_value: float


class ScheduledMatchupOut(BaseModel):
    type: Literal["HEAD_TO_HEAD", "BYE"]
    home_user_id: int | None = None
    home_username: str | None = None
    away_user_id: int | None = None
    away_username: str | None = None
    bye_user_id: int | None = None
    bye_username: str | None = None


class RoundOut(BaseModel):
    round_index: int
    label: str
    start: datetime
    end: datetime
    matchups: list[ScheduledMatchupOut]


class ScheduleOut(BaseModel):
    league: LeagueOut
    schedule: list[RoundOut]


class SideScoreOut(BaseModel):
    user_id: int
    username: str
    start_value: float
    end_value: float
    profit: float


class MatchupScoreOut(BaseModel):
    type: Literal["HEAD_TO_HEAD", "BYE"]
    bye_user_id: int | None = None
    bye_username: str | None = None
    effective_end: datetime | None = None
    home: SideScoreOut | None = None
    away: SideScoreOut | None = None
    winner_user_id: int | None = None
    result: Literal["HOME_WIN", "AWAY_WIN", "TIE"] | None = None


class RoundScoresOut(BaseModel):
    league_id: int
    round_index: int
    label: str
    start: datetime
    end: datetime
    matchups: list[MatchupScoreOut]


class StandingsRowOut(BaseModel):
    user_id: int
    username: str
    wins: int
    losses: int
    ties: int
    games: int
    byes: int
    points_for: float
    points_against: float
    point_diff: float


class StandingsOut(BaseModel):
    league: LeagueOut
    as_of: datetime
    standings: list[StandingsRowOut]
    champion: StandingsRowOut | None = None
