import logging
from dataclasses import dataclass
from datetime import datetime

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .assets import AssetRegistry, default_registry, normalize_asset_id
from .auth import authenticate, create_session, register_user, resolve_session, revoke_session
from .config import ALLOWED_ORIGINS
from .db import SessionLocal, engine, get_db
from .errors import AuthError, CoinLeagueError
from .ledger import PortfolioSnapshot, execute_trade, portfolio_snapshot, recent_trades
from .leagues import (
    create_league,
    current_league,
    ensure_portfolio,
    get_league,
    join_league_by_code,
    leagues_for_user,
    member_count,
    members_of,
    set_active_league,
)
from .models import League, User, UserSession
from .prices import latest_prices, price_history
from .schedule import Bye, schedule_for_league
from .schemas import (
    AuthLoginIn,
    AuthLogoutOut,
    AuthRegisterIn,
    AuthSessionOut,
    HistoryPointOut,
    LeaderboardRowOut,
    LeagueActiveIn,
    LeagueCompleteIn,
    LeagueCreateIn,
    LeagueJoinIn,
    LeagueOut,
    LeagueSettingsOut,
    MatchupScoreOut,
    PortfolioHolding,
    PortfolioOut,
    PriceOut,
    PricePointOut,
    RoundOut,
    RoundScoresOut,
    ScheduledMatchupOut,
    ScheduleOut,
    SideScoreOut,
    StandingsOut,
    StandingsRowOut,
    TradeIn,
    TradeOut,
    TradeRecordOut,
    UserOut,
)
from .scoring import StandingsReport, complete_league, league_standings, score_round
from .seed import init_db, seed
from .valuation import league_leaderboard, portfolio_history

logger = logging.getLogger(__name__)

app = FastAPI(title="CoinLeague")
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@dataclass
class AuthContext:
    user: User
    session: UserSession


@app.exception_handler(CoinLeagueError)
def coinleague_error_handler(request: Request, exc: CoinLeagueError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__, "retryable": exc.retryable},
        headers=headers,
    )


@app.on_event("startup")
def on_startup():
    if engine is None:
        logger.warning("DATABASE_URL is not set; API requests will fail until it is configured")
        return
    init_db()
    db = SessionLocal()
    try:
        seed(db)
    finally:
        db.close()


@app.get("/")
def root():
    return {"ok": True, "service": "CoinLeague API", "docs": "/docs", "health": "/healthz"}


@app.get("/healthz")
def healthz():
    return {"ok": True}


def get_assets() -> AssetRegistry:
    return default_registry()


def get_bearer_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> str:
    if not authorization:
        raise AuthError("Authentication required.")
    scheme, _, token = authorization.partition(" ")
    if scheme.strip().lower() != "bearer" or not token.strip():
        raise AuthError("Invalid authorization header.")
    return token.strip()


def get_auth_context(
    bearer_token: str = Depends(get_bearer_token),
    db: Session = Depends(get_db),
) -> AuthContext:
    session = resolve_session(db, bearer_token)
    user = db.get(User, session.user_id)
    if user is None:
        raise AuthError("User not found.")
    return AuthContext(user=user, session=session)


def get_active_league(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
    assets: AssetRegistry = Depends(get_assets),
) -> League:
    return current_league(db, auth.user, assets=assets)


def user_to_out(user: User) -> UserOut:
    return UserOut(id=user.id, username=user.username, active_league_id=user.active_league_id)


def league_to_out(league: League, members: int | None = None) -> LeagueOut:
    settings = league.settings
    return LeagueOut(
        id=league.id,
        name=league.name,
        owner_user_id=league.owner_user_id,
        join_code=league.join_code,
        member_limit=league.member_limit,
        member_count=members,
        coin_symbols=list(league.coin_symbols or []),
        settings=LeagueSettingsOut(
            matchup_frequency=settings.matchup_frequency.value,
            matchup_count=settings.matchup_count,
        ),
        created_at=league.created_at,
        status=league.status,
        winner_user_id=league.winner_user_id,
        completed_at=league.completed_at,
    )


def snapshot_to_out(snapshot: PortfolioSnapshot) -> dict:
    return {
        "league_id": snapshot.league_id,
        "cash_usd": float(snapshot.cash),
        "crypto_value_usd": float(snapshot.crypto_value),
        "total_value_usd": float(snapshot.total_value),
        "holdings": [
            PortfolioHolding(
                symbol=h.symbol,
                qty=float(h.qty),
                price_usd=float(h.price) if h.price is not None else None,
                market_value=float(h.market_value),
            )
            for h in snapshot.holdings
        ],
    }


def standings_row_to_out(row) -> StandingsRowOut:
    return StandingsRowOut(
        user_id=row.user_id,
        username=row.username,
        wins=row.wins,
        losses=row.losses,
        ties=row.ties,
        games=row.games,
        byes=row.byes,
        points_for=float(row.points_for),
        points_against=float(row.points_against),
        point_diff=float(row.point_diff),
    )


def standings_to_out(report: StandingsReport, db: Session) -> StandingsOut:
    return StandingsOut(
        league=league_to_out(report.league, member_count(db, report.league.id)),
        as_of=report.as_of,
        standings=[standings_row_to_out(row) for row in report.standings],
        champion=standings_row_to_out(report.champion) if report.champion else None,
    )


def create_auth_session_out(db: Session, user: User) -> AuthSessionOut:
    token, session = create_session(db, user)
    return AuthSessionOut(access_token=token, expires_at=session.expires_at, user=user_to_out(user))


@app.post("/auth/register", response_model=AuthSessionOut)
def register(payload: AuthRegisterIn, db: Session = Depends(get_db)):
    user = register_user(db, payload.username, payload.password)
    return create_auth_session_out(db, user)


@app.post("/auth/login", response_model=AuthSessionOut)
def login(payload: AuthLoginIn, db: Session = Depends(get_db)):
    user = authenticate(db, payload.username, payload.password)
    return create_auth_session_out(db, user)


@app.post("/auth/logout", response_model=AuthLogoutOut)
def logout(auth: AuthContext = Depends(get_auth_context), db: Session = Depends(get_db)):
    revoke_session(db, auth.session)
    return AuthLogoutOut()


@app.get("/auth/me", response_model=UserOut)
def auth_me(auth: AuthContext = Depends(get_auth_context)):
    return user_to_out(auth.user)


@app.get("/coins", response_model=list[PriceOut])
def list_coins(
    auth: AuthContext = Depends(get_auth_context),
    league: League = Depends(get_active_league),
    db: Session = Depends(get_db),
    assets: AssetRegistry = Depends(get_assets),
):
    symbols = assets.for_league(league)
    prices = latest_prices(db, symbols)
    return [
        PriceOut(symbol=s, price_usd=float(prices[s]) if s in prices else None)
        for s in symbols
    ]


@app.get("/prices/{asset}", response_model=PriceOut)
def get_price(asset: str, db: Session = Depends(get_db)):
    symbol = normalize_asset_id(asset)
    price = latest_prices(db, [symbol]).get(symbol)
    return PriceOut(symbol=symbol, price_usd=float(price) if price is not None else None)


@app.get("/prices/{asset}/history", response_model=list[PricePointOut])
def get_price_history(asset: str, db: Session = Depends(get_db)):
    return [
        PricePointOut(symbol=point.symbol, ts_min=point.ts_min, price_usd=float(point.price_usd))
        for point in price_history(db, asset)
    ]


@app.get("/portfolio", response_model=PortfolioOut)
def portfolio(
    auth: AuthContext = Depends(get_auth_context),
    league: League = Depends(get_active_league),
    db: Session = Depends(get_db),
):
    ensure_portfolio(db, auth.user.id, league.id)
    db.commit()
    return PortfolioOut(**snapshot_to_out(portfolio_snapshot(db, auth.user.id, league.id)))


@app.get("/portfolio/history", response_model=list[HistoryPointOut])
def portfolio_value_history(
    auth: AuthContext = Depends(get_auth_context),
    league: League = Depends(get_active_league),
    db: Session = Depends(get_db),
):
    return [
        HistoryPointOut(timestamp=point.timestamp, value=float(point.value))
        for point in portfolio_history(db, auth.user.id, league.id)
    ]


@app.post("/trade", response_model=TradeOut)
def trade(
    payload: TradeIn,
    auth: AuthContext = Depends(get_auth_context),
    league: League = Depends(get_active_league),
    db: Session = Depends(get_db),
    assets: AssetRegistry = Depends(get_assets),
):
    snapshot = execute_trade(
        db,
        auth.user.id,
        league.id,
        payload.symbol,
        payload.side,
        payload.quantity,
        assets=assets,
    )
    return TradeOut(price_used_usd=float(snapshot.price_used), **snapshot_to_out(snapshot))


@app.get("/trades/recent", response_model=list[TradeRecordOut])
def trades_recent(
    auth: AuthContext = Depends(get_auth_context),
    league: League = Depends(get_active_league),
    db: Session = Depends(get_db),
):
    return [
        TradeRecordOut(
            id=t.id,
            symbol=t.symbol,
            side=t.side,
            qty=float(t.qty),
            price_usd=float(t.price_usd),
            cost_usd=float(t.cost_usd),
            created_at=t.created_at,
        )
        for t in recent_trades(db, auth.user.id, league.id)
    ]


@app.post("/leagues", response_model=LeagueOut)
def leagues_create(
    payload: LeagueCreateIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
    assets: AssetRegistry = Depends(get_assets),
):
    league = create_league(
        db,
        auth.user.id,
        payload.name,
        member_limit=payload.member_count,
        matchup_count=payload.matchup_count,
        matchup_frequency=payload.matchup_frequency,
        assets=assets,
    )
    return league_to_out(league, 1)


@app.post("/leagues/join", response_model=LeagueOut)
def leagues_join(payload: LeagueJoinIn, auth: AuthContext = Depends(get_auth_context), db: Session = Depends(get_db)):
    league = join_league_by_code(db, auth.user.id, payload.code)
    return league_to_out(league, member_count(db, league.id))


@app.get("/leagues/mine", response_model=list[LeagueOut])
def leagues_mine(auth: AuthContext = Depends(get_auth_context), db: Session = Depends(get_db)):
    return [league_to_out(league, count) for league, count in leagues_for_user(db, auth.user.id)]


@app.get("/leagues/active", response_model=LeagueOut)
def leagues_active(
    auth: AuthContext = Depends(get_auth_context),
    league: League = Depends(get_active_league),
    db: Session = Depends(get_db),
):
    return league_to_out(league, member_count(db, league.id))


@app.post("/leagues/active", response_model=LeagueOut)
def leagues_set_active(
    payload: LeagueActiveIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    league = set_active_league(db, auth.user, payload.league_id)
    return league_to_out(league, member_count(db, league.id))


@app.get("/leagues/leaderboard", response_model=list[LeaderboardRowOut])
def leagues_leaderboard(
    auth: AuthContext = Depends(get_auth_context),
    league: League = Depends(get_active_league),
    db: Session = Depends(get_db),
):
    return [
        LeaderboardRowOut(
            user_id=row.user_id,
            username=row.username,
            cash=float(row.cash),
            crypto_value=float(row.crypto_value),
            total_value=float(row.total_value),
        )
        for row in league_leaderboard(db, league.id)
    ]


@app.get("/leagues/schedule", response_model=ScheduleOut)
def leagues_schedule(
    auth: AuthContext = Depends(get_auth_context),
    league: League = Depends(get_active_league),
    db: Session = Depends(get_db),
):
    members = members_of(db, league.id)
    rounds = []
    for round_ in schedule_for_league(league, members):
        matchups = []
        for m in round_.matchups:
            if isinstance(m, Bye):
                matchups.append(
                    ScheduledMatchupOut(type="BYE", bye_user_id=m.member.user_id, bye_username=m.member.username)
                )
            else:
                matchups.append(
                    ScheduledMatchupOut(
                        type="HEAD_TO_HEAD",
                        home_user_id=m.home.user_id,
                        home_username=m.home.username,
                        away_user_id=m.away.user_id,
                        away_username=m.away.username,
                    )
                )
        rounds.append(
            RoundOut(
                round_index=round_.round_index,
                label=round_.label,
                start=round_.start,
                end=round_.end,
                matchups=matchups,
            )
        )
    return ScheduleOut(league=league_to_out(league, len(members)), schedule=rounds)


@app.get("/leagues/rounds/{round_index}", response_model=RoundScoresOut)
def leagues_round_scores(
    round_index: int,
    auth: AuthContext = Depends(get_auth_context),
    league: League = Depends(get_active_league),
    db: Session = Depends(get_db),
):
    scores = score_round(db, league, members_of(db, league.id), round_index)

    matchups = []
    for m in scores.matchups:
        if isinstance(m, Bye):
            matchups.append(MatchupScoreOut(type="BYE", bye_user_id=m.member.user_id, bye_username=m.member.username))
            continue
        matchups.append(
            MatchupScoreOut(
                type="HEAD_TO_HEAD",
                effective_end=m.effective_end,
                home=SideScoreOut(
                    user_id=m.home.user_id,
                    username=m.home.username,
                    start_value=float(m.home.start_value),
                    end_value=float(m.home.end_value),
                    profit=float(m.home.profit),
                ),
                away=SideScoreOut(
                    user_id=m.away.user_id,
                    username=m.away.username,
                    start_value=float(m.away.start_value),
                    end_value=float(m.away.end_value),
                    profit=float(m.away.profit),
                ),
                winner_user_id=m.winner_user_id,
                result=m.result,
            )
        )
    return RoundScoresOut(
        league_id=league.id,
        round_index=scores.round.round_index,
        label=scores.round.label,
        start=scores.round.start,
        end=scores.round.end,
        matchups=matchups,
    )


@app.get("/leagues/standings", response_model=StandingsOut)
def leagues_standings(
    as_of: datetime | None = None,
    auth: AuthContext = Depends(get_auth_context),
    league: League = Depends(get_active_league),
    db: Session = Depends(get_db),
):
    return standings_to_out(league_standings(db, league.id, as_of), db)


@app.post("/leagues/complete", response_model=StandingsOut)
def leagues_complete(
    payload: LeagueCompleteIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
    assets: AssetRegistry = Depends(get_assets),
):
    league_id = payload.league_id
    if league_id is None:
        league_id = current_league(db, auth.user, assets=assets).id
    get_league(db, league_id)
    return standings_to_out(complete_league(db, league_id, auth.user.id), db)
