from __future__ import annotations

import logging
import secrets
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .assets import AssetRegistry, default_registry
from .config import MAX_LEAGUE_MEMBERS, STARTING_CASH
from .db import utcnow
from .errors import LeagueClosed, LeagueFull, LeagueNotFound, ValidationError
from .models import League, Portfolio, User
from .schedule import LeagueSettings, MatchupFrequency, Member

logger = logging.getLogger(__name__)

JOIN_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
JOIN_CODE_LENGTH = 6
JOIN_CODE_ATTEMPTS = 20
SOLO_LEAGUE_NAME = "Solo League"

__all__ = [
    "LeagueSettings",
    "MatchupFrequency",
    "create_league",
    "current_league",
    "ensure_portfolio",
    "ensure_solo_league",
    "finalize_league",
    "get_league",
    "is_member",
    "join_league_by_code",
    "leagues_for_user",
    "members_of",
    "set_active_league",
]


def generate_join_code(length: int = JOIN_CODE_LENGTH) -> str:
    return "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(length))


def normalize_join_code(raw: str | None) -> str:
    return (raw or "").strip().upper()


def parse_member_limit(value) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        limit = int(str(value).strip())
    except ValueError:
        raise ValidationError("Member count must be a whole number") from None
    if limit < 2 or limit > MAX_LEAGUE_MEMBERS:
        raise ValidationError(f"Member count must be between 2 and {MAX_LEAGUE_MEMBERS}")
    return limit


def get_league(db: Session, league_id: int, *, for_update: bool = False) -> League:
    stmt = select(League).where(League.id == league_id)
    if for_update:
        stmt = stmt.with_for_update()
    league = db.execute(stmt).scalar_one_or_none()
    if league is None:
        raise LeagueNotFound("League not found")
    return league


def is_member(db: Session, user_id: int, league_id: int) -> bool:
    return db.get(Portfolio, (user_id, league_id)) is not None


def members_of(db: Session, league_id: int) -> list[Member]:
    rows = db.execute(
        select(User.id, User.username)
        .join(Portfolio, Portfolio.user_id == User.id)
        .where(Portfolio.league_id == league_id)
        .order_by(User.username.asc())
    ).all()
    return [Member(user_id=int(user_id), username=str(username)) for user_id, username in rows]


def member_count(db: Session, league_id: int) -> int:
    return int(
        db.execute(
            select(func.count()).select_from(Portfolio).where(Portfolio.league_id == league_id)
        ).scalar_one()
    )


def ensure_portfolio(db: Session, user_id: int, league_id: int) -> Portfolio:
    """Create the (user, league) portfolio on first access. Safe to call repeatedly."""
    portfolio = db.get(Portfolio, (user_id, league_id))
    if portfolio is not None:
        return portfolio

    try:
        with db.begin_nested():
            portfolio = Portfolio(user_id=user_id, league_id=league_id, cash_usd=STARTING_CASH)
            db.add(portfolio)
    except IntegrityError:
        # A concurrent request created it first.
        portfolio = db.get(Portfolio, (user_id, league_id))
    return portfolio


def _insert_league_with_unique_code(db: Session, **fields) -> League:
    for _ in range(JOIN_CODE_ATTEMPTS):
        league = League(join_code=generate_join_code(), **fields)
        try:
            with db.begin_nested():
                db.add(league)
        except IntegrityError:
            continue
        return league
    raise RuntimeError("Could not allocate a unique join code")


def create_league(
    db: Session,
    owner_id: int,
    name: str | None,
    *,
    member_limit=None,
    matchup_count=None,
    matchup_frequency=None,
    assets: AssetRegistry | None = None,
    now: datetime | None = None,
) -> League:
    trimmed_name = (name or "").strip()
    if not trimmed_name:
        raise ValidationError("League name is required")
    limit = parse_member_limit(member_limit)
    settings = LeagueSettings.parse(matchup_frequency, matchup_count)
    registry = assets or default_registry()

    league = _insert_league_with_unique_code(
        db,
        name=trimmed_name,
        owner_user_id=owner_id,
        member_limit=limit,
        coin_symbols=registry.for_league(),
        matchup_frequency=settings.matchup_frequency.value,
        matchup_count=settings.matchup_count,
        created_at=now or utcnow(),
        status="ACTIVE",
    )
    ensure_portfolio(db, owner_id, league.id)

    owner = db.get(User, owner_id)
    if owner is not None:
        owner.active_league_id = league.id

    db.commit()
    logger.info(
        "created league id=%s code=%s owner=%s frequency=%s count=%s",
        league.id,
        league.join_code,
        owner_id,
        settings.matchup_frequency.value,
        settings.matchup_count,
    )
    return league


def join_league_by_code(db: Session, user_id: int, raw_code: str | None) -> League:
    code = normalize_join_code(raw_code)
    if not code:
        raise ValidationError("League code is required")

    # Lock the league row so concurrent joins cannot overshoot the member limit.
    league = db.execute(
        select(League).where(League.join_code == code).with_for_update()
    ).scalar_one_or_none()
    if league is None:
        raise LeagueNotFound("League not found")
    if league.is_completed:
        raise LeagueClosed("League is already completed")

    if not is_member(db, user_id, league.id):
        if league.member_limit is not None and member_count(db, league.id) >= league.member_limit:
            raise LeagueFull("League is full")
        ensure_portfolio(db, user_id, league.id)
        logger.info("user=%s joined league=%s", user_id, league.id)

    user = db.get(User, user_id)
    if user is not None:
        user.active_league_id = league.id
    db.commit()
    return league


def ensure_solo_league(
    db: Session,
    user_id: int,
    *,
    assets: AssetRegistry | None = None,
    now: datetime | None = None,
) -> League:
    league = db.execute(
        select(League)
        .where(League.owner_user_id == user_id)
        .order_by(League.created_at.asc(), League.id.asc())
        .limit(1)
    ).scalar_one_or_none()
    if league is not None:
        ensure_portfolio(db, user_id, league.id)
        db.commit()
        return league

    return create_league(db, user_id, SOLO_LEAGUE_NAME, assets=assets, now=now)


def current_league(db: Session, user: User, *, assets: AssetRegistry | None = None) -> League:
    """The user's active league, falling back to their first league, then a new solo league."""
    if user.active_league_id is not None and is_member(db, user.id, user.active_league_id):
        return get_league(db, user.active_league_id)

    league_id = db.execute(
        select(Portfolio.league_id)
        .where(Portfolio.user_id == user.id)
        .order_by(Portfolio.created_at.asc())
        .limit(1)
    ).scalar_one_or_none()
    if league_id is None:
        return ensure_solo_league(db, user.id, assets=assets)

    user.active_league_id = league_id
    db.commit()
    return get_league(db, league_id)


def set_active_league(db: Session, user: User, league_id: int) -> League:
    if not is_member(db, user.id, league_id):
        raise LeagueNotFound("You are not a member of that league")
    league = get_league(db, league_id)
    user.active_league_id = league.id
    db.commit()
    return league


def leagues_for_user(db: Session, user_id: int) -> list[tuple[League, int]]:
    member_league_ids = select(Portfolio.league_id).where(Portfolio.user_id == user_id)
    leagues = db.execute(
        select(League)
        .where(or_(League.owner_user_id == user_id, League.id.in_(member_league_ids)))
        .order_by(League.created_at.desc())
    ).scalars().all()
    return [(league, member_count(db, league.id)) for league in leagues]


def finalize_league(db: Session, league_id: int, winner_id: int, *, now: datetime | None = None) -> League:
    """Record the champion and flip the league to COMPLETED. The caller commits."""
    league = get_league(db, league_id, for_update=True)
    if league.is_completed:
        raise LeagueClosed("League is already completed")
    league.status = "COMPLETED"
    league.winner_user_id = winner_id
    league.completed_at = now or utcnow()
    db.flush()
    return league
