"""Head-to-head scoring, league standings and season finalization.

A matchup is won by the member whose portfolio gained more over the round
window. Standings fold every finished round of the regenerated schedule.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence

from sqlalchemy.orm import Session

from .config import SCORE_EPSILON
from .db import as_naive_utc, utcnow
from .errors import LeagueClosed, NotLeagueOwner, ScheduleError
from .leagues import finalize_league, get_league, members_of
from .models import League
from .schedule import Bye, Member, Round, find_round, schedule_for_league
from .valuation import value_at

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")

HOME_WIN = "HOME_WIN"
AWAY_WIN = "AWAY_WIN"
TIE = "TIE"


@dataclass
class SideScore:
    user_id: int
    username: str
    start_value: Decimal
    end_value: Decimal

    @property
    def profit(self) -> Decimal:
        return self.end_value - self.start_value


@dataclass
class MatchupScore:
    league_id: int
    round_index: int
    label: str
    start: datetime
    end: datetime
    effective_end: datetime
    home: SideScore
    away: SideScore
    winner_user_id: int | None
    result: str  # HOME_WIN, AWAY_WIN, TIE


@dataclass
class RoundScores:
    round: Round
    matchups: list[MatchupScore | Bye]


@dataclass
class StandingsRow:
    user_id: int
    username: str
    wins: int = 0
    losses: int = 0
    ties: int = 0
    games: int = 0
    byes: int = 0
    points_for: Decimal = ZERO
    points_against: Decimal = ZERO

    @property
    def point_diff(self) -> Decimal:
        return self.points_for - self.points_against


@dataclass
class StandingsReport:
    league: League
    as_of: datetime
    standings: list[StandingsRow] = field(default_factory=list)
    champion: StandingsRow | None = None


def _decide(home: SideScore, away: SideScore, epsilon: Decimal) -> tuple[int | None, str]:
    diff = home.profit - away.profit
    if abs(diff) > epsilon:
        return (home.user_id, HOME_WIN) if diff > 0 else (away.user_id, AWAY_WIN)

    # Equal profit: the larger portfolio at the end of the window takes it.
    value_diff = home.end_value - away.end_value
    if abs(value_diff) > epsilon:
        return (home.user_id, HOME_WIN) if value_diff > 0 else (away.user_id, AWAY_WIN)
    return None, TIE


def score_matchup(
    db: Session,
    league_id: int,
    round_: Round,
    home: Member,
    away: Member,
    *,
    now: datetime | None = None,
    epsilon: Decimal = SCORE_EPSILON,
) -> MatchupScore:
    """
    Profit of each side between the round start and min(now, round end).

    An in-progress round is scored up to the current instant, so live standings
    show partial progress.
    """
    current = now or utcnow()
    effective_end = min(current, round_.end)

    sides = []
    for member in (home, away):
        start_value = value_at(db, member.user_id, league_id, round_.start).total_value
        end_value = value_at(db, member.user_id, league_id, effective_end).total_value
        sides.append(
            SideScore(
                user_id=member.user_id,
                username=member.username,
                start_value=start_value,
                end_value=end_value,
            )
        )
    home_score, away_score = sides
    winner_user_id, result = _decide(home_score, away_score, epsilon)

    return MatchupScore(
        league_id=league_id,
        round_index=round_.round_index,
        label=round_.label,
        start=round_.start,
        end=round_.end,
        effective_end=effective_end,
        home=home_score,
        away=away_score,
        winner_user_id=winner_user_id,
        result=result,
    )


def score_round(
    db: Session,
    league: League,
    members: Sequence[Member],
    round_index: int,
    *,
    now: datetime | None = None,
) -> RoundScores:
    if round_index <= 0:
        raise ScheduleError("roundIndex must be a positive integer")
    round_ = find_round(schedule_for_league(league, members), round_index)

    scored: list[MatchupScore | Bye] = []
    for matchup in round_.matchups:
        if isinstance(matchup, Bye):
            scored.append(matchup)
        else:
            scored.append(score_matchup(db, league.id, round_, matchup.home, matchup.away, now=now))
    return RoundScores(round=round_, matchups=scored)


def rank_standings(rows: Sequence[StandingsRow]) -> list[StandingsRow]:
    return sorted(
        rows,
        key=lambda row: (-row.wins, -row.point_diff, -row.points_for, row.username),
    )


def compute_standings(
    db: Session,
    league: League,
    members: Sequence[Member],
    as_of: datetime | None = None,
    *,
    now: datetime | None = None,
) -> list[StandingsRow]:
    current = now or utcnow()
    cutoff = current if as_of is None else as_of
    if not isinstance(cutoff, datetime):
        raise ScheduleError("Invalid asOf timestamp")
    cutoff = as_naive_utc(cutoff)

    table = {m.user_id: StandingsRow(user_id=m.user_id, username=m.username) for m in members}

    for round_ in schedule_for_league(league, members):
        # Only fully finished rounds count.
        if round_.end > cutoff:
            continue

        for bye in round_.byes:
            table[bye.member.user_id].byes += 1

        for pairing in round_.head_to_heads:
            score = score_matchup(db, league.id, round_, pairing.home, pairing.away, now=current)
            home_row = table[pairing.home.user_id]
            away_row = table[pairing.away.user_id]

            home_row.games += 1
            away_row.games += 1
            home_row.points_for += score.home.profit
            home_row.points_against += score.away.profit
            away_row.points_for += score.away.profit
            away_row.points_against += score.home.profit

            if score.winner_user_id is None:
                home_row.ties += 1
                away_row.ties += 1
            elif score.winner_user_id == pairing.home.user_id:
                home_row.wins += 1
                away_row.losses += 1
            else:
                away_row.wins += 1
                home_row.losses += 1

    for row in table.values():
        row.points_for = row.points_for.quantize(CENT, rounding=ROUND_HALF_UP)
        row.points_against = row.points_against.quantize(CENT, rounding=ROUND_HALF_UP)
    return rank_standings(list(table.values()))


def league_standings(
    db: Session,
    league_id: int,
    as_of: datetime | None = None,
    *,
    now: datetime | None = None,
) -> StandingsReport:
    """
    Standings for a league.

    A COMPLETED league reports its stored champion, and unless a historical
    `as_of` is requested its table is frozen at the completion time.
    """
    if as_of is not None:
        if not isinstance(as_of, datetime):
            raise ScheduleError("Invalid asOf timestamp")
        as_of = as_naive_utc(as_of)
    league = get_league(db, league_id)
    members = members_of(db, league_id)
    current = now or utcnow()

    if league.is_completed and as_of is None:
        cutoff = league.completed_at or current
    else:
        cutoff = as_of or current

    standings = compute_standings(db, league, members, cutoff, now=min(current, cutoff))

    champion = None
    if league.is_completed:
        champion = next((row for row in standings if row.user_id == league.winner_user_id), None)
    return StandingsReport(league=league, as_of=cutoff, standings=standings, champion=champion)


def complete_league(
    db: Session,
    league_id: int,
    requested_by: int,
    *,
    now: datetime | None = None,
) -> StandingsReport:
    """Finalize a league whose every round has ended. Only the owner may do this."""
    current = now or utcnow()
    league = get_league(db, league_id)

    if league.owner_user_id != requested_by:
        raise NotLeagueOwner("Only the league owner can complete this league")
    if league.is_completed:
        raise LeagueClosed("League is already completed")

    members = members_of(db, league_id)
    if not members:
        raise ScheduleError("League has no members")

    schedule = schedule_for_league(league, members)
    if not schedule:
        raise ScheduleError("League has no schedule to complete")
    last_end = schedule[-1].end
    if last_end > current:
        raise ScheduleError(f"Season is not finished yet; last round ends at {last_end.isoformat()}")

    standings = compute_standings(db, league, members, current, now=current)
    champion = standings[0]

    try:
        league = finalize_league(db, league_id, champion.user_id, now=current)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("league=%s completed; champion user=%s (%s)", league_id, champion.user_id, champion.username)
    return StandingsReport(league=league, as_of=current, standings=standings, champion=champion)
