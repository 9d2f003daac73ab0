"""Round-robin matchup calendar for a league roster.

Schedules are never stored. They are a pure function of the league settings, the
league creation time and the (ordered) member list, and get recomputed on every
request that needs them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Sequence

from .config import FAST_SCHEDULE, MAX_MATCHUP_COUNT
from .errors import ScheduleError, ValidationError

ROUND_TICK = timedelta(milliseconds=1)
FAST_ROUND_INTERVAL = timedelta(minutes=5)


class MatchupFrequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"

    @property
    def interval(self) -> timedelta:
        return timedelta(days=1) if self is MatchupFrequency.DAILY else timedelta(days=7)

    @property
    def round_label(self) -> str:
        return "Day" if self is MatchupFrequency.DAILY else "Week"


@dataclass(frozen=True)
class LeagueSettings:
    matchup_frequency: MatchupFrequency = MatchupFrequency.WEEKLY
    matchup_count: int | None = None

    @classmethod
    def parse(cls, frequency: Any = None, count: Any = None) -> "LeagueSettings":
        """
        Validate raw settings at the league-creation boundary.

        Unknown or missing frequencies fall back to WEEKLY. A count must be an
        integer in [1, MAX_MATCHUP_COUNT] or absent.
        """
        raw_frequency = str(frequency or "").strip().upper()
        try:
            parsed_frequency = MatchupFrequency(raw_frequency)
        except ValueError:
            parsed_frequency = MatchupFrequency.WEEKLY

        return cls(matchup_frequency=parsed_frequency, matchup_count=_parse_matchup_count(count))


def _parse_matchup_count(value: Any) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise ValidationError("Matchup count must be a positive integer")
    try:
        number = Decimal(str(value).strip())
    except ArithmeticError:
        raise ValidationError("Matchup count must be a positive integer") from None
    if not number.is_finite() or number != number.to_integral_value():
        raise ValidationError("Matchup count must be a positive integer")
    count = int(number)
    if count <= 0 or count > MAX_MATCHUP_COUNT:
        raise ValidationError(f"Matchup count must be between 1 and {MAX_MATCHUP_COUNT}")
    return count


@dataclass(frozen=True)
class Member:
    user_id: int
    username: str


@dataclass(frozen=True)
class HeadToHead:
    home: Member
    away: Member


@dataclass(frozen=True)
class Bye:
    member: Member


@dataclass(frozen=True)
class Round:
    round_index: int  # 1-based
    label: str
    start: datetime
    end: datetime
    matchups: tuple[HeadToHead | Bye, ...]

    @property
    def head_to_heads(self) -> list[HeadToHead]:
        return [m for m in self.matchups if isinstance(m, HeadToHead)]

    @property
    def byes(self) -> list[Bye]:
        return [m for m in self.matchups if isinstance(m, Bye)]


def round_interval(frequency: MatchupFrequency, fast: bool | None = None) -> timedelta:
    if FAST_SCHEDULE if fast is None else fast:
        return FAST_ROUND_INTERVAL
    return frequency.interval


def scheduled_round_count(settings: LeagueSettings, base_rounds: int) -> int:
    if settings.matchup_count is not None and settings.matchup_count > 0:
        return min(settings.matchup_count, MAX_MATCHUP_COUNT)
    return base_rounds


def base_pairings(members: Sequence[Member]) -> list[tuple[HeadToHead | Bye, ...]]:
    """Circle method: fix the first slot, rotate the rest one step per round."""
    # None is the BYE slot padding an odd roster.
    slots: list[Member | None] = list(members)
    if len(slots) % 2 == 1:
        slots.append(None)

    n = len(slots)
    patterns: list[tuple[HeadToHead | Bye, ...]] = []
    for _ in range(n - 1):
        pairings: list[HeadToHead | Bye] = []
        for i in range(n // 2):
            home = slots[i]
            away = slots[n - 1 - i]
            if home is not None and away is not None:
                pairings.append(HeadToHead(home=home, away=away))
            elif home is not None or away is not None:
                pairings.append(Bye(member=home if home is not None else away))
        patterns.append(tuple(pairings))

        rest = slots[1:]
        slots = [slots[0], rest[-1], *rest[:-1]]
    return patterns


def generate_schedule(
    settings: LeagueSettings,
    created_at: datetime | None,
    members: Sequence[Member],
    *,
    fast: bool | None = None,
) -> list[Round]:
    if created_at is None:
        raise ScheduleError("League has no creation time to anchor its schedule")
    if len(members) < 2:
        return []

    patterns = base_pairings(members)
    base_rounds = len(patterns)
    total_rounds = scheduled_round_count(settings, base_rounds)
    interval = round_interval(settings.matchup_frequency, fast)
    label = settings.matchup_frequency.round_label

    schedule: list[Round] = []
    for r in range(total_rounds):
        start = created_at + r * interval
        schedule.append(
            Round(
                round_index=r + 1,
                label=f"{label} {r + 1}",
                start=start,
                end=start + interval - ROUND_TICK,
                matchups=patterns[r % base_rounds],
            )
        )
    return schedule


def schedule_for_league(league, members: Sequence[Member], *, fast: bool | None = None) -> list[Round]:
    return generate_schedule(league.settings, league.created_at, members, fast=fast)


def find_round(schedule: Sequence[Round], round_index: int) -> Round:
    for candidate in schedule:
        if candidate.round_index == round_index:
            return candidate
    raise ScheduleError(f"Round {round_index} not found in schedule")
