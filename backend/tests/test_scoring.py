from datetime import timedelta, timezone
from decimal import Decimal

import pytest

from coinleague.errors import LeagueClosed, NotLeagueOwner, ScheduleError
from coinleague.ledger import execute_trade
from coinleague.leagues import members_of
from coinleague.schedule import Bye
from coinleague.scoring import (
    AWAY_WIN,
    HOME_WIN,
    TIE,
    SideScore,
    StandingsRow,
    _decide,
    complete_league,
    compute_standings,
    league_standings,
    rank_standings,
    score_round,
)

from conftest import T0

EPSILON = Decimal("0.0001")
WEEK = timedelta(days=7)


def side(user_id, start, end, username=None):
    return SideScore(user_id=user_id, username=username or f"user{user_id}", start_value=Decimal(start), end_value=Decimal(end))


@pytest.fixture
def duel(db, make_user, make_league, set_price, registry):
    """alice (home) buys bitcoin at 100 an hour in; it reaches 150 on day two. bob holds cash."""
    alice, bob = make_user("alice"), make_user("bob")
    league = make_league(alice, bob, matchup_count=2)

    set_price("bitcoin", 100)
    execute_trade(db, alice.id, league.id, "bitcoin", "BUY", 100, assets=registry, now=T0 + timedelta(hours=1))
    set_price("bitcoin", 150, T0 + timedelta(days=2))
    return league, alice, bob


def test_higher_profit_wins():
    assert _decide(side(1, "100000", "105000"), side(2, "100000", "100000"), EPSILON) == (1, HOME_WIN)
    assert _decide(side(1, "100000", "99000"), side(2, "100000", "100000"), EPSILON) == (2, AWAY_WIN)


def test_equal_profit_is_decided_by_end_value():
    assert _decide(side(1, "105000", "105000"), side(2, "100000", "100000"), EPSILON) == (1, HOME_WIN)
    assert _decide(side(1, "100000", "100500"), side(2, "101000", "101500"), EPSILON) == (2, AWAY_WIN)


def test_differences_within_epsilon_tie():
    assert _decide(side(1, "100000", "100000.00005"), side(2, "100000", "100000"), EPSILON) == (None, TIE)
    assert _decide(side(1, "100000", "100000"), side(2, "100000", "100000"), EPSILON) == (None, TIE)


def test_ranking_orders_by_wins_then_point_diff_then_points_for():
    rows = [
        StandingsRow(1, "dave", wins=1, points_for=Decimal("900"), points_against=Decimal("0")),
        StandingsRow(2, "carol", wins=2, points_for=Decimal("30"), points_against=Decimal("20")),
        StandingsRow(3, "bob", wins=2, points_for=Decimal("80"), points_against=Decimal("30")),
        StandingsRow(4, "erin", wins=2, points_for=Decimal("60"), points_against=Decimal("50")),
        StandingsRow(5, "alice", wins=2, points_for=Decimal("30"), points_against=Decimal("20")),
    ]
    ranked = rank_standings(rows)
    # erin edges alice and carol on points for; alice and carol fall back to username.
    assert [row.username for row in ranked] == ["bob", "erin", "alice", "carol", "dave"]


def test_round_in_progress_is_scored_up_to_now(db, duel):
    league, alice, bob = duel
    now = T0 + timedelta(days=3)

    scores = score_round(db, league, members_of(db, league.id), 1, now=now)
    (matchup,) = scores.matchups
    assert matchup.effective_end == now
    assert matchup.home.user_id == alice.id
    assert matchup.home.profit == Decimal("5000")
    assert matchup.away.profit == Decimal("0")
    assert matchup.winner_user_id == alice.id
    assert matchup.result == HOME_WIN


def test_finished_round_is_scored_at_its_end(db, duel):
    league, alice, bob = duel
    scores = score_round(db, league, members_of(db, league.id), 1, now=T0 + timedelta(days=30))
    assert scores.matchups[0].effective_end == T0 + WEEK - timedelta(milliseconds=1)


def test_score_round_rejects_bad_indexes(db, duel):
    league, _, _ = duel
    members = members_of(db, league.id)
    with pytest.raises(ScheduleError):
        score_round(db, league, members, 0, now=T0)
    with pytest.raises(ScheduleError):
        score_round(db, league, members, 3, now=T0)


def test_standings_only_count_finished_rounds(db, duel):
    league, alice, bob = duel
    members = members_of(db, league.id)

    live = compute_standings(db, league, members, now=T0 + timedelta(days=3))
    assert all(row.games == 0 and row.points_for == 0 for row in live)

    after_week_one = compute_standings(db, league, members, now=T0 + WEEK + timedelta(days=1))
    leader, trailer = after_week_one
    assert (leader.username, leader.wins, leader.games) == ("alice", 1, 1)
    assert leader.points_for == Decimal("5000.00")
    assert leader.point_diff == Decimal("5000.00")
    assert (trailer.username, trailer.losses, trailer.points_against) == ("bob", 1, Decimal("5000.00"))


def test_equal_profit_week_goes_to_the_bigger_portfolio(db, duel):
    league, alice, bob = duel
    scores = score_round(db, league, members_of(db, league.id), 2, now=T0 + 3 * WEEK)

    (matchup,) = scores.matchups
    assert matchup.home.profit == matchup.away.profit == Decimal("0")
    assert matchup.winner_user_id == alice.id


def test_historical_standings_as_of(db, duel):
    league, alice, bob = duel
    now = T0 + 3 * WEEK

    report = league_standings(db, league.id, T0 + WEEK + timedelta(hours=1), now=now)
    assert [row.games for row in report.standings] == [1, 1]
    report = league_standings(db, league.id, now=now)
    assert [row.games for row in report.standings] == [2, 2]
    assert report.standings[0].wins == 2
    assert report.champion is None


def test_offset_aware_as_of_is_read_as_utc(db, duel):
    league, alice, bob = duel
    cutoff = T0 + WEEK + timedelta(hours=1)
    plus_two = timezone(timedelta(hours=2))

    report = league_standings(db, league.id, (cutoff + timedelta(hours=2)).replace(tzinfo=plus_two), now=T0 + 3 * WEEK)
    assert report.as_of == cutoff
    assert [row.games for row in report.standings] == [1, 1]

    rows = compute_standings(db, league, members_of(db, league.id), cutoff.replace(tzinfo=timezone.utc), now=T0 + 3 * WEEK)
    assert [row.games for row in rows] == [1, 1]


def test_byes_are_counted_without_games(db, make_user, make_league):
    alice, bob, carol = make_user("alice"), make_user("bob"), make_user("carol")
    league = make_league(alice, bob, carol)
    members = members_of(db, league.id)

    first_round = score_round(db, league, members, 1, now=T0 + timedelta(days=1))
    assert isinstance(first_round.matchups[0], Bye)

    standings = compute_standings(db, league, members, now=T0 + 4 * WEEK)
    for row in standings:
        assert (row.games, row.ties, row.byes, row.wins) == (2, 2, 1, 0)
    assert [row.username for row in standings] == ["alice", "bob", "carol"]


def test_only_the_owner_completes_a_finished_season(db, duel):
    league, alice, bob = duel

    with pytest.raises(NotLeagueOwner):
        complete_league(db, league.id, bob.id, now=T0 + 3 * WEEK)
    with pytest.raises(ScheduleError):
        complete_league(db, league.id, alice.id, now=T0 + WEEK)

    finished = T0 + 3 * WEEK
    report = complete_league(db, league.id, alice.id, now=finished)
    assert report.champion.user_id == alice.id
    assert report.league.status == "COMPLETED"
    assert report.league.winner_user_id == alice.id
    assert report.league.completed_at == finished

    with pytest.raises(LeagueClosed):
        complete_league(db, league.id, alice.id, now=finished + WEEK)


def test_completed_league_standings_are_frozen(db, duel, set_price):
    league, alice, bob = duel
    finished = T0 + 3 * WEEK
    complete_league(db, league.id, alice.id, now=finished)

    report = league_standings(db, league.id, now=finished + 10 * WEEK)
    assert report.as_of == finished
    assert report.champion.username == "alice"
    assert report.standings[0].wins == 2


def test_single_member_league_has_no_season_to_complete(db, make_user, make_league):
    alice = make_user("alice")
    league = make_league(alice)

    with pytest.raises(ScheduleError):
        complete_league(db, league.id, alice.id, now=T0 + 52 * WEEK)
