"""
Shared fixtures: a throwaway file-backed SQLite database per test plus small
builders for users, leagues and prices.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from coinleague.assets import AssetRegistry
from coinleague.db import Base, create_db_engine
from coinleague.leagues import create_league, join_league_by_code
from coinleague.models import User
from coinleague.prices import record_price

T0 = datetime(2024, 1, 1, 0, 0, 0)
COINS = ["bitcoin", "ethereum", "solana"]


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'coinleague.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def registry():
    return AssetRegistry(COINS)


@pytest.fixture
def make_user(db):
    def _make_user(username: str) -> User:
        user = User(username=username)
        db.add(user)
        db.commit()
        return user

    return _make_user


@pytest.fixture
def make_league(db, registry):
    def _make_league(owner, *others, created_at=T0, frequency="WEEKLY", matchup_count=None, member_limit=None):
        league = create_league(
            db,
            owner.id,
            "Test League",
            member_limit=member_limit,
            matchup_count=matchup_count,
            matchup_frequency=frequency,
            assets=registry,
            now=created_at,
        )
        for user in others:
            join_league_by_code(db, user.id, league.join_code)
        return league

    return _make_league


@pytest.fixture
def set_price(db):
    def _set_price(symbol: str, price, at: datetime = T0 - timedelta(minutes=1)):
        record_price(db, symbol, Decimal(str(price)), at)
        db.commit()

    return _set_price
