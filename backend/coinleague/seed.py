import logging
import os
import time

from sqlalchemy import select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .auth import hash_password
from .config import SANDBOX_USERNAME
from .db import Base, engine
from .errors import NotConfigured
from .leagues import ensure_solo_league
from .models import User

logger = logging.getLogger(__name__)

DB_READY_ATTEMPTS = 30


def init_db(bind: Engine | None = None) -> None:
    bind = bind if bind is not None else engine
    if bind is None:
        raise NotConfigured("Database not configured")

    # Wait for the database to accept connections
    for _ in range(DB_READY_ATTEMPTS):
        try:
            with bind.connect() as conn:
                conn.execute(text("SELECT 1"))
            break
        except OperationalError:
            time.sleep(1)
    else:
        raise RuntimeError(f"Database not ready after {DB_READY_ATTEMPTS} seconds")

    Base.metadata.create_all(bind=bind)


def seed(db: Session) -> User:
    """Ensure the sandbox user and its solo league exist. Safe to run on every start."""
    user = db.execute(select(User).where(User.username == SANDBOX_USERNAME)).scalar_one_or_none()
    sandbox_password_hash = hash_password(os.environ.get("SANDBOX_PASSWORD", "sandbox-password"))
    if user is None:
        user = User(username=SANDBOX_USERNAME, password_hash=sandbox_password_hash)
        db.add(user)
        db.commit()
        logger.info("seeded sandbox user %s", SANDBOX_USERNAME)
    elif not user.password_hash:
        user.password_hash = sandbox_password_hash
        db.commit()

    league = ensure_solo_league(db, user.id)
    if user.active_league_id is None:
        user.active_league_id = league.id
        db.commit()
    return user
