import os
import sys
from pathlib import Path


def main() -> int:
    # Ensure `import coinleague.*` works when running from repo root in CI.
    backend_dir = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(backend_dir))

    database_url = os.environ.get("DATABASE_URL", "").strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL is required for CI smoke test")

    from sqlalchemy import func, select

    from coinleague.config import SANDBOX_USERNAME
    from coinleague.db import SessionLocal
    from coinleague.models import League, Portfolio, User
    from coinleague.schedule import schedule_for_league
    from coinleague.leagues import members_of
    from coinleague.seed import init_db, seed

    safe_url = database_url
    if "://" in safe_url and "@" in safe_url:
        scheme, rest = safe_url.split("://", 1)
        creds, host = rest.split("@", 1)
        if ":" in creds:
            user, _pw = creds.split(":", 1)
            safe_url = f"{scheme}://{user}:***@{host}"
    print("CI smoke DATABASE_URL:", safe_url)

    # 1) Create tables.
    init_db()

    # 2) Seeding must be idempotent: a restart must not create a second sandbox league.
    db = SessionLocal()
    try:
        seed(db)
        sandbox = seed(db)

        user_count = int(db.execute(select(func.count()).select_from(User)).scalar_one())
        league_count = int(
            db.execute(
                select(func.count()).select_from(League).where(League.owner_user_id == sandbox.id)
            ).scalar_one()
        )
        portfolio_count = int(db.execute(select(func.count()).select_from(Portfolio)).scalar_one())
        league = db.get(League, sandbox.active_league_id)
        rounds = len(schedule_for_league(league, members_of(db, league.id))) if league else -1
    finally:
        db.close()

    if user_count < 1:
        raise RuntimeError(f"Expected the {SANDBOX_USERNAME} user to be seeded")
    if league_count != 1:
        raise RuntimeError(f"Expected exactly 1 sandbox league, found {league_count}")
    if portfolio_count < 1:
        raise RuntimeError("Expected at least 1 portfolio")

    print(
        "OK create_all + seed",
        {
            "users": user_count,
            "sandbox_leagues": league_count,
            "portfolios": portfolio_count,
            "sandbox_rounds": rounds,
        },
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
