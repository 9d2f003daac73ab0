import os
from decimal import Decimal


def _env_flag(name: str) -> bool:
    return (os.environ.get(name) or "").strip().lower() in {"1", "true", "yes"}


def _env_list(raw: str) -> list[str]:
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


DATABASE_URL = (os.environ.get("DATABASE_URL") or "").strip()

DEFAULT_COINS = "bitcoin,ethereum,solana,tether,binancecoin,ripple,usd-coin,tron,dogecoin,cardano"
COIN_WHITELIST = _env_list(
    os.environ.get("COIN_WHITELIST") or os.environ.get("CG_IDS") or DEFAULT_COINS
)

STARTING_CASH = Decimal(os.environ.get("STARTING_CASH", "100000"))
FAST_SCHEDULE = _env_flag("FAST_SCHEDULE")
SCORE_EPSILON = Decimal(os.environ.get("SCORE_EPSILON", "0.0001"))
MAX_LEAGUE_MEMBERS = int(os.environ.get("MAX_LEAGUE_MEMBERS", "32"))
MAX_MATCHUP_COUNT = 1000

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:8080").split(",")
    if origin.strip()
]
SANDBOX_USERNAME = (os.environ.get("SANDBOX_USERNAME") or "").strip().lower() or "sandbox"
