import argparse
import json
import os
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib import error, parse, request

COINGECKO_SIMPLE_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"
DEFAULT_VS = "usd"


@dataclass
class CycleCounts:
    requested: int = 0
    quoted: int = 0
    new_buckets: int = 0
    missing: int = 0
    invalid: int = 0


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def log(message: str) -> None:
    print(f"[{now_iso()}] {message}", flush=True)


def http_get_json(url: str, headers: dict[str, str], timeout: float) -> Any:
    req = request.Request(url, headers=headers, method="GET")
    with request.urlopen(req, timeout=timeout) as response:
        return json.loads(response.read().decode("utf-8"))


def build_price_url(base_url: str, coin_ids: list[str], vs_currency: str) -> str:
    query = parse.urlencode({"ids": ",".join(coin_ids), "vs_currencies": vs_currency})
    return f"{base_url}?{query}"


def fetch_quotes(
    coin_ids: list[str],
    *,
    vs_currency: str,
    api_key: str | None,
    base_url: str,
    timeout: float,
) -> dict[str, Any]:
    headers = {"Accept": "application/json"}
    if api_key:
        headers["x-cg-demo-api-key"] = api_key
    payload = http_get_json(build_price_url(base_url, coin_ids, vs_currency), headers, timeout)
    if not isinstance(payload, dict):
        raise ValueError("Expected simple/price response to be a JSON object.")
    return payload


def parse_quote(raw: Any, vs_currency: str) -> float | None:
    if not isinstance(raw, dict):
        return None
    value = raw.get(vs_currency)
    if isinstance(value, bool):
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if price != price or price <= 0 or price == float("inf"):
        return None
    return price


def run_cycle(
    *,
    coin_ids: list[str],
    vs_currency: str,
    api_key: str | None,
    base_url: str,
    timeout: float,
    dry_run: bool,
) -> CycleCounts:
    from coinleague.db import SessionLocal, utcnow
    from coinleague.prices import record_price

    counts = CycleCounts(requested=len(coin_ids))
    quotes = fetch_quotes(
        coin_ids,
        vs_currency=vs_currency,
        api_key=api_key,
        base_url=base_url,
        timeout=timeout,
    )
    fetched_at = utcnow()

    db = SessionLocal()
    try:
        for coin_id in coin_ids:
            if coin_id not in quotes:
                counts.missing += 1
                continue
            price = parse_quote(quotes[coin_id], vs_currency)
            if price is None:
                counts.invalid += 1
                log(f"[warn] unusable quote for {coin_id}: {quotes[coin_id]!r}")
                continue
            counts.quoted += 1
            if dry_run:
                log(f"[dry-run] {coin_id} = {price}")
                continue
            if record_price(db, coin_id, price, fetched_at):
                counts.new_buckets += 1
        if dry_run:
            db.rollback()
        else:
            db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    return counts


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Poll CoinGecko spot prices into the latest-price table and the per-minute price series. "
            "A minute bucket that already exists is never overwritten."
        )
    )
    parser.add_argument(
        "--ids",
        default=os.environ.get("CG_IDS", ""),
        help="Comma-separated CoinGecko coin ids (defaults to CG_IDS, then the coin whitelist)",
    )
    parser.add_argument("--vs", default=os.environ.get("CG_VS", DEFAULT_VS), help="Quote currency")
    parser.add_argument("--api-key", default=os.environ.get("CG_API_KEY"), help="CoinGecko demo API key")
    parser.add_argument("--base-url", default=COINGECKO_SIMPLE_PRICE_URL, help="simple/price endpoint URL")
    parser.add_argument("--interval-seconds", type=int, default=60, help="Polling interval for continuous mode")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument("--timeout", type=float, default=20.0, help="HTTP timeout seconds")
    parser.add_argument("--dry-run", action="store_true", help="Fetch and log without writing prices")
    return parser.parse_args()


def main() -> int:
    # Ensure `import coinleague.*` works when running from the repo root.
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

    from coinleague.config import COIN_WHITELIST, DATABASE_URL

    args = parse_args()
    if args.interval_seconds <= 0:
        print("[error] --interval-seconds must be > 0")
        return 1
    if not DATABASE_URL and not args.dry_run:
        print("[error] DATABASE_URL is required unless --dry-run is set")
        return 1

    coin_ids = [c.strip().lower() for c in args.ids.split(",") if c.strip()] or list(COIN_WHITELIST)
    vs_currency = args.vs.strip().lower() or DEFAULT_VS
    log(f"Polling {len(coin_ids)} coins in {vs_currency}: {','.join(coin_ids)}")

    cycles_with_failures = 0
    cycle_index = 0
    while True:
        cycle_index += 1
        try:
            counts = run_cycle(
                coin_ids=coin_ids,
                vs_currency=vs_currency,
                api_key=args.api_key,
                base_url=args.base_url,
                timeout=float(args.timeout),
                dry_run=bool(args.dry_run),
            )
            log(
                "cycle="
                + str(cycle_index)
                + f" requested={counts.requested}"
                + f" quoted={counts.quoted}"
                + f" new_buckets={counts.new_buckets}"
                + f" missing={counts.missing}"
                + f" invalid={counts.invalid}"
            )
        except (error.HTTPError, error.URLError, TimeoutError, ValueError) as exc:
            cycles_with_failures += 1
            log(f"[error] cycle={cycle_index} fetch failed: {exc}")
        except Exception as exc:
            cycles_with_failures += 1
            log(f"[error] cycle={cycle_index} failed: {exc}")

        if args.once:
            break
        time.sleep(args.interval_seconds)

    return 0 if cycles_with_failures == 0 else 2


if __name__ == "__main__":
    raise SystemExit(main())
