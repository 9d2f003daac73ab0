"""Exception taxonomy for trading, valuation and league operations.

Every error carries the HTTP status the API layer renders it with and whether
the caller may retry the same request later.
"""


class CoinLeagueError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CoinLeagueError):
    status_code = 400


class PriceUnavailable(CoinLeagueError):
    status_code = 503
    retryable = True


class InsufficientFunds(CoinLeagueError):
    status_code = 409


class InsufficientHoldings(CoinLeagueError):
    status_code = 409


class NotConfigured(CoinLeagueError):
    status_code = 500


class ScheduleError(CoinLeagueError):
    status_code = 400


class LeagueNotFound(CoinLeagueError):
    status_code = 404


class LeagueFull(CoinLeagueError):
    status_code = 409


class LeagueClosed(CoinLeagueError):
    status_code = 409


class NotLeagueOwner(CoinLeagueError):
    status_code = 403


class AuthError(CoinLeagueError):
    status_code = 401
