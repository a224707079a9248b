# errors.py
"""
Error taxonomy shared by the ledger, the round engine and the HTTP layer.

Every user-facing error carries an HTTP status and a stable machine code so
the API can translate it without knowing where it was raised.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base engine error"""

    status_code = 400
    code = "ENGINE_ERROR"


class ValidationError(EngineError):
    """Bad amount, auto-cashout or query parameter"""

    status_code = 422
    code = "VALIDATION_ERROR"


class InsufficientFunds(EngineError):
    status_code = 402
    code = "INSUFFICIENT_FUNDS"


class StateError(EngineError):
    """Action performed in invalid round state"""

    status_code = 409
    code = "STATE_ERROR"


class RoundNotAcceptingBets(StateError):
    code = "ROUND_NOT_ACCEPTING_BETS"


class RoundNotInFlight(StateError):
    code = "ROUND_NOT_IN_FLIGHT"


class RoundAlreadyCrashed(StateError):
    """Cash-out lost the race against the crash"""

    code = "ROUND_ALREADY_CRASHED"


class BetAlreadyResolved(StateError):
    code = "BET_ALREADY_RESOLVED"


class DuplicateActiveBet(StateError):
    code = "DUPLICATE_ACTIVE_BET"


class NotFoundError(EngineError):
    status_code = 404
    code = "NOT_FOUND"


class BetNotFound(NotFoundError):
    code = "BET_NOT_FOUND"


class RoundNotFound(NotFoundError):
    code = "ROUND_NOT_FOUND"


class LimitError(EngineError):
    """Responsible-gaming control on the user's account"""

    status_code = 403
    code = "LIMIT_EXCEEDED"


class BettingDisabled(LimitError):
    code = "BETTING_DISABLED"


class SessionTimeLimitExceeded(LimitError):
    code = "SESSION_TIME_LIMIT"


class DepositLimitExceeded(LimitError):
    code = "DEPOSIT_LIMIT_EXCEEDED"


class LossLimitReached(LimitError):
    code = "LOSS_LIMIT_REACHED"
