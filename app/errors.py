"""
Error taxonomy for balance lookups.

Each class carries the HTTP status the API answers with when it reaches a route.
"""


class BalanceLookupError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(BalanceLookupError):
    """Caller error: missing or malformed address/date."""
    status_code = 400


class RateLimited(BalanceLookupError):
    """Etherscan signalled quota exhaustion. Never retried."""
    status_code = 429


class UpstreamUnavailable(BalanceLookupError):
    """Etherscan unreachable, or returned an error/malformed body on a required call."""
    status_code = 500


class BlockNotFound(UpstreamUnavailable):
    """Etherscan has no block at the requested height (null result)."""


class LookupCancelled(BalanceLookupError):
    """The request deadline passed before the search finished."""
    status_code = 504
