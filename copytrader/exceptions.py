"""
Custom exception hierarchy for the copy-trading worker.

Hierarchy:

    CopyTraderError (base)
    ├── OperationalError   : transient/retryable (exchange, network, timeouts)
    │   ├── AuthenticationError
    │   ├── RateLimitError
    │   └── StreamError    : order stream ended or could not be opened
    ├── ValidationError    : bad input for one order/follower, skip it
    └── StartupError       : missing precondition, worker cannot run

Rules:
    - OperationalError: retried inside the copier (AuthenticationError
      excepted), otherwise caught at the follower/order/job boundary.
    - ValidationError: catch, log, record failure, continue.
    - StartupError: propagates to process exit.
"""


class CopyTraderError(Exception):
    """Base exception for all copy-trading errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(CopyTraderError):
    """Transient/retryable error: exchange API, network, timeouts."""
    pass


class AuthenticationError(OperationalError):
    """Raised when API authentication or permission checks fail.

    Terminal for the affected follower: copying is disabled.
    """
    pass


class RateLimitError(OperationalError):
    """Raised when the exchange rejects a call for exceeding its rate limit."""
    pass


class StreamError(OperationalError):
    """The leader order stream ended or failed; the watcher reconnects."""
    pass


# ============ DATA (bad input, skip) ============

class ValidationError(CopyTraderError):
    """Raised when validation checks fail (bad input data).

    Treatment: catch, log, record failure, continue.
    """
    pass


# ============ STARTUP (fatal) ============

class StartupError(CopyTraderError):
    """A structural precondition is missing (no leader, no credentials).

    Only raised during startup; the process exits.
    """
    pass
