"""Pattern-based failure classification for unit-of-work output."""

from __future__ import annotations

import re

from swe_swarm.execution.schemas import ErrorKind

# Exit status used by timeout(1) when the wrapped command was killed.
TIMEOUT_EXIT_CODE = 124

# Tested in this order; first match wins. A billing message that also says
# "error 403" is auth, so the order is part of the contract.
_PATTERNS: tuple[tuple[ErrorKind, re.Pattern[str]], ...] = (
    (ErrorKind.RATE_LIMIT, re.compile(r"429|rate.?limit|too many requests|throttl", re.IGNORECASE)),
    (ErrorKind.AUTH, re.compile(r"401|403|unauthori[sz]ed|forbidden|invalid.?api.?key", re.IGNORECASE)),
    (
        ErrorKind.QUOTA,
        re.compile(r"quota|billing|exceeded|insufficient|payment.?required|402", re.IGNORECASE),
    ),
    (ErrorKind.TIMEOUT, re.compile(r"timeout|timed?.?out", re.IGNORECASE)),
    (
        ErrorKind.NETWORK,
        re.compile(r"network|connection|refused|ECONNREFUSED|ETIMEDOUT", re.IGNORECASE),
    ),
    (
        ErrorKind.API_ERROR,
        re.compile(r"500|502|503|504|internal.?server|bad.?gateway", re.IGNORECASE),
    ),
)

_FATAL = frozenset({ErrorKind.AUTH, ErrorKind.QUOTA})
_RETRYABLE = frozenset(
    {ErrorKind.RATE_LIMIT, ErrorKind.TIMEOUT, ErrorKind.NETWORK, ErrorKind.API_ERROR}
)

_DISPLAY_NAMES: dict[ErrorKind, str] = {
    ErrorKind.NONE: "NONE",
    ErrorKind.RATE_LIMIT: "RATE_LIMIT",
    ErrorKind.AUTH: "AUTH_ERROR",
    ErrorKind.QUOTA: "QUOTA_EXCEEDED",
    ErrorKind.TIMEOUT: "TIMEOUT",
    ErrorKind.NETWORK: "NETWORK_ERROR",
    ErrorKind.API_ERROR: "API_ERROR",
}


def classify(raw_output: str, exit_signal: int | None = None, timed_out: bool = False) -> ErrorKind:
    """Map raw failure text (and an optional exit signal) to an ErrorKind.

    The timeout exit signal and the executor's timeout flag are consulted at
    the timeout step of the priority order, so a rate-limit or auth marker in
    the text still wins over them.
    """
    text = raw_output or ""
    for kind, pattern in _PATTERNS:
        if kind == ErrorKind.TIMEOUT and (timed_out or exit_signal == TIMEOUT_EXIT_CODE):
            return ErrorKind.TIMEOUT
        if pattern.search(text):
            return kind
    return ErrorKind.NONE


def is_fatal(kind: ErrorKind) -> bool:
    """True for kinds that invalidate retrying entirely."""
    return kind in _FATAL


def is_retryable(kind: ErrorKind) -> bool:
    """True for kinds expected to be transient.

    ``ErrorKind.NONE`` is not listed here but is still retried under the
    generic retry policy.
    """
    return kind in _RETRYABLE


def error_type_name(kind: ErrorKind) -> str:
    """Upper-case label used in reports and log lines."""
    return _DISPLAY_NAMES[kind]
