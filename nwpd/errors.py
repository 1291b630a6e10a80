"""Exception hierarchy for the agent runtime.

Only ConfigurationError (and StoreError when no storage backend can be
opened) is allowed to reach the process level. Everything else is turned
into observations or log lines where it happens.
"""

from __future__ import annotations


class NwpdError(Exception):
    """Base class for all agent errors."""


class ConfigurationError(NwpdError):
    """Raised when the agent configuration is invalid or unusable."""


class ProbeError(NwpdError):
    """Raised by probe helpers for network-level failures.

    ``kind`` is a short error class such as ``connection refused``.
    """

    def __init__(self, kind: str, detail: str = "", timed_out: bool = False) -> None:
        self.kind = kind
        self.detail = detail
        self.timed_out = timed_out
        super().__init__(f"{kind}: {detail}" if detail else kind)


class StoreError(NwpdError):
    """Raised when the observation store cannot read or persist data."""


class ProtocolError(NwpdError):
    """Raised for malformed query service requests."""
