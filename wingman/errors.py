"""Exception types shared by the relay.

Three families map onto how the relay reacts:
  ConfigurationError  : fatal to session setup (missing credential)
  UpstreamError       : transport failure, recoverable via reconnect
  ProtocolError       : malformed message, dropped without teardown
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors."""


class ConfigurationError(RelayError):
    """Required configuration is missing or still a placeholder."""


class UpstreamError(RelayError):
    """The upstream connection could not be opened or written to."""


class ProtocolError(RelayError, ValueError):
    """A message from the client or the upstream could not be understood."""


__all__ = ["RelayError", "ConfigurationError", "UpstreamError", "ProtocolError"]
