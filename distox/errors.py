#!/usr/bin/env python3
"""
errors.py — Exception hierarchy shared by the codec, link and calibration code.

  DistoXError
  ├── FramingError           bad frame length / type          (frame still ACKed)
  ├── InvalidArgument        bad command params, short coeff buffer (before I/O)
  ├── InsufficientData       < 16 enabled calibration measurements
  ├── SingularMatrix         degenerate covariance (solver falls back to identity)
  ├── MemoryExchangeTimeout  device did not answer 12 memory replies in time
  ├── DistoXConnectionError  transport connect failure / timeout
  └── TransportError         I/O failure inside a transport
      └── NotConnected       send without an open link
"""

from __future__ import annotations


class DistoXError(Exception):
    """Base class for every error raised by this package."""


class FramingError(DistoXError, ValueError):
    """Frame has the wrong length or packet type for the requested decode."""


class InvalidArgument(DistoXError, ValueError):
    """Malformed command parameters or undersized coefficient buffer."""


class InsufficientData(DistoXError, ValueError):
    """Not enough enabled calibration measurements to run the solver."""

    def __init__(self, have: int, need: int):
        super().__init__(f"Need at least {need} enabled measurements, got {have}")
        self.have = have
        self.need = need


class SingularMatrix(DistoXError, ArithmeticError):
    """Covariance of the raw sensor data cannot be inverted."""


class MemoryExchangeTimeout(DistoXError, TimeoutError):
    """Device memory read/write replies did not arrive before the deadline."""


class DistoXConnectionError(DistoXError, ConnectionError):
    """Transport failed to establish a link (refused, unreachable, timed out)."""


class TransportError(DistoXError, OSError):
    """I/O failure reported by a transport while the link is up."""


class NotConnected(TransportError):
    """Attempted to send while no link is open."""
