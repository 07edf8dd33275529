"""Error taxonomy for RadarScan.

Every error raised by the core derives from :class:`RadarScanError`.  The
controller catches provider, render and storage failures at its boundary and
converts them into session status updates, so only :class:`ValidationError`,
:class:`NotFound`, :class:`Conflict` and :class:`Expired` ever reach API
callers.

Transient failures (worth retrying with back-off) are marked with the
``transient`` class attribute.
"""
from __future__ import annotations


class RadarScanError(Exception):
    """Base class for all RadarScan errors."""

    transient: bool = False


class ValidationError(RadarScanError):
    """Bad client input, rejected before a session is created."""


class NotFound(RadarScanError):
    """The requested session or artifact does not exist."""


class Conflict(RadarScanError):
    """The operation conflicts with the current state of the session.

    Raised by the session store when a session id already exists, and by the
    controller when an operation is not allowed in the session's status.
    """


class Expired(RadarScanError):
    """The session deadline has passed; it is no longer actionable."""


class ProviderFailure(RadarScanError):
    """Base class for remote scan provider failures."""


class ProviderUnavailable(ProviderFailure):
    """The provider could not be reached, timed out, or is overloaded."""

    transient = True


class ProviderRejected(ProviderFailure):
    """The provider refused to accept the scan submission."""


class ProviderError(ProviderFailure):
    """The provider reported a failed scan or returned an unusable result."""


class RenderError(RadarScanError):
    """The PDF report could not be generated."""


class StoreError(RadarScanError):
    """A session or artifact persistence operation failed."""

    transient = True
