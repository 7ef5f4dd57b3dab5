"""
errors.py — Error taxonomy shared by the timing and reconciliation engines.

Routes translate these into HTTP responses; core code never imports FastAPI.
"""

from __future__ import annotations


class RaceSyncError(Exception):
    """Base class for errors surfaced to callers."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(RaceSyncError):
    """Sync disabled, credentials missing, or campaign not set up for mapping."""

    status_code = 400


class NotFoundError(RaceSyncError):
    """Runner, campaign or event could not be resolved."""

    status_code = 404

    def __init__(self, resource: str, identifier: object):
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier


class UpstreamError(RaceSyncError):
    """Provider returned non-2xx, invalid JSON, or timed out."""

    status_code = 502
