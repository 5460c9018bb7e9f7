"""
Error taxonomy for chart calculation and insight generation.

Validation errors (bad time, unknown house system) subclass ValueError so the
API layer can map them to 400 responses the same way it maps plain
ValueErrors.
"""
from typing import Optional


class AstroInsightError(Exception):
    """Base class for every error raised by this service."""


class InvalidTimeError(AstroInsightError, ValueError):
    """Birth date, time or timezone id is malformed or unknown."""


class EphemerisError(AstroInsightError):
    """The ephemeris oracle could not produce a position for the request."""


class UnsupportedHouseSystemError(AstroInsightError, ValueError):
    """House-system identifier is not one of the supported codes."""


class GeoLookupError(AstroInsightError, ValueError):
    """Geocoding or timezone lookup returned no usable result."""


class ChartAssemblyError(AstroInsightError):
    """
    A chart could not be built. Wraps the failing stage's error.

    `stage` names the step that failed: "time", "ephemeris", "houses".
    The original error is available as `__cause__`.
    """

    def __init__(self, stage: str, cause: Exception):
        self.stage = stage
        super().__init__(f"Chart assembly failed at {stage} stage: {cause}")
        self.__cause__ = cause


class ProviderError(AstroInsightError):
    """Language-model provider call failed."""

    def __init__(self, message: str, response_payload: Optional[object] = None):
        super().__init__(message)
        self.response_payload = response_payload


class InsightGenerationError(AstroInsightError):
    """Every attempt against the model provider failed."""

    def __init__(self, attempts: int, cause: Exception):
        self.attempts = attempts
        super().__init__(f"AI service request failed after {attempts} attempts: {cause}")
        self.__cause__ = cause


class NotFoundError(AstroInsightError, LookupError):
    """Chart or conversation id does not exist."""


class PlanLimitError(AstroInsightError):
    """The user's plan does not allow the action (chart quota or credits used up)."""
