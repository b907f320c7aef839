# sitetelemetry/errors.py


class TelemetryError(Exception):
    """Base class for pipeline errors surfaced to callers."""


class ValidationFailure(TelemetryError):
    """Input rejected before anything touched storage."""


class TenantContextMissing(ValidationFailure):
    """A site-scoped operation ran without a bound site."""


class ProcessingError(TelemetryError):
    """Unexpected failure while orchestrating a batch."""

    def __init__(self, message: str, *, site_id=None, equipment_id=None, reading_count: int = 0):
        super().__init__(message)
        self.site_id = site_id
        self.equipment_id = equipment_id
        self.reading_count = reading_count
