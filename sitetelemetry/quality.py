"""Reading quality classification."""

from __future__ import annotations

from enum import StrEnum


class QualityCode(StrEnum):
    GOOD = "good"
    # stored and published, but not trusted by alert evaluation
    UNCERTAIN = "uncertain"
    BAD = "bad"
    BAD_OUT_OF_RANGE = "bad_out_of_range"
    BAD_STALE = "bad_stale"
    BAD_FUTURE_TIMESTAMP = "bad_future_timestamp"
    BAD_CONFIGURATION_ERROR = "bad_configuration_error"

    @property
    def is_bad(self) -> bool:
        match self:
            case QualityCode.GOOD | QualityCode.UNCERTAIN:
                return False
            case (
                QualityCode.BAD
                | QualityCode.BAD_OUT_OF_RANGE
                | QualityCode.BAD_STALE
                | QualityCode.BAD_FUTURE_TIMESTAMP
                | QualityCode.BAD_CONFIGURATION_ERROR
            ):
                return True
        raise ValueError(f"unhandled quality code: {self!r}")

    @property
    def is_good(self) -> bool:
        return self is QualityCode.GOOD


class IngestionErrorType(StrEnum):
    VALIDATION_FAILURE = "validation_failure"
    OUT_OF_RANGE = "out_of_range"
    STALE_DATA = "stale_data"
    FUTURE_TIMESTAMP = "future_timestamp"
    PROCESSING_ERROR = "processing_error"


def error_type_for(quality: QualityCode) -> IngestionErrorType:
    """Error category recorded for a rejected reading."""
    match quality:
        case QualityCode.BAD_CONFIGURATION_ERROR:
            return IngestionErrorType.VALIDATION_FAILURE
        case QualityCode.BAD_OUT_OF_RANGE:
            return IngestionErrorType.OUT_OF_RANGE
        case QualityCode.BAD_STALE:
            return IngestionErrorType.STALE_DATA
        case QualityCode.BAD_FUTURE_TIMESTAMP:
            return IngestionErrorType.FUTURE_TIMESTAMP
        case QualityCode.BAD:
            return IngestionErrorType.PROCESSING_ERROR
        case QualityCode.GOOD | QualityCode.UNCERTAIN:
            raise ValueError(f"{quality} readings are not ingestion errors")
    raise ValueError(f"unhandled quality code: {quality!r}")
