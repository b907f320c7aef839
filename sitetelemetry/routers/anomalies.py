# sitetelemetry/routers/anomalies.py
from datetime import timedelta
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from .. import deps, schemas
from ..anomaly import AnomalyDetector

router = APIRouter(tags=["anomalies"])


@router.get("/streams/{stream_id}/anomalies", response_model=schemas.StreamAnalysisOut)
def analyze_stream(
    stream_id: UUID,
    window_minutes: Optional[int] = Query(default=None, gt=0, le=24 * 60),
    site_id: UUID = Depends(deps.get_site_header),
    detector: AnomalyDetector = Depends(deps.get_anomaly_detector),
    _api_key: str = Depends(deps.get_api_key),
):
    window = timedelta(minutes=window_minutes) if window_minutes else None
    result = detector.analyze_stream(site_id, stream_id, window)
    return schemas.StreamAnalysisOut.model_validate(result)


@router.get("/sites/{site_id}/anomalies", response_model=schemas.SiteAnomalyReportOut)
def analyze_site(
    site_id: UUID,
    detector: AnomalyDetector = Depends(deps.get_anomaly_detector),
    _api_key: str = Depends(deps.get_api_key),
):
    return schemas.SiteAnomalyReportOut.model_validate(detector.analyze_site(site_id))
