# sitetelemetry/routers/alerts.py
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import deps, repository, schemas
from ..alerts import AlertEvaluator, ThresholdConfig, Transition, create_rule
from ..database import get_db
from ..errors import ValidationFailure
from ..tenancy import site_scope

router = APIRouter(tags=["alerts"])


@router.post("/sites/{site_id}/alerts/evaluate", response_model=schemas.SweepOut)
def evaluate_site_rules(
    site_id: UUID,
    evaluator: AlertEvaluator = Depends(deps.get_alert_evaluator),
    _api_key: str = Depends(deps.get_api_key),
):
    """Run one sweep over the site's active rules."""
    report = evaluator.evaluate_site(site_id)
    return schemas.SweepOut(
        site_id=report.site_id,
        evaluated_at=report.evaluated_at,
        rules_evaluated=report.rules_evaluated,
        created=report.count(Transition.CREATED),
        refreshed=report.count(Transition.REFRESHED),
        cleared=report.count(Transition.CLEARED),
        failures=[schemas.RuleFailureOut.model_validate(f) for f in report.failures],
    )


@router.get("/sites/{site_id}/alerts", response_model=List[schemas.AlertOut])
def list_active_alerts(
    site_id: UUID,
    evaluator: AlertEvaluator = Depends(deps.get_alert_evaluator),
    _api_key: str = Depends(deps.get_api_key),
):
    return evaluator.active_alerts(site_id)


@router.post("/sites/{site_id}/alerts/{alert_id}/acknowledge", response_model=schemas.AlertOut)
def acknowledge_alert(
    site_id: UUID,
    alert_id: UUID,
    body: schemas.AcknowledgeIn,
    evaluator: AlertEvaluator = Depends(deps.get_alert_evaluator),
    db: Session = Depends(get_db),
    _api_key: str = Depends(deps.get_api_key),
):
    if not evaluator.acknowledge(site_id, alert_id, body.user_id, body.notes):
        raise HTTPException(status_code=404, detail="Alert not found")
    with site_scope(site_id):
        return repository.get_instance(db, alert_id)


@router.post("/sites/{site_id}/alerts/{alert_id}/clear", response_model=schemas.AlertOut)
def clear_alert(
    site_id: UUID,
    alert_id: UUID,
    evaluator: AlertEvaluator = Depends(deps.get_alert_evaluator),
    db: Session = Depends(get_db),
    _api_key: str = Depends(deps.get_api_key),
):
    if not evaluator.clear_alert(site_id, alert_id):
        raise HTTPException(status_code=404, detail="Alert not found")
    with site_scope(site_id):
        return repository.get_instance(db, alert_id)


# ---------- rules ----------
@router.post(
    "/sites/{site_id}/alert-rules",
    response_model=schemas.AlertRuleOut,
    status_code=status.HTTP_201_CREATED,
)
def create_alert_rule(
    site_id: UUID,
    body: schemas.AlertRuleIn,
    db: Session = Depends(get_db),
    _api_key: str = Depends(deps.get_api_key),
):
    try:
        return create_rule(
            db,
            site_id,
            body.rule_name,
            body.rule_type,
            body.stream_ids,
            ThresholdConfig.from_dict(body.threshold_config),
            evaluation_window_minutes=body.evaluation_window_minutes,
            cooldown_minutes=body.cooldown_minutes,
            severity=body.severity,
        )
    except ValueError as exc:
        raise ValidationFailure(str(exc)) from exc


@router.get("/sites/{site_id}/alert-rules", response_model=List[schemas.AlertRuleOut])
def list_alert_rules(
    site_id: UUID,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    _api_key: str = Depends(deps.get_api_key),
):
    with site_scope(site_id):
        return repository.list_rules(db, include_inactive=include_inactive)
