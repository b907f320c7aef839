"""Alert rule evaluation and the per-(rule, stream) fire/clear state machine.

States are Cleared and Firing. A Fire outcome creates an instance when none is
active, or refreshes the active one in place. A Clear outcome stamps
``cleared_at`` on the active instance; with nothing active it is a no-op.
NoData and NoChange leave the state alone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Callable, Iterable, Mapping, Sequence
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, repository
from .normalization import as_utc, utcnow
from .quality import QualityCode
from .tenancy import site_scope

logger = logging.getLogger(__name__)


class AlertRuleType(StrEnum):
    THRESHOLD_ABOVE = "threshold_above"
    THRESHOLD_BELOW = "threshold_below"
    THRESHOLD_RANGE = "threshold_range"
    DEVIATION_PERCENT = "deviation_percent"
    DEVIATION_ABSOLUTE = "deviation_absolute"
    RATE_OF_CHANGE = "rate_of_change"


class AlertSeverity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class ThresholdConfig:
    threshold_value: float | None = None
    min_value: float | None = None
    max_value: float | None = None
    baseline_value: float | None = None
    deviation_percent: float | None = None
    deviation_absolute: float | None = None
    rate_of_change_per_minute: float | None = None

    def validate(self, rule_type: AlertRuleType) -> bool:
        match rule_type:
            case AlertRuleType.THRESHOLD_ABOVE | AlertRuleType.THRESHOLD_BELOW:
                return self.threshold_value is not None
            case AlertRuleType.THRESHOLD_RANGE:
                return (
                    self.min_value is not None
                    and self.max_value is not None
                    and self.min_value <= self.max_value
                )
            case AlertRuleType.DEVIATION_PERCENT:
                return self.deviation_percent is not None and self.deviation_percent >= 0
            case AlertRuleType.DEVIATION_ABSOLUTE:
                return self.deviation_absolute is not None and self.deviation_absolute >= 0
            case AlertRuleType.RATE_OF_CHANGE:
                return self.rate_of_change_per_minute is not None and self.rate_of_change_per_minute >= 0
        return False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "ThresholdConfig":
        data = data or {}
        return cls(**{name: _float_or_none(data.get(name)) for name in cls.__dataclass_fields__})

    def to_dict(self) -> dict[str, float]:
        return {
            name: getattr(self, name)
            for name in self.__dataclass_fields__
            if getattr(self, name) is not None
        }


def _float_or_none(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    return float(value)


# ---------- evaluation outcomes ----------
@dataclass(frozen=True, slots=True)
class NoData:
    pass


@dataclass(frozen=True, slots=True)
class Fire:
    current_value: float
    threshold_value: float
    message: str
    sample_count: int


@dataclass(frozen=True, slots=True)
class Clear:
    current_value: float
    sample_count: int


@dataclass(frozen=True, slots=True)
class NoChange:
    reason: str


RuleOutcome = NoData | Fire | Clear | NoChange


class Transition(StrEnum):
    CREATED = "created"
    REFRESHED = "refreshed"
    CLEARED = "cleared"
    NONE = "none"


@dataclass(frozen=True, slots=True)
class RuleSpec:
    """Read-only view of an alert rule used by the evaluator."""

    id: UUID
    site_id: UUID
    name: str
    rule_type: AlertRuleType
    stream_ids: tuple[UUID, ...]
    threshold: ThresholdConfig
    evaluation_window: timedelta
    severity: AlertSeverity

    @classmethod
    def from_model(cls, rule: models.AlertRule) -> "RuleSpec":
        return cls(
            id=rule.id,
            site_id=rule.site_id,
            name=rule.rule_name,
            rule_type=AlertRuleType(rule.rule_type),
            stream_ids=tuple(rule.stream_uuids),
            threshold=ThresholdConfig.from_dict(rule.threshold_config),
            evaluation_window=timedelta(minutes=rule.evaluation_window_minutes),
            severity=AlertSeverity(rule.severity),
        )


def evaluate_window(rule: RuleSpec, readings: Iterable[models.SensorReading]) -> RuleOutcome:
    """Run the rule's aggregation over good-quality readings in the window."""
    good = [r for r in readings if r.quality_code == QualityCode.GOOD]
    if not good:
        return NoData()
    if not rule.threshold.validate(rule.rule_type):
        return NoChange(f"threshold config is invalid for {rule.rule_type}")

    cfg = rule.threshold
    avg = sum(r.value for r in good) / len(good)
    n = len(good)

    match rule.rule_type:
        case AlertRuleType.THRESHOLD_ABOVE:
            if avg > cfg.threshold_value:
                return Fire(avg, cfg.threshold_value, f"{rule.name}: Average value {avg:.2f} exceeds threshold {cfg.threshold_value:.2f}", n)
            return Clear(avg, n)

        case AlertRuleType.THRESHOLD_BELOW:
            if avg < cfg.threshold_value:
                return Fire(avg, cfg.threshold_value, f"{rule.name}: Average value {avg:.2f} below threshold {cfg.threshold_value:.2f}", n)
            return Clear(avg, n)

        case AlertRuleType.THRESHOLD_RANGE:
            if avg < cfg.min_value or avg > cfg.max_value:
                bound = cfg.min_value if avg < cfg.min_value else cfg.max_value
                return Fire(
                    avg,
                    bound,
                    f"{rule.name}: Average value {avg:.2f} outside range [{cfg.min_value:.2f}, {cfg.max_value:.2f}]",
                    n,
                )
            return Clear(avg, n)

        case AlertRuleType.DEVIATION_PERCENT:
            baseline = cfg.baseline_value if cfg.baseline_value is not None else avg
            if baseline == 0:
                return NoChange("baseline is zero; percent deviation is undefined")
            deviation = abs((avg - baseline) / baseline * 100.0)
            if deviation > cfg.deviation_percent:
                return Fire(avg, baseline, f"{rule.name}: Deviation {deviation:.1f}% exceeds threshold {cfg.deviation_percent:.1f}%", n)
            return Clear(avg, n)

        case AlertRuleType.DEVIATION_ABSOLUTE:
            baseline = cfg.baseline_value if cfg.baseline_value is not None else avg
            deviation = abs(avg - baseline)
            if deviation > cfg.deviation_absolute:
                return Fire(avg, baseline, f"{rule.name}: Deviation {deviation:.2f} exceeds threshold {cfg.deviation_absolute:.2f}", n)
            return Clear(avg, n)

        case AlertRuleType.RATE_OF_CHANGE:
            ordered = sorted(good, key=lambda r: as_utc(r.time))
            if len(ordered) < 2:
                return NoData()
            minutes = (as_utc(ordered[-1].time) - as_utc(ordered[0].time)).total_seconds() / 60
            if minutes == 0:
                return NoData()
            rate = abs(ordered[-1].value - ordered[0].value) / minutes
            if rate > cfg.rate_of_change_per_minute:
                return Fire(
                    rate,
                    cfg.rate_of_change_per_minute,
                    f"{rule.name}: Rate of change {rate:.2f}/min exceeds threshold {cfg.rate_of_change_per_minute:.2f}/min",
                    n,
                )
            return Clear(rate, n)

    return NoChange(f"unsupported rule type: {rule.rule_type}")


@dataclass(frozen=True, slots=True)
class StreamEvaluation:
    stream_id: UUID
    outcome: RuleOutcome
    transition: Transition


@dataclass(frozen=True, slots=True)
class RuleFailure:
    rule_id: UUID
    error: str


@dataclass(frozen=True)
class SweepReport:
    site_id: UUID
    evaluated_at: datetime
    rules_evaluated: int = 0
    evaluations: tuple[StreamEvaluation, ...] = field(default=())
    failures: tuple[RuleFailure, ...] = field(default=())

    def count(self, transition: Transition) -> int:
        return sum(1 for e in self.evaluations if e.transition is transition)


class AlertEvaluator:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.clock = clock

    def evaluate_site(self, site_id: UUID, now: datetime | None = None) -> SweepReport:
        """Evaluate every active rule for a site. One failing rule never stops the rest."""
        evaluated_at = as_utc(now) if now is not None else self.clock()
        evaluations: list[StreamEvaluation] = []
        failures: list[RuleFailure] = []

        with site_scope(site_id):
            rules = repository.active_rules(self.db)
            for rule in rules:
                try:
                    evaluations.extend(self.evaluate_rule(rule, evaluated_at))
                except Exception as exc:
                    self.db.rollback()
                    logger.exception("Failed to evaluate alert rule %s for site %s", rule.id, site_id)
                    failures.append(RuleFailure(rule_id=rule.id, error=f"{type(exc).__name__}: {exc}"))

        logger.info(
            "Alert sweep for site %s: rules=%d, failures=%d", site_id, len(rules), len(failures)
        )
        return SweepReport(
            site_id=site_id,
            evaluated_at=evaluated_at,
            rules_evaluated=len(rules) - len(failures),
            evaluations=tuple(evaluations),
            failures=tuple(failures),
        )

    def evaluate_rule(self, rule: models.AlertRule, evaluation_time: datetime) -> list[StreamEvaluation]:
        spec = RuleSpec.from_model(rule)
        evaluation_time = as_utc(evaluation_time)
        results: list[StreamEvaluation] = []
        with site_scope(spec.site_id):
            for stream_id in spec.stream_ids:
                start = evaluation_time - spec.evaluation_window
                readings = repository.get_readings(self.db, stream_id, start, evaluation_time)
                outcome = evaluate_window(spec, readings)
                transition = self.apply(spec, stream_id, outcome, evaluation_time)
                results.append(StreamEvaluation(stream_id, outcome, transition))
        return results

    def apply(self, rule: RuleSpec, stream_id: UUID, outcome: RuleOutcome, at: datetime) -> Transition:
        with site_scope(rule.site_id):
            active = repository.active_instance(self.db, rule.id, stream_id)
            match outcome:
                case Fire(current_value=current, threshold_value=threshold, message=message):
                    if active is not None:
                        self._refresh(active, current, threshold, message or rule.name, at)
                        return Transition.REFRESHED
                    return self._create(rule, stream_id, current, threshold, message or rule.name, at)
                case Clear():
                    if active is None:
                        logger.debug("Clear for rule %s stream %s with no active alert; nothing to do", rule.id, stream_id)
                        return Transition.NONE
                    active.mark_cleared(at)
                    self.db.commit()
                    logger.info("Alert %s cleared (rule %s, stream %s)", active.id, rule.id, stream_id)
                    return Transition.CLEARED
                case NoChange(reason=reason):
                    logger.debug("Rule %s stream %s unchanged: %s", rule.id, stream_id, reason)
                    return Transition.NONE
                case NoData():
                    return Transition.NONE
        raise TypeError(f"unhandled rule outcome: {outcome!r}")

    def _refresh(self, instance: models.AlertInstance, current: float, threshold: float, message: str, at: datetime) -> None:
        instance.current_value = current
        instance.threshold_value = threshold
        instance.message = message
        instance.updated_at = at
        self.db.commit()

    def _create(
        self, rule: RuleSpec, stream_id: UUID, current: float, threshold: float, message: str, at: datetime
    ) -> Transition:
        instance = models.AlertInstance(
            site_id=rule.site_id,
            rule_id=rule.id,
            stream_id=stream_id,
            severity=rule.severity.value,
            current_value=current,
            threshold_value=threshold,
            message=message,
            fired_at=at,
            updated_at=at,
            active_key=models.AlertInstance.active_key_for(rule.id, stream_id),
        )
        self.db.add(instance)
        try:
            self.db.commit()
        except IntegrityError:
            # another evaluator fired first; the active_key constraint kept one active row
            self.db.rollback()
            active = repository.active_instance(self.db, rule.id, stream_id)
            if active is None:
                raise
            self._refresh(active, current, threshold, message, at)
            return Transition.REFRESHED
        logger.info("Alert fired for rule %s stream %s: %s", rule.id, stream_id, message)
        return Transition.CREATED

    # ---------- direct operations ----------
    def fire_alert(
        self,
        site_id: UUID,
        rule_id: UUID,
        stream_id: UUID,
        current_value: float,
        threshold_value: float,
        message: str,
    ) -> models.AlertInstance | None:
        with site_scope(site_id):
            rule = repository.get_rule(self.db, rule_id)
            if rule is None:
                logger.warning("Attempted to fire alert for unknown rule %s", rule_id)
                return None
            spec = RuleSpec.from_model(rule)
            self.apply(spec, stream_id, Fire(current_value, threshold_value, message, 0), self.clock())
            return repository.active_instance(self.db, rule_id, stream_id)

    def clear_alert(self, site_id: UUID, alert_id: UUID, cleared_at: datetime | None = None) -> bool:
        """Returns True when the instance exists (cleared now or already)."""
        with site_scope(site_id):
            alert = repository.get_instance(self.db, alert_id)
            if alert is None:
                logger.warning("Attempted to clear unknown alert %s", alert_id)
                return False
            if not alert.is_active:
                logger.info("Alert %s already cleared; nothing to do", alert_id)
                return True
            at = as_utc(cleared_at) if cleared_at is not None else self.clock()
            alert.mark_cleared(at)
            self.db.commit()
            return True

    def active_alerts(self, site_id: UUID) -> list[models.AlertInstance]:
        with site_scope(site_id):
            return repository.active_instances(self.db)

    def acknowledge(self, site_id: UUID, alert_id: UUID, user_id: UUID, notes: str | None = None) -> bool:
        with site_scope(site_id):
            alert = repository.get_instance(self.db, alert_id)
            if alert is None:
                logger.warning("Attempted to acknowledge unknown alert %s", alert_id)
                return False
            if alert.is_acknowledged:
                return True
            alert.acknowledged_at = self.clock()
            alert.acknowledged_by = user_id
            alert.acknowledgement_notes = notes
            self.db.commit()
            return True


def create_rule(
    db: Session,
    site_id: UUID,
    name: str,
    rule_type: AlertRuleType,
    stream_ids: Sequence[UUID],
    threshold: ThresholdConfig,
    evaluation_window_minutes: int = 5,
    cooldown_minutes: int = 15,
    severity: AlertSeverity = AlertSeverity.WARNING,
    now: datetime | None = None,
) -> models.AlertRule:
    if not name or not name.strip():
        raise ValueError("Rule name is required")
    if not stream_ids:
        raise ValueError("At least one stream id is required")
    if evaluation_window_minutes <= 0:
        raise ValueError("Evaluation window must be positive")
    if not threshold.validate(AlertRuleType(rule_type)):
        raise ValueError(f"Invalid threshold configuration for {rule_type}")

    now = now or utcnow()
    with site_scope(site_id):
        rule = models.AlertRule(
            site_id=site_id,
            rule_name=name.strip(),
            rule_type=AlertRuleType(rule_type).value,
            stream_ids=[str(s) for s in stream_ids],
            threshold_config=threshold.to_dict(),
            evaluation_window_minutes=evaluation_window_minutes,
            cooldown_minutes=cooldown_minutes,
            severity=AlertSeverity(severity).value,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        db.add(rule)
        db.commit()
        return rule
