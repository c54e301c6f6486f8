"""Alert records."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from clinic_resilience.alerting.rules import AlertSeverity


@dataclass
class ActionResult:
    """Outcome of one alert action.

    Attributes:
        action_type: Action that ran
        success: Whether it completed
        executed_at: Timestamp of execution
        message: What the action did
        error: Error text when it failed
    """

    action_type: str
    success: bool
    executed_at: float
    message: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_type": self.action_type,
            "success": self.success,
            "executed_at": self.executed_at,
            "message": self.message,
            "error": self.error,
        }


@dataclass
class Alert:
    """A fired alert rule, active until resolved."""

    id: str
    rule_id: str
    rule_name: str
    timestamp: float
    current_value: float
    threshold: float
    severity: AlertSeverity
    message: str
    active: bool = True
    resolved_at: float | None = None
    resolution_reason: str | None = None
    actions_taken: list[ActionResult] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def resolution_seconds(self) -> float | None:
        if self.resolved_at is None:
            return None
        return self.resolved_at - self.timestamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "timestamp": self.timestamp,
            "current_value": self.current_value,
            "threshold": self.threshold,
            "severity": self.severity.value,
            "message": self.message,
            "active": self.active,
            "resolved_at": self.resolved_at,
            "resolution_reason": self.resolution_reason,
            "actions_taken": [a.to_dict() for a in self.actions_taken],
            "context": dict(self.context),
        }
