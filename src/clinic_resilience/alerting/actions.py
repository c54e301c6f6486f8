"""
Alert actions.

Each action returns an :class:`ActionResult`; a failing action is logged
and recorded on the alert without stopping the remaining actions.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

import httpx

from clinic_resilience.alerting.alerts import ActionResult, Alert
from clinic_resilience.alerting.rules import (
    ActionType,
    AlertAction,
    AlertRule,
    AlertSeverity,
    format_alert_message,
)
from clinic_resilience.telemetry import LogLevel, ResilienceLogger

if TYPE_CHECKING:
    from collections.abc import Callable

    from clinic_resilience.flags import FeatureFlagStore


class ActionExecutor:
    """Executes the actions attached to alert rules.

    Example:
        >>> executor = ActionExecutor(flags=flags)
        >>> executor.on_notification(lambda alert, message: pager.send(message))
        >>> result = await executor.execute(action, alert, rule)
    """

    def __init__(
        self,
        flags: FeatureFlagStore | None = None,
        logger: ResilienceLogger | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
        webhook_timeout_seconds: float = 5.0,
    ) -> None:
        """Initialize action executor.

        Args:
            flags: Feature flag store used by rollback actions
            logger: Structured logger
            http_client: Client for webhooks; a short-lived client is
                created per call when none is given
            clock: Time source (seconds)
            webhook_timeout_seconds: Webhook request timeout
        """
        self._flags = flags
        self._logger = logger or ResilienceLogger()
        self._http_client = http_client
        self._clock = clock
        self._webhook_timeout = webhook_timeout_seconds
        self._listeners: list[Callable[[Alert, str], None]] = []

    def on_notification(self, listener: Callable[[Alert, str], None]) -> Callable[[], None]:
        """Register a notification listener.

        Returns:
            Callable that unregisters the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def execute(self, action: AlertAction, alert: Alert, rule: AlertRule) -> ActionResult:
        """Run one action; failures are captured in the result."""
        executed_at = self._clock()
        try:
            if action.type == ActionType.NOTIFY:
                message = self._notify(action, alert, rule)
            elif action.type == ActionType.LOG:
                message = self._log(action, alert)
            elif action.type == ActionType.ROLLBACK_FEATURE:
                message = self._rollback_feature(action, alert)
            elif action.type == ActionType.EMERGENCY_ROLLBACK:
                message = self._emergency_rollback(alert)
            else:
                message = await self._webhook(action, alert)
        except Exception as e:
            self._logger.error(
                "alerting",
                f"Alert action '{action.type.value}' failed",
                error=e,
                alert_id=alert.id,
                rule_id=rule.id,
            )
            return ActionResult(
                action_type=action.type.value,
                success=False,
                executed_at=executed_at,
                message=f"Action failed: {e}",
                error=str(e),
            )
        return ActionResult(
            action_type=action.type.value,
            success=True,
            executed_at=executed_at,
            message=message,
        )

    def _notify(self, action: AlertAction, alert: Alert, rule: AlertRule) -> str:
        message = format_alert_message(rule, alert.current_value, action.message)
        self._logger.warning(
            "alerting", f"Notification: {message}", alert_id=alert.id, severity=alert.severity.value
        )
        for listener in list(self._listeners):
            try:
                listener(alert, message)
            except Exception as e:
                self._logger.error(
                    "alerting", "Notification listener failed", error=e, alert_id=alert.id
                )
        return message

    def _log(self, action: AlertAction, alert: Alert) -> str:
        level = LogLevel(action.log_level)
        self._logger.log(
            level,
            "alerting",
            action.message or alert.message,
            alert_id=alert.id,
            rule_id=alert.rule_id,
            current_value=alert.current_value,
        )
        return f"Logged at {level.value} level"

    def _require_flags(self) -> FeatureFlagStore:
        if self._flags is None:
            raise RuntimeError("No feature flag store configured")
        return self._flags

    def _rollback_feature(self, action: AlertAction, alert: Alert) -> str:
        flags = self._require_flags()
        feature = action.feature or ""
        if not flags.disable(feature):
            raise ValueError(f"Unknown feature: {feature}")
        self._logger.warning(
            "alerting", f"Rolled back feature '{feature}'", alert_id=alert.id, feature=feature
        )
        return f"Rolled back feature: {feature}"

    def _emergency_rollback(self, alert: Alert) -> str:
        if alert.severity != AlertSeverity.EMERGENCY:
            raise ValueError(
                f"Emergency rollback requires emergency severity, got {alert.severity.value}"
            )
        flags = self._require_flags()
        disabled = [
            feature
            for feature, enabled in flags.get_all_flags().items()
            if enabled and flags.disable(feature)
        ]
        self._logger.critical(
            "alerting",
            "Emergency rollback executed",
            alert_id=alert.id,
            disabled=disabled,
        )
        return f"Emergency rollback disabled {len(disabled)} feature(s)"

    async def _webhook(self, action: AlertAction, alert: Alert) -> str:
        url = action.webhook_url or ""
        payload: dict[str, Any] = {"alert": alert.to_dict(), "metadata": dict(action.metadata)}
        if self._http_client is not None:
            response = await self._http_client.post(
                url, json=payload, timeout=self._webhook_timeout
            )
        else:
            async with httpx.AsyncClient(timeout=self._webhook_timeout) as client:
                response = await client.post(url, json=payload)
        response.raise_for_status()
        return f"Webhook delivered ({response.status_code})"
