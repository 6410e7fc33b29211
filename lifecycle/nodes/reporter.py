"""
report_outcome node — turn the finished attempt into operator notifications.

  swap failed / CA failed / no backup     → RenewalFailed (critical if expired)
  swap committed                          → RenewalSucceeded
  swap committed, restart or probe failed → RenewalSucceeded + HealthCheckFailed

All of them go through the dispatcher, so repeated failures on every tick
produce one alert per kind and day.
"""
from __future__ import annotations

import logging

from lifecycle.models import LifecycleState, NotificationEvent, NotificationKind, Severity
from lifecycle.state import RenewalDeps, RenewalState

logger = logging.getLogger(__name__)


def report_outcome(state: RenewalState, deps: RenewalDeps) -> dict:
    domain = state["domain"]
    now = deps.clock()
    events: list[NotificationEvent] = []

    if state.get("swapped"):
        events.append(NotificationEvent(
            kind=NotificationKind.RENEWAL_SUCCEEDED,
            domain=domain,
            message=(
                f"Certificate for {domain} renewed and deployed "
                f"(valid until {(state.get('not_after') or '?')[:10]})."
            ),
            timestamp=now,
            severity=Severity.INFO,
        ))
        problems = [p for p in (state.get("restart_error"), state.get("health_detail")) if p]
        if state.get("restart_error") or state.get("health_ok") is False:
            events.append(NotificationEvent(
                kind=NotificationKind.HEALTH_CHECK_FAILED,
                domain=domain,
                message=(
                    f"New certificate for {domain} is in place but the service is not healthy: "
                    + "; ".join(problems)
                ),
                timestamp=now,
                severity=Severity.CRITICAL,
            ))
    else:
        expired = state["trigger"] == LifecycleState.EXPIRED.value
        events.append(NotificationEvent(
            kind=NotificationKind.RENEWAL_FAILED,
            domain=domain,
            message=(
                f"Certificate renewal for {domain} failed; manual check required. "
                f"{state.get('error') or 'unknown error'}"
            ),
            timestamp=now,
            severity=Severity.CRITICAL if expired else Severity.WARNING,
        ))

    sent = [e.kind.value for e in events if deps.dispatcher.dispatch(e)]
    return {"notifications": sent}
