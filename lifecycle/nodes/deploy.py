"""
restart_service and verify_health nodes.

Both run only after a committed swap.  Their failures do not fail the attempt:
the new material is in place, so a broken restart or a failing probe is
reported as a separate HealthCheckFailed alert instead of a renewal failure.
"""
from __future__ import annotations

import logging

from external.service import ServiceControlError
from lifecycle.state import RenewalDeps, RenewalState

logger = logging.getLogger(__name__)


def restart_service(state: RenewalState, deps: RenewalDeps) -> dict:
    domain = state["domain"]

    try:
        if deps.skip_restart_when_healthy and deps.probe.run(domain).ok:
            logger.info("Service for %s already healthy — skipping restart", domain)
            return {"restart_skipped": True}
        deps.controller.restart()
    except ServiceControlError as exc:
        logger.error("restart_service: %s", exc)
        return {"restart_error": str(exc)}
    except Exception as exc:
        # The swap is already committed; anything raised here is a restart problem.
        logger.exception("restart_service: unexpected error restarting %s", domain)
        return {"restart_error": f"restart raised {type(exc).__name__}: {exc}"}

    return {"restarted": True}


def verify_health(state: RenewalState, deps: RenewalDeps) -> dict:
    expected = None if state.get("restart_skipped") else state.get("fingerprint")
    try:
        result = deps.probe.run(state["domain"], expected_fingerprint=expected)
    except Exception as exc:
        logger.exception("verify_health: probe raised for %s", state["domain"])
        return {"health_ok": False, "health_detail": f"probe raised {type(exc).__name__}: {exc}"}
    return {"health_ok": result.ok, "health_detail": result.detail}
