"""
request_certificate node — ask the CA client for new material.

The CA client call is blocking and bounded by its own timeout; a timeout is
reported as a CAClientError like any other issuance failure.
"""
from __future__ import annotations

import logging

from external.ca_client import CAClientError
from lifecycle.state import RenewalDeps, RenewalState

logger = logging.getLogger(__name__)


def request_certificate(state: RenewalState, deps: RenewalDeps) -> dict:
    domain = state["domain"]
    logger.info("Requesting certificate for %s (force=%s)", domain, state["force"])
    try:
        material = deps.ca_client.issue(domain, force=state["force"])
    except CAClientError as exc:
        error = f"request_certificate: {exc}"
        logger.error(error)
        return {"error": error}

    return {"material": material}
