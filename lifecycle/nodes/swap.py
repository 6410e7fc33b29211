"""swap_material node — commit the new key/cert/chain set in one rename."""
from __future__ import annotations

import logging

from lifecycle.state import RenewalDeps, RenewalState
from storage.filesystem import SwapError

logger = logging.getLogger(__name__)


def swap_material(state: RenewalState, deps: RenewalDeps) -> dict:
    domain = state["domain"]
    material = state.get("material")
    if material is None:
        return {"error": f"swap_material: no material to deploy for {domain}"}

    try:
        record = deps.store.atomic_swap(domain, material)
    except SwapError as exc:
        error = f"swap_material: {exc}"
        logger.error(error)
        return {"error": error}

    return {
        "swapped": True,
        "fingerprint": record.fingerprint,
        "not_after": record.not_after.isoformat(),
        # Raw key bytes are not needed past this point.
        "material": None,
    }
