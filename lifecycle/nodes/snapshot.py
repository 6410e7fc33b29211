"""
take_snapshot node — back up the committed material before anything changes.

A domain with no material yet (first deployment through the hook) has
nothing to back up; that is logged and the attempt continues.  Any other
backup failure fails the attempt: a swap without a restore point is not
attempted.
"""
from __future__ import annotations

import logging

from lifecycle.state import RenewalDeps, RenewalState
from storage.backup import BackupError
from storage.filesystem import CertificateStoreError, NotFoundError

logger = logging.getLogger(__name__)


def take_snapshot(state: RenewalState, deps: RenewalDeps) -> dict:
    domain = state["domain"]
    try:
        snap = deps.backup.snapshot(domain)
    except NotFoundError:
        logger.warning("No existing material for %s — nothing to back up", domain)
        return {"snapshot_path": None}
    except (BackupError, CertificateStoreError, OSError) as exc:
        error = f"take_snapshot: backup of {domain} failed: {exc}"
        logger.error(error)
        return {"error": error}

    return {"snapshot_path": str(snap.path)}
