"""
State and collaborators for one renewal attempt.

RenewalState flows through the LangGraph pipeline and holds only plain data.
The collaborators (store, CA client, controller, ...) are not state; they are
bundled in RenewalDeps and bound into the nodes when the graph is built.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from typing_extensions import TypedDict

from external.ca_client import CAClient
from external.service import ServiceController
from health.probe import HealthProbe
from lifecycle.models import CertificateMaterial
from notify.dispatcher import NotificationDispatcher
from storage.backup import BackupManager
from storage.filesystem import CertificateStore


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class RenewalState(TypedDict):
    # ── Request ────────────────────────────────────────────────────────────
    domain: str
    trigger: str                      # LifecycleState value that started the attempt
    force: bool
    initiated_by: str                 # scheduler | manual | deploy-hook
    material: Optional[CertificateMaterial]   # supplied by a deploy hook or the CA client

    # ── Progress ───────────────────────────────────────────────────────────
    snapshot_path: Optional[str]
    swapped: bool
    fingerprint: Optional[str]        # of the newly committed certificate
    not_after: Optional[str]          # ISO-8601 UTC of the newly committed certificate
    restarted: bool
    restart_skipped: bool
    restart_error: Optional[str]
    health_ok: Optional[bool]
    health_detail: str

    # ── Outcome ────────────────────────────────────────────────────────────
    error: Optional[str]              # set by the step that failed the attempt
    notifications: list[str]          # kinds dispatched by report_outcome


@dataclass
class RenewalDeps:
    store: CertificateStore
    backup: BackupManager
    ca_client: CAClient
    controller: ServiceController
    probe: HealthProbe
    dispatcher: NotificationDispatcher
    skip_restart_when_healthy: bool = False
    clock: Callable[[], datetime] = utcnow


def initial_state(
    domain: str,
    trigger: str,
    force: bool = False,
    initiated_by: str = "scheduler",
    material: Optional[CertificateMaterial] = None,
) -> RenewalState:
    return {
        "domain": domain,
        "trigger": trigger,
        "force": force,
        "initiated_by": initiated_by,
        "material": material,
        "snapshot_path": None,
        "swapped": False,
        "fingerprint": None,
        "not_after": None,
        "restarted": False,
        "restart_skipped": False,
        "restart_error": None,
        "health_ok": None,
        "health_detail": "",
        "error": None,
        "notifications": [],
    }
