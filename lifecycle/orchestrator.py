"""
Per-domain lifecycle state machine and renewal coordination.

  HEALTHY / WARNING / CRITICAL / EXPIRED   set by evaluation on every tick
  {any} → RENEWING                         an attempt starts (the per-domain lock)
  RENEWING → <evaluated state>             swap committed (normally HEALTHY)
  RENEWING → RENEW_FAILED                  committed material unchanged (a step
                                           before the commit failed or raised)
  RENEW_FAILED → RENEWING                  next tick retries, indefinitely

The state map and the attempt log are process-scoped: created with the
orchestrator, gone when the process exits.  The attempt log is additionally
appended to a JSON-lines file when `attempt_log_path` is set.
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from lifecycle.expiry import Evaluation, ExpiryEvaluator
from lifecycle.graph import build_renewal_graph
from lifecycle.models import (
    CertificateMaterial,
    LifecycleState,
    NotificationEvent,
    NotificationKind,
    RenewalAttempt,
    Severity,
)
from lifecycle.nodes.reporter import report_outcome
from lifecycle.state import RenewalDeps, RenewalState, initial_state
from storage.filesystem import (
    CertificateStoreError,
    NotFoundError,
    PairingMismatchError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TickOutcome:
    domain: str
    evaluation: Optional[Evaluation] = None
    attempt: Optional[RenewalAttempt] = None
    skipped: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        if self.error:
            return False
        return self.attempt is None or self.attempt.succeeded


class RenewalOrchestrator:
    def __init__(
        self,
        deps: RenewalDeps,
        evaluator: ExpiryEvaluator,
        attempt_log_path: Optional[str | Path] = None,
    ) -> None:
        self.deps = deps
        self.evaluator = evaluator
        self.attempt_log_path = Path(attempt_log_path) if attempt_log_path else None
        self._graph = build_renewal_graph(deps)
        self._lock = threading.Lock()
        self._states: dict[str, LifecycleState] = {}
        self._attempts: list[RenewalAttempt] = []

    @property
    def clock(self) -> Callable[[], datetime]:
        return self.deps.clock

    # ── Queries ───────────────────────────────────────────────────────────

    def state_of(self, domain: str) -> Optional[LifecycleState]:
        with self._lock:
            return self._states.get(domain)

    @property
    def attempts(self) -> tuple[RenewalAttempt, ...]:
        with self._lock:
            return tuple(self._attempts)

    def evaluate(self, domain: str) -> Evaluation:
        """Load and classify *domain*; raises CertificateStoreError subclasses."""
        record = self.deps.store.load(domain)
        return self.evaluator.evaluate(record, self.clock())

    # ── Tick ──────────────────────────────────────────────────────────────

    def tick(self, domain: str) -> TickOutcome:
        """
        One evaluation pass for *domain*: classify, warn, renew when due.

        Domains already RENEWING are skipped.  A RENEW_FAILED domain is retried
        regardless of its classification.
        """
        current = self.state_of(domain)
        if current is LifecycleState.RENEWING:
            logger.info("%s is already renewing — skipping this tick", domain)
            return TickOutcome(domain, skipped=True)

        try:
            evaluation = self.evaluate(domain)
        except PairingMismatchError as exc:
            logger.error("Certificate corruption for %s: %s", domain, exc)
            self._notify(NotificationKind.PAIRING_MISMATCH, domain, Severity.CRITICAL, (
                f"Private key and certificate for {domain} do not match. "
                f"Material left untouched; manual repair required. {exc}"
            ))
            return TickOutcome(domain, error=str(exc))
        except NotFoundError as exc:
            logger.error("Certificate material missing for %s: %s", domain, exc)
            return TickOutcome(domain, error=str(exc))
        except CertificateStoreError as exc:
            logger.error("Cannot read certificate for %s: %s", domain, exc)
            return TickOutcome(domain, error=str(exc))

        logger.info(
            "%s → expires %s (%d days) — %s",
            domain,
            evaluation.not_after.strftime("%Y-%m-%d"),
            evaluation.days_remaining,
            evaluation.state.value.upper(),
        )

        if evaluation.needs_alert:
            self._notify(NotificationKind.EXPIRY_WARNING, domain, evaluation.severity, (
                f"Certificate for {domain} expires in {evaluation.days_remaining} day(s) "
                f"({evaluation.not_after.strftime('%Y-%m-%d %H:%M UTC')})."
                if evaluation.days_remaining >= 0
                else f"Certificate for {domain} EXPIRED on {evaluation.not_after.strftime('%Y-%m-%d %H:%M UTC')}."
            ))

        if evaluation.needs_renewal or current is LifecycleState.RENEW_FAILED:
            attempt = self.renew(domain, trigger=evaluation.state)
            if attempt is None:
                return TickOutcome(domain, evaluation=evaluation, skipped=True)
            return TickOutcome(domain, evaluation=evaluation, attempt=attempt)

        with self._lock:
            if self._states.get(domain) is not LifecycleState.RENEWING:
                self._states[domain] = evaluation.state
        return TickOutcome(domain, evaluation=evaluation)

    # ── Renewal ───────────────────────────────────────────────────────────

    def renew(
        self,
        domain: str,
        trigger: Optional[LifecycleState] = None,
        force: bool = False,
        material: Optional[CertificateMaterial] = None,
        initiated_by: str = "scheduler",
    ) -> Optional[RenewalAttempt]:
        """
        Run one renewal attempt.  Returns None if *domain* is already renewing.
        """
        with self._lock:
            previous = self._states.get(domain)
            if previous is LifecycleState.RENEWING:
                logger.info("Renewal for %s already in progress — not starting another", domain)
                return None
            self._states[domain] = LifecycleState.RENEWING

        next_state = LifecycleState.RENEW_FAILED
        try:
            trigger = trigger or previous or LifecycleState.HEALTHY
            started = self.clock()
            logger.info("Starting renewal for %s (trigger=%s, by=%s)", domain, trigger.value, initiated_by)

            state = initial_state(
                domain=domain,
                trigger=trigger.value,
                force=force,
                initiated_by=initiated_by,
                material=material,
            )
            committed_before = self._committed_material(domain)
            try:
                final = self._graph.invoke(state)
            except Exception as exc:
                logger.exception("Renewal pipeline for %s crashed", domain)
                final = self._recover_crashed(state, committed_before, exc)

            succeeded = bool(final.get("swapped"))
            not_after = final.get("not_after")
            attempt = RenewalAttempt(
                domain=domain,
                started_at=started,
                finished_at=self.clock(),
                succeeded=succeeded,
                trigger=trigger,
                initiated_by=initiated_by,
                reason=None if succeeded else (final.get("error") or "unknown error"),
                snapshot=Path(final["snapshot_path"]) if final.get("snapshot_path") else None,
                health_ok=final.get("health_ok"),
                not_after=datetime.fromisoformat(not_after) if not_after else None,
            )

            next_state = self._state_after(domain, attempt)
            with self._lock:
                self._attempts.append(attempt)
            self._append_log(attempt)
        finally:
            with self._lock:
                self._states[domain] = next_state

        if succeeded:
            logger.info("Renewal for %s succeeded (health_ok=%s)", domain, attempt.health_ok)
        else:
            logger.error("Renewal for %s failed: %s", domain, attempt.reason)
        return attempt

    def deploy(self, domain: str, material: CertificateMaterial) -> Optional[RenewalAttempt]:
        """Deployment-hook entry: material issued elsewhere, same swap/restart/probe path."""
        return self.renew(domain, material=material, initiated_by="deploy-hook")

    # ── Internal ──────────────────────────────────────────────────────────

    def _state_after(self, domain: str, attempt: RenewalAttempt) -> LifecycleState:
        if not attempt.succeeded:
            return LifecycleState.RENEW_FAILED
        try:
            return self.evaluate(domain).state
        except CertificateStoreError as exc:
            logger.error("Re-reading %s after renewal failed: %s", domain, exc)
            return LifecycleState.RENEW_FAILED

    def _committed_material(self, domain: str) -> Optional[CertificateMaterial]:
        try:
            return self.deps.store.read_material(domain)
        except CertificateStoreError:
            return None

    def _recover_crashed(
        self,
        state: RenewalState,
        committed_before: Optional[CertificateMaterial],
        exc: Exception,
    ) -> dict:
        """
        Rebuild the outcome of an attempt whose pipeline raised part-way.

        The store decides what happened: committed material that differs from
        what was there before means the swap went through, so the attempt is a
        success with an unhealthy service.  Otherwise nothing was changed and
        the attempt failed.  Either way the operator is told through the same
        report as a normal run.
        """
        domain = state["domain"]
        crash = f"pipeline crashed: {exc}"
        recovered = dict(state)

        committed_after = self._committed_material(domain)
        if committed_after is not None and committed_after != committed_before:
            logger.warning("New material for %s was committed before the crash", domain)
            recovered.update(swapped=True, health_ok=False, health_detail=crash)
            try:
                record = self.deps.store.load(domain)
                recovered.update(fingerprint=record.fingerprint, not_after=record.not_after.isoformat())
            except CertificateStoreError as load_exc:
                logger.error("Cannot re-read %s after the crash: %s", domain, load_exc)
        else:
            recovered.update(swapped=False, error=crash)

        try:
            report_outcome(recovered, self.deps)
        except Exception:
            logger.exception("Could not report the crashed renewal for %s", domain)
        return recovered

    def _notify(self, kind: NotificationKind, domain: str, severity: Severity, message: str) -> None:
        self.deps.dispatcher.dispatch(NotificationEvent(
            kind=kind,
            domain=domain,
            message=message,
            timestamp=self.clock(),
            severity=severity,
        ))

    def _append_log(self, attempt: RenewalAttempt) -> None:
        if self.attempt_log_path is None:
            return
        try:
            self.attempt_log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.attempt_log_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(attempt.to_dict()) + "\n")
        except OSError as exc:
            logger.warning("Could not append renewal attempt to %s: %s", self.attempt_log_path, exc)
