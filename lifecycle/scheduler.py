"""
Scheduler — one-shot activities for cron-style invocation and the daemon loop.

Activities and default cadences:
  evaluation  expiry check + renewal when due   every DAEMON_INTERVAL_SECONDS (1h)
  probe       TLS handshake + liveness          every PROBE_INTERVAL_SECONDS (5m)
  backup      snapshot + prune                  every BACKUP_INTERVAL_DAYS (7d)

Every activity returns True when all domains passed, so the CLI can map it to
an exit code.  In daemon mode each job is wrapped so that an exception is
logged and the loop carries on with the next tick.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Callable, Optional

import schedule

from health.probe import HealthProbe, ProbeResult
from lifecycle.models import NotificationEvent, NotificationKind, Severity
from lifecycle.orchestrator import RenewalOrchestrator, TickOutcome
from notify.dispatcher import NotificationDispatcher
from storage.backup import BackupError, BackupManager
from storage.filesystem import CertificateStoreError, NotFoundError

logger = logging.getLogger(__name__)


class Scheduler:
    def __init__(
        self,
        domains: list[str],
        orchestrator: RenewalOrchestrator,
        probe: HealthProbe,
        backup: BackupManager,
        dispatcher: NotificationDispatcher,
        evaluation_interval: timedelta = timedelta(hours=1),
        probe_interval: timedelta = timedelta(minutes=5),
        backup_interval: timedelta = timedelta(days=7),
        max_workers: int = 4,
    ) -> None:
        if not domains:
            raise ValueError("at least one managed domain is required")
        self.domains = list(domains)
        self.orchestrator = orchestrator
        self.probe = probe
        self.backup = backup
        self.dispatcher = dispatcher
        self.evaluation_interval = evaluation_interval
        self.probe_interval = probe_interval
        self.backup_interval = backup_interval
        self.max_workers = max(1, max_workers)

    # ── Activities ────────────────────────────────────────────────────────

    def run_evaluation(self) -> bool:
        """Expiry check and renewal for every domain, domains in parallel."""
        outcomes = self._for_each_domain(self.orchestrator.tick)
        return all(o.ok for o in outcomes)

    def run_probe(self) -> bool:
        results = [self._probe(domain) for domain in self.domains]
        return all(r.ok for r in results)

    def run_backup(self) -> bool:
        ok = True
        for domain in self.domains:
            try:
                self.backup.snapshot(domain)
            except NotFoundError as exc:
                logger.error("No certificate to back up for %s: %s", domain, exc)
                ok = False
            except (BackupError, CertificateStoreError) as exc:
                logger.error("Backup of %s failed: %s", domain, exc)
                ok = False
        self.backup.prune()
        return ok

    def run_backup_if_due(self) -> bool:
        due = [d for d in self.domains if self.backup.is_due(d)]
        ok = True
        for domain in due:
            try:
                self.backup.snapshot(domain)
            except (BackupError, CertificateStoreError) as exc:
                logger.error("Scheduled backup of %s failed: %s", domain, exc)
                ok = False
        return ok

    def monitor(self) -> bool:
        """One full pass: expiry/renewal, health probe, backup when a week has passed."""
        logger.info("Certificate monitoring pass started for %s", ", ".join(self.domains))
        evaluated = self.run_evaluation()
        probed = self.run_probe()
        backed_up = self.run_backup_if_due()
        logger.info(
            "Certificate monitoring pass finished (evaluation=%s, probe=%s, backup=%s)",
            _ok(evaluated), _ok(probed), _ok(backed_up),
        )
        return evaluated and probed and backed_up

    def renew(self, force: bool = True) -> bool:
        """Force a renewal attempt for every configured domain."""
        ok = True
        for domain in self.domains:
            attempt = self.orchestrator.renew(domain, force=force, initiated_by="manual")
            if attempt is None or not attempt.succeeded:
                ok = False
        return ok

    # ── Daemon ────────────────────────────────────────────────────────────

    def build_jobs(self, runner: schedule.Scheduler, pool: ThreadPoolExecutor) -> None:
        """Register the three periodic activities on *runner*."""
        def evaluation() -> None:
            pool.submit(self._guarded, "evaluation", self.run_evaluation)

        runner.every(int(self.evaluation_interval.total_seconds())).seconds.do(evaluation)
        runner.every(int(self.probe_interval.total_seconds())).seconds.do(
            self._guarded, "probe", self.run_probe
        )
        runner.every(int(self.backup_interval.total_seconds())).seconds.do(
            self._guarded, "backup", self.run_backup
        )

    def run_daemon(self, stop: Optional[threading.Event] = None, poll_seconds: float = 1.0) -> None:
        """
        Run until *stop* is set.  Evaluation runs once immediately, then on its
        interval; renewals run on a worker so a slow CA call does not hold up
        the probe schedule.
        """
        stop = stop or threading.Event()
        runner = schedule.Scheduler()

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="evaluation") as pool:
            self.build_jobs(runner, pool)

            logger.info(
                "Daemon started: evaluation every %s, probe every %s, backup every %s",
                self.evaluation_interval, self.probe_interval, self.backup_interval,
            )
            pool.submit(self._guarded, "evaluation", self.run_evaluation)

            while not stop.is_set():
                runner.run_pending()
                stop.wait(poll_seconds)

            logger.info("Daemon stopping — waiting for in-flight work")
            runner.clear()
        logger.info("Daemon stopped")

    # ── Internal ──────────────────────────────────────────────────────────

    def _for_each_domain(self, fn: Callable[[str], TickOutcome]) -> list[TickOutcome]:
        if len(self.domains) == 1:
            return [fn(self.domains[0])]
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(self.domains))) as pool:
            return list(pool.map(fn, self.domains))

    def _probe(self, domain: str) -> ProbeResult:
        expected = None
        try:
            expected = self.orchestrator.deps.store.load(domain).fingerprint
        except CertificateStoreError as exc:
            logger.warning("Probing %s without fingerprint check: %s", domain, exc)

        result = self.probe.run(domain, expected_fingerprint=expected)
        if not result.ok:
            self.dispatcher.dispatch(NotificationEvent(
                kind=NotificationKind.HEALTH_CHECK_FAILED,
                domain=domain,
                message=f"Health check for {domain} failed: {result.detail}",
                timestamp=self.orchestrator.clock(),
                severity=Severity.CRITICAL,
            ))
        return result

    @staticmethod
    def _guarded(name: str, job: Callable[[], bool]) -> None:
        try:
            if not job():
                logger.warning("Scheduled %s reported failures", name)
        except Exception:
            logger.exception("Scheduled %s crashed; will retry on the next tick", name)


def _ok(flag: bool) -> str:
    return "ok" if flag else "failed"
