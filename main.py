"""
TLS certificate lifecycle manager — CLI entry point.

Usage:
  python main.py monitor          # One pass: expiry check/renewal, health probe, weekly backup
  python main.py renew            # Force a renewal attempt for every managed domain
  python main.py test             # Health probe only
  python main.py backup           # Snapshot + prune
  python main.py verify           # Show certificate details and check key/cert pairing
  python main.py deploy-hook      # Called by certbot --deploy-hook after it renewed a lineage
  python main.py --daemon         # Run the scheduler loop until SIGINT/SIGTERM

Exit status: 0 when every check passed, 1 otherwise.
"""
from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

import structlog

log = logging.getLogger(__name__)


# ── Logging setup ─────────────────────────────────────────────────────────────


def configure_logging(level: str = "INFO", log_file: str = "") -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )


# ── Wiring ────────────────────────────────────────────────────────────────────


@dataclass
class App:
    domains: list[str]
    orchestrator: "RenewalOrchestrator"  # noqa: F821
    scheduler: "Scheduler"  # noqa: F821


def build_channels(cfg) -> list:
    from notify.channels import DiscordChannel, EmailChannel, LogChannel, SlackChannel

    channels: list = [LogChannel()]
    if cfg.NOTIFICATION_EMAIL:
        channels.append(EmailChannel(
            to_addr=cfg.NOTIFICATION_EMAIL,
            smtp_host=cfg.SMTP_HOST,
            smtp_port=cfg.SMTP_PORT,
            from_addr=cfg.SMTP_FROM,
            username=cfg.SMTP_USERNAME,
            password=cfg.SMTP_PASSWORD,
            starttls=cfg.SMTP_STARTTLS,
        ))
    if cfg.SLACK_WEBHOOK_URL:
        channels.append(SlackChannel(cfg.SLACK_WEBHOOK_URL))
    if cfg.DISCORD_WEBHOOK_URL:
        channels.append(DiscordChannel(cfg.DISCORD_WEBHOOK_URL))
    return channels


def build_app(cfg, domains: Optional[list[str]] = None) -> App:
    """Construct every component from settings; nothing below here reads `settings`."""
    from external.ca_client import CertbotClient
    from external.service import build_controller
    from health.probe import HealthProbe
    from lifecycle.expiry import ExpiryEvaluator, ExpiryThresholds
    from lifecycle.orchestrator import RenewalOrchestrator
    from lifecycle.scheduler import Scheduler
    from lifecycle.state import RenewalDeps
    from notify.dispatcher import NotificationDispatcher
    from storage.backup import BackupManager
    from storage.filesystem import CertificateStore

    effective = domains or cfg.MANAGED_DOMAINS
    store = CertificateStore(cfg.CERT_STORE_PATH)
    backup = BackupManager(
        store,
        cfg.BACKUP_PATH,
        retention=timedelta(days=cfg.BACKUP_RETENTION_DAYS),
        interval=timedelta(days=cfg.BACKUP_INTERVAL_DAYS),
    )
    probe = HealthProbe(
        host=cfg.PROBE_HOST,
        port=cfg.PROBE_PORT,
        timeout=cfg.PROBE_TIMEOUT,
        health_path=cfg.HEALTH_PATH,
    )
    dispatcher = NotificationDispatcher(build_channels(cfg), state_path=cfg.NOTIFY_STATE_PATH or None)
    deps = RenewalDeps(
        store=store,
        backup=backup,
        ca_client=CertbotClient(
            certbot_bin=cfg.CERTBOT_BIN,
            live_dir=cfg.CERTBOT_LIVE_DIR,
            timeout=cfg.CA_CLIENT_TIMEOUT,
        ),
        controller=build_controller(
            cfg.SERVICE_MANAGER,
            pm2_process=cfg.PM2_PROCESS_NAME,
            pm2_config=cfg.PM2_CONFIG_PATH,
            systemd_unit=cfg.SYSTEMD_UNIT,
            command=cfg.restart_argv,
            timeout=cfg.SERVICE_RESTART_TIMEOUT,
        ),
        probe=probe,
        dispatcher=dispatcher,
        skip_restart_when_healthy=cfg.SKIP_RESTART_WHEN_HEALTHY,
    )
    orchestrator = RenewalOrchestrator(
        deps,
        ExpiryEvaluator(ExpiryThresholds(cfg.WARNING_THRESHOLD_DAYS, cfg.CRITICAL_THRESHOLD_DAYS)),
        attempt_log_path=cfg.ATTEMPT_LOG_PATH or None,
    )
    scheduler = Scheduler(
        effective,
        orchestrator,
        probe,
        backup,
        dispatcher,
        evaluation_interval=timedelta(seconds=cfg.DAEMON_INTERVAL_SECONDS),
        probe_interval=timedelta(seconds=cfg.PROBE_INTERVAL_SECONDS),
        backup_interval=timedelta(days=cfg.BACKUP_INTERVAL_DAYS),
        max_workers=cfg.MAX_WORKERS,
    )
    return App(domains=effective, orchestrator=orchestrator, scheduler=scheduler)


# ── Commands ──────────────────────────────────────────────────────────────────


def cmd_verify(app: App) -> bool:
    """Print certificate details and check key/cert pairing (read-only)."""
    from storage import pem
    from storage.filesystem import CertificateStoreError, PairingMismatchError

    store = app.orchestrator.deps.store
    ok = True
    for domain in app.domains:
        try:
            record = store.load(domain)
        except PairingMismatchError as exc:
            log.error("%s: private key and certificate do not match — %s", domain, exc)
            ok = False
            continue
        except CertificateStoreError as exc:
            log.error("%s: %s", domain, exc)
            ok = False
            continue

        cert = pem.load_certificate(record.files.leaf_cert.read_bytes())
        chain = pem.load_certificate_chain(record.files.full_chain.read_bytes())
        evaluation = app.orchestrator.evaluator.evaluate(record, app.orchestrator.clock())
        print(f"\n{'=' * 60}\n{domain}\n{'=' * 60}")
        print(f"  Subject:     {cert.subject.rfc4514_string()}")
        print(f"  Issuer:      {cert.issuer.rfc4514_string()}")
        print(f"  Not Before:  {record.not_before:%Y-%m-%d %H:%M:%S} UTC")
        print(f"  Not After:   {record.not_after:%Y-%m-%d %H:%M:%S} UTC")
        print(f"  Remaining:   {evaluation.days_remaining} day(s) — {evaluation.state.value}")
        print(f"  Chain:       {len(chain)} certificate(s)")
        print(f"  Fingerprint: {record.fingerprint}")
        paired = store.verify_pairing(record)
        print(f"  Key pairing: {'OK' if paired else 'MISMATCH'}")
        ok = ok and paired
    return ok


def cmd_deploy_hook(app: App) -> bool:
    """
    Deploy material that certbot renewed on its own.

    certbot exports RENEWED_LINEAGE (the live/<name> directory) and
    RENEWED_DOMAINS (space separated) to deploy hooks.
    """
    from external.ca_client import CAClientError, read_lineage

    lineage = os.environ.get("RENEWED_LINEAGE", "")
    if not lineage:
        log.error("RENEWED_LINEAGE is not set; deploy-hook must be run by certbot")
        return False

    renewed = os.environ.get("RENEWED_DOMAINS", "").split()
    lineage_path = Path(lineage)
    candidates = [d for d in app.domains if d in renewed or d == lineage_path.name]
    if not candidates:
        log.warning("Lineage %s does not belong to a managed domain — ignoring", lineage)
        return True

    ok = True
    for domain in candidates:
        try:
            material = read_lineage(domain, lineage_path)
        except CAClientError as exc:
            log.error("%s", exc)
            ok = False
            continue
        attempt = app.orchestrator.deploy(domain, material)
        ok = ok and attempt is not None and attempt.succeeded
    return ok


def run_daemon(app: App) -> None:
    stop = threading.Event()

    def shutdown_handler(signum, frame) -> None:
        log.info("Received signal %d — shutting down", signum)
        stop.set()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)
    app.scheduler.run_daemon(stop)


# ── CLI ───────────────────────────────────────────────────────────────────────


COMMANDS = ("monitor", "renew", "test", "backup", "verify", "deploy-hook")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="TLS certificate lifecycle manager",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  monitor      run one evaluation pass (expiry check, health probe, weekly backup)
  renew        force a renewal attempt
  test         run the health probe only
  backup       snapshot current material and prune old snapshots
  verify       print certificate details and check key/cert pairing
  deploy-hook  deploy material renewed by certbot (use as --deploy-hook)

Crontab example:
  0 * * * *   python main.py monitor
  0 2 * * *   python main.py renew
  0 3 * * 1   python main.py backup
  */5 * * * * python main.py test
        """,
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=COMMANDS,
        default="monitor",
        help="Activity to run once (default: monitor)",
    )
    parser.add_argument(
        "--daemon",
        action="store_true",
        help="Run the scheduler loop until interrupted",
    )
    parser.add_argument(
        "--domains",
        nargs="+",
        metavar="DOMAIN",
        help="Override MANAGED_DOMAINS for this run",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    from config import settings

    configure_logging(settings.LOG_LEVEL, settings.LOG_FILE)

    domains = args.domains or settings.MANAGED_DOMAINS
    if not domains:
        log.error("No managed domains configured. Set MANAGED_DOMAINS in .env or pass --domains.")
        return 1

    app = build_app(settings, domains)

    if args.daemon:
        run_daemon(app)
        return 0

    handlers = {
        "monitor": app.scheduler.monitor,
        "renew": app.scheduler.renew,
        "test": app.scheduler.run_probe,
        "backup": app.scheduler.run_backup,
        "verify": lambda: cmd_verify(app),
        "deploy-hook": lambda: cmd_deploy_hook(app),
    }
    ok = handlers[args.command]()
    log.info("%s finished: %s", args.command, "ok" if ok else "FAILED")
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
