"""Deduplicating notification dispatcher — at most one event per (kind, domain, day)."""
from __future__ import annotations

import json
import logging
import threading
from datetime import date
from pathlib import Path
from typing import Iterable, Optional

from lifecycle.models import NotificationEvent
from notify.channels import Channel
from storage.atomic import atomic_write_text

logger = logging.getLogger(__name__)

DedupKey = tuple[str, str, date]


class NotificationDispatcher:
    """
    Fan NotificationEvents out to every configured channel.

    The sent-today set lives in memory for the life of the process and, when
    `state_path` is given, in a small JSON file so that cron-driven one-shot
    runs share it.  Keys from previous days are dropped on every dispatch.

    A failing channel is logged and skipped; `dispatch` never raises because
    of a channel.
    """

    def __init__(self, channels: Iterable[Channel], state_path: Optional[str | Path] = None) -> None:
        self.channels = list(channels)
        self.state_path = Path(state_path) if state_path else None
        self._lock = threading.Lock()
        self._sent: set[DedupKey] = self._load_state()

    # ── Public API ───────────────────────────────────────────────

    def dispatch(self, event: NotificationEvent) -> bool:
        """Send *event* unless its dedup key was already sent today. Returns True if sent."""
        key = event.dedup_key
        with self._lock:
            self._sent = {k for k in self._sent if k[2] >= key[2]}
            if key in self._sent:
                logger.debug("Suppressed duplicate notification %s for %s", key[0], key[1])
                return False
            self._sent.add(key)
            self._save_state()

        results = self._fan_out(event)
        logger.info(
            "Dispatched %s for %s to %d channel(s): %s",
            event.kind.value,
            event.domain,
            len(results),
            ", ".join(f"{name}={'ok' if ok else 'failed'}" for name, ok in results.items()) or "none",
        )
        return True

    def was_sent(self, key: DedupKey) -> bool:
        with self._lock:
            return key in self._sent

    # ── Internal ─────────────────────────────────────────────────

    def _fan_out(self, event: NotificationEvent) -> dict[str, bool]:
        results: dict[str, bool] = {}
        for channel in self.channels:
            try:
                channel.send(event)
                results[channel.name] = True
            except Exception as exc:
                logger.error("Notification channel %s failed: %s", channel.name, exc)
                results[channel.name] = False
        return results

    def _load_state(self) -> set[DedupKey]:
        if self.state_path is None or not self.state_path.exists():
            return set()
        try:
            raw = json.loads(self.state_path.read_text())
            return {(kind, domain, date.fromisoformat(day)) for kind, domain, day in raw.get("sent", [])}
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Ignoring unreadable notification state %s: %s", self.state_path, exc)
            return set()

    def _save_state(self) -> None:
        if self.state_path is None:
            return
        payload = {"sent": sorted([kind, domain, day.isoformat()] for kind, domain, day in self._sent)}
        try:
            atomic_write_text(self.state_path, json.dumps(payload, indent=2))
        except OSError as exc:
            logger.warning("Could not persist notification state to %s: %s", self.state_path, exc)
