"""
Service controller capability — restarts the service that serves the
certificate so it picks up the new material.

Auto-detection follows the order the deployment scripts used:
  1. pm2, when the pm2 ecosystem file exists
  2. systemd, when the unit is active
  3. otherwise fail, so an operator is told a manual restart is needed
"""
from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional, Protocol, Sequence

logger = logging.getLogger(__name__)


class ServiceControlError(Exception):
    """Raised when the service could not be restarted."""


class ServiceController(Protocol):
    def restart(self) -> None:
        ...


def _run(cmd: Sequence[str], timeout: float) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(list(cmd), capture_output=True, text=True, timeout=timeout, check=True)
    except FileNotFoundError as exc:
        raise ServiceControlError(f"{cmd[0]} not found") from exc
    except OSError as exc:
        raise ServiceControlError(f"cannot run {cmd[0]}: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise ServiceControlError(f"{' '.join(cmd)} timed out after {timeout:.0f}s") from exc
    except subprocess.CalledProcessError as exc:
        detail = (exc.stderr or exc.stdout or "").strip()
        raise ServiceControlError(
            f"{' '.join(cmd)} exited {exc.returncode}" + (f": {detail}" if detail else "")
        ) from exc


class CommandController:
    """Restart by running an arbitrary argv."""

    def __init__(self, argv: Sequence[str], timeout: float = 60) -> None:
        if not argv:
            raise ValueError("restart command must not be empty")
        self.argv = list(argv)
        self.timeout = timeout

    def restart(self) -> None:
        _run(self.argv, self.timeout)
        logger.info("Service restarted with: %s", " ".join(self.argv))


class Pm2Controller(CommandController):
    def __init__(self, process_name: str, timeout: float = 60) -> None:
        super().__init__(["pm2", "restart", process_name], timeout)


class SystemdController(CommandController):
    def __init__(self, unit: str, timeout: float = 60) -> None:
        super().__init__(["systemctl", "restart", unit], timeout)
        self.unit = unit

    def is_active(self) -> bool:
        try:
            result = subprocess.run(
                ["systemctl", "is-active", "--quiet", self.unit],
                capture_output=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0


class NullController:
    """SERVICE_MANAGER=none — the service reloads certificates by itself."""

    def restart(self) -> None:
        logger.info("Service restart disabled; relying on the service to reload certificates")


class AutoDetectController:
    def __init__(
        self,
        pm2: Pm2Controller,
        systemd: SystemdController,
        pm2_config: Optional[Path] = None,
    ) -> None:
        self.pm2 = pm2
        self.systemd = systemd
        self.pm2_config = pm2_config

    def restart(self) -> None:
        if self.pm2_config is not None and self.pm2_config.exists():
            self.pm2.restart()
        elif self.systemd.is_active():
            self.systemd.restart()
        else:
            raise ServiceControlError("no running pm2 process or active systemd unit; restart manually")


def build_controller(
    manager: str,
    *,
    pm2_process: str = "pool-server",
    pm2_config: Optional[str] = None,
    systemd_unit: str = "worldland-pool",
    command: Sequence[str] = (),
    timeout: float = 60,
) -> ServiceController:
    if manager == "pm2":
        return Pm2Controller(pm2_process, timeout)
    if manager == "systemd":
        return SystemdController(systemd_unit, timeout)
    if manager == "command":
        return CommandController(command, timeout)
    if manager == "none":
        return NullController()
    if manager == "auto":
        return AutoDetectController(
            Pm2Controller(pm2_process, timeout),
            SystemdController(systemd_unit, timeout),
            Path(pm2_config) if pm2_config else None,
        )
    raise ValueError(f"unknown service manager: {manager!r}")
