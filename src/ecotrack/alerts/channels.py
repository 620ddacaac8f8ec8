"""Non-visual alert channels: OS notifications and the audible cue."""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
from typing import Protocol, TextIO

from ecotrack.models.alert import AlertEvent, AlertKind, NotificationPermission

_logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Structural interface for OS notification channels."""

    @property
    def permission(self) -> NotificationPermission: ...

    async def request_permission(self) -> NotificationPermission: ...

    async def notify(self, event: AlertEvent) -> None: ...


class AudioCue(Protocol):
    def play(self) -> None: ...


class TerminalBell:
    """Audible cue written as a BEL character to a terminal stream."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream

    def play(self) -> None:
        stream = self._stream or sys.stderr
        stream.write("\a")
        stream.flush()


class DesktopNotifier:
    """Desktop notifications through the freedesktop ``notify-send`` tool.

    Permission is ``unsupported`` when the tool is missing, ``default`` until
    requested, then ``granted``.
    """

    def __init__(self, *, app_name: str = "EcoTrack", command: str = "notify-send") -> None:
        self._app_name = app_name
        self._binary = shutil.which(command)
        self._permission = (
            NotificationPermission.DEFAULT if self._binary is not None else NotificationPermission.UNSUPPORTED
        )

    @property
    def permission(self) -> NotificationPermission:
        return self._permission

    async def request_permission(self) -> NotificationPermission:
        if self._permission == NotificationPermission.DEFAULT:
            self._permission = NotificationPermission.GRANTED
        return self._permission

    async def notify(self, event: AlertEvent) -> None:
        if self._binary is None or self._permission != NotificationPermission.GRANTED:
            return
        urgency = "critical" if event.kind == AlertKind.FLOOD else "normal"
        proc = await asyncio.create_subprocess_exec(
            self._binary,
            "--app-name",
            self._app_name,
            "--urgency",
            urgency,
            self._app_name,
            event.message,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise OSError(f"notify-send exited with {proc.returncode}: {stderr.decode(errors='replace')[:200]}")
