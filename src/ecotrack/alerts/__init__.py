"""Alert dispatch: debounce bookkeeping, banners and best-effort channels."""

from ecotrack.alerts.channels import AudioCue, DesktopNotifier, Notifier, TerminalBell
from ecotrack.alerts.context import AlertContext, MutePreference
from ecotrack.alerts.dispatcher import AlertDispatcher

__all__ = [
    "AlertContext",
    "AlertDispatcher",
    "AudioCue",
    "DesktopNotifier",
    "MutePreference",
    "Notifier",
    "TerminalBell",
]
