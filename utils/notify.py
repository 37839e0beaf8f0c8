"""Desktop notifications through notify-send."""

import logging
import shutil
import subprocess

_module_logger = logging.getLogger(__name__)

APP_NAME = "Screencaster"


class Notifier:
    """Sends desktop notifications when notify-send is available."""

    def __init__(self, enabled: bool = True, command: str = "notify-send"):
        self.command = command
        self.enabled = enabled and shutil.which(command) is not None

    def send(self, title: str, message: str = "", urgency: str = "normal") -> bool:
        """Show a notification; returns False when it could not be shown."""
        if not self.enabled:
            return False
        cmd = [self.command, "--app-name", APP_NAME, "--urgency", urgency, title]
        if message:
            cmd.append(message)
        try:
            result = subprocess.run(cmd, capture_output=True, timeout=5)
        except (OSError, subprocess.TimeoutExpired) as e:
            _module_logger.debug(f"Notification failed: {e}")
            return False
        return result.returncode == 0

    def error(self, title: str, message: str = "") -> bool:
        return self.send(title, message, urgency="critical")
