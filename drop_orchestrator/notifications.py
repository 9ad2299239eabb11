import logging
import os
import subprocess
import sys
import threading

from . import events
from .config import BASE_DIR

IS_WINDOWS = sys.platform.startswith("win")
IS_MAC = sys.platform == "darwin"

# Optional notifier (single implementation: win10toast)
try:
	from win10toast import ToastNotifier  # type: ignore
except Exception:
	ToastNotifier = None

APP_TITLE = "Twitch Drops"


def ensure_icon_file(image, base_dir: str = BASE_DIR) -> str | None:
	if image is None:
		return None
	path = os.path.join(base_dir, 'tray.ico')
	try:
		# Save ICO once if not present
		if not os.path.exists(path):
			image.copy().resize((64, 64)).save(path, format='ICO')
		return path
	except Exception as e:
		logging.debug(f"Could not create tray icon file: {e}")
		return None


def _escape_applescript(s: str) -> str:
	return (s or "").replace("\\", "\\\\").replace("\"", "\\\"")


class Notifier:
	"""Desktop toasts: win10toast on Windows, osascript on macOS, nothing elsewhere."""

	def __init__(self, enabled: bool = True, icon_path: str | None = None):
		self.enabled = enabled
		self.icon_path = icon_path

	def send(self, title: str, message: str) -> bool:
		if not self.enabled:
			return False
		try:
			if IS_WINDOWS and ToastNotifier:
				toaster = ToastNotifier()
				icon_path = self.icon_path if self.icon_path and os.path.exists(self.icon_path) else None
				if icon_path:
					toaster.show_toast(title, message, icon_path=icon_path, duration=3, threaded=False)
				else:
					toaster.show_toast(title, message, duration=3, threaded=False)
				logging.debug("Notification sent via win10toast")
				return True
			if IS_MAC:
				script = f'display notification "{_escape_applescript(message)}" with title "{_escape_applescript(title)}"'
				subprocess.run(["osascript", "-e", script], check=False)
				logging.debug("Notification sent via osascript")
				return True
			logging.debug("No compatible notifier available on this platform; skipping notification.")
		except Exception as e:
			logging.warning(f"Notification failed: {e}")
		return False

	def send_async(self, title: str, message: str) -> None:
		# Toasts block; never run them on the event loop thread
		threading.Thread(target=self.send, args=(title, message), daemon=True).start()

	def attach(self, emitter) -> None:
		"""Toast on the events a user cares about."""
		emitter.on(events.WATCHING_STARTED, lambda p: self.send_async(
			APP_TITLE, f"Watching {p.get('streamer')} for {p.get('campaign_name') or 'drops'}"))
		emitter.on(events.REWARD_CLAIMED, lambda p: self.send_async(
			APP_TITLE, f"Claimed {(p.get('record') or {}).get('reward_name', 'a drop')}"))
		emitter.on(events.RAID_DETECTED, lambda p: self.send_async(
			APP_TITLE, f"{p.get('from')} is raiding {p.get('to')}"))
		emitter.on(events.TWO_FACTOR_REQUIRED, lambda p: self.send_async(
			APP_TITLE, "Enter your two-factor code in the browser window"))
