import logging
import atexit
import os
import threading

from .config import EXIT_EVENT

try:
	import pystray
	from PIL import Image, ImageDraw
except Exception:
	pystray = None


def generate_tray_icon_image():
	if pystray is None:
		return None
	img = Image.new("RGBA", (64, 64), (40, 44, 52, 255))
	d = ImageDraw.Draw(img)
	d.ellipse((6, 6, 58, 58), fill=(113, 89, 193, 255))
	d.rectangle((28, 18, 36, 46), fill=(255, 255, 255, 255))
	d.rectangle((22, 18, 42, 26), fill=(255, 255, 255, 255))
	return img


def safe_icon_stop(icon):
	"""Safely stop the tray icon with error handling."""
	try:
		if icon:
			icon.stop()
	except Exception as e:
		logging.debug(f"Error stopping tray icon: {e}")


def start_system_tray(on_open=None, on_stop_watching=None, notifier=None, block: bool = False):
	"""Show the tray icon. Returns the icon, or None when the tray is unavailable."""
	if pystray is None:
		logging.info("pystray/Pillow not available; tray icon disabled.")
		return None

	def on_open_clicked(icon, item):
		if on_open:
			on_open()

	def on_stop_clicked(icon, item):
		if on_stop_watching:
			threading.Thread(target=on_stop_watching, daemon=True).start()

	def on_quit(icon, item):
		if notifier:
			notifier.send_async("Twitch Drops", "Exiting…")
		EXIT_EVENT.set()
		# Stop icon from a different thread to avoid potential deadlock
		threading.Thread(target=icon.stop, daemon=True).start()
		# Fallback: force terminate if graceful exit hangs
		threading.Timer(10.0, lambda: os._exit(0)).start()

	menu = pystray.Menu(
		pystray.MenuItem("Open Web Interface", on_open_clicked),
		pystray.MenuItem("Stop Watching", on_stop_clicked),
		pystray.MenuItem("Quit", on_quit),
	)
	icon = pystray.Icon("TwitchDropOrchestrator", generate_tray_icon_image(), "Twitch Drop Orchestrator", menu=menu)
	try:
		atexit.register(lambda: safe_icon_stop(icon))
		if block:
			# On macOS, Cocoa requires the app loop on the main thread
			icon.run()
		else:
			icon.run_detached()
		return icon
	except Exception as e:
		logging.error(f"Failed to start system tray: {e}")
		return None
