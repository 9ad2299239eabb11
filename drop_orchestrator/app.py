import logging
import argparse
import asyncio
import signal
import sys
import threading

from .browser import BrowserSurface, SurfaceUnavailable
from .catalog import TwitchCatalog
from .config import (
	BASE_DIR,
	CONFIG_PATH,
	DB_PATH,
	DEFAULT_HEADLESS,
	EXIT_EVENT,
	LOG_FILE,
	USER_DATA_DIR,
	WEB_HOST,
	WEB_PORT,
	load_preferences,
)
from .events import EventEmitter
from .history import DropHistory
from .notifications import Notifier, ensure_icon_file
from .orchestrator import SessionOrchestrator
from .tasks import PeriodicTask
from .tray import generate_tray_icon_image, safe_icon_stop, start_system_tray
from .web import create_web_app, open_web_interface, run_on_core, start_web_server

IS_MAC = sys.platform == "darwin"


class ProgressRefresher(PeriodicTask):
	"""Pulls watch-minute progress from the catalog while something is being watched."""

	def __init__(self, orchestrator):
		super().__init__("Progress refresher", lambda: orchestrator.settings.check_interval)
		self.orchestrator = orchestrator

	async def tick(self):
		if self.orchestrator.registry.primary() is not None:
			await self.orchestrator.refresh_progress()


def parse_arguments(argv=None):
	"""Parse command-line arguments"""
	parser = argparse.ArgumentParser(description='Twitch Drop Orchestrator with Web Interface')
	parser.add_argument('--no-tray', action='store_true',
						help='Disable system tray icon')
	parser.add_argument('--no-web', action='store_true',
						help='Disable web interface')
	parser.add_argument('--campaign', metavar='ID', default=None,
						help='Watch this campaign instead of the selected ones')
	parser.add_argument('--debug', action='store_true',
						help='Verbose logging')
	parser.add_argument('--headful', action='store_true',
						help='Show the browser window for this run')
	return parser.parse_args(argv)


def setup_logging(debug: bool = False):
	logging.basicConfig(
		level=logging.DEBUG if debug else logging.INFO,
		format='%(asctime)s - %(levelname)s - %(message)s',
		handlers=[
			logging.FileHandler(LOG_FILE, encoding='utf-8'),
			logging.StreamHandler()
		])
	# Werkzeug request lines drown out the orchestrator's own logs
	logging.getLogger('werkzeug').setLevel(logging.WARNING)
	logging.info(f"Using base dir: {BASE_DIR}")
	logging.info(f"Config path: {CONFIG_PATH}")
	logging.info(f"Log file: {LOG_FILE}")
	logging.info(f"User data dir: {USER_DATA_DIR}")


def _install_signal_handlers():
	def _handler(signum, frame):
		EXIT_EVENT.set()
	for sig_name in ("SIGINT", "SIGTERM", "SIGBREAK"):
		sig = getattr(signal, sig_name, None)
		if sig is not None:
			try:
				signal.signal(sig, _handler)
			except ValueError:
				# Not on the main thread
				pass


async def wait_for_exit(poll: float = 0.5):
	while not EXIT_EVENT.is_set():
		await asyncio.sleep(poll)


async def main(prefs: dict, campaign_id: str | None = None, enable_web: bool = True, start_tray: bool = True) -> int:
	logging.info("--- Starting Twitch Drop Orchestrator ---")
	loop = asyncio.get_running_loop()

	surface = BrowserSurface(headless=bool(prefs.get('headless', DEFAULT_HEADLESS)))
	catalog = TwitchCatalog(auth_token=prefs.get('auth_token') or None)
	history = DropHistory(DB_PATH)
	emitter = EventEmitter()
	orchestrator = SessionOrchestrator(surface, catalog, history, emitter=emitter, prefs=prefs)

	notifier = Notifier(enabled=bool(prefs.get('notifications', True)), icon_path=ensure_icon_file(generate_tray_icon_image()))
	notifier.attach(emitter)

	if enable_web:
		try:
			app, socketio = create_web_app(orchestrator, loop, prefs=prefs, config_path=CONFIG_PATH)
			start_web_server(app, socketio, WEB_HOST, WEB_PORT)
		except Exception as e:
			logging.error(f"Failed to start web server: {e}")

	tray_icon = None
	if start_tray:
		tray_icon = start_system_tray(
			on_open=lambda: open_web_interface(WEB_HOST, WEB_PORT),
			on_stop_watching=lambda: run_on_core(loop, orchestrator.stop_watching()),
			notifier=notifier,
		)
		if tray_icon is None:
			logging.warning("System tray failed to start, continuing without tray icon")

	refresher = ProgressRefresher(orchestrator)
	try:
		try:
			await surface.start()
		except SurfaceUnavailable as e:
			logging.error(str(e))
			return 1

		login = await orchestrator.login()
		if not login.success:
			logging.error(f"Login failed: {login.error}")
			return 1

		await orchestrator.load_campaigns()
		await orchestrator.sync_all_time_drops()
		result = await orchestrator.start_watching(campaign_id)
		if not result.success:
			logging.warning(f"Could not start watching: {result.error}. Use the web interface to retry.")
		refresher.start()
		await wait_for_exit()
	except asyncio.CancelledError:
		logging.info("Startup cancelled.")
	finally:
		await refresher.stop()
		await orchestrator.shutdown()
		history.close()
		safe_icon_stop(tray_icon)
		logging.info("--- Orchestrator finished ---")
	return 0


def run(argv=None) -> int:
	args = parse_arguments(argv)
	prefs = load_preferences(CONFIG_PATH)
	setup_logging(debug=args.debug or bool(prefs.get('debug_mode', False)))
	if args.headful:
		prefs['headless'] = False
	enable_web = not args.no_web and bool(prefs.get('enable_web_interface', True))
	start_tray = not args.no_tray and bool(prefs.get('show_tray', True))
	_install_signal_handlers()

	if IS_MAC and start_tray:
		# Cocoa needs the tray loop on the main thread; the core runs beside it
		exit_code = [0]

		def _core():
			exit_code[0] = asyncio.run(main(prefs, args.campaign, enable_web, start_tray=False))
			EXIT_EVENT.set()

		thread = threading.Thread(target=_core, daemon=True)
		thread.start()
		start_system_tray(on_open=lambda: open_web_interface(WEB_HOST, WEB_PORT), block=True)
		EXIT_EVENT.set()
		thread.join(timeout=30.0)
		return exit_code[0]

	try:
		return asyncio.run(main(prefs, args.campaign, enable_web, start_tray))
	except KeyboardInterrupt:
		return 0
