import logging
import os
import json
import threading
from dataclasses import dataclass, field

# --- Configuration ---
# Resolve base directory for consistent file paths regardless of CWD
BASE_DIR = os.environ.get("DROPS_BASE_DIR") or os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
LOG_FILE = os.path.join(BASE_DIR, 'drops_log.txt')
USER_DATA_DIR = os.path.join(BASE_DIR, 'user_data_stealth')
DB_PATH = os.path.join(BASE_DIR, 'drops.db')
CONFIG_PATH = os.path.join(BASE_DIR, 'config.json')

TWITCH_BASE_URL = 'https://www.twitch.tv'
TWITCH_LOGIN_URL = 'https://www.twitch.tv/login'
TWITCH_INVENTORY_URL = 'https://www.twitch.tv/drops/inventory'
TWITCH_GQL_URL = 'https://gql.twitch.tv/gql'
TWITCH_CLIENT_ID = 'kimne78kx3ncx6brgo4mv6wki5h1ko'  # public web client id

DEFAULT_HEADLESS = True  # Default when no config exists
BROWSER_CHANNEL = "chrome"  # Alternatives: "msedge"
FORCE_USER_AGENT: str | None = None
STEALTH_PROFILE = "minimal"  # Options: "full", "minimal", "off"

# Web interface configuration
WEB_PORT = 5000
WEB_HOST = '127.0.0.1'

CONFIG_LOCK = threading.RLock()
EXIT_EVENT = threading.Event()

DEFAULT_PREFERENCES = {
	"headless": DEFAULT_HEADLESS,
	"debug_mode": False,
	"enable_web_interface": True,
	"show_tray": True,
	"notifications": True,
	"twitch_username": "",
	"twitch_password": "",
	"auth_token": "",
	"auto_claim_drops": True,
	"follow_raids": True,
	"close_raid_tab_after_drop": True,
	"selected_campaigns": [],
	"check_interval": 60,
	"raid_poll_interval": 5,
	"action_timeout": 10,
	"session_tick_timeout": 90,
	"max_raid_followers": 3,
	"streamer_listing_limit": 20,
	"login_timeout": 300,
	"two_factor_timeout": 300,
}

# Keys the web settings endpoint accepts, with the type each value is coerced to
EDITABLE_PREFERENCES = {
	"headless": bool,
	"debug_mode": bool,
	"enable_web_interface": bool,
	"show_tray": bool,
	"notifications": bool,
	"auto_claim_drops": bool,
	"follow_raids": bool,
	"close_raid_tab_after_drop": bool,
	"selected_campaigns": list,
	"check_interval": float,
	"raid_poll_interval": float,
	"action_timeout": float,
	"session_tick_timeout": float,
	"max_raid_followers": int,
	"streamer_listing_limit": int,
}


def load_preferences(path: str = CONFIG_PATH) -> dict:
	prefs = json.loads(json.dumps(DEFAULT_PREFERENCES))
	try:
		if os.path.exists(path):
			with open(path, 'r', encoding='utf-8') as f:
				data = json.load(f)
				if isinstance(data, dict):
					prefs.update(data)
	except Exception as e:
		logging.debug(f"Could not load preferences: {e}")
	return prefs


def save_preferences(prefs: dict, path: str = CONFIG_PATH) -> bool:
	try:
		with CONFIG_LOCK:
			tmp_path = path + '.tmp'
			with open(tmp_path, 'w', encoding='utf-8') as f:
				json.dump(prefs, f, indent=2)
			os.replace(tmp_path, path)
		return True
	except Exception as e:
		logging.warning(f"Could not save preferences: {e}")
		return False


def apply_preference_updates(prefs: dict, updates: dict) -> list[str]:
	"""Copy recognised keys from ``updates`` into ``prefs``. Returns the keys changed."""
	changed = []
	with CONFIG_LOCK:
		for key, kind in EDITABLE_PREFERENCES.items():
			if key not in updates:
				continue
			value = updates[key]
			if kind is list:
				value = [str(v) for v in (value or [])]
			else:
				value = kind(value)
			if prefs.get(key) != value:
				prefs[key] = value
				changed.append(key)
	return changed


@dataclass(frozen=True)
class Settings:
	"""Snapshot of the preferences the orchestrator and its tasks read each tick."""
	auto_claim_drops: bool = True
	follow_raids: bool = True
	close_raid_tab_after_drop: bool = True
	selected_campaigns: tuple[str, ...] = field(default_factory=tuple)
	check_interval: float = 60.0
	raid_poll_interval: float = 5.0
	action_timeout: float = 10.0
	session_tick_timeout: float = 90.0
	max_raid_followers: int = 3
	streamer_listing_limit: int = 20
	login_timeout: float = 300.0
	two_factor_timeout: float = 300.0

	@classmethod
	def from_prefs(cls, prefs: dict | None) -> "Settings":
		prefs = prefs or {}

		def _num(key, kind):
			try:
				value = kind(prefs.get(key, DEFAULT_PREFERENCES[key]))
			except (TypeError, ValueError):
				value = kind(DEFAULT_PREFERENCES[key])
			return value if value > 0 else kind(DEFAULT_PREFERENCES[key])

		return cls(
			auto_claim_drops=bool(prefs.get("auto_claim_drops", True)),
			follow_raids=bool(prefs.get("follow_raids", True)),
			close_raid_tab_after_drop=bool(prefs.get("close_raid_tab_after_drop", True)),
			selected_campaigns=tuple(str(c) for c in (prefs.get("selected_campaigns") or [])),
			check_interval=_num("check_interval", float),
			raid_poll_interval=_num("raid_poll_interval", float),
			action_timeout=_num("action_timeout", float),
			session_tick_timeout=_num("session_tick_timeout", float),
			max_raid_followers=_num("max_raid_followers", int),
			streamer_listing_limit=_num("streamer_listing_limit", int),
			login_timeout=_num("login_timeout", float),
			two_factor_timeout=_num("two_factor_timeout", float),
		)
