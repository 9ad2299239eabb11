"""Shared fixtures: in-memory stand-ins for the browser and the Twitch catalog."""

from unittest.mock import MagicMock

import pytest

from drop_orchestrator.browser import SurfaceUnavailable
from drop_orchestrator.config import DEFAULT_PREFERENCES
from drop_orchestrator.events import EventEmitter
from drop_orchestrator.history import DropHistory
from drop_orchestrator.models import Benefit, Campaign, CampaignDrop, Streamer
from drop_orchestrator.orchestrator import SessionOrchestrator
from drop_orchestrator.sweeper import DROP_CARD_SELECTOR, REWARDS_BUTTON_SELECTOR, REWARDS_PANEL_SELECTOR


class FakePage:
	def __init__(self, url):
		self.url = url
		self.streamer = url.rstrip('/').rsplit('/', 1)[-1]
		self.panel_open = False

	def __repr__(self):
		return f"FakePage({self.streamer})"


class FakeSurface:
	"""Scriptable automation surface keyed by streamer name."""

	def __init__(self):
		self.open_handles = set()
		self.opened = []
		self.closed = []
		self.fail_open = set()
		self.banners = {}
		self.claimable = {}
		self.click_failures = set()
		self.claim_clicks = []
		self.has_rewards_button = True
		self.panel_opens = True
		self.consume_claims = True
		self.setup_calls = []
		self.new_page_callbacks = []
		self.open_hook = None
		self.login_result = True
		self.auth_token = "token-123"
		self.stopped = False

	@property
	def open_count(self):
		return len(self.open_handles)

	def stream_url(self, streamer_name):
		return f"https://www.twitch.tv/{streamer_name.lower()}"

	def on_new_page(self, callback):
		self.new_page_callbacks.append(callback)

	async def open_session(self, url):
		page = FakePage(url)
		if self.open_hook:
			self.open_hook(page)
		if page.streamer in self.fail_open:
			raise SurfaceUnavailable(f"cannot open {url}")
		self.opened.append(page.streamer)
		self.open_handles.add(page)
		return page

	async def close_session(self, handle):
		self.closed.append(handle)
		self.open_handles.discard(handle)

	async def wait_for(self, handle, selector, timeout):
		if selector == REWARDS_BUTTON_SELECTOR:
			return self.has_rewards_button
		if selector == REWARDS_PANEL_SELECTOR:
			return handle.panel_open
		return False

	async def click(self, handle, selector, timeout):
		if selector == REWARDS_BUTTON_SELECTOR:
			handle.panel_open = self.panel_opens
			return self.panel_opens
		for name in list(self.claimable.get(handle.streamer, [])):
			if f'"{name}"' in selector:
				if name in self.click_failures:
					return False
				self.claim_clicks.append((handle.streamer, name))
				if self.consume_claims:
					self.claimable[handle.streamer].remove(name)
				return True
		return False

	async def read_text(self, handle, selector, timeout=2.0):
		return self.banners.get(handle.streamer)

	async def read_all_texts(self, handle, selector):
		if handle.panel_open and selector.startswith(DROP_CARD_SELECTOR):
			return list(self.claimable.get(handle.streamer, []))
		return []

	async def accept_cookies(self, handle, timeout=2.0):
		self.setup_calls.append(("accept_cookies", handle.streamer))
		return True

	async def dismiss_mature_warning(self, handle, timeout=2.0):
		self.setup_calls.append(("dismiss_mature_warning", handle.streamer))
		return False

	async def ensure_muted(self, handle, timeout=10.0):
		self.setup_calls.append(("ensure_muted", handle.streamer))
		return True

	async def set_lowest_quality(self, handle, timeout=10.0):
		self.setup_calls.append(("set_lowest_quality", handle.streamer))
		raise RuntimeError("quality menu missing")

	async def login(self, username, password, on_two_factor=None, timeout=300, two_factor_timeout=300):
		if on_two_factor:
			on_two_factor()
		return self.login_result

	async def wait_until_logged_in(self, timeout=300):
		return self.login_result

	async def read_auth_token(self):
		return self.auth_token

	async def stop(self):
		self.stopped = True


class FakeCatalog:
	def __init__(self):
		self.campaigns = []
		self.live = {}
		self.rewards_enabled = []
		self.progress = []
		self.all_time = []
		self.set_auth_token = MagicMock()

	async def list_campaigns(self):
		return list(self.campaigns)

	async def list_live_streamers(self, game, limit=20):
		return list(self.live.get(game, []))[:limit]

	async def list_rewards_enabled_streamers(self, limit=10):
		return list(self.rewards_enabled)[:limit]

	async def get_drop_progress(self):
		return list(self.progress)

	async def get_all_time_drops(self, limit=100, max_pages=10):
		return list(self.all_time)


def make_campaign(campaign_id="camp-1", game="Rust", drops=None):
	drops = drops if drops is not None else (
		CampaignDrop(id="drop-1", name="Weapon Skin", required_minutes=60, benefits=(Benefit("ben-1", "Weapon Skin", "https://img/skin.png"),)),
		CampaignDrop(id="drop-2", name="Hoodie", required_minutes=120),
	)
	return Campaign(id=campaign_id, name=f"{game} Drops", game=game, drops=tuple(drops))


@pytest.fixture
def surface():
	return FakeSurface()


@pytest.fixture
def catalog():
	cat = FakeCatalog()
	cat.campaigns = [make_campaign()]
	cat.live = {"Rust": [Streamer("bob_small", viewer_count=10, game="Rust"), Streamer("alice", viewer_count=5000, game="Rust")]}
	return cat


@pytest.fixture
def history(tmp_path):
	store = DropHistory(str(tmp_path / "drops.db"))
	yield store
	store.close()


@pytest.fixture
def prefs():
	p = dict(DEFAULT_PREFERENCES)
	p.update({
		"check_interval": 3600,
		"raid_poll_interval": 3600,
		"action_timeout": 1,
		"session_tick_timeout": 5,
	})
	return p


@pytest.fixture
def emitted():
	return []


@pytest.fixture
def emitter(emitted):
	em = EventEmitter()
	em.on_any(lambda name, payload: emitted.append((name, payload)))
	return em


@pytest.fixture
def orchestrator(surface, catalog, history, emitter, prefs):
	"""Orchestrator whose periodic tasks never run on their own; tests drive ticks."""
	orch = SessionOrchestrator(surface, catalog, history, emitter=emitter, prefs=prefs)
	orch.raid_watcher.start = MagicMock()
	orch.sweeper.start = MagicMock()
	return orch


@pytest.fixture
def events_of(emitted):
	"""Payloads emitted so far for one event name."""
	return lambda event: [payload for name, payload in emitted if name == event]
