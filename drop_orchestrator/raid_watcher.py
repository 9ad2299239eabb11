import logging
import asyncio
import re

from .models import RaidEvent
from .tasks import PeriodicTask

# Multiple selector strategies for robustness
RAID_BANNER_SELECTORS = [
	'[data-test-selector="raid-banner"]',
	'[data-a-target="raid-banner"]',
	'[data-test-selector="raid-notification"]',
]

_RAID_TARGET_RE = re.compile(r'(?:raiding|joining|now\s+hosting|hosting)\s+@?([A-Za-z0-9_]{2,25})\b', re.I)
_NOT_A_NAME = {'now', 'the', 'in', 'soon', 'with', 'for', 'to', 'a', 'an'}


def parse_raid_target(text: str | None) -> str | None:
	"""Extract the destination login from raid banner text.

	Returns None when no name is found or when the text names more than one
	distinct candidate.
	"""
	if not text:
		return None
	candidates = []
	for m in _RAID_TARGET_RE.finditer(text):
		name = m.group(1).lower()
		if name in _NOT_A_NAME or name in candidates:
			continue
		candidates.append(name)
	if len(candidates) != 1:
		return None
	return candidates[0]


class RaidWatcher(PeriodicTask):
	"""Polls the current primary session's page for a raid-redirect banner.

	Each tick targets whatever session ``target_provider`` returns, so a
	switch of the primary session re-points the watcher without a restart.
	Follower sessions are never watched.

	``lock_provider`` maps a session id to that session's claim lock. The
	banner is only read while holding it, and a tick that finds it held
	reports no raid.
	"""

	def __init__(self, surface, target_provider, on_raid=None, interval_provider=lambda: 5.0, timeout_provider=lambda: 2.0, lock_provider=None):
		super().__init__("Raid watcher", interval_provider)
		self._surface = surface
		self._target_provider = target_provider
		self._on_raid = on_raid
		self._timeout_provider = timeout_provider
		self._lock_provider = lock_provider
		# (session id, destination) last emitted; cleared when the banner disappears
		self._last_seen: tuple[str, str] | None = None

	async def _read_banner(self, handle) -> str | None:
		for selector in RAID_BANNER_SELECTORS:
			try:
				text = await self._surface.read_text(handle, selector, timeout=self._timeout_provider())
			except Exception as e:
				logging.debug(f"Raid banner read failed ({selector}): {e}")
				text = None
			if text and text.strip():
				return text.strip()
		return None

	async def check_once(self) -> RaidEvent | None:
		session = self._target_provider()
		if session is None or not session.is_active or session.handle is None:
			self._last_seen = None
			return None
		if self._last_seen and self._last_seen[0] != session.id:
			self._last_seen = None

		lock = self._lock_provider(session.id) if self._lock_provider else None
		if lock is None:
			text = await self._read_banner(session.handle)
		elif lock.locked():
			logging.debug(f"Claim pass running on {session.streamer_name}; skipping raid check")
			return None
		else:
			async with lock:
				if not session.is_active or session.handle is None:
					return None
				text = await self._read_banner(session.handle)
		if not text:
			self._last_seen = None
			return None
		target = parse_raid_target(text)
		if not target:
			logging.debug(f"Raid banner on {session.streamer_name} not understood: {text!r}")
			return None
		if target == session.streamer_name.lower():
			return None
		key = (session.id, target)
		if key == self._last_seen:
			return None
		self._last_seen = key
		logging.info(f"Raid banner seen: {session.streamer_name} -> {target}")
		return RaidEvent(from_streamer=session.streamer_name, to_streamer=target, source_session_id=session.id)

	async def tick(self) -> None:
		event = await self.check_once()
		if event is not None and self._on_raid is not None:
			await self._on_raid(event)

	async def events(self):
		"""Lazily yield raid events forever (until stop() is requested)."""
		while not self.stopping:
			event = await self.check_once()
			if event is not None:
				yield event
			await asyncio.sleep(self.interval())
