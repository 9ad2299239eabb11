import logging
import asyncio
from dataclasses import replace

from . import events
from .models import AppendResult, ClaimableReward, ClaimRecord, SessionRole, utcnow
from .tasks import PeriodicTask

REWARDS_BUTTON_SELECTOR = 'button[aria-label="Drops and Rewards"], button[data-a-target="drops-and-rewards-button"]'
REWARDS_PANEL_SELECTOR = '[data-test-selector="drops-panel"], [data-a-target="drops-and-rewards-panel"]'
DROP_CARD_SELECTOR = '[data-test-selector="drop-card"]'
# Multiple label strategies, most specific first
CLAIM_BUTTON_SELECTORS = [
	'button:has-text("Claim Now")',
	'button:has-text("Claim")',
]
PANEL_CHECK_TIMEOUT = 0.5


def _quote(text: str) -> str:
	return '"' + text.replace('\\', '\\\\').replace('"', '\\"') + '"'


def reward_handle(display_name: str, claim_selector: str = CLAIM_BUTTON_SELECTORS[-1]) -> str:
	"""Selector for the claim button of the drop card titled ``display_name``.

	Keyed by title rather than position: positions shift as soon as one card
	in the panel is claimed.
	"""
	return f'{DROP_CARD_SELECTOR}:has(h6:text-is({_quote(display_name)})) >> {claim_selector}'


def unknown_reward(session, display_name: str) -> ClaimRecord:
	return ClaimRecord(
		reward_id=None,
		campaign_id=session.campaign_id or 'unknown',
		campaign_name='Unknown Campaign',
		game_name='Unknown Game',
		reward_name=display_name,
		streamer_name=session.streamer_name,
	)


class ClaimSweeper(PeriodicTask):
	"""Recurring pass over every active session that claims claimable rewards.

	Claims against one session are mutually exclusive: a session whose
	previous sweep is still running is skipped for this tick rather than
	queued.
	"""

	def __init__(self, registry, surface, history, emitter, settings_provider, describe_reward=unknown_reward, retire_session=None):
		super().__init__("Claim sweeper", lambda: settings_provider().check_interval)
		self._registry = registry
		self._surface = surface
		self._history = history
		self._emitter = emitter
		self._settings = settings_provider
		self._describe_reward = describe_reward
		self._retire_session = retire_session
		self._locks: dict[str, asyncio.Lock] = {}
		# Dedupe keys claimed during this run; the History Store stays authoritative
		self._claimed_keys: set[str] = set()
		# Followers whose first claim landed; retired once their claim pass ends
		self._retiring: set[str] = set()

	def lock_for(self, session_id: str) -> asyncio.Lock:
		"""The lock that guards every use of ``session_id``'s page by a task."""
		return self._locks.setdefault(session_id, asyncio.Lock())

	def is_claiming(self, session_id: str) -> bool:
		lock = self._locks.get(session_id)
		return bool(lock and lock.locked())

	async def drain(self, session_id: str, timeout: float = 30.0) -> bool:
		"""Wait for an in-flight claim pass on ``session_id`` to finish."""
		lock = self._locks.get(session_id)
		if lock is None or not lock.locked():
			return True
		try:
			await asyncio.wait_for(lock.acquire(), timeout=timeout)
		except asyncio.TimeoutError:
			logging.warning(f"Claim pass on session {session_id} still running after {timeout}s")
			return False
		lock.release()
		return True

	def forget(self, session_id: str) -> None:
		self._locks.pop(session_id, None)
		self._retiring.discard(session_id)

	async def tick(self) -> None:
		await self.sweep_once()

	async def sweep_once(self) -> int:
		sessions = self._registry.active()
		if not sessions:
			return 0
		results = await asyncio.gather(*(self._sweep_session_locked(s) for s in sessions), return_exceptions=True)
		claimed = 0
		for session, result in zip(sessions, results):
			if isinstance(result, BaseException):
				logging.warning(f"Sweep of {session.streamer_name} failed: {result}")
			else:
				claimed += result
		if claimed:
			logging.info(f"Sweep claimed {claimed} reward(s) across {len(sessions)} session(s)")
		return claimed

	async def _sweep_session_locked(self, session) -> int:
		lock = self.lock_for(session.id)
		if lock.locked():
			logging.debug(f"Session {session.streamer_name} is busy; skipping this tick")
			return 0
		async with lock:
			timeout = self._settings().session_tick_timeout
			claimed = 0
			try:
				claimed = await asyncio.wait_for(self.sweep_session(session), timeout=timeout)
			except asyncio.TimeoutError:
				logging.warning(f"Sweep of {session.streamer_name} timed out after {timeout}s")
			# Closing is not bounded by the claim budget, so a slow close still completes
			if session.id in self._retiring:
				self._retiring.discard(session.id)
				logging.info(f"Retiring raid follower {session.streamer_name} after its first claim")
				await self._retire_session(session, "claimed")
			return claimed

	async def find_claimable(self, session) -> list[ClaimableReward]:
		timeout = self._settings().action_timeout
		handle = session.handle
		if not await self._surface.wait_for(handle, REWARDS_BUTTON_SELECTOR, timeout):
			logging.debug(f"No rewards affordance on {session.streamer_name}")
			return []
		if not await self._surface.wait_for(handle, REWARDS_PANEL_SELECTOR, PANEL_CHECK_TIMEOUT):
			if not await self._surface.click(handle, REWARDS_BUTTON_SELECTOR, timeout):
				raise RuntimeError("rewards panel did not open")
		for claim_selector in CLAIM_BUTTON_SELECTORS:
			names = await self._surface.read_all_texts(handle, f'{DROP_CARD_SELECTOR}:has({claim_selector}) h6')
			names = [n.strip() for n in names if n and n.strip()]
			if names:
				logging.debug(f"Found {len(names)} claimable card(s) on {session.streamer_name} using selector: {claim_selector}")
				seen = set()
				rewards = []
				for name in names:
					if name.lower() in seen:
						continue
					seen.add(name.lower())
					rewards.append(ClaimableReward(session.id, reward_handle(name, claim_selector), name))
				return rewards
		return []

	async def sweep_session(self, session) -> int:
		if not session.is_active or session.handle is None:
			return 0
		try:
			rewards = await self.find_claimable(session)
		except Exception as e:
			logging.warning(f"Could not inspect rewards on {session.streamer_name}: {e}. Retrying next sweep.")
			return 0

		claimed = 0
		timeout = self._settings().action_timeout
		for reward in rewards:
			if not session.is_active:
				break
			record = self._describe_reward(session, reward.display_name)
			key = record.dedupe_key
			if key in self._claimed_keys:
				logging.debug(f"'{reward.display_name}' already claimed in this run; not clicking again")
				continue
			try:
				ok = await self._surface.click(session.handle, reward.external_reward_handle, timeout)
			except Exception as e:
				logging.debug(f"Claim click raised: {e}")
				ok = False
			if not ok:
				logging.warning(f"Failed to claim '{reward.display_name}' on {session.streamer_name}; will retry next sweep")
				continue

			record = replace(record, claimed_at=utcnow())
			claimed += 1
			if self._record_claim(session, record):
				self._claimed_keys.add(key)

			if session.role == SessionRole.RAID_FOLLOWER and self._settings().close_raid_tab_after_drop and self._retire_session:
				self._retiring.add(session.id)
				break
		return claimed

	def _record_claim(self, session, record: ClaimRecord) -> bool:
		"""Append ``record`` to the history. False when the store could not take it."""
		try:
			result = self._history.append(record)
		except Exception as e:
			logging.error(f"Could not record claim of '{record.reward_name}': {e}")
			return False
		if result == AppendResult.DUPLICATE:
			logging.info(f"'{record.reward_name}' was already in the drop history")
			return True
		logging.info(f"Claimed '{record.reward_name}' while watching {session.streamer_name}")
		if record.reward_id:
			try:
				self._history.clear_progress(record.reward_id)
			except Exception as e:
				logging.debug(f"Could not clear progress row for {record.reward_id}: {e}")
		self._emitter.emit(events.REWARD_CLAIMED, {
			"record": record.to_dict(),
			"session_id": session.id,
			"role": session.role.value,
		})
		return True
