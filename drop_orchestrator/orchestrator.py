import logging
import asyncio
from dataclasses import asdict

from . import events
from .config import DEFAULT_PREFERENCES, Settings, apply_preference_updates
from .events import EventEmitter
from .models import (
	AppendResult,
	Campaign,
	ClaimRecord,
	OperationResult,
	RaidEvent,
	SessionRole,
	SessionStatus,
	WatchSession,
)
from .raid_watcher import RaidWatcher
from .registry import SessionRegistry
from .sweeper import ClaimSweeper, unknown_reward


class SessionOrchestrator:
	"""Owns the session registry and the two recurring tasks.

	Exposes the control operations used by the host (web routes, tray, CLI):
	start/stop watching, switching the primary streamer, login and the
	catalog-backed helpers. Every structural change to the registry happens
	under ``_registry_lock``; control operations are additionally serialized
	by ``_control_lock`` so a start can never race a stop.
	"""

	def __init__(self, surface, catalog, history, emitter: EventEmitter | None = None, prefs: dict | None = None):
		self.surface = surface
		self.catalog = catalog
		self.history = history
		self.emitter = emitter or EventEmitter()
		self.prefs = prefs if prefs is not None else dict(DEFAULT_PREFERENCES)
		self.settings = Settings.from_prefs(self.prefs)
		self.registry = SessionRegistry()
		self.campaigns: list[Campaign] = []
		self.current_campaign: Campaign | None = None
		self._registry_lock = asyncio.Lock()
		self._control_lock = asyncio.Lock()
		self.raid_watcher = RaidWatcher(
			surface,
			self.registry.primary,
			on_raid=self._on_raid,
			interval_provider=lambda: self.settings.raid_poll_interval,
			timeout_provider=lambda: min(2.0, self.settings.action_timeout),
			lock_provider=lambda session_id: self.sweeper.lock_for(session_id),
		)
		self.sweeper = ClaimSweeper(
			self.registry,
			surface,
			history,
			self.emitter,
			lambda: self.settings,
			describe_reward=self._describe_reward,
			retire_session=self._retire_follower,
		)
		on_new_page = getattr(surface, 'on_new_page', None)
		if callable(on_new_page):
			on_new_page(self._on_new_page)

	# --- Login and catalog ---

	async def login(self, username: str | None = None, password: str | None = None) -> OperationResult:
		username = username if username is not None else self.prefs.get('twitch_username') or ''
		password = password if password is not None else self.prefs.get('twitch_password') or ''
		if username and password:
			logging.info(f"Logging in as {username}")
			ok = await self.surface.login(
				username,
				password,
				on_two_factor=self._on_two_factor,
				timeout=self.settings.login_timeout,
				two_factor_timeout=self.settings.two_factor_timeout,
			)
		else:
			logging.info("No stored credentials; waiting for a manual login in the browser")
			ok = await self.surface.wait_until_logged_in(timeout=self.settings.login_timeout)
		if not ok:
			return OperationResult.failed("login failed or timed out")
		token = self.prefs.get('auth_token') or await self.surface.read_auth_token()
		if token:
			self.catalog.set_auth_token(token)
		return OperationResult(success=True)

	def _on_two_factor(self) -> None:
		logging.info("Two-factor code requested; waiting for the user to enter it")
		self.emitter.emit(events.TWO_FACTOR_REQUIRED, {"timeout": self.settings.two_factor_timeout})

	async def load_campaigns(self) -> list[Campaign]:
		campaigns = await self.catalog.list_campaigns()
		self.campaigns = [c for c in campaigns if c.active]
		self.emitter.emit(events.CAMPAIGNS_LOADED, {"campaigns": [c.to_dict() for c in self.campaigns]})
		return self.campaigns

	def find_campaign(self, campaign_id: str) -> Campaign | None:
		for c in self.campaigns:
			if c.id == campaign_id:
				return c
		return None

	async def _candidate_campaigns(self, campaign_id: str | None) -> list[Campaign]:
		if not self.campaigns:
			await self.load_campaigns()
		if campaign_id:
			campaign = self.find_campaign(campaign_id)
			return [campaign] if campaign else []
		selected = set(self.settings.selected_campaigns)
		if selected:
			return [c for c in self.campaigns if c.id in selected]
		return list(self.campaigns)

	async def resolve_target(self, campaign: Campaign | None) -> str | None:
		"""Pick a streamer for ``campaign``.

		The game's highest-viewer live stream wins; when the game listing is
		empty the first entry of the rewards-enabled listing is used.
		"""
		if campaign is not None:
			name = await self._top_streamer_for_game(campaign.game)
			if name:
				return name
		return await self._first_rewards_enabled_streamer()

	async def _top_streamer_for_game(self, game: str) -> str | None:
		streamers = await self.catalog.list_live_streamers(game, self.settings.streamer_listing_limit)
		if not streamers:
			logging.info(f"No live streams reported for {game}")
			return None
		best = max(streamers, key=lambda s: s.viewer_count)
		logging.info(f"Best stream for {game}: {best.username} ({best.viewer_count} viewers)")
		return best.username

	async def _first_rewards_enabled_streamer(self) -> str | None:
		streamers = await self.catalog.list_rewards_enabled_streamers(self.settings.streamer_listing_limit)
		if not streamers:
			return None
		logging.info(f"Falling back to rewards-enabled stream: {streamers[0].username}")
		return streamers[0].username

	# --- Control surface ---

	async def start_watching(self, campaign_id: str | None = None) -> OperationResult:
		async with self._control_lock:
			current = self.registry.primary()
			if current is not None:
				logging.info(f"Already watching {current.streamer_name}; start request ignored")
				return OperationResult(success=True, session=current, already_running=True)

			campaigns = await self._candidate_campaigns(campaign_id)
			if not campaigns:
				logging.warning("No campaigns selected")
				return OperationResult.failed(f"unknown campaign {campaign_id}" if campaign_id else "no campaigns selected")

			campaign, streamer = None, None
			for c in campaigns:
				streamer = await self._top_streamer_for_game(c.game)
				if streamer:
					campaign = c
					break
			if streamer is None:
				campaign = campaigns[0]
				streamer = await self._first_rewards_enabled_streamer()
			if streamer is None:
				logging.warning("No suitable stream found for the selected campaigns")
				return OperationResult.failed("no suitable target")

			result = await self._open_session(streamer, SessionRole.PRIMARY, campaign_id=campaign.id)
			if not result.success:
				return result

			self.current_campaign = campaign
			self._start_progress(campaign, streamer)
			self._start_tasks()
			logging.info(f"Started watching {streamer} for '{campaign.name}' ({campaign.game})")
			self.emitter.emit(events.WATCHING_STARTED, {
				"streamer": streamer,
				"campaign_id": campaign.id,
				"campaign_name": campaign.name,
				"game": campaign.game,
				"session": result.session.to_dict(),
			})
			return result

	async def stop_watching(self) -> OperationResult:
		async with self._control_lock:
			drain = self.settings.session_tick_timeout
			await self.raid_watcher.stop(drain_timeout=drain)
			await self.sweeper.stop(drain_timeout=drain)

			# Followers first, the primary last
			sessions = sorted(self.registry.list(), key=lambda s: s.is_primary)
			for session in sessions:
				await self._close_session(session, "stopped")
			async with self._registry_lock:
				leftovers = self.registry.clear()
			for session in leftovers:
				await self._release_handle(session)

			self.current_campaign = None
			if sessions:
				logging.info(f"Stopped watching; closed {len(sessions)} session(s)")
			self.emitter.emit(events.WATCHING_STOPPED, {"closed": len(sessions)})
			return OperationResult(success=True)

	async def switch_to(self, streamer_name: str) -> OperationResult:
		name = (streamer_name or '').strip().lower()
		if not name:
			return OperationResult.failed("streamer name is required")
		async with self._control_lock:
			current = self.registry.primary()
			if current is not None and current.streamer_name.lower() == name:
				return OperationResult(success=True, session=current, already_running=True)
			campaign_id = current.campaign_id if current else (self.current_campaign.id if self.current_campaign else None)
			if current is not None:
				await self._close_session(current, "switched")
			result = await self._open_session(name, SessionRole.PRIMARY, campaign_id=campaign_id)
			if result.success:
				logging.info(f"Switched primary session to {name}")
				self._start_tasks()
			return result

	def get_active_sessions(self) -> list[WatchSession]:
		return [s for s in self.registry.list() if s.status in (SessionStatus.OPENING, SessionStatus.ACTIVE)]

	def status(self) -> dict:
		primary = self.registry.primary()
		return {
			"watching": primary is not None,
			"primary": primary.to_dict() if primary else None,
			"sessions": [s.to_dict() for s in self.get_active_sessions()],
			"campaign": self.current_campaign.to_dict() if self.current_campaign else None,
			"raid_watcher_running": self.raid_watcher.running,
			"sweeper_running": self.sweeper.running,
		}

	async def update_config(self, updates: dict) -> list[str]:
		changed = apply_preference_updates(self.prefs, updates or {})
		if not changed:
			return changed
		self.settings = Settings.from_prefs(self.prefs)
		logging.info(f"Settings updated: {', '.join(changed)}")
		if 'auto_claim_drops' in changed and self.registry.primary() is not None:
			if self.settings.auto_claim_drops:
				self.sweeper.start()
			else:
				await self.sweeper.stop(drain_timeout=self.settings.session_tick_timeout)
		self.emitter.emit(events.CONFIG_UPDATED, {"changed": changed, "settings": asdict(self.settings)})
		return changed

	async def shutdown(self) -> None:
		await self.stop_watching()
		await self.surface.stop()

	# --- Progress and history ---

	def _start_progress(self, campaign: Campaign, streamer: str) -> None:
		for drop in campaign.drops:
			try:
				self.history.start_progress(drop.id, campaign.id, drop.required_minutes, streamer)
			except Exception as e:
				logging.debug(f"Could not start progress row for {drop.id}: {e}")

	async def refresh_progress(self) -> int:
		updated = 0
		for progress in await self.catalog.get_drop_progress():
			if self.history.update_progress(progress.drop_id, progress.current_minutes):
				updated += 1
		logging.debug(f"Refreshed {updated} progress row(s)")
		return updated

	async def sync_all_time_drops(self) -> dict:
		records = await self.catalog.get_all_time_drops()
		added = sum(1 for r in records if self.history.append(r) == AppendResult.OK)
		logging.info(f"Synced drop history: {added} new of {len(records)} fetched")
		summary = {"fetched": len(records), "added": added}
		self.emitter.emit(events.ALL_TIME_DROPS_SYNCED, summary)
		return summary

	def get_drop_history(self, limit: int = 100) -> list[ClaimRecord]:
		return self.history.list(limit)

	def get_drop_history_by_game(self, game_name: str) -> list[ClaimRecord]:
		return self.history.list_by_game(game_name)

	def get_total_drops_claimed(self) -> int:
		return self.history.count()

	def _describe_reward(self, session: WatchSession, display_name: str) -> ClaimRecord:
		own = self.find_campaign(session.campaign_id) if session.campaign_id else None
		ordered = ([own] if own else []) + [c for c in self.campaigns if c is not own]
		for campaign in ordered:
			for drop in campaign.drops:
				if drop.matches(display_name):
					return ClaimRecord(
						reward_id=drop.id or None,
						campaign_id=campaign.id,
						campaign_name=campaign.name,
						game_name=campaign.game,
						reward_name=display_name,
						streamer_name=session.streamer_name,
						required_minutes=drop.required_minutes,
						reward_image=drop.image_url,
					)
		record = unknown_reward(session, display_name)
		if own is not None:
			record.campaign_name = own.name
			record.game_name = own.game
		return record

	# --- Raids ---

	async def _on_raid(self, event: RaidEvent) -> None:
		if self.registry.find_by_streamer(event.to_streamer, SessionRole.RAID_FOLLOWER):
			logging.debug(f"Already following {event.to_streamer}; raid ignored")
			return
		logging.info(f"Raid detected: {event.from_streamer} -> {event.to_streamer}")
		self.emitter.emit(events.RAID_DETECTED, event.to_dict())
		if not self.settings.follow_raids:
			return
		parent = self.registry.get(event.source_session_id) if event.source_session_id else self.registry.primary()
		if parent is None:
			logging.info(f"Raid source {event.from_streamer} is gone; not following")
			return
		result = await self._open_session(
			event.to_streamer,
			SessionRole.RAID_FOLLOWER,
			parent_id=parent.id,
			campaign_id=parent.campaign_id,
		)
		if not result.success:
			logging.warning(f"Not following raid to {event.to_streamer}: {result.error}")

	def _on_new_page(self, url: str) -> None:
		logging.info(f"Browser opened a page on its own: {url}")

	# --- Session lifecycle ---

	def _admission_error(self, role: SessionRole, streamer: str, parent_id: str | None) -> str | None:
		"""Reason a new session may not be registered right now, or None. Call under the registry lock."""
		if role == SessionRole.PRIMARY:
			if self.registry.primary() is not None:
				return "a primary session is already open"
			return None
		parent = self.registry.get(parent_id)
		if parent is None or not parent.is_active:
			return "raid source session is no longer active"
		if self.registry.find_by_streamer(streamer, SessionRole.RAID_FOLLOWER):
			return f"already following {streamer}"
		if len(self.registry.followers()) >= self.settings.max_raid_followers:
			return f"raid follower limit ({self.settings.max_raid_followers}) reached"
		return None

	async def _open_session(self, streamer: str, role: SessionRole, parent_id: str | None = None, campaign_id: str | None = None) -> OperationResult:
		async with self._registry_lock:
			error = self._admission_error(role, streamer, parent_id)
			if error:
				return OperationResult.failed(error)
			session = WatchSession(streamer_name=streamer, role=role, parent_session_id=parent_id, campaign_id=campaign_id)
			self.registry.add(session)

		try:
			session.handle = await self.surface.open_session(self.surface.stream_url(streamer))
			await self._prepare_session(session)
		except asyncio.CancelledError:
			await self._abandon(session)
			raise
		except Exception as e:
			logging.error(f"Could not open session for {streamer}: {e}")
			await self._abandon(session)
			return OperationResult.failed(f"could not open session for {streamer}: {e}")

		async with self._registry_lock:
			opened = session.status == SessionStatus.OPENING
			if opened:
				session.advance(SessionStatus.ACTIVE)
		if not opened:
			# Closed while still opening; the closer may have run before the handle existed
			await self._release_handle(session)
			return OperationResult.failed(f"session for {streamer} was closed while opening")

		logging.info(f"Session opened: {streamer} ({role.value})")
		self.emitter.emit(events.SESSION_OPENED, session.to_dict())
		return OperationResult(success=True, session=session)

	async def _prepare_session(self, session: WatchSession) -> None:
		timeout = self.settings.action_timeout
		steps = (
			self.surface.accept_cookies,
			self.surface.dismiss_mature_warning,
			self.surface.ensure_muted,
			self.surface.set_lowest_quality,
		)
		for step in steps:
			try:
				await asyncio.wait_for(step(session.handle, timeout), timeout=timeout * 2)
			except Exception as e:
				logging.debug(f"Setup step {step.__name__} skipped on {session.streamer_name}: {e}")

	async def _abandon(self, session: WatchSession) -> None:
		await self._release_handle(session)
		async with self._registry_lock:
			self.registry.remove(session.id)
			if session.status != SessionStatus.CLOSED:
				session.advance(SessionStatus.CLOSED)
		self.sweeper.forget(session.id)

	async def _release_handle(self, session: WatchSession) -> None:
		handle, session.handle = session.handle, None
		if handle is None:
			return
		try:
			await self.surface.close_session(handle)
		except Exception as e:
			logging.debug(f"Closing handle for {session.streamer_name} failed: {e}")

	async def _retire_follower(self, session: WatchSession, reason: str) -> None:
		# Called from inside the session's own claim pass, so no drain
		await self._close_session(session, reason, drain=False)

	async def _close_session(self, session: WatchSession, reason: str, drain: bool = True) -> bool:
		async with self._registry_lock:
			if session.status in (SessionStatus.CLOSING, SessionStatus.CLOSED):
				return False
			session.advance(SessionStatus.CLOSING)
			session.close_reason = reason

		try:
			if drain:
				await self.sweeper.drain(session.id, timeout=self.settings.session_tick_timeout)
		finally:
			# A session that entered CLOSING always reaches CLOSED, even if the closer is cancelled
			await self._release_handle(session)
			async with self._registry_lock:
				self.registry.remove(session.id)
				if session.status != SessionStatus.CLOSED:
					session.advance(SessionStatus.CLOSED)
			self.sweeper.forget(session.id)
			logging.info(f"Session closed: {session.streamer_name} ({reason})")
			self.emitter.emit(events.SESSION_CLOSED, {"id": session.id, "reason": reason, "streamer_name": session.streamer_name})
		return True

	def _start_tasks(self) -> None:
		self.raid_watcher.start()
		if self.settings.auto_claim_drops:
			self.sweeper.start()
