"""Tests for the session orchestrator control surface and raid/claim coordination."""

import asyncio
from dataclasses import replace

import pytest

from drop_orchestrator import events
from drop_orchestrator.models import (
	ClaimRecord,
	DropProgress,
	RaidEvent,
	SessionRole,
	SessionStatus,
	Streamer,
)
from drop_orchestrator.orchestrator import SessionOrchestrator


async def _start_and_raid(orchestrator, surface, *targets):
	await orchestrator.start_watching()
	for target in targets:
		surface.banners["alice"] = f"alice is raiding {target} with a party of 120"
		await orchestrator.raid_watcher.tick()


class TestStartWatching:
	"""Tests for start_watching target resolution and session opening."""

	@pytest.mark.asyncio
	async def test_opens_primary_on_top_streamer(self, orchestrator, surface, history, events_of):
		result = await orchestrator.start_watching()

		assert result.success
		assert result.session.streamer_name == "alice"
		assert result.session.role == SessionRole.PRIMARY
		assert result.session.status == SessionStatus.ACTIVE
		assert surface.opened == ["alice"]
		assert len(events_of(events.WATCHING_STARTED)) == 1
		assert events_of(events.SESSION_OPENED)[0]["streamer_name"] == "alice"
		assert {row["drop_id"] for row in history.get_active_progress()} == {"drop-1", "drop-2"}
		orchestrator.raid_watcher.start.assert_called_once()
		orchestrator.sweeper.start.assert_called_once()

	@pytest.mark.asyncio
	async def test_best_effort_setup_never_blocks_activation(self, orchestrator, surface):
		result = await orchestrator.start_watching()

		assert result.session.is_active
		steps = [step for step, name in surface.setup_calls if name == "alice"]
		assert steps == ["accept_cookies", "dismiss_mature_warning", "ensure_muted", "set_lowest_quality"]

	@pytest.mark.asyncio
	async def test_second_start_is_a_noop(self, orchestrator, surface):
		first = await orchestrator.start_watching()
		second = await orchestrator.start_watching()

		assert second.success
		assert second.already_running
		assert second.session is first.session
		assert surface.opened == ["alice"]

	@pytest.mark.asyncio
	async def test_falls_back_to_rewards_enabled_listing(self, orchestrator, catalog):
		catalog.live = {}
		catalog.rewards_enabled = [Streamer("carol"), Streamer("dave")]

		result = await orchestrator.start_watching()

		assert result.success
		assert result.session.streamer_name == "carol"

	@pytest.mark.asyncio
	async def test_no_resolvable_target_opens_nothing(self, orchestrator, surface, catalog, events_of):
		catalog.live = {}
		catalog.rewards_enabled = []

		result = await orchestrator.start_watching()

		assert not result.success
		assert result.error == "no suitable target"
		assert len(orchestrator.registry) == 0
		assert surface.opened == []
		assert events_of(events.WATCHING_STARTED) == []

	@pytest.mark.asyncio
	async def test_unknown_campaign_id(self, orchestrator):
		result = await orchestrator.start_watching("nope")

		assert not result.success
		assert "unknown campaign" in result.error

	@pytest.mark.asyncio
	async def test_selected_campaigns_filter(self, orchestrator):
		await orchestrator.update_config({"selected_campaigns": ["other"]})

		result = await orchestrator.start_watching()

		assert not result.success
		assert result.error == "no campaigns selected"

	@pytest.mark.asyncio
	async def test_open_failure_leaves_no_half_registered_session(self, orchestrator, surface):
		surface.fail_open = {"alice"}

		result = await orchestrator.start_watching()

		assert not result.success
		assert "alice" in result.error
		assert len(orchestrator.registry) == 0
		assert surface.open_count == 0

	@pytest.mark.asyncio
	async def test_auto_claim_off_keeps_sweeper_stopped(self, orchestrator):
		await orchestrator.update_config({"auto_claim_drops": False})

		await orchestrator.start_watching()

		orchestrator.sweeper.start.assert_not_called()


class TestClaims:
	"""Tests for claims flowing from the sweeper through the orchestrator."""

	@pytest.mark.asyncio
	async def test_claim_on_primary_is_recorded_with_catalog_identity(self, orchestrator, surface, history, events_of):
		await orchestrator.start_watching()
		surface.claimable["alice"] = ["Weapon Skin"]

		claimed = await orchestrator.sweeper.sweep_once()

		assert claimed == 1
		records = history.list()
		assert len(records) == 1
		assert records[0].streamer_name == "alice"
		assert records[0].reward_name == "Weapon Skin"
		assert records[0].reward_id == "drop-1"
		assert records[0].campaign_id == "camp-1"
		assert records[0].required_minutes == 60
		claimed_events = events_of(events.REWARD_CLAIMED)
		assert len(claimed_events) == 1
		assert claimed_events[0]["record"]["reward_name"] == "Weapon Skin"
		assert claimed_events[0]["role"] == "primary"
		assert history.get_progress("drop-1") is None

	@pytest.mark.asyncio
	async def test_unknown_reward_keeps_session_campaign(self, orchestrator, surface, history):
		await orchestrator.start_watching()
		surface.claimable["alice"] = ["Mystery Crate"]

		await orchestrator.sweeper.sweep_once()

		record = history.list()[0]
		assert record.reward_id is None
		assert record.campaign_id == "camp-1"
		assert record.campaign_name == "Rust Drops"
		assert record.game_name == "Rust"

	@pytest.mark.asyncio
	async def test_reoffered_reward_is_recorded_once(self, orchestrator, surface, history):
		surface.consume_claims = False
		await orchestrator.start_watching()
		surface.claimable["alice"] = ["Weapon Skin"]

		for _ in range(3):
			await orchestrator.sweeper.sweep_once()

		assert history.count() == 1
		assert surface.claim_clicks == [("alice", "Weapon Skin")]

	@pytest.mark.asyncio
	async def test_follower_retires_after_first_claim(self, orchestrator, surface, history, events_of):
		await _start_and_raid(orchestrator, surface, "bob")
		follower = orchestrator.registry.find_by_streamer("bob")[0]
		surface.claimable["bob"] = ["Hoodie", "Weapon Skin"]

		await orchestrator.sweeper.sweep_once()

		assert follower.status == SessionStatus.CLOSED
		assert follower.close_reason == "claimed"
		assert [s.streamer_name for s in orchestrator.get_active_sessions()] == ["alice"]
		assert [r.reward_name for r in history.list()] == ["Hoodie"]
		assert follower.handle is None
		assert surface.open_count == 1
		closed = events_of(events.SESSION_CLOSED)
		assert closed == [{"id": follower.id, "reason": "claimed", "streamer_name": "bob"}]

	@pytest.mark.asyncio
	async def test_follower_stays_when_retirement_disabled(self, orchestrator, surface):
		await orchestrator.update_config({"close_raid_tab_after_drop": False})
		await _start_and_raid(orchestrator, surface, "bob")
		surface.claimable["bob"] = ["Hoodie", "Weapon Skin"]

		claimed = await orchestrator.sweeper.sweep_once()

		assert claimed == 2
		assert len(orchestrator.get_active_sessions()) == 2


	@pytest.mark.asyncio
	async def test_slow_follower_close_past_the_claim_budget_still_completes(self, orchestrator, surface, events_of):
		await orchestrator.update_config({"session_tick_timeout": 0.2})
		await _start_and_raid(orchestrator, surface, "bob")
		follower = orchestrator.registry.find_by_streamer("bob")[0]
		surface.claimable["bob"] = ["Hoodie"]
		original_close = surface.close_session

		async def slow_close(handle):
			await asyncio.sleep(0.5)
			await original_close(handle)

		surface.close_session = slow_close

		assert await orchestrator.sweeper.sweep_once() == 1

		assert follower.status == SessionStatus.CLOSED
		assert orchestrator.registry.find_by_streamer("bob") == []
		assert surface.open_count == 1
		assert [e["streamer_name"] for e in events_of(events.SESSION_CLOSED)] == ["bob"]

		surface.close_session = original_close
		orchestrator.raid_watcher._last_seen = None
		await orchestrator.raid_watcher.tick()
		assert len(orchestrator.registry.find_by_streamer("bob", SessionRole.RAID_FOLLOWER)) == 1


class TestRaids:
	"""Tests for raid-driven follower sessions."""

	@pytest.mark.asyncio
	async def test_raid_check_never_reads_a_page_mid_claim(self, orchestrator, surface):
		await orchestrator.start_watching()
		surface.claimable["alice"] = ["Weapon Skin"]
		surface.banners["alice"] = "alice is raiding bob"
		clicking = {"now": False}
		click_started = asyncio.Event()
		release_click = asyncio.Event()
		original_click = surface.click
		original_read = surface.read_text
		reads_during_click = []

		async def slow_click(handle, selector, timeout):
			if "Weapon Skin" in selector:
				clicking["now"] = True
				click_started.set()
				await release_click.wait()
				clicking["now"] = False
			return await original_click(handle, selector, timeout)

		async def spy_read(handle, selector, timeout=2.0):
			reads_during_click.append(clicking["now"])
			return await original_read(handle, selector, timeout)

		surface.click = slow_click
		surface.read_text = spy_read

		sweep = asyncio.create_task(orchestrator.sweeper.sweep_once())
		await click_started.wait()
		assert await orchestrator.raid_watcher.check_once() is None
		release_click.set()
		assert await sweep == 1

		event = await orchestrator.raid_watcher.check_once()
		assert event.to_streamer == "bob"
		assert reads_during_click
		assert not any(reads_during_click)

	@pytest.mark.asyncio
	async def test_raid_opens_follower_with_parent(self, orchestrator, surface, events_of):
		await _start_and_raid(orchestrator, surface, "bob")

		primary = orchestrator.registry.primary()
		followers = orchestrator.registry.find_by_streamer("bob", SessionRole.RAID_FOLLOWER)
		assert len(followers) == 1
		assert followers[0].parent_session_id == primary.id
		assert followers[0].campaign_id == primary.campaign_id
		raids = events_of(events.RAID_DETECTED)
		assert len(raids) == 1
		assert raids[0]["from"] == "alice"
		assert raids[0]["to"] == "bob"

	@pytest.mark.asyncio
	async def test_repeated_raid_signals_spawn_one_follower(self, orchestrator, surface, events_of):
		await _start_and_raid(orchestrator, surface, "bob")
		for _ in range(3):
			await orchestrator.raid_watcher.tick()
			orchestrator.raid_watcher._last_seen = None

		assert len(orchestrator.registry.find_by_streamer("bob")) == 1
		assert len(events_of(events.RAID_DETECTED)) == 1
		assert surface.opened.count("bob") == 1

	@pytest.mark.asyncio
	async def test_concurrent_raid_events_spawn_one_follower(self, orchestrator, surface):
		await orchestrator.start_watching()
		primary = orchestrator.registry.primary()
		event = RaidEvent("alice", "bob", source_session_id=primary.id)

		await asyncio.gather(orchestrator._on_raid(event), orchestrator._on_raid(event))

		assert len(orchestrator.registry.find_by_streamer("bob")) == 1
		assert surface.opened.count("bob") == 1

	@pytest.mark.asyncio
	async def test_follower_open_failure_is_reported_not_registered(self, orchestrator, surface, events_of):
		surface.fail_open = {"bob"}

		await _start_and_raid(orchestrator, surface, "bob")

		assert orchestrator.registry.find_by_streamer("bob") == []
		assert len(events_of(events.RAID_DETECTED)) == 1
		assert surface.open_count == 1

	@pytest.mark.asyncio
	async def test_follower_cap(self, orchestrator, surface, events_of):
		await orchestrator.update_config({"max_raid_followers": 1})

		await _start_and_raid(orchestrator, surface, "bob", "dave")

		assert [s.streamer_name for s in orchestrator.registry.followers()] == ["bob"]
		assert [e["to"] for e in events_of(events.RAID_DETECTED)] == ["bob", "dave"]

	@pytest.mark.asyncio
	async def test_raid_from_closed_session_is_not_followed(self, orchestrator, surface):
		await orchestrator.start_watching()

		await orchestrator._on_raid(RaidEvent("alice", "bob", source_session_id="gone"))

		assert orchestrator.registry.followers() == []

	@pytest.mark.asyncio
	async def test_follow_raids_disabled_only_reports(self, orchestrator, surface, events_of):
		await orchestrator.update_config({"follow_raids": False})

		await _start_and_raid(orchestrator, surface, "bob")

		assert orchestrator.registry.followers() == []
		assert len(events_of(events.RAID_DETECTED)) == 1


class TestStopAndSwitch:
	"""Tests for stop_watching and switch_to."""

	@pytest.mark.asyncio
	async def test_cancelled_close_still_finishes_the_session(self, orchestrator, surface, events_of):
		await _start_and_raid(orchestrator, surface, "bob")
		follower = orchestrator.registry.find_by_streamer("bob")[0]
		lock = orchestrator.sweeper.lock_for(follower.id)
		await lock.acquire()

		closing = asyncio.create_task(orchestrator._close_session(follower, "stopped"))
		await asyncio.sleep(0.05)
		assert follower.status == SessionStatus.CLOSING
		closing.cancel()
		with pytest.raises(asyncio.CancelledError):
			await closing
		lock.release()

		assert follower.status == SessionStatus.CLOSED
		assert follower.handle is None
		assert follower.id not in orchestrator.registry
		assert surface.open_count == 1
		assert events_of(events.SESSION_CLOSED)[-1]["id"] == follower.id

	@pytest.mark.asyncio
	async def test_stop_closes_everything(self, orchestrator, surface, events_of):
		await _start_and_raid(orchestrator, surface, "bob", "dave")
		assert surface.open_count == 3

		result = await orchestrator.stop_watching()

		assert result.success
		assert len(orchestrator.registry) == 0
		assert surface.open_count == 0
		assert orchestrator.get_active_sessions() == []
		assert {e["reason"] for e in events_of(events.SESSION_CLOSED)} == {"stopped"}
		assert events_of(events.WATCHING_STOPPED) == [{"closed": 3}]

	@pytest.mark.asyncio
	async def test_stop_drains_in_flight_claim(self, orchestrator, surface, history):
		await _start_and_raid(orchestrator, surface, "bob")
		surface.claimable["bob"] = ["Hoodie"]
		original_click = surface.click
		claim_in_flight = asyncio.Event()

		async def slow_click(handle, selector, timeout):
			if "Claim" in selector:
				claim_in_flight.set()
			await asyncio.sleep(0.05)
			return await original_click(handle, selector, timeout)

		surface.click = slow_click
		sweep = asyncio.create_task(orchestrator.sweeper.sweep_once())
		await asyncio.wait_for(claim_in_flight.wait(), timeout=2)

		await orchestrator.stop_watching()
		claimed = await sweep

		assert claimed == 1
		assert history.count() == 1
		assert len(orchestrator.registry) == 0
		assert surface.open_count == 0
		# Handles are released exactly once
		assert len(surface.closed) == len(set(surface.closed)) == 2

	@pytest.mark.asyncio
	async def test_switch_never_has_two_primaries(self, orchestrator, surface, events_of):
		await orchestrator.start_watching()
		old = orchestrator.registry.primary()
		primaries_at_open = []
		surface.open_hook = lambda page: primaries_at_open.append(
			sum(1 for s in orchestrator.registry.list() if s.is_primary))

		result = await orchestrator.switch_to("Carol")

		assert result.success
		assert primaries_at_open == [1]
		assert orchestrator.registry.primary().streamer_name == "carol"
		assert orchestrator.registry.primary().campaign_id == "camp-1"
		assert old.status == SessionStatus.CLOSED
		assert old.close_reason == "switched"
		assert surface.open_count == 1

	@pytest.mark.asyncio
	async def test_switch_to_current_streamer_is_noop(self, orchestrator, surface):
		await orchestrator.start_watching()

		result = await orchestrator.switch_to("ALICE")

		assert result.already_running
		assert surface.opened == ["alice"]

	@pytest.mark.asyncio
	async def test_switch_requires_a_name(self, orchestrator):
		result = await orchestrator.switch_to("  ")

		assert not result.success

	@pytest.mark.asyncio
	async def test_switch_keeps_running_tasks(self, surface, catalog, history, emitter, prefs):
		orchestrator = SessionOrchestrator(surface, catalog, history, emitter=emitter, prefs=prefs)
		await orchestrator.start_watching()
		watcher_task = orchestrator.raid_watcher._task
		sweeper_task = orchestrator.sweeper._task
		assert orchestrator.raid_watcher.running and orchestrator.sweeper.running

		await orchestrator.switch_to("carol")

		assert orchestrator.raid_watcher._task is watcher_task
		assert orchestrator.sweeper._task is sweeper_task

		await orchestrator.stop_watching()
		assert not orchestrator.raid_watcher.running
		assert not orchestrator.sweeper.running
		assert surface.open_count == 0


class TestAccountAndCatalog:
	"""Tests for login, campaign loading, progress and history helpers."""

	@pytest.mark.asyncio
	async def test_login_with_credentials_reports_two_factor(self, orchestrator, catalog, events_of):
		orchestrator.prefs.update({"twitch_username": "me", "twitch_password": "secret"})

		result = await orchestrator.login()

		assert result.success
		assert len(events_of(events.TWO_FACTOR_REQUIRED)) == 1
		catalog.set_auth_token.assert_called_once_with("token-123")

	@pytest.mark.asyncio
	async def test_login_without_credentials_waits_for_manual_login(self, orchestrator, surface, events_of):
		surface.login_result = False

		result = await orchestrator.login()

		assert not result.success
		assert events_of(events.TWO_FACTOR_REQUIRED) == []

	@pytest.mark.asyncio
	async def test_load_campaigns_skips_inactive(self, orchestrator, catalog, events_of):
		catalog.campaigns.append(replace(catalog.campaigns[0], id="old", active=False))

		campaigns = await orchestrator.load_campaigns()

		assert [c.id for c in campaigns] == ["camp-1"]
		loaded = events_of(events.CAMPAIGNS_LOADED)
		assert [c["id"] for c in loaded[0]["campaigns"]] == ["camp-1"]

	@pytest.mark.asyncio
	async def test_refresh_progress_updates_rows(self, orchestrator, catalog, history):
		await orchestrator.start_watching()
		catalog.progress = [DropProgress("drop-1", "camp-1", 30, 60), DropProgress("elsewhere", "x", 5, 10)]

		updated = await orchestrator.refresh_progress()

		assert updated == 1
		assert history.get_progress("drop-1").current_minutes == 30

	@pytest.mark.asyncio
	async def test_sync_all_time_drops_is_idempotent(self, orchestrator, catalog, history, events_of):
		catalog.all_time = [
			ClaimRecord(reward_id="drop-9", campaign_id="c", campaign_name="C", game_name="Rust", reward_name="Jacket", streamer_name=""),
		]

		first = await orchestrator.sync_all_time_drops()
		second = await orchestrator.sync_all_time_drops()

		assert first == {"fetched": 1, "added": 1}
		assert second == {"fetched": 1, "added": 0}
		assert orchestrator.get_total_drops_claimed() == 1
		assert [r.reward_name for r in orchestrator.get_drop_history_by_game("Rust")] == ["Jacket"]
		assert len(events_of(events.ALL_TIME_DROPS_SYNCED)) == 2

	@pytest.mark.asyncio
	async def test_update_config_swaps_settings(self, orchestrator, events_of):
		changed = await orchestrator.update_config({"check_interval": "30", "follow_raids": False, "bogus": 1})

		assert sorted(changed) == ["check_interval", "follow_raids"]
		assert orchestrator.settings.check_interval == 30.0
		assert orchestrator.settings.follow_raids is False
		assert events_of(events.CONFIG_UPDATED)[0]["changed"] == changed

	@pytest.mark.asyncio
	async def test_update_config_without_changes_emits_nothing(self, orchestrator, events_of):
		changed = await orchestrator.update_config({"follow_raids": True})

		assert changed == []
		assert events_of(events.CONFIG_UPDATED) == []

	@pytest.mark.asyncio
	async def test_shutdown_stops_surface(self, orchestrator, surface):
		await orchestrator.start_watching()

		await orchestrator.shutdown()

		assert surface.stopped
		assert surface.open_count == 0

	def test_new_page_notifications_are_observed(self, orchestrator, surface):
		assert surface.new_page_callbacks == [orchestrator._on_new_page]
		surface.new_page_callbacks[0]("https://www.twitch.tv/somebody")
