import logging
import threading

# Events emitted by the orchestrator to its host (web/tray layer)
SESSION_OPENED = 'session_opened'
SESSION_CLOSED = 'session_closed'
RAID_DETECTED = 'raid_detected'
REWARD_CLAIMED = 'reward_claimed'
TWO_FACTOR_REQUIRED = 'two_factor_required'
WATCHING_STARTED = 'watching_started'
WATCHING_STOPPED = 'watching_stopped'
CAMPAIGNS_LOADED = 'campaigns_loaded'
ALL_TIME_DROPS_SYNCED = 'all_time_drops_synced'
CONFIG_UPDATED = 'config_updated'

ALL_EVENTS = (
	SESSION_OPENED,
	SESSION_CLOSED,
	RAID_DETECTED,
	REWARD_CLAIMED,
	TWO_FACTOR_REQUIRED,
	WATCHING_STARTED,
	WATCHING_STOPPED,
	CAMPAIGNS_LOADED,
	ALL_TIME_DROPS_SYNCED,
	CONFIG_UPDATED,
)


class EventEmitter:
	"""Synchronous fan-out of named events to listeners.

	A failing listener is logged and skipped; it never reaches the emitter.
	"""

	def __init__(self):
		self._listeners: dict[str, list] = {}
		self._lock = threading.RLock()

	def on(self, name: str, callback) -> None:
		with self._lock:
			self._listeners.setdefault(name, []).append(callback)

	def off(self, name: str, callback) -> None:
		with self._lock:
			callbacks = self._listeners.get(name, [])
			if callback in callbacks:
				callbacks.remove(callback)

	def on_any(self, callback) -> None:
		"""Subscribe ``callback(name, payload)`` to every known event."""
		for name in ALL_EVENTS:
			self.on(name, lambda payload, _name=name: callback(_name, payload))

	def emit(self, name: str, payload: dict | None = None) -> None:
		with self._lock:
			callbacks = list(self._listeners.get(name, []))
		for cb in callbacks:
			try:
				cb(payload or {})
			except Exception as e:
				logging.debug(f"Listener for '{name}' failed: {e}")
