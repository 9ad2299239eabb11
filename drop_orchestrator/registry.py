from __future__ import annotations

from .models import SessionRole, SessionStatus, WatchSession


class SessionRegistry:
	"""In-memory map of open watch sessions keyed by session id.

	Owns no I/O and no lock: structural changes (add/remove) are serialized
	by the orchestrator's registry lock. Every change swaps in a new dict, so
	readers on other threads (the web server) always iterate a stable
	snapshot.
	"""

	def __init__(self):
		self._sessions: dict[str, WatchSession] = {}

	def add(self, session: WatchSession) -> None:
		if session.id in self._sessions:
			raise ValueError(f"Session {session.id} is already registered")
		if session.role == SessionRole.PRIMARY and self.primary() is not None:
			raise ValueError("A primary session is already registered")
		sessions = dict(self._sessions)
		sessions[session.id] = session
		self._sessions = sessions

	def remove(self, session_id: str) -> WatchSession | None:
		if session_id not in self._sessions:
			return None
		sessions = dict(self._sessions)
		session = sessions.pop(session_id)
		self._sessions = sessions
		return session

	def get(self, session_id: str) -> WatchSession | None:
		return self._sessions.get(session_id)

	def list(self) -> list[WatchSession]:
		return list(self._sessions.values())

	def find_by_streamer(self, name: str, role: SessionRole | None = None) -> list[WatchSession]:
		target = (name or "").strip().lower()
		return [
			s for s in self._sessions.values()
			if s.streamer_name.lower() == target and (role is None or s.role == role)
		]

	def primary(self) -> WatchSession | None:
		for s in self._sessions.values():
			if s.role == SessionRole.PRIMARY:
				return s
		return None

	def active(self) -> list[WatchSession]:
		return [s for s in self._sessions.values() if s.status == SessionStatus.ACTIVE]

	def followers(self) -> list[WatchSession]:
		return [s for s in self._sessions.values() if s.role == SessionRole.RAID_FOLLOWER]

	def clear(self) -> list[WatchSession]:
		sessions = list(self._sessions.values())
		self._sessions = {}
		return sessions

	def __len__(self):
		return len(self._sessions)

	def __contains__(self, session_id):
		return session_id in self._sessions
