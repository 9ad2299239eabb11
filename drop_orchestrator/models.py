import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


class SessionRole(str, Enum):
	PRIMARY = "primary"
	RAID_FOLLOWER = "raid_follower"


class SessionStatus(str, Enum):
	OPENING = "opening"
	ACTIVE = "active"
	CLOSING = "closing"
	CLOSED = "closed"


_STATUS_ORDER = [SessionStatus.OPENING, SessionStatus.ACTIVE, SessionStatus.CLOSING, SessionStatus.CLOSED]


@dataclass
class WatchSession:
	"""One open, automated viewing context bound to a single streamer.

	``handle`` is the Automation Surface handle backing the session; it is
	owned by the session and released exactly once when the session closes.
	"""
	streamer_name: str
	role: SessionRole
	parent_session_id: str | None = None
	campaign_id: str | None = None
	id: str = field(default_factory=lambda: uuid.uuid4().hex)
	status: SessionStatus = SessionStatus.OPENING
	opened_at: datetime = field(default_factory=utcnow)
	handle: Any = field(default=None, repr=False)
	close_reason: str | None = None

	def __post_init__(self):
		if self.role == SessionRole.RAID_FOLLOWER and not self.parent_session_id:
			raise ValueError("Raid follower sessions need a parent session id")
		if self.role == SessionRole.PRIMARY and self.parent_session_id:
			raise ValueError("Primary sessions have no parent session")

	@property
	def is_active(self) -> bool:
		return self.status == SessionStatus.ACTIVE

	@property
	def is_primary(self) -> bool:
		return self.role == SessionRole.PRIMARY

	def advance(self, status: SessionStatus) -> None:
		"""Move forward in the lifecycle. Backward or repeated transitions raise ValueError."""
		if _STATUS_ORDER.index(status) <= _STATUS_ORDER.index(self.status):
			raise ValueError(f"Session {self.id} cannot go from {self.status.value} to {status.value}")
		self.status = status

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"streamer_name": self.streamer_name,
			"role": self.role.value,
			"status": self.status.value,
			"parent_session_id": self.parent_session_id,
			"campaign_id": self.campaign_id,
			"opened_at": self.opened_at.isoformat(),
			"close_reason": self.close_reason,
		}


@dataclass(frozen=True)
class RaidEvent:
	from_streamer: str
	to_streamer: str
	timestamp: datetime = field(default_factory=utcnow)
	source_session_id: str | None = None

	def to_dict(self) -> dict:
		return {
			"from": self.from_streamer,
			"to": self.to_streamer,
			"timestamp": self.timestamp.isoformat(),
			"source_session_id": self.source_session_id,
		}


@dataclass(frozen=True)
class ClaimableReward:
	"""A reward visible as claimable during one sweep pass. Never cached across sweeps."""
	source_session_id: str
	external_reward_handle: str
	display_name: str


@dataclass
class ClaimRecord:
	reward_id: str | None
	campaign_id: str
	campaign_name: str
	game_name: str
	reward_name: str
	streamer_name: str
	required_minutes: int = 0
	claimed_at: datetime = field(default_factory=utcnow)
	reward_image: str = ""

	@property
	def dedupe_key(self) -> str:
		# Catalog ids are authoritative; fall back to the campaign+name+streamer tuple
		if self.reward_id:
			return f"id:{self.reward_id}"
		return "tuple:{}|{}|{}".format(
			(self.campaign_id or "").strip().lower(),
			(self.reward_name or "").strip().lower(),
			(self.streamer_name or "").strip().lower(),
		)

	def to_dict(self) -> dict:
		return {
			"reward_id": self.reward_id,
			"campaign_id": self.campaign_id,
			"campaign_name": self.campaign_name,
			"game_name": self.game_name,
			"reward_name": self.reward_name,
			"streamer_name": self.streamer_name,
			"required_minutes": self.required_minutes,
			"claimed_at": self.claimed_at.isoformat(),
			"reward_image": self.reward_image,
		}


class AppendResult(str, Enum):
	OK = "ok"
	DUPLICATE = "duplicate"


@dataclass(frozen=True)
class Benefit:
	id: str
	name: str
	image_url: str = ""


@dataclass(frozen=True)
class CampaignDrop:
	id: str
	name: str
	required_minutes: int = 0
	benefits: tuple[Benefit, ...] = ()

	def matches(self, display_name: str) -> bool:
		needle = (display_name or "").strip().lower()
		if not needle:
			return False
		names = [self.name] + [b.name for b in self.benefits]
		return any((n or "").strip().lower() == needle for n in names)

	@property
	def image_url(self) -> str:
		for b in self.benefits:
			if b.image_url:
				return b.image_url
		return ""


@dataclass(frozen=True)
class Campaign:
	id: str
	name: str
	game: str
	game_image: str = ""
	start_at: datetime | None = None
	end_at: datetime | None = None
	active: bool = True
	drops: tuple[CampaignDrop, ...] = ()

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"name": self.name,
			"game": self.game,
			"game_image": self.game_image,
			"start_at": self.start_at.isoformat() if self.start_at else None,
			"end_at": self.end_at.isoformat() if self.end_at else None,
			"active": self.active,
			"drops": [
				{"id": d.id, "name": d.name, "required_minutes": d.required_minutes, "image": d.image_url}
				for d in self.drops
			],
		}


@dataclass(frozen=True)
class Streamer:
	username: str
	display_name: str = ""
	viewer_count: int = 0
	game: str = ""

	@property
	def url(self) -> str:
		return f"https://www.twitch.tv/{self.username}"


@dataclass(frozen=True)
class DropProgress:
	drop_id: str
	campaign_id: str
	current_minutes: int
	required_minutes: int


@dataclass
class OperationResult:
	"""Structured outcome of a control operation, shaped for the host."""
	success: bool
	error: str | None = None
	session: WatchSession | None = None
	already_running: bool = False

	@classmethod
	def failed(cls, error: str) -> "OperationResult":
		return cls(success=False, error=error)

	def to_dict(self) -> dict:
		out = {"success": self.success}
		if self.error:
			out["error"] = self.error
		if self.session is not None:
			out["session"] = self.session.to_dict()
		if self.already_running:
			out["already_running"] = True
		return out
