import logging
import asyncio
from datetime import datetime

import requests

from .config import TWITCH_CLIENT_ID, TWITCH_GQL_URL
from .models import Benefit, Campaign, CampaignDrop, ClaimRecord, DropProgress, Streamer

REQUEST_TIMEOUT = 15

CAMPAIGNS_QUERY = """
query {
  currentUser {
    dropCampaigns {
      id
      name
      game { displayName boxArtURL }
      startAt
      endAt
      status
      timeBasedDrops {
        id
        name
        requiredMinutesWatched
        benefitEdges { benefit { id name imageAssetURL } }
      }
    }
  }
}
"""

GAME_STREAMS_QUERY = """
query($gameName: String!, $limit: Int!) {
  game(name: $gameName) {
    streams(first: $limit, options: { sort: VIEWER_COUNT }) {
      edges {
        node {
          broadcaster { login displayName }
          viewersCount
          game { displayName }
        }
      }
    }
  }
}
"""

DROPS_ENABLED_QUERY = """
query($limit: Int!) {
  streams: directoriesWithTags(first: $limit, tags: ["drops-enabled"]) {
    edges {
      node {
        ... on Game {
          displayName
          streams(first: 20, options: { sort: VIEWER_COUNT }) {
            edges {
              node {
                broadcaster { login displayName }
                viewersCount
              }
            }
          }
        }
      }
    }
  }
}
"""

PROGRESS_QUERY = """
query {
  currentUser {
    inventory {
      dropCampaignsInProgress {
        id
        timeBasedDrops {
          id
          requiredMinutesWatched
          self { currentMinutesWatched hasPreconditionsMet }
        }
      }
    }
  }
}
"""

ALL_TIME_DROPS_QUERY = """
query($limit: Int!, $cursor: Cursor) {
  currentUser {
    inventory {
      gameEventDrops(first: $limit, after: $cursor) {
        edges {
          node {
            id
            game { displayName boxArtURL }
            benefitEdges { benefit { id name imageAssetURL } }
            campaign { id name game { displayName } }
            lastAwardedAt
          }
          cursor
        }
        pageInfo { hasNextPage }
      }
    }
  }
}
"""


def _parse_time(value):
	if not value:
		return None
	try:
		return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
	except ValueError:
		return None


def parse_campaign(raw: dict) -> Campaign:
	drops = []
	for d in raw.get('timeBasedDrops') or []:
		benefits = tuple(
			Benefit(
				id=str(edge['benefit'].get('id') or ''),
				name=edge['benefit'].get('name') or '',
				image_url=edge['benefit'].get('imageAssetURL') or '',
			)
			for edge in (d.get('benefitEdges') or []) if edge.get('benefit')
		)
		drops.append(CampaignDrop(
			id=str(d.get('id') or ''),
			name=d.get('name') or '',
			required_minutes=int(d.get('requiredMinutesWatched') or 0),
			benefits=benefits,
		))
	game = raw.get('game') or {}
	return Campaign(
		id=str(raw.get('id') or ''),
		name=raw.get('name') or '',
		game=game.get('displayName') or 'Unknown',
		game_image=game.get('boxArtURL') or '',
		start_at=_parse_time(raw.get('startAt')),
		end_at=_parse_time(raw.get('endAt')),
		active=raw.get('status') == 'ACTIVE',
		drops=tuple(drops),
	)


def parse_stream_edge(edge: dict, game_name: str = '') -> Streamer | None:
	node = (edge or {}).get('node') or {}
	broadcaster = node.get('broadcaster') or {}
	login = broadcaster.get('login')
	if not login:
		return None
	return Streamer(
		username=login,
		display_name=broadcaster.get('displayName') or login,
		viewer_count=int(node.get('viewersCount') or 0),
		game=((node.get('game') or {}).get('displayName')) or game_name,
	)


def parse_awarded_drop(node: dict) -> ClaimRecord:
	campaign = node.get('campaign') or {}
	benefit = ((node.get('benefitEdges') or [{}])[0] or {}).get('benefit') or {}
	return ClaimRecord(
		reward_id=str(node.get('id')) if node.get('id') else None,
		campaign_id=campaign.get('id') or 'unknown',
		campaign_name=campaign.get('name') or 'Unknown Campaign',
		game_name=(node.get('game') or {}).get('displayName') or (campaign.get('game') or {}).get('displayName') or 'Unknown',
		reward_name=benefit.get('name') or 'Unknown Drop',
		reward_image=benefit.get('imageAssetURL') or '',
		streamer_name='',
		claimed_at=_parse_time(node.get('lastAwardedAt')) or datetime.now().astimezone(),
	)


class TwitchCatalog:
	"""Campaign, drop and live-streamer metadata from the Twitch GQL endpoint.

	Failures are logged and produce empty results. Blocking HTTP runs in a
	worker thread so callers on the event loop are not stalled.
	"""

	def __init__(self, auth_token: str | None = None, session: requests.Session | None = None, url: str = TWITCH_GQL_URL):
		self._url = url
		self._session = session or requests.Session()
		self._session.headers.update({
			'Client-ID': TWITCH_CLIENT_ID,
			'Content-Type': 'application/json',
		})
		if auth_token:
			self.set_auth_token(auth_token)

	def set_auth_token(self, token: str) -> None:
		if token:
			self._session.headers['Authorization'] = f'OAuth {token}'
		else:
			self._session.headers.pop('Authorization', None)

	def _post(self, query: str, variables: dict | None = None) -> dict:
		response = self._session.post(self._url, json={'query': query, 'variables': variables or {}}, timeout=REQUEST_TIMEOUT)
		response.raise_for_status()
		payload = response.json()
		if payload.get('errors'):
			logging.debug(f"GQL errors: {payload['errors']}")
		return payload.get('data') or {}

	async def _query(self, what: str, query: str, variables: dict | None = None) -> dict | None:
		try:
			return await asyncio.to_thread(self._post, query, variables)
		except requests.exceptions.RequestException as e:
			logging.error(f"Network error fetching {what}: {e}")
		except ValueError as e:
			logging.error(f"Malformed response fetching {what}: {e}")
		return None

	async def list_campaigns(self) -> list[Campaign]:
		data = await self._query('drop campaigns', CAMPAIGNS_QUERY)
		if not data:
			return []
		raw = ((data.get('currentUser') or {}).get('dropCampaigns')) or []
		campaigns = []
		for c in raw:
			try:
				campaigns.append(parse_campaign(c))
			except (KeyError, TypeError, ValueError) as e:
				logging.debug(f"Skipping malformed campaign: {e}")
		logging.info(f"Loaded {len(campaigns)} drop campaign(s)")
		return campaigns

	async def list_live_streamers(self, game: str, limit: int = 20) -> list[Streamer]:
		data = await self._query(f'streamers for {game}', GAME_STREAMS_QUERY, {'gameName': game, 'limit': int(limit)})
		if not data:
			return []
		edges = (((data.get('game') or {}).get('streams') or {}).get('edges')) or []
		return [s for s in (parse_stream_edge(e, game) for e in edges) if s]

	async def list_rewards_enabled_streamers(self, limit: int = 10) -> list[Streamer]:
		data = await self._query('drops-enabled streams', DROPS_ENABLED_QUERY, {'limit': int(limit)})
		if not data:
			return []
		streamers = []
		for directory in ((data.get('streams') or {}).get('edges')) or []:
			game = (directory or {}).get('node') or {}
			for edge in ((game.get('streams') or {}).get('edges')) or []:
				s = parse_stream_edge(edge, game.get('displayName') or '')
				if s:
					streamers.append(s)
		return streamers

	async def get_drop_progress(self) -> list[DropProgress]:
		data = await self._query('drop progress', PROGRESS_QUERY)
		if not data:
			return []
		inventory = ((data.get('currentUser') or {}).get('inventory')) or {}
		out = []
		for campaign in inventory.get('dropCampaignsInProgress') or []:
			for d in campaign.get('timeBasedDrops') or []:
				out.append(DropProgress(
					drop_id=str(d.get('id') or ''),
					campaign_id=str(campaign.get('id') or ''),
					current_minutes=int(((d.get('self') or {}).get('currentMinutesWatched')) or 0),
					required_minutes=int(d.get('requiredMinutesWatched') or 0),
				))
		return out

	async def get_all_time_drops(self, limit: int = 100, max_pages: int = 10) -> list[ClaimRecord]:
		records = []
		cursor = None
		for _ in range(max_pages):
			data = await self._query('all-time drops', ALL_TIME_DROPS_QUERY, {'limit': int(limit), 'cursor': cursor})
			if not data:
				break
			page = (((data.get('currentUser') or {}).get('inventory')) or {}).get('gameEventDrops') or {}
			edges = page.get('edges') or []
			if not edges:
				break
			for edge in edges:
				node = (edge or {}).get('node')
				if node:
					records.append(parse_awarded_drop(node))
			if not (page.get('pageInfo') or {}).get('hasNextPage'):
				break
			cursor = edges[-1].get('cursor')
		logging.info(f"Fetched {len(records)} historical drop(s) from Twitch")
		return records
