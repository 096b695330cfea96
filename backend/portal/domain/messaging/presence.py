"""Presence tracker backed by Redis hashes.

One hash per user (`presence:user:{id}`) holds the status, the bound socket id and
the last-seen timestamp; `presence:online` is the set of connected users. A user
has at most one bound channel: the last connection wins, and a stale channel
closing never clears a newer binding.

The hash expires unless the bound channel sends heartbeats, so a process that
dies without running disconnect leaves no lasting presence behind. The hash is
the source of truth; `presence:online` only feeds the gauge and is pruned
whenever a member is found without a live hash.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set

from redis.exceptions import WatchError

from portal.domain.messaging import fanout, models
from portal.domain.messaging.exceptions import ValidationError
from portal.domain.messaging.repo import get_repository
from portal.infra.redis import redis_client
from portal.obs import logging as obs_logging
from portal.obs import metrics as obs_metrics
from portal.settings import settings

_USER_KEY = "presence:user:{user_id}"
_ONLINE_SET = "presence:online"
_OFFLINE = "offline"
_ONLINE = "online"
_SETTABLE = ("online", "idle", "dnd")

_LOG = obs_logging.get_logger("portal.messaging.presence")


def _user_key(user_id: str) -> str:
	return _USER_KEY.format(user_id=user_id)


def _parse_ts(raw: Optional[str]) -> Optional[datetime]:
	if not raw:
		return None
	try:
		return datetime.fromisoformat(raw)
	except ValueError:
		return None


def _to_presence(user_id: str, data: Dict[str, str]) -> models.Presence:
	return models.Presence(
		user_id=user_id,
		status=data.get("status") or _OFFLINE,
		socket_id=data.get("socket_id") or None,
		last_seen=_parse_ts(data.get("last_seen")),
	)


class PresenceTracker:
	def __init__(self, *, ttl_seconds: int | None = None) -> None:
		self.ttl_seconds = ttl_seconds or settings.presence_ttl_seconds

	async def connect(self, user_id: str, socket_id: str) -> models.Presence:
		now = datetime.now(timezone.utc)
		key = _user_key(user_id)
		async with redis_client.pipeline(transaction=True) as pipe:
			pipe.hset(key, mapping={"status": _ONLINE, "socket_id": socket_id, "last_seen": now.isoformat()})
			pipe.expire(key, self.ttl_seconds)
			pipe.sadd(_ONLINE_SET, user_id)
			await pipe.execute()
		await self._refresh_gauge()
		presence = models.Presence(user_id=user_id, status=_ONLINE, socket_id=socket_id, last_seen=now)
		await self.broadcast(presence)
		return presence

	async def disconnect(self, user_id: str, socket_id: str) -> Optional[models.Presence]:
		"""Mark the user offline if `socket_id` is still the bound channel.

		Returns None when a newer channel has taken over in the meantime.
		"""
		now = datetime.now(timezone.utc)
		key = _user_key(user_id)
		async with redis_client.pipeline(transaction=True) as pipe:
			while True:
				try:
					await pipe.watch(key)
					bound = await pipe.hget(key, "socket_id")
					if bound != socket_id:
						await pipe.unwatch()
						if bound is None:
							# record expired while connected; nothing else will clear the set
							await self._prune([user_id])
						return None
					pipe.multi()
					pipe.hset(key, mapping={"status": _OFFLINE, "last_seen": now.isoformat()})
					pipe.hdel(key, "socket_id")
					pipe.expire(key, self.ttl_seconds)
					pipe.srem(_ONLINE_SET, user_id)
					await pipe.execute()
					break
				except WatchError:
					_LOG.debug("presence.disconnect_retry", extra={"user_id": user_id})
					continue
		await self._refresh_gauge()
		presence = models.Presence(user_id=user_id, status=_OFFLINE, socket_id=None, last_seen=now)
		await self.broadcast(presence)
		return presence

	async def heartbeat(self, user_id: str, socket_id: str) -> bool:
		"""Keep the bound channel's record alive.

		A channel whose record already expired is bound again and announced as
		online. Returns False when another channel owns the record.
		"""
		now = datetime.now(timezone.utc)
		key = _user_key(user_id)
		async with redis_client.pipeline(transaction=True) as pipe:
			while True:
				try:
					await pipe.watch(key)
					bound = await pipe.hget(key, "socket_id")
					if bound is not None and bound != socket_id:
						await pipe.unwatch()
						return False
					mapping = {"socket_id": socket_id, "last_seen": now.isoformat()}
					if bound is None:
						mapping["status"] = _ONLINE
					pipe.multi()
					pipe.hset(key, mapping=mapping)
					pipe.expire(key, self.ttl_seconds)
					pipe.sadd(_ONLINE_SET, user_id)
					await pipe.execute()
					break
				except WatchError:
					continue
		if bound is None:
			_LOG.info("presence.rebound", extra={"user_id": user_id})
			await self._refresh_gauge()
			await self.broadcast(models.Presence(user_id=user_id, status=_ONLINE, socket_id=socket_id, last_seen=now))
		return True

	async def set_status(self, user_id: str, status: str) -> models.Presence:
		status = str(status or "").strip().lower()
		if status not in _SETTABLE:
			raise ValidationError("invalid_status")
		current = await self.get(user_id)
		if not current.is_online:
			raise ValidationError("not_connected")
		now = datetime.now(timezone.utc)
		key = _user_key(user_id)
		await redis_client.hset(key, mapping={"status": status, "last_seen": now.isoformat()})
		await redis_client.expire(key, self.ttl_seconds)
		presence = models.Presence(user_id=user_id, status=status, socket_id=current.socket_id, last_seen=now)
		await self.broadcast(presence)
		return presence

	async def get(self, user_id: str) -> models.Presence:
		data = await redis_client.hgetall(_user_key(user_id))
		return _to_presence(user_id, data or {})

	async def is_online(self, user_id: str) -> bool:
		return bool(await self.online_among([user_id]))

	async def online_among(self, user_ids: Iterable[str]) -> Set[str]:
		"""Users whose record is live and bound to a channel."""
		candidates = list(dict.fromkeys(user_ids))
		if not candidates:
			return set()
		async with redis_client.pipeline(transaction=False) as pipe:
			for user_id in candidates:
				pipe.hmget(_user_key(user_id), "status", "socket_id")
			records = await pipe.execute()
		online: Set[str] = set()
		stale: List[str] = []
		for user_id, (status, socket_id) in zip(candidates, records):
			if status and status != _OFFLINE and socket_id:
				online.add(user_id)
			else:
				stale.append(user_id)
		if stale:
			await self._prune(stale)
		return online

	async def broadcast(self, presence: models.Presence) -> None:
		payload = presence.to_dict()
		if settings.presence_broadcast_scope == "global":
			await fanout.broadcast("userStatus", payload)
			return
		rooms: List[str] = [fanout.user_room(presence.user_id)]
		try:
			conversations = await get_repository().list_conversations(presence.user_id)
		except Exception:
			_LOG.exception("presence.peer_lookup_failed", extra={"user_id": presence.user_id})
			conversations = []
		rooms.extend(fanout.conversation_room(conversation.id) for conversation in conversations)
		await fanout.to_rooms(rooms, "userStatus", payload)

	async def _prune(self, user_ids: List[str]) -> None:
		removed = await redis_client.srem(_ONLINE_SET, *user_ids)
		if removed:
			await self._refresh_gauge()

	async def _refresh_gauge(self) -> None:
		total = await redis_client.scard(_ONLINE_SET)
		obs_metrics.set_presence_online(int(total or 0))


presence_tracker = PresenceTracker()
