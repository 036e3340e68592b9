"""Fire-and-forget real-time broadcast and audit trail.

Delivery failures are logged and dropped; they never propagate into the
operation that triggered the event.
"""

import json
from datetime import date

import redis
import structlog

from ..config import settings
from ..models import utc_now_naive

logger = structlog.get_logger("bookingcore.events")

_STREAM_MAXLEN = 100000


def _redis_client() -> redis.Redis | None:
    redis_url = (settings.REDIS_URL or "").strip()
    if not redis_url:
        return None
    return redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=settings.CACHE_TIMEOUT_SECONDS,
        socket_connect_timeout=settings.CACHE_TIMEOUT_SECONDS,
    )


class EventPublisher:
    def __init__(self, client: redis.Redis | None = None, enabled: bool | None = None):
        self._client = client
        self._enabled = settings.EVENT_BUS_ENABLED if enabled is None else enabled

    def _stream_client(self) -> redis.Redis | None:
        if not self._enabled:
            return None
        if self._client is None:
            self._client = _redis_client()
        return self._client

    def emit(self, stream: str, event_type: str, payload: dict) -> bool:
        record = {
            "type": event_type,
            "ts": utc_now_naive().isoformat() + "Z",
            "payload": json.dumps(payload, ensure_ascii=True, default=str),
        }
        logger.info("event_emitted", stream=stream, event_type=event_type, **payload)
        client = self._stream_client()
        if client is None:
            return False
        try:
            client.xadd(stream, record, maxlen=_STREAM_MAXLEN, approximate=True)
        except redis.RedisError as exc:
            logger.warning("event_delivery_failed", stream=stream, event_type=event_type, error=str(exc))
            return False
        return True

    def emit_team_assignment(self, service_request_id: str, team_member_id: str) -> bool:
        return self.emit(
            settings.EVENT_BUS_STREAM,
            "team-assignment",
            {"service_request_id": service_request_id, "team_member_id": team_member_id},
        )

    def emit_service_request_update(self, service_request_id: str, **changes) -> bool:
        return self.emit(
            settings.EVENT_BUS_STREAM,
            "service-request-updated",
            {"service_request_id": service_request_id, **changes},
        )

    def emit_availability_update(self, service_id: str, day: date) -> bool:
        return self.emit(
            settings.EVENT_BUS_STREAM,
            "availability-updated",
            {"service_id": service_id, "date": day.isoformat()},
        )

    def audit(
        self,
        action: str,
        actor: str | None = None,
        target_id: str | None = None,
        details: dict | None = None,
    ) -> bool:
        return self.emit(
            settings.AUDIT_STREAM,
            "audit",
            {
                "action": action,
                "actor": actor,
                "target_id": target_id,
                "details": details or {},
            },
        )


_publisher: EventPublisher | None = None


def get_publisher() -> EventPublisher:
    global _publisher
    if _publisher is None:
        _publisher = EventPublisher()
    return _publisher
