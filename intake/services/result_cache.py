"""Short-lived Redis store of terminal job outcomes, keyed by request id."""
import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

KEY_PREFIX = "job:result:"


def result_key(request_id: str) -> str:
    return f"{KEY_PREFIX}{request_id}"


class ResultCache:
    def __init__(self, client: "redis.Redis", ttl_seconds: int = 3600):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 3600) -> "ResultCache":
        return cls(redis.from_url(url, decode_responses=True), ttl_seconds)

    async def store(self, request_id: str, outcome: dict[str, Any]) -> bool:
        """Write an outcome; failures are logged and reported as ``False``."""
        try:
            await self.client.setex(result_key(request_id), self.ttl_seconds, json.dumps(outcome, default=str))
        except Exception as exc:
            logger.warning("Could not cache result for request %s: %s", request_id, exc)
            return False
        return True

    async def fetch(self, request_id: str) -> Optional[dict[str, Any]]:
        raw = await self.client.get(result_key(request_id))
        if raw is None:
            return None
        return json.loads(raw)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()
