"""
Redis store for Orchestrator service.
"""

import redis
import json
import os
import time
from typing import Any, Dict, Optional
from shared.constants import MAX_RUN_LOG_ENTRIES, REDIS_KEY_TTL_SECONDS
from shared.utils import run_key
from services.orchestrator.engine.context import CancellationToken


class RedisStore:
    """Redis client wrapper for Orchestrator service"""

    def __init__(self, redis_url: str = None, client=None):
        url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.client = client or redis.Redis.from_url(url, decode_responses=False)

    def get_run_request(self, run_id: str) -> Optional[Dict[str, Any]]:
        data = self.client.get(run_key(run_id, "request"))
        if data:
            return json.loads(data)
        return None

    def get_run_meta(self, run_id: str) -> Optional[Dict[str, Any]]:
        data = self.client.get(run_key(run_id, "meta"))
        if data:
            return json.loads(data)
        return None

    def update_run_meta(self, run_id: str, **changes: Any) -> Dict[str, Any]:
        meta = self.get_run_meta(run_id) or {"run_id": run_id}
        meta.update(changes)
        key = run_key(run_id, "meta")
        self.client.set(key, json.dumps(meta))
        self.client.expire(key, REDIS_KEY_TTL_SECONDS)
        return meta

    def store_run_result(self, run_id: str, result: Dict[str, Any]) -> None:
        key = run_key(run_id, "result")
        self.client.set(key, json.dumps(result, default=str))
        self.client.expire(key, REDIS_KEY_TTL_SECONDS)

    def append_run_log(self, run_id: str, level: str, message: str, details: Optional[str] = None) -> None:
        key = run_key(run_id, "logs")
        entry = {"timestamp": int(time.time() * 1000), "level": level, "message": message, "details": details}
        pipe = self.client.pipeline()
        pipe.rpush(key, json.dumps(entry))
        pipe.ltrim(key, -MAX_RUN_LOG_ENTRIES, -1)
        pipe.expire(key, REDIS_KEY_TTL_SECONDS)
        pipe.execute()

    def is_stop_requested(self, run_id: str) -> bool:
        return bool(self.client.exists(run_key(run_id, "stop")))

    def request_stop(self, run_id: str) -> None:
        key = run_key(run_id, "stop")
        self.client.set(key, "1")
        self.client.expire(key, REDIS_KEY_TTL_SECONDS)

    def clear_stop(self, run_id: str) -> None:
        self.client.delete(run_key(run_id, "stop"))


class RedisCancellationToken(CancellationToken):
    """Cancellation token that also honors a stop flag written by the API"""

    def __init__(self, store: RedisStore, run_id: str):
        super().__init__()
        self.store = store
        self.run_id = run_id

    def cancel(self) -> None:
        super().cancel()
        self.store.request_stop(self.run_id)

    def reset(self) -> None:
        super().reset()
        self.store.clear_stop(self.run_id)

    @property
    def is_cancelled(self) -> bool:
        if super().is_cancelled:
            return True
        if self.store.is_stop_requested(self.run_id):
            # Latch locally so later checks skip the round trip
            self._event.set()
            return True
        return False
