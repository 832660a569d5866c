"""
Redis store for API service.
"""

import redis
import json
from typing import Optional, Dict, Any, List
import os
from shared.constants import REDIS_KEY_TTL_SECONDS
from shared.types import RunKind, RunStatus
from shared.utils import run_key


class RedisStore:
    """Redis client wrapper for API service"""

    def __init__(self, redis_url: Optional[str] = None):
        url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.client = redis.Redis.from_url(url, decode_responses=False)

    def _set_json(self, key: str, value: Any) -> None:
        self.client.set(key, json.dumps(value))
        self.client.expire(key, REDIS_KEY_TTL_SECONDS)

    def _get_json(self, key: str) -> Optional[Any]:
        data = self.client.get(key)
        if data:
            return json.loads(data)
        return None

    def store_run_request(self, run_id: str, payload: Dict[str, Any]) -> None:
        self._set_json(run_key(run_id, "request"), payload)

    def init_run_meta(self, run_id: str, kind: RunKind) -> Dict[str, Any]:
        meta = {
            "run_id": run_id,
            "kind": kind.value,
            "status": RunStatus.PENDING.value,
            "progress": 0,
            "error": None,
        }
        self._set_json(run_key(run_id, "meta"), meta)
        return meta

    def get_run_meta(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self._get_json(run_key(run_id, "meta"))

    def get_run_result(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self._get_json(run_key(run_id, "result"))

    def get_run_logs(self, run_id: str) -> List[Dict[str, Any]]:
        entries = self.client.lrange(run_key(run_id, "logs"), 0, -1)
        return [json.loads(entry) for entry in entries]

    def request_stop(self, run_id: str) -> None:
        key = run_key(run_id, "stop")
        self.client.set(key, "1")
        self.client.expire(key, REDIS_KEY_TTL_SECONDS)
