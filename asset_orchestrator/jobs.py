"""
Job records for the HTTP surface, kept in redis: one `job:<id>` hash per job
plus a history list of job ids, newest first.
"""
import json
import logging
import time
from typing import Any, Dict, List, Optional

from redis import Redis, RedisError

from asset_shared.errors import StorageError
from asset_shared.schemas import PipelineState, ProgressEvent

from . import config

logger = logging.getLogger(__name__)

JOB_PREFIX = "job:"
JOB_LIST_KEY = "assets:job:list"  # list of job_id for history
HISTORY_LIMIT = 100

_JSON_FIELDS = ("request", "result", "error")


def _storage_error(operation: str, e: RedisError) -> StorageError:
    return StorageError(f"Job store {operation} failed: {e}", operation=operation, storage_type="redis", cause=e)


class JobStore:
    def __init__(self, client: Optional[Redis] = None):
        self._client = client

    @property
    def client(self) -> Redis:
        if self._client is None:
            self._client = Redis.from_url(config.REDIS_URL, decode_responses=True)
        return self._client

    def _hset(self, job_id: str, mapping: Dict[str, Any]) -> None:
        clean = {}
        for k, v in mapping.items():
            if v is None:
                continue
            clean[k] = json.dumps(v, default=str) if k in _JSON_FIELDS else str(v)
        try:
            self.client.hset(f"{JOB_PREFIX}{job_id}", mapping=clean)
        except RedisError as e:
            raise _storage_error("write", e) from e

    def create(self, job_id: str, kind: str, request: Optional[Dict[str, Any]] = None) -> None:
        self._hset(job_id, {
            "kind": kind,
            "state": PipelineState.QUEUED.value,
            "progress": 0,
            "step": "Queued",
            "request": request or {},
            "created_at": int(time.time()),
        })
        try:
            self.client.lpush(JOB_LIST_KEY, job_id)
        except RedisError as e:
            raise _storage_error("write", e) from e

    def update_progress(self, job_id: str, event: ProgressEvent) -> None:
        self._hset(job_id, {"state": event.stage, "progress": event.percent, "step": event.step})

    def complete(self, job_id: str, result: Dict[str, Any]) -> None:
        self._hset(job_id, {
            "state": PipelineState.COMPLETED.value,
            "progress": 100,
            "step": "Completed",
            "result": result,
            "finished_at": int(time.time()),
        })

    def fail(self, job_id: str, error: Dict[str, Any], stage: Optional[str] = None) -> None:
        self._hset(job_id, {
            "state": PipelineState.FAILED.value,
            "step": f"Failed at {stage}" if stage else "Failed",
            "failed_stage": stage,
            "error": error,
            "finished_at": int(time.time()),
        })

    def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        try:
            data = self.client.hgetall(f"{JOB_PREFIX}{job_id}")
        except RedisError as e:
            raise _storage_error("read", e) from e
        if not data:
            return None
        record: Dict[str, Any] = {"job_id": job_id, **data}
        for field in _JSON_FIELDS:
            if field in record:
                try:
                    record[field] = json.loads(record[field])
                except ValueError:
                    logger.warning("Job %s has malformed %s field", job_id, field)
        record["progress"] = int(record.get("progress") or 0)
        return record

    def list(self, limit: int = HISTORY_LIMIT) -> List[Dict[str, Any]]:
        """Newest first."""
        try:
            job_ids = self.client.lrange(JOB_LIST_KEY, 0, limit - 1)
        except RedisError as e:
            raise _storage_error("list", e) from e
        out = []
        for jid in job_ids:
            record = self.get(jid)
            if record:
                out.append(record)
        return out

    def delete(self, job_id: str) -> bool:
        try:
            removed = self.client.delete(f"{JOB_PREFIX}{job_id}")
            self.client.lrem(JOB_LIST_KEY, 0, job_id)
        except RedisError as e:
            raise _storage_error("delete", e) from e
        return bool(removed)

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except RedisError as e:
            raise _storage_error("ping", e) from e

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
