"""Queue of synchronisation jobs and the per-dataset locks that guard it."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union

from datasync.cache import Cache
from datasync.model import Node, StreamParams

logger = logging.getLogger(__name__)

JOB_QUEUE_KEY = "jobs"
LOCK_PREFIX = "lock: "
HASH_ONLY_PLUGIN = "hash-only"

_ZERO_TIME = "0001-01-01T00:00:00Z"
_FRACTION = re.compile(r"\.(\d+)")

Duration = Union[timedelta, float, int]


class JobLockedError(RuntimeError):
    """Raised when a job is added for a dataset that already has one running."""

    def __init__(self, persistent_id: str) -> None:
        super().__init__("Job for this dataverse is already in progress")
        self.persistent_id = persistent_id


def _as_timedelta(duration: Duration) -> timedelta:
    return duration if isinstance(duration, timedelta) else timedelta(seconds=float(duration))


def _format_time(moment: Optional[datetime]) -> str:
    if moment is None:
        return _ZERO_TIME
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.isoformat()


def _parse_time(text: Optional[str]) -> Optional[datetime]:
    if not text or text.startswith("0001-01-01"):
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda match: "." + (match.group(1) + "000000")[:6], text, count=1)
    return datetime.fromisoformat(text)


@dataclass
class Job:
    """Work to be done on one dataset: the nodes still to write, hash or delete."""

    persistent_id: str = ""
    dataverse_key: str = ""
    user: str = ""
    session_id: str = ""
    writable_nodes: Dict[str, Node] = field(default_factory=dict)
    plugin: str = ""
    streams: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    stream_params: StreamParams = field(default_factory=StreamParams)
    err_cnt: int = 0
    deadline: Optional[datetime] = None
    send_email_on_success: bool = False

    def to_json(self) -> str:
        return json.dumps(
            {
                "DataverseKey": self.dataverse_key,
                "User": self.user,
                "SessionId": self.session_id,
                "PersistentId": self.persistent_id,
                "WritableNodes": {
                    key: node.to_dict() for key, node in self.writable_nodes.items()
                },
                "Plugin": self.plugin,
                "Streams": self.streams,
                "StreamParams": self.stream_params.to_dict(),
                "ErrCnt": self.err_cnt,
                "Deadline": _format_time(self.deadline),
                "SendEmailOnSucces": self.send_email_on_success,
            }
        )

    @classmethod
    def from_json(cls, text: str) -> "Job":
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("a job must be a JSON object")
        return cls(
            persistent_id=data.get("PersistentId", ""),
            dataverse_key=data.get("DataverseKey", ""),
            user=data.get("User", ""),
            session_id=data.get("SessionId", ""),
            writable_nodes={
                key: Node.from_dict(value)
                for key, value in (data.get("WritableNodes") or {}).items()
            },
            plugin=data.get("Plugin", ""),
            streams=dict(data.get("Streams") or {}),
            stream_params=StreamParams.from_dict(data.get("StreamParams") or {}),
            err_cnt=int(data.get("ErrCnt", 0)),
            deadline=_parse_time(data.get("Deadline")),
            send_email_on_success=bool(data.get("SendEmailOnSucces", False)),
        )


def is_locked(cache: Cache, persistent_id: str) -> bool:
    """Whether a job for the dataset is queued or running."""
    return cache.get(LOCK_PREFIX + persistent_id) not in (None, "")


def lock(cache: Cache, persistent_id: str, duration: Duration) -> bool:
    """Take the dataset's lock for ``duration``; return False if it is already held."""
    return cache.set_nx(LOCK_PREFIX + persistent_id, True, _as_timedelta(duration))


def unlock(cache: Cache, persistent_id: str) -> None:
    """Release the dataset's lock."""
    cache.delete(LOCK_PREFIX + persistent_id)


def add_job(cache: Cache, job: Job, lock_duration: Duration) -> bool:
    """Lock the dataset and queue ``job``; return False when it has nothing to do.

    Raises JobLockedError when the dataset already has a job.
    """
    if not job.writable_nodes:
        return False
    if not lock(cache, job.persistent_id, lock_duration):
        raise JobLockedError(job.persistent_id)
    queued = replace(job, deadline=datetime.now(timezone.utc) + _as_timedelta(lock_duration))
    cache.lpush(JOB_QUEUE_KEY, queued.to_json())
    logger.info("job added for %s", job.persistent_id)
    return True


def requeue_job(cache: Cache, job: Job) -> bool:
    """Put an unfinished job back on the queue, keeping the lock it holds."""
    if not job.writable_nodes:
        return False
    cache.lpush(JOB_QUEUE_KEY, job.to_json())
    return True


def pop_job(cache: Cache) -> Optional[Job]:
    """Take the oldest job from the queue, or None if there is none to use."""
    text = cache.rpop(JOB_QUEUE_KEY)
    if text is None:
        return None
    try:
        return Job.from_json(text)
    except (ValueError, TypeError, KeyError) as error:
        logger.warning("failed to unmarshall a job: %s", error)
        return None