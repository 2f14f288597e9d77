"""Request handlers for comparing, creating and storing datasets."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Union

from datasync.cache import Cache
from datasync.compare import compare
from datasync.jobs import Duration, Job, add_job
from datasync.model import CompareResponse, CompareStatus, Destination, Node, StreamParams
from datasync.settings import Settings, user_from_headers

logger = logging.getLogger(__name__)

CACHE_MAX_DURATION = timedelta(minutes=5)
DEFAULT_LOCK_DURATION = timedelta(hours=24)
ERROR_KEY = "error {}"

Body = Union[bytes, str]


class _BadRequest(ValueError):
    """The request body could not be understood."""


@dataclass(frozen=True)
class Response:
    """Status code and body of a handled request."""

    status: int = 200
    body: bytes = b""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.body)


def _ok(payload: Any) -> Response:
    return Response(200, json.dumps(payload).encode("utf-8"))


def _error(message: str) -> Response:
    return Response(500, message.encode("utf-8"))


_NOT_READY = "500 - cache not ready"
_BAD_REQUEST = "500 - bad request"


def _parse(body: Body) -> Dict[str, Any]:
    try:
        data = json.loads(body)
    except (ValueError, TypeError) as error:
        raise _BadRequest(str(error)) from error
    if not isinstance(data, dict):
        raise _BadRequest("request body must be a JSON object")
    return data


def _nodes_by_id(items: Any) -> Dict[str, Node]:
    nodes = (Node.from_dict(item) for item in (items or []))
    return {node.id: node for node in nodes}


def _empty_response() -> CompareResponse:
    return CompareResponse(id="", status=CompareStatus.NEW, url="")


@dataclass
class CachedResponse:
    """A comparison result kept in the cache until the client collects it."""

    key: str = ""
    ready: bool = False
    response: CompareResponse = field(default_factory=_empty_response)
    error_message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "ready": self.ready,
            "res": self.response.to_dict(),
            "err": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CachedResponse":
        res = data.get("res")
        return cls(
            key=data.get("key", ""),
            ready=bool(data.get("ready", False)),
            response=CompareResponse.from_dict(res) if res else _empty_response(),
            error_message=data.get("err", ""),
        )


def cache_response(cache: Cache, cached: CachedResponse) -> None:
    """Keep ``cached`` under its key for a few minutes."""
    cache.set(cached.key, json.dumps(cached.to_dict()), CACHE_MAX_DURATION)


class Handlers:
    """The JSON endpoints of the synchronisation service."""

    def __init__(
        self,
        cache: Optional[Cache],
        destination: Destination,
        settings: Settings,
        lock_duration: Duration = DEFAULT_LOCK_DURATION,
    ) -> None:
        self.cache = cache
        self.destination = destination
        self.settings = settings
        self.lock_duration = lock_duration

    def _user(self, headers: Mapping[str, str]) -> str:
        return user_from_headers(headers, self.settings)

    def _guarded(self, action: Callable[[], Response]) -> Response:
        try:
            return action()
        except _BadRequest:
            return _error(_BAD_REQUEST)
        except Exception as error:
            return _error(f"500 - {error}")

    def get_cached_response(self, body: Body) -> Response:
        """Return a finished comparison once, or a not-ready answer while it runs."""
        if self.cache is None:
            return _error(_NOT_READY)
        cache = self.cache

        def run() -> Response:
            request = _parse(body)
            key = request.get("key", "")
            if not isinstance(key, str):
                raise _BadRequest("key must be a string")
            result = CachedResponse(key=key)
            cached = cache.get(key)
            if cached:
                data = dict(json.loads(cached))
                data.setdefault("key", key)
                result = CachedResponse.from_dict(data)
                cache.delete(result.key)
                result.ready = True
            if result.error_message:
                return _error(f"500 - {result.error_message}")
            return _ok(result.to_dict())

        return self._guarded(run)

    def compare(self, body: Body, headers: Mapping[str, str]) -> Response:
        """Compare the posted nodes with the dataset's current files."""
        if self.cache is None:
            return _error(_NOT_READY)
        cache = self.cache

        def run() -> Response:
            request = _parse(body)
            try:
                persistent_id = request.get("persistentId", "")
                dataverse_key = request.get("dataverseKey", "")
                nodes = _nodes_by_id(request.get("data"))
            except (ValueError, TypeError, AttributeError, KeyError) as error:
                raise _BadRequest(str(error)) from error
            failure = cache.get(ERROR_KEY.format(persistent_id))
            if failure:
                return _error(f"Job failed: {failure}")
            result = compare(
                cache,
                self.destination,
                nodes,
                persistent_id,
                dataverse_key,
                self._user(headers),
                False,
                self.lock_duration,
            )
            return _ok(result.to_dict())

        return self._guarded(run)

    def dv_objects(self, body: Body, headers: Mapping[str, str]) -> Response:
        """List the collections or datasets the user may choose from."""

        def run() -> Response:
            request = _parse(body)
            items = self.destination.options(
                request.get("objectType", ""),
                request.get("collectionId", ""),
                request.get("searchTerm", ""),
                request.get("token", ""),
                self._user(headers),
            )
            return _ok([item.to_dict() for item in items])

        return self._guarded(run)

    def new_dataset(self, body: Body, headers: Mapping[str, str]) -> Response:
        """Create a new dataset and return its persistent id."""

        def run() -> Response:
            request = _parse(body)
            pid = self.destination.create_new_repo(
                request.get("collection", ""),
                request.get("dataverseKey", ""),
                self._user(headers),
            )
            return _ok({"persistentId": pid})

        return self._guarded(run)

    def store(self, body: Body, headers: Mapping[str, str]) -> Response:
        """Queue a job that writes the selected nodes to the dataset."""
        if self.cache is None:
            return _error(_NOT_READY)
        cache = self.cache

        def run() -> Response:
            request = _parse(body)
            user = self._user(headers)
            try:
                selected = _nodes_by_id(request.get("selectedNodes"))
                params_data = dict(request.get("streamParams") or {})
                if not params_data.get("user"):
                    params_data["user"] = user
                stream_params = StreamParams.from_dict(params_data)
            except (ValueError, TypeError, AttributeError, KeyError) as error:
                raise _BadRequest(str(error)) from error
            persistent_id = request.get("persistentId", "")
            job = Job(
                persistent_id=persistent_id,
                dataverse_key=request.get("dataverseKey", ""),
                user=user,
                session_id=stream_params.token,
                writable_nodes=selected,
                plugin=request.get("plugin", ""),
                stream_params=stream_params,
                send_email_on_success=bool(request.get("sendEmailOnSucces", False)),
            )
            add_job(cache, job, self.lock_duration)
            return _ok(
                {
                    "status": "OK",
                    "datasetUrl": self.destination.get_repo_url(persistent_id, True),
                }
            )

        return self._guarded(run)