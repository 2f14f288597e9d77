"""Data shared between the comparison, the job queue and the destination repository."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, BinaryIO, Callable, Dict, List, Mapping, Optional


class Action(IntEnum):
    """What a synchronisation job should do with a file."""

    IGNORE = 0
    COPY = 1
    UPDATE = 2
    DELETE = 3


class Status(IntEnum):
    """How a file at the source relates to its copy at the destination."""

    NEW = 0
    DELETED = 1
    EQUAL = 2
    UPDATED = 3
    UNKNOWN = 4


class CompareStatus(IntEnum):
    """State of a whole comparison."""

    NEW = 0
    UPDATING = 1
    FINISHED = 2


@dataclass
class DestinationFile:
    """A file as stored in the destination repository."""

    id: int = 0
    filesize: int = 0
    hash: str = ""
    hash_type: str = ""
    storage_identifier: str = ""


@dataclass
class Attributes:
    """Source and destination details of one tree node."""

    url: str = ""
    is_file: bool = False
    remote_hash: str = ""
    remote_hash_type: str = ""
    remote_filesize: int = 0
    destination_file: DestinationFile = field(default_factory=DestinationFile)


def _destination_file_to_dict(item: DestinationFile) -> Dict[str, Any]:
    return {
        "id": item.id,
        "filesize": item.filesize,
        "hash": item.hash,
        "hashType": item.hash_type,
        "storageIdentifier": item.storage_identifier,
    }


def _destination_file_from_dict(data: Mapping[str, Any]) -> DestinationFile:
    return DestinationFile(
        id=int(data.get("id", 0)),
        filesize=int(data.get("filesize", 0)),
        hash=data.get("hash", ""),
        hash_type=data.get("hashType", ""),
        storage_identifier=data.get("storageIdentifier", ""),
    )


def _attributes_to_dict(item: Attributes) -> Dict[str, Any]:
    return {
        "url": item.url,
        "isFile": item.is_file,
        "remoteHash": item.remote_hash,
        "remoteHashType": item.remote_hash_type,
        "remoteFilesize": item.remote_filesize,
        "destinationFile": _destination_file_to_dict(item.destination_file),
    }


def _attributes_from_dict(data: Mapping[str, Any]) -> Attributes:
    return Attributes(
        url=data.get("url", ""),
        is_file=bool(data.get("isFile", False)),
        remote_hash=data.get("remoteHash", ""),
        remote_hash_type=data.get("remoteHashType", ""),
        remote_filesize=int(data.get("remoteFilesize", 0)),
        destination_file=_destination_file_from_dict(data.get("destinationFile") or {}),
    )


@dataclass
class Node:
    """One entry of the file tree being synchronised, keyed by its path id."""

    id: str
    name: str = ""
    path: str = ""
    action: Action = Action.IGNORE
    status: Status = Status.NEW
    attributes: Attributes = field(default_factory=Attributes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "action": int(self.action),
            "status": int(self.status),
            "attributes": _attributes_to_dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Node":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            path=data.get("path", ""),
            action=Action(data.get("action", Action.IGNORE)),
            status=Status(data.get("status", Status.NEW)),
            attributes=_attributes_from_dict(data.get("attributes") or {}),
        )


@dataclass(frozen=True)
class SelectItem:
    """A labelled choice offered to the user."""

    label: str
    value: str

    def to_dict(self) -> Dict[str, str]:
        return {"label": self.label, "value": self.value}


_STREAM_PARAM_KEYS = {
    "pluginId": "plugin_id",
    "repoName": "repo_name",
    "url": "url",
    "option": "option",
    "user": "user",
    "token": "token",
}


@dataclass
class StreamParams:
    """Parameters a source plugin needs to open file streams.

    Keys that are not recognised are kept in ``extra`` and written back unchanged.
    """

    plugin_id: str = ""
    repo_name: str = ""
    url: str = ""
    option: str = ""
    user: str = ""
    token: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.extra)
        result.update(
            {key: getattr(self, attribute) for key, attribute in _STREAM_PARAM_KEYS.items()}
        )
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StreamParams":
        known = {
            attribute: data[key]
            for key, attribute in _STREAM_PARAM_KEYS.items()
            if key in data
        }
        extra = {key: value for key, value in data.items() if key not in _STREAM_PARAM_KEYS}
        return cls(extra=extra, **known)


@dataclass
class CompareResponse:
    """Result of comparing source nodes with the destination dataset."""

    id: str
    status: CompareStatus
    data: List[Node] = field(default_factory=list)
    url: str = ""
    max_file_size: int = 0
    rejected: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "status": int(self.status),
            "data": [node.to_dict() for node in self.data],
            "url": self.url,
        }
        if self.max_file_size:
            result["maxFileSize"] = self.max_file_size
        if self.rejected:
            result["rejected"] = list(self.rejected)
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CompareResponse":
        return cls(
            id=data.get("id", ""),
            status=CompareStatus(data.get("status", CompareStatus.NEW)),
            data=[Node.from_dict(item) for item in data.get("data") or []],
            url=data.get("url", ""),
            max_file_size=int(data.get("maxFileSize", 0)),
            rejected=list(data.get("rejected") or []),
        )


@dataclass
class Stream:
    """A lazily opened binary source of one file's content."""

    opener: Callable[[], BinaryIO]
    closer: Optional[Callable[[], None]] = None
    _handle: Optional[BinaryIO] = field(default=None, init=False, repr=False)

    def open(self) -> BinaryIO:
        self._handle = self.opener()
        return self._handle

    def close(self) -> None:
        handle, self._handle = self._handle, None
        try:
            if handle is not None:
                handle.close()
        finally:
            if self.closer is not None:
                self.closer()

    def __enter__(self) -> BinaryIO:
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class Destination(ABC):
    """The repository that files are synchronised into."""

    @abstractmethod
    def is_direct_upload(self) -> bool:
        """Whether files are written straight to storage rather than through the API."""

    @abstractmethod
    def check_permission(self, token: str, user: str, persistent_id: str) -> None:
        """Raise if the user may not edit the dataset."""

    @abstractmethod
    def create_new_repo(self, collection: str, token: str, user: str) -> str:
        """Create a new dataset in ``collection`` and return its persistent id."""

    @abstractmethod
    def get_repo_url(self, pid: str, draft: bool) -> str:
        """Return the web address of a dataset."""

    @abstractmethod
    def write_over_wire(
        self,
        db_id: int,
        node_id: str,
        token: str,
        user: str,
        persistent_id: str,
        source: BinaryIO,
    ) -> None:
        """Upload everything read from ``source`` as file ``node_id``, replacing ``db_id`` if set."""

    @abstractmethod
    def save_after_direct_upload(
        self,
        replace: bool,
        token: str,
        user: str,
        persistent_id: str,
        storage_identifiers: List[str],
        nodes: List[Node],
    ) -> None:
        """Register files already placed in storage with the dataset."""

    @abstractmethod
    def cleanup_left_over_files(self, persistent_id: str, token: str, user: str) -> None:
        """Remove stored files that no dataset entry refers to."""

    @abstractmethod
    def delete_file(self, token: str, user: str, file_id: int) -> None:
        """Delete a file from the dataset."""

    @abstractmethod
    def options(
        self, object_type: str, collection: str, search_term: str, token: str, user: str
    ) -> List[SelectItem]:
        """List collections or datasets the user can choose from."""

    @abstractmethod
    def get_stream(self, token: str, user: str, file_id: int) -> BinaryIO:
        """Open the content of a stored file for reading."""

    @abstractmethod
    def query(self, persistent_id: str, token: str, user: str) -> Dict[str, Node]:
        """Return the dataset's files keyed by node id."""

    @abstractmethod
    def get_user_email(self, token: str, user: str) -> str:
        """Return the e-mail address of the user."""