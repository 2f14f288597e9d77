"""Hashes of destination files recomputed with the algorithm the source uses."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Tuple

from datasync.cache import Cache
from datasync.jobs import HASH_ONLY_PLUGIN, Duration, Job, add_job
from datasync.model import Node

logger = logging.getLogger(__name__)

HASHES_PREFIX = "hashes: "
PROGRESS_KEY = "{} -> {}"
WRITTEN = "written"
DELETED = "deleted"
UNKNOWN_HASH = "?"


@dataclass
class CalculatedHashes:
    """A destination file's own hash and the hashes computed for it since."""

    local_hash_type: str = ""
    local_hash_value: str = ""
    remote_hashes: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "LocalHashType": self.local_hash_type,
            "LocalHashValue": self.local_hash_value,
            "RemoteHashes": dict(self.remote_hashes),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CalculatedHashes":
        return cls(
            local_hash_type=data.get("LocalHashType", ""),
            local_hash_value=data.get("LocalHashValue", ""),
            remote_hashes=dict(data.get("RemoteHashes") or {}),
        )


def get_known_hashes(cache: Cache, persistent_id: str) -> Dict[str, CalculatedHashes]:
    """Return the stored hashes of a dataset, or an empty mapping if none are usable."""
    text = cache.get(HASHES_PREFIX + persistent_id)
    if not text:
        return {}
    try:
        data = json.loads(text)
        return {key: CalculatedHashes.from_dict(value) for key, value in data.items()}
    except (ValueError, TypeError, AttributeError):
        return {}


def store_known_hashes(
    cache: Cache, persistent_id: str, known_hashes: Mapping[str, CalculatedHashes]
) -> None:
    """Save the hashes of a dataset without expiry."""
    text = json.dumps({key: value.to_dict() for key, value in known_hashes.items()})
    cache.set(HASHES_PREFIX + persistent_id, text, 0)


def invalidate_known_hashes(cache: Cache, persistent_id: str) -> None:
    """Forget every stored hash of a dataset."""
    cache.delete(HASHES_PREFIX + persistent_id)


def check_known_hashes(cache: Cache, persistent_id: str, mapped: Mapping[str, Node]) -> None:
    """Drop the stored hashes if any destination file changed since they were computed."""
    known_hashes = get_known_hashes(cache, persistent_id)
    for key, node in mapped.items():
        known = known_hashes.get(key)
        if known is None or not known.local_hash_value:
            continue
        destination = node.attributes.destination_file
        if (
            known.local_hash_value != destination.hash
            or known.local_hash_type != destination.hash_type
        ):
            invalidate_known_hashes(cache, persistent_id)
            break


def calculate_hash(
    node: Node,
    known_hashes: Dict[str, CalculatedHashes],
    hash_file: Callable[[Node], bytes],
) -> None:
    """Compute the node's destination file hash in its remote hash type, unless known.

    ``hash_file`` reads the stored file and returns the digest.
    """
    hash_type = node.attributes.remote_hash_type
    destination = node.attributes.destination_file
    known = known_hashes.get(node.id)
    if (
        known is not None
        and known.local_hash_type == destination.hash_type
        and known.local_hash_value == destination.hash
    ):
        if hash_type in known.remote_hashes:
            return
    else:
        known = CalculatedHashes(
            local_hash_type=destination.hash_type,
            local_hash_value=destination.hash,
        )
    try:
        digest = hash_file(node)
    except Exception as error:
        raise RuntimeError(
            f"failed to hash local file {destination.storage_identifier}: {error}"
        ) from error
    known.remote_hashes[hash_type] = digest.hex()
    known_hashes[node.id] = known


def local_rehash_to_match_remote_hash_type(
    cache: Cache,
    dataverse_key: str,
    user: str,
    persistent_id: str,
    nodes: Mapping[str, Node],
    add_jobs: bool,
    lock_duration: Duration,
) -> Tuple[Dict[str, Node], bool]:
    """Give each node a destination hash comparable with its remote hash.

    Returns copies of the nodes and whether some hashes are still unknown; with
    ``add_jobs`` a hash-only job is queued to compute those.
    """
    known_hashes = get_known_hashes(cache, persistent_id)
    job_nodes: Dict[str, Node] = {}
    result: Dict[str, Node] = {}
    for key, original in nodes.items():
        node = copy.deepcopy(original)
        attributes = node.attributes
        destination = attributes.destination_file
        if attributes.remote_hash_type:
            known = known_hashes.get(node.id)
            found = known is not None and attributes.remote_hash_type in known.remote_hashes
            value = known.remote_hashes[attributes.remote_hash_type] if found else ""
            if destination.hash and attributes.remote_hash_type == destination.hash_type:
                value, found = destination.hash, True
            progress = cache.get(PROGRESS_KEY.format(persistent_id, key)) or ""
            if progress == WRITTEN:
                destination.hash_type = attributes.remote_hash_type
                value, found = attributes.remote_hash, True
            if progress == DELETED:
                value, found = "", True
            if not found and destination.hash:
                job_nodes[key] = copy.deepcopy(node)
                value = UNKNOWN_HASH
            destination.hash = value
        result[key] = node
    if job_nodes and add_jobs:
        job = Job(
            persistent_id=persistent_id,
            dataverse_key=dataverse_key,
            user=user,
            writable_nodes=job_nodes,
            plugin=HASH_ONLY_PLUGIN,
        )
        try:
            add_job(cache, job, lock_duration)
        except Exception as error:
            logger.warning("adding rehashing job failed: %s", error)
    return result, bool(job_nodes)