"""Comparison of source file trees with the files of a destination dataset."""

from __future__ import annotations

import copy
from typing import Dict, Mapping

from datasync.cache import Cache
from datasync.jobs import Duration, is_locked
from datasync.model import CompareResponse, CompareStatus, Destination, Node, Status
from datasync.rehashing import UNKNOWN_HASH, local_rehash_to_match_remote_hash_type


def merge_node_maps(to: Mapping[str, Node], from_: Mapping[str, Node]) -> Dict[str, Node]:
    """Overlay the remote hash details of the files in ``from_`` onto ``to``.

    Files missing from ``to`` are added; the inputs are left untouched.
    """
    result = {key: copy.deepcopy(node) for key, node in to.items()}
    for key, source in from_.items():
        if not source.attributes.is_file:
            continue
        node = copy.deepcopy(to.get(key, source))
        if node.attributes.is_file:
            node.attributes.remote_hash = source.attributes.remote_hash
            node.attributes.remote_hash_type = source.attributes.remote_hash_type
            node.attributes.url = source.attributes.url
        result[key] = node
    return result


def _status(node: Node) -> Status:
    attributes = node.attributes
    destination_hash = attributes.destination_file.hash
    if not attributes.remote_hash:
        return Status.DELETED
    if destination_hash == "":
        return Status.NEW
    if destination_hash == UNKNOWN_HASH:
        return Status.UNKNOWN
    if destination_hash != attributes.remote_hash:
        return Status.UPDATED
    return Status.EQUAL


def compare(
    cache: Cache,
    destination: Destination,
    nodes: Mapping[str, Node],
    pid: str,
    dataverse_key: str,
    user: str,
    add_jobs: bool,
    lock_duration: Duration,
) -> CompareResponse:
    """Set the status of every file node and report the state of the comparison."""
    rehashed, job_needed = local_rehash_to_match_remote_hash_type(
        cache, dataverse_key, user, pid, nodes, add_jobs, lock_duration
    )
    data = []
    has_destination_hash = False
    for node in rehashed.values():
        if not node.attributes.is_file:
            continue
        node.status = _status(node)
        data.append(node)
        has_destination_hash = has_destination_hash or node.attributes.destination_file.hash != ""
    if job_needed or is_locked(cache, pid):
        status = CompareStatus.UPDATING
    elif has_destination_hash:
        status = CompareStatus.NEW
    else:
        status = CompareStatus.FINISHED
    return CompareResponse(
        id=pid,
        status=status,
        data=data,
        url=destination.get_repo_url(pid, False),
    )