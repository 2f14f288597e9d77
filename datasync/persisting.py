"""The worker that carries out queued synchronisation jobs."""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

from datasync.cache import Cache
from datasync.hashing import HashType
from datasync.jobs import HASH_ONLY_PLUGIN, Job, pop_job, requeue_job, unlock
from datasync.model import Action, Destination, Node, Stream, StreamParams
from datasync.rehashing import (
    DELETED,
    PROGRESS_KEY,
    WRITTEN,
    CalculatedHashes,
    calculate_hash,
    get_known_hashes,
    store_known_hashes,
)
from datasync.settings import (
    Settings,
    content_on_error,
    content_on_success,
    send_mail,
    subject_on_error,
    subject_on_success,
)
from datasync.storage import (
    generate_file_name,
    generate_storage_identifier,
    hash_stored_file,
    write_file,
)

logger = logging.getLogger(__name__)

MAX_ERRORS = 100
NOT_NEEDED = "not needed"
ERROR_KEY = "error {}"
PROGRESS_EVERY = 10

StreamsFactory = Callable[
    [Dict[str, Node], str, StreamParams],
    Tuple[Mapping[str, Stream], Optional[Callable[[], None]]],
]
TokenResolver = Callable[[str, str, str], str]


class _FlushError(RuntimeError):
    """Raised when registering uploaded files fails; ``flushed`` holds what succeeded."""

    def __init__(self, error: Exception, flushed: Set[str]) -> None:
        super().__init__(str(error))
        self.flushed = flushed


def filter_redundant(
    destination: Destination, job: Job, known_hashes: Mapping[str, CalculatedHashes]
) -> Dict[str, Node]:
    """Drop nodes whose work was already done, e.g. by a job that finished meanwhile."""
    filtered: Dict[str, Node] = {}
    is_delete = False
    for key, node in job.writable_nodes.items():
        known = known_hashes.get(key)
        local_hash = known.local_hash_value if known is not None else ""
        remote = (
            known.remote_hashes.get(node.attributes.remote_hash_type)
            if known is not None
            else None
        )
        if node.action == Action.DELETE:
            is_delete = True
        elif (
            remote is not None
            and remote == node.attributes.remote_hash
            and local_hash == node.attributes.destination_file.hash
        ):
            continue
        filtered[key] = node
    if not is_delete:
        return filtered
    existing = destination.query(job.persistent_id, job.dataverse_key, job.user)
    return {
        key: node
        for key, node in filtered.items()
        if not (node.action == Action.DELETE and key not in existing)
    }


def flush(
    destination: Destination,
    job: Job,
    to_add_identifiers: List[str],
    to_replace_identifiers: List[str],
    to_add_nodes: List[Node],
    to_replace_nodes: List[Node],
) -> Set[str]:
    """Register directly uploaded files with the dataset; return the ids registered."""
    flushed: Set[str] = set()
    batches = (
        (False, to_add_identifiers, to_add_nodes),
        (True, to_replace_identifiers, to_replace_nodes),
    )
    for replace, identifiers, nodes in batches:
        if not nodes:
            continue
        try:
            destination.save_after_direct_upload(
                replace, job.dataverse_key, job.user, job.persistent_id, identifiers, nodes
            )
        except Exception as error:
            raise _FlushError(error, flushed) from error
        flushed.update(node.id for node in nodes)
    return flushed


@dataclass
class _Pending:
    add_identifiers: List[str]
    add_nodes: List[Node]
    replace_identifiers: List[str]
    replace_nodes: List[Node]


class Worker:
    """Takes jobs from the queue and writes, deletes or rehashes their files."""

    def __init__(
        self,
        cache: Cache,
        destination: Destination,
        settings: Settings,
        streams_factory: Optional[StreamsFactory] = None,
        *,
        token_resolver: Optional[TokenResolver] = None,
        file_names_ttl: timedelta = timedelta(minutes=5),
        retry_delay: float = 10.0,
        poll_interval: float = 1.0,
    ) -> None:
        self.cache = cache
        self.destination = destination
        self.settings = settings
        self.streams_factory = streams_factory
        self.token_resolver = token_resolver
        self.file_names_ttl = file_names_ttl
        self.retry_delay = retry_delay
        self.poll_interval = poll_interval
        self._stop = threading.Event()

    def _check_cancelled(self, job: Job) -> None:
        if self._stop.is_set():
            raise RuntimeError("context canceled")
        if job.deadline is not None and datetime.now(timezone.utc) >= job.deadline:
            raise TimeoutError("context deadline exceeded")

    def do_work(self, job: Job) -> Job:
        """Carry out ``job``, removing finished nodes from it; raise if it fails."""
        if job.plugin == HASH_ONLY_PLUGIN:
            return self._rehash(job)
        if self.token_resolver is not None:
            job.stream_params.token = self.token_resolver(
                job.stream_params.token, job.session_id, job.stream_params.plugin_id
            )
        if self.streams_factory is None:
            raise ValueError("no stream source configured")
        streams, cleanup = self.streams_factory(job.writable_nodes, job.plugin, job.stream_params)
        try:
            known_hashes = get_known_hashes(self.cache, job.persistent_id)
            job.writable_nodes = filter_redundant(self.destination, job, known_hashes)
            self._persist(streams, job, known_hashes)
            self._send_success_mail(job)
        finally:
            if cleanup is not None:
                cleanup()
        return job

    def _progress(self, job: Job, done: int, total: int, known: Dict[str, CalculatedHashes]) -> None:
        if done % PROGRESS_EVERY == 0 and done < total:
            store_known_hashes(self.cache, job.persistent_id, known)
            logger.info("%s: processed %d/%d", job.persistent_id, done, total)

    def _rehash(self, job: Job) -> Job:
        self.destination.check_permission(job.dataverse_key, job.user, job.persistent_id)
        known_hashes = get_known_hashes(self.cache, job.persistent_id)

        def hash_file(node: Node) -> bytes:
            return hash_stored_file(
                self.destination, self.settings, job.dataverse_key, job.user,
                job.persistent_id, node,
            )

        try:
            nodes = list(job.writable_nodes.items())
            for done, (key, node) in enumerate(nodes, start=1):
                self._check_cancelled(job)
                calculate_hash(node, known_hashes, hash_file)
                self._progress(job, done, len(nodes), known_hashes)
                del job.writable_nodes[key]
        finally:
            store_known_hashes(self.cache, job.persistent_id, known_hashes)
        return job

    def _persist(
        self,
        streams: Mapping[str, Stream],
        job: Job,
        known_hashes: Dict[str, CalculatedHashes],
    ) -> None:
        self.destination.check_permission(job.dataverse_key, job.user, job.persistent_id)
        pending = _Pending([], [], [], [])
        written_keys: List[str] = []
        try:
            try:
                nodes = list(job.writable_nodes.items())
                for done, (key, original) in enumerate(nodes, start=1):
                    self._check_cancelled(job)
                    self._progress(job, done, len(nodes), known_hashes)
                    self._persist_node(streams, job, key, original, known_hashes, pending, written_keys)
                self._check_cancelled(job)
                written_keys.append(ERROR_KEY.format(job.persistent_id))
                self._cleanup(written_keys)
            finally:
                self._flush_pending(job, pending, known_hashes)
        finally:
            store_known_hashes(self.cache, job.persistent_id, known_hashes)

    def _persist_node(
        self,
        streams: Mapping[str, Stream],
        job: Job,
        key: str,
        original: Node,
        known_hashes: Dict[str, CalculatedHashes],
        pending: _Pending,
        written_keys: List[str],
    ) -> None:
        progress_key = PROGRESS_KEY.format(job.persistent_id, key)
        node = copy.deepcopy(original)
        attributes = node.attributes
        stored = attributes.destination_file
        if node.action == Action.DELETE:
            self.destination.delete_file(job.dataverse_key, job.user, stored.id)
            known_hashes.pop(node.id, None)
            del job.writable_nodes[key]
            self.cache.set(progress_key, DELETED, self.file_names_ttl)
            written_keys.append(progress_key)
            return

        stream = streams.get(key)
        if stream is None:
            raise KeyError(f"no stream for {key}")
        storage_identifier = generate_storage_identifier(generate_file_name(), self.settings)
        hash_type = self.settings.default_hash
        remote_hash_type = attributes.remote_hash_type
        result = write_file(
            self.destination, self.settings, stored.id, job.dataverse_key, job.user, stream,
            storage_identifier, job.persistent_id, hash_type, remote_hash_type, key,
            attributes.remote_filesize,
        )
        hash_value = result.hash.hex()
        stored.hash = hash_value
        stored.hash_type = hash_type
        stored.filesize = result.size

        remote_value = result.remote_hash.hex()
        if remote_hash_type == HashType.GIT_HASH.value:
            # The git hash needs the size up front, which not every source reports.
            remote_value = attributes.remote_hash
        if attributes.remote_hash != remote_value and attributes.remote_hash != NOT_NEEDED:
            if remote_hash_type == HashType.QUICK_XOR_HASH.value:
                logger.warning(
                    "WARNING: quickXorHash not equal, expected %s got %s",
                    attributes.remote_hash, remote_value,
                )
                remote_value = attributes.remote_hash
            else:
                raise RuntimeError("downloaded file hash not equal")

        if self.destination.is_direct_upload():
            if stored.id != 0:
                pending.replace_identifiers.append(storage_identifier)
                pending.replace_nodes.append(node)
            else:
                pending.add_identifiers.append(storage_identifier)
                pending.add_nodes.append(node)

        if hash_value != remote_value:
            known_hashes[node.id] = CalculatedHashes(
                local_hash_type=hash_type,
                local_hash_value=hash_value,
                remote_hashes={remote_hash_type: remote_value},
            )
        self.cache.set(progress_key, WRITTEN, self.file_names_ttl)
        written_keys.append(progress_key)
        del job.writable_nodes[key]

    def _flush_pending(
        self, job: Job, pending: _Pending, known_hashes: Dict[str, CalculatedHashes]
    ) -> None:
        if not pending.add_nodes and not pending.replace_nodes:
            return
        logger.info(
            "%s: flushing added: %d replaced: %d...",
            job.persistent_id, len(pending.add_nodes), len(pending.replace_nodes),
        )
        try:
            flush(
                self.destination, job, pending.add_identifiers, pending.replace_identifiers,
                pending.add_nodes, pending.replace_nodes,
            )
        except _FlushError as error:
            logger.warning("%s: flushing failed: %s", job.persistent_id, error)
            for node in pending.add_nodes + pending.replace_nodes:
                if node.id not in error.flushed:
                    job.writable_nodes[node.id] = node
                    known_hashes.pop(node.id, None)
                    self.cache.delete(node.id)
        pending.add_identifiers.clear()
        pending.add_nodes.clear()
        pending.replace_identifiers.clear()
        pending.replace_nodes.clear()
        logger.info("%s: flushed", job.persistent_id)

    def _cleanup(self, written_keys: List[str]) -> None:
        keys = list(written_keys)
        timer = threading.Timer(
            self.file_names_ttl.total_seconds(), lambda: self.cache.delete(*keys)
        )
        timer.daemon = True
        timer.start()

    def _mail(self, job: Job, subject: str, content: str, closing_html: bool) -> None:
        to = self.destination.get_user_email(job.dataverse_key, job.user)
        end = "</body></html>" if closing_html else "</body>"
        message = (
            f"To: {to}\r\nMIME-version: 1.0;\r\n"
            f'Content-Type: text/html; charset="UTF-8";\r\n'
            f"Subject: {subject}\r\n\r\n<html><body>{content}{end}\r\n"
        )
        send_mail(message, [to], self.settings)

    def _send_success_mail(self, job: Job) -> None:
        if not job.send_email_on_success:
            return
        url = self.destination.get_repo_url(job.persistent_id, True)
        try:
            self._mail(
                job,
                subject_on_success(job.persistent_id, self.settings),
                content_on_success(job.persistent_id, url, self.settings),
                closing_html=False,
            )
        except Exception as error:
            raise RuntimeError(f"error when sending email on succes: {error}") from error

    def _send_failed_mail(self, error: Exception, job: Job) -> None:
        self.cache.set(ERROR_KEY.format(job.persistent_id), str(error), self.file_names_ttl)
        try:
            url = self.destination.get_repo_url(job.persistent_id, True)
            self._mail(
                job,
                subject_on_error(job.persistent_id, self.settings),
                content_on_error(job.persistent_id, url, self.settings),
                closing_html=True,
            )
        except Exception as mail_error:
            logger.warning("error when sending email on error (%s): %s", error, mail_error)

    def process_next(self) -> bool:
        """Run one queued job, if any; return whether a job was taken."""
        job = pop_job(self.cache)
        if job is None:
            return False
        persistent_id = job.persistent_id
        logger.info("%s: job started", persistent_id)
        try:
            self.do_work(job)
        except Exception as error:
            job.err_cnt += 1
            if job.err_cnt == MAX_ERRORS:
                logger.warning("job failed and will not be retried: %s %s", persistent_id, error)
                self._send_failed_mail(error, job)
            else:
                logger.warning("job failed, but will retry: %s %s", persistent_id, error)
                self._stop.wait(self.retry_delay)
        if job.writable_nodes and job.err_cnt < MAX_ERRORS:
            try:
                requeue_job(self.cache, job)
            except Exception as error:
                logger.warning("re-adding job failed (no retry): %s %s", persistent_id, error)
                unlock(self.cache, persistent_id)
        else:
            unlock(self.cache, persistent_id)
            logger.info("%s: job ended", persistent_id)
        return True

    def run(self, stop_event: threading.Event) -> None:
        """Poll the queue until ``stop_event`` is set."""
        self._stop = stop_event
        try:
            while not stop_event.wait(self.poll_interval):
                self.process_next()
        finally:
            logger.info("worker exited gracefully")