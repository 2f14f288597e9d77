# datasync

`datasync` keeps a Dataverse dataset in step with files held elsewhere. It
compares the files a source reports with the files already in the dataset,
works out which are new, updated, deleted or unchanged, and writes the
selected ones into the dataset through a background job queue.

## What is in it

- `datasync.hashing`: `new_hasher(hash_type, file_size)` returns a hasher for
  any `HashType` (MD5, SHA-1, SHA-256, SHA-512, git blob hash, quickXorHash,
  file size), matched case-insensitively. `QuickXorHash` and `FileSizeHash`
  are implemented here; an unknown type raises `UnsupportedHashError`.
- `datasync.model`: `Node`, `Attributes`, `DestinationFile`, `StreamParams`,
  `CompareResponse` and `SelectItem`, with `to_dict`/`from_dict` JSON shapes;
  `Stream`, a lazily opened file source; and `Destination`, the abstract
  interface of the repository files are written into.
- `datasync.compare`: `compare(...)` gives each file node a `Status` and the
  whole comparison a `CompareStatus`; `merge_node_maps` overlays remote hash
  details onto a node map.
- `datasync.rehashing`: cached hashes per dataset, so that files whose stored
  checksum type differs from the source's can be rehashed once, by a queued
  hash-only job.
- `datasync.cache`: the `Cache` interface (get, set with expiry, set_nx,
  delete, lpush, rpop) and `MemoryCache`, a thread-safe in-process
  implementation.
- `datasync.jobs`: `Job` with JSON round trips, per-dataset locks
  (`lock`, `unlock`, `is_locked`), `add_job` (raises `JobLockedError` when the
  dataset already has a job), `requeue_job` and `pop_job`.
- `datasync.storage`: `write_file` copies a stream to the destination while
  hashing it, either through the destination's API, to a local directory
  (`file://` storage) or to S3 (`s3://bucket:name`, signed from the
  `AWS_ACCESS_KEY_ID`, `AWS_SECRET_ACCESS_KEY` and `AWS_SESSION_TOKEN`
  environment variables); `hash_stored_file` hashes what is already stored.
- `datasync.persisting`: `Worker` pops jobs, writes, deletes or rehashes their
  files, checks hashes, registers direct uploads, retries failed jobs up to
  100 times and sends a mail on success (if asked) or on final failure.
- `datasync.dataverse`: `DataverseClient`, a `Destination` for a Dataverse
  installation: file listing, permission checks, dataset creation, native API
  and SWORD uploads, direct-upload registration, deletes and collection or
  dataset search. `datasync.version` detects the server version and the
  features it enables (`FeatureFlags`).
- `datasync.handlers`: `Handlers` with `compare`, `get_cached_response`,
  `store`, `dv_objects` and `new_dataset`, each taking a JSON request body
  (and headers) and returning a `Response` with a status code and a JSON body.
- `datasync.settings`: `Settings` with `S3Config`, `SmtpConfig` and
  `MailConfig`, header helpers and the notification mail texts.
- `datasync.frontend_config`: `FrontendConfiguration` and
  `load_frontend_config(path)`, which reads the file given or the one named by
  the `FRONTEND_CONFIG_FILE` environment variable.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Examples

Hashing:

```python
from datasync.hashing import HashType, new_hasher

hasher = new_hasher(HashType.QUICK_XOR_HASH, 0)
hasher.update(b"hello world")
print(hasher.hexdigest())
```

Comparing what a source offers with what a dataset holds:

```python
from datasync.cache import MemoryCache
from datasync.compare import compare
from datasync.dataverse import DataverseClient
from datasync.settings import Settings

settings = Settings(dataverse_server="https://dataverse.example.com")
cache = MemoryCache()
destination = DataverseClient(settings, cache=cache)

response = compare(cache, destination, nodes, "doi:10.5072/FK2/ABCDEF",
                   "token", "user", add_jobs=True, lock_duration=3600)
print(response.to_dict())
```

`nodes` maps file ids to `Node` objects. When no `FeatureFlags` are given,
`DataverseClient` asks the server for its version first.

Processing the job queue in a thread:

```python
import threading
from datasync.persisting import Worker

worker = Worker(cache, destination, settings, streams_factory)
stop = threading.Event()
threading.Thread(target=worker.run, args=(stop,), daemon=True).start()
```

`streams_factory` is called with a job's writable nodes, its plugin name and
its `StreamParams`, and returns a mapping of node id to `Stream` together with
an optional cleanup callable. Hash-only jobs do not need it. Set `stop` to end
the loop.

## What it does not do

- It has no command and no web server: `Handlers` turn request bodies into
  `Response` objects, and mounting them on routes is left to the application.
- It has no source plugins. Reading files from a source repository is up to
  the `streams_factory` given to `Worker`.
- Its only cache is `MemoryCache`, which lives in one process; a shared store
  needs its own implementation of `Cache`.
- `Settings` are built in code; nothing reads them from the environment or a
  file.