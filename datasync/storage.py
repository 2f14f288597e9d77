"""Writing synchronised files to the destination and hashing what it holds."""

from __future__ import annotations

import hashlib
import hmac
import os
import shutil
import tempfile
import time
import uuid
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Dict, Optional, Tuple
from urllib.parse import quote, urlsplit

import requests

from datasync.hashing import FileSizeHash, new_hasher
from datasync.model import Destination, Node, Stream
from datasync.settings import S3Config, Settings

_CHUNK = 1024 * 1024
_UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
_S3_TIMEOUT = 300.0


@dataclass(frozen=True)
class StorageLocation:
    """Where a stored file lives: ``driver://bucket:filename`` or ``driver://filename``."""

    driver: str = ""
    bucket: str = ""
    filename: str = ""

    @classmethod
    def parse(cls, identifier: str) -> "StorageLocation":
        parts = identifier.split("://")
        if len(parts) != 2:
            return cls()
        driver, filename = parts
        bucket = ""
        second = filename.split(":")
        if len(second) == 2:
            bucket, filename = second
        return cls(driver, bucket, filename)


class HashingReader:
    """A reader that feeds every byte it returns to each of its hashers."""

    def __init__(self, reader: BinaryIO, *hashers: object) -> None:
        self._reader = reader
        self._hashers = hashers

    def read(self, size: int = -1) -> bytes:
        data = self._reader.read(size)
        if data:
            for hasher in self._hashers:
                hasher.update(data)
        return data


@dataclass(frozen=True)
class WriteResult:
    """Digests and size of a written file."""

    hash: bytes
    remote_hash: bytes
    size: int


def trim_protocol(persistent_id: str) -> str:
    """Strip the protocol prefix (``doi:``, ``hdl:``...) from a persistent id."""
    protocol, separator, remainder = persistent_id.partition(":")
    if not separator:
        raise ValueError(
            "expected at least two parts of persistentId: protocol and remainder, "
            f"found: {persistent_id}"
        )
    return remainder


def generate_file_name() -> str:
    """Return a fresh storage file name: hex milliseconds, a dash and 12 random hex digits."""
    millis = time.time_ns() // 1_000_000
    return f"{millis:x}-{uuid.uuid4().bytes[-6:].hex()}"


def generate_storage_identifier(file_name: str, settings: Settings) -> str:
    """Return the storage identifier of ``file_name`` under the default driver."""
    bucket = f"{settings.s3.aws_bucket}:" if settings.default_driver == "s3" else ""
    return f"{settings.default_driver}://{bucket}{file_name}"


def _local_path(settings: Settings, pid: str, filename: str) -> Path:
    return Path(settings.path_to_files_dir + pid + "/" + filename)


def _write_local(settings: Settings, pid: str, location: StorageLocation, reader: HashingReader) -> None:
    path = _local_path(settings, pid, location.filename)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as target:
        shutil.copyfileobj(reader, target, _CHUNK)


class _S3Client:
    """Minimal S3 object access signed with AWS signature version 4."""

    def __init__(self, config: S3Config, session: Optional[requests.Session] = None) -> None:
        self._config = config
        self._session = session if session is not None else requests.Session()
        self._region = config.aws_region or "us-east-1"
        self._access_key = os.environ.get("AWS_ACCESS_KEY_ID", "")
        self._secret_key = os.environ.get("AWS_SECRET_ACCESS_KEY", "")
        self._session_token = os.environ.get("AWS_SESSION_TOKEN", "")

    def _address(self, bucket: str, key: str) -> Tuple[str, str, str]:
        endpoint = self._config.aws_endpoint or f"https://s3.{self._region}.amazonaws.com"
        parts = urlsplit(endpoint.rstrip("/"))
        key_path = quote(key, safe="/-_.~")
        if self._config.aws_pathstyle:
            path = f"/{bucket}/{key_path}"
            host = parts.netloc
        else:
            path = f"/{key_path}"
            host = f"{bucket}.{parts.netloc}"
        return host, f"{parts.scheme}://{host}{path}", path

    def _signed_headers(self, method: str, host: str, path: str) -> Dict[str, str]:
        amz_date = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        day = amz_date[:8]
        headers = {
            "host": host,
            "x-amz-content-sha256": _UNSIGNED_PAYLOAD,
            "x-amz-date": amz_date,
        }
        if self._session_token:
            headers["x-amz-security-token"] = self._session_token
        names = sorted(headers)
        signed = ";".join(names)
        canonical = "\n".join(
            [
                method,
                path,
                "",
                "".join(f"{name}:{headers[name].strip()}\n" for name in names),
                signed,
                _UNSIGNED_PAYLOAD,
            ]
        )
        scope = f"{day}/{self._region}/s3/aws4_request"
        to_sign = "\n".join(
            ["AWS4-HMAC-SHA256", amz_date, scope, hashlib.sha256(canonical.encode()).hexdigest()]
        )
        signing_key = ("AWS4" + self._secret_key).encode()
        for part in (day, self._region, "s3", "aws4_request"):
            signing_key = hmac.new(signing_key, part.encode(), hashlib.sha256).digest()
        signature = hmac.new(signing_key, to_sign.encode(), hashlib.sha256).hexdigest()
        headers["Authorization"] = (
            f"AWS4-HMAC-SHA256 Credential={self._access_key}/{scope}, "
            f"SignedHeaders={signed}, Signature={signature}"
        )
        del headers["host"]
        return headers

    def put_object(self, bucket: str, key: str, reader: HashingReader) -> None:
        host, url, path = self._address(bucket, key)
        with tempfile.SpooledTemporaryFile(max_size=64 * _CHUNK) as spool:
            shutil.copyfileobj(reader, spool, _CHUNK)
            size = spool.tell()
            spool.seek(0)
            headers = self._signed_headers("PUT", host, path)
            headers["Content-Length"] = str(size)
            response = self._session.put(url, data=spool, headers=headers, timeout=_S3_TIMEOUT)
        if response.status_code >= 300:
            raise RuntimeError(f"s3 upload failed: {response.status_code} - {response.text}")

    def get_object(self, bucket: str, key: str) -> BinaryIO:
        host, url, path = self._address(bucket, key)
        response = self._session.get(
            url, headers=self._signed_headers("GET", host, path), stream=True, timeout=_S3_TIMEOUT
        )
        if response.status_code >= 300:
            text = response.text
            response.close()
            raise RuntimeError(f"s3 download failed: {response.status_code} - {text}")
        return response.raw


def write_file(
    destination: Destination,
    settings: Settings,
    db_id: int,
    dataverse_key: str,
    user: str,
    stream: Stream,
    storage_identifier: str,
    persistent_id: str,
    hash_type: str,
    remote_hash_type: str,
    node_id: str,
    file_size: int,
) -> WriteResult:
    """Copy a source stream to the destination while hashing it both ways."""
    pid = trim_protocol(persistent_id)
    location = StorageLocation.parse(storage_identifier)
    hasher = new_hasher(hash_type, file_size)
    size_hasher = FileSizeHash()
    remote_hasher = new_hasher(remote_hash_type, file_size)
    source = stream.open()
    try:
        reader = HashingReader(source, hasher, size_hasher, remote_hasher)
        direct = destination.is_direct_upload()
        if location.driver == "file" or not direct:
            try:
                if direct:
                    _write_local(settings, pid, location, reader)
                else:
                    destination.write_over_wire(
                        db_id, node_id, dataverse_key, user, persistent_id, reader
                    )
            except Exception as error:
                raise RuntimeError(f"writing failed: {error}") from error
        elif location.driver == "s3":
            _S3Client(settings.s3).put_object(location.bucket, f"{pid}/{location.filename}", reader)
        else:
            raise ValueError(f"unsupported driver: {location.driver}")
    finally:
        stream.close()
    return WriteResult(hasher.digest(), remote_hasher.digest(), size_hasher.file_size)


def hash_stored_file(
    destination: Destination,
    settings: Settings,
    dataverse_key: str,
    user: str,
    persistent_id: str,
    node: Node,
) -> bytes:
    """Hash a stored destination file with the node's remote hash type."""
    pid = trim_protocol(persistent_id)
    stored = node.attributes.destination_file
    hasher = new_hasher(node.attributes.remote_hash_type, stored.filesize)
    location = StorageLocation.parse(stored.storage_identifier)
    if not destination.is_direct_upload():
        source = destination.get_stream(dataverse_key, user, stored.id)
    elif location.driver == "file":
        source = open(_local_path(settings, pid, location.filename), "rb")
    elif location.driver == "s3":
        source = _S3Client(settings.s3).get_object(location.bucket, f"{pid}/{location.filename}")
    else:
        raise ValueError(f"unsupported driver: {location.driver}")
    with closing(source):
        reader = HashingReader(source, hasher)
        while reader.read(_CHUNK):
            pass
    return hasher.digest()