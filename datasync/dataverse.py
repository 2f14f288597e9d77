"""Dataverse as the destination of synchronised files."""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
import zipfile
from typing import Any, BinaryIO, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote_plus

import requests

from datasync.cache import Cache
from datasync.hashing import HashType
from datasync.model import Node, SelectItem
from datasync.rehashing import check_known_hashes
from datasync.settings import Settings
from datasync.version import FeatureFlags, fetch_version

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 300.0
SIGNED_URL_TIMEOUT = 500
_CHUNK = 1024 * 1024
_SWORD = "/dvn/api/data-deposit/v1.1/swordv2/edit-media"


class DataverseError(RuntimeError):
    """Raised when Dataverse refuses a request or answers with something unusable."""


def map_to_nodes(data: Iterable[Mapping[str, Any]]) -> Dict[str, Node]:
    """Turn a Dataverse file listing into file nodes keyed by their path."""
    result: Dict[str, Node] = {}
    for item in data:
        directory = item.get("directoryLabel") or ""
        data_file = item.get("dataFile") or {}
        file_name = data_file.get("filename", "")
        node_id = f"{directory}/{file_name}" if directory else file_name
        hash_value = data_file.get("md5") or ""
        hash_type = HashType.MD5.value
        if not hash_value:
            checksum = data_file.get("checksum") or {}
            hash_value = checksum.get("value", "")
            hash_type = checksum.get("type", "")
        node = Node(id=node_id, name=file_name, path=directory)
        stored = node.attributes.destination_file
        stored.id = int(data_file.get("id", 0) or 0)
        stored.filesize = int(data_file.get("filesize", 0) or 0)
        stored.hash = hash_value
        stored.hash_type = hash_type
        stored.storage_identifier = data_file.get("storageIdentifier", "")
        node.attributes.is_file = True
        result[node_id] = node
    return result


def split_id(node_id: str) -> Tuple[str, str]:
    """Split a node id into its file name and directory label."""
    directory, _, filename = node_id.rpartition("/")
    return filename, directory


def dataset_url(server: str, pid: str, draft: bool, external_url: str = "") -> str:
    """Return the address of a dataset's page, optionally of its draft version."""
    base = external_url or server
    draft_version = "version=DRAFT&" if draft else ""
    return f"{base}/dataset.xhtml?{draft_version}persistentId={pid}"


def build_search_term(collection: str, search_term: str) -> str:
    """Return the unescaped search expression for listing the user's objects."""
    if search_term:
        if collection:
            return " identifierOfDataverse:(+" + collection + ")"
        return 'text:"' + search_term + '"'
    if collection:
        return "identifierOfDataverse:(+" + collection + ")"
    return ""


def _dataset_body(user: Mapping[str, Any]) -> Dict[str, Any]:
    first = user.get("firstName", "")
    last = user.get("lastName", "")
    author = ", ".join(part for part in (last, first) if part) or user.get("displayName", "")
    email = user.get("email", "")

    def primitive(name: str, value: str) -> Dict[str, Any]:
        return {"typeName": name, "multiple": False, "typeClass": "primitive", "value": value}

    return {
        "datasetVersion": {
            "metadataBlocks": {
                "citation": {
                    "fields": [
                        {
                            "typeName": "author",
                            "multiple": True,
                            "typeClass": "compound",
                            "value": [{"authorName": primitive("authorName", author)}],
                        },
                        {
                            "typeName": "datasetContact",
                            "multiple": True,
                            "typeClass": "compound",
                            "value": [
                                {
                                    "datasetContactName": primitive("datasetContactName", author),
                                    "datasetContactEmail": primitive("datasetContactEmail", email),
                                }
                            ],
                        },
                    ]
                }
            }
        }
    }


class DataverseClient:
    """A Dataverse installation used as the destination of synchronisation jobs."""

    def __init__(
        self,
        settings: Settings,
        flags: Optional[FeatureFlags] = None,
        cache: Optional[Cache] = None,
        session: Optional[Any] = None,
    ) -> None:
        self.settings = settings
        self.session = session if session is not None else requests.Session()
        if flags is None:
            flags = (
                FeatureFlags.from_version(fetch_version(settings.dataverse_server, self.session))
                if settings.dataverse_server
                else FeatureFlags()
            )
        self.flags = flags
        self.cache = cache

    # -- transport -------------------------------------------------------

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return self.settings.dataverse_server + path

    def _send(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            return self.session.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.RequestException as error:
            raise DataverseError(str(error)) from error

    def _sign(self, url: str, method: str, user: str) -> str:
        response = self._send(
            "POST",
            self._url("/api/v1/admin/requestSignedUrl"),
            headers={"X-Dataverse-key": self.settings.api_key},
            json={"url": url, "timeOut": SIGNED_URL_TIMEOUT, "user": user, "httpMethod": method},
        )
        payload = self._decode(response)
        signed = (payload.get("data") or {}).get("signedUrl", "")
        if not signed:
            raise DataverseError(f"signing url failed: {payload}")
        return signed

    def _call(
        self,
        method: str,
        path: str,
        user: str,
        token: str,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> Any:
        url = self._url(path)
        request_headers = dict(headers or {})
        if token:
            request_headers["X-Dataverse-key"] = token
        elif self.flags.url_signing and user and self.settings.api_key:
            url = self._sign(url, method, user)
        return self._send(method, url, headers=request_headers, **kwargs)

    @staticmethod
    def _decode(response: Any) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as error:
            raise DataverseError(
                f"unexpected response: {response.status_code} - {response.text}"
            ) from error
        if not isinstance(payload, dict):
            raise DataverseError(f"unexpected response: {payload}")
        return payload

    def _json(self, method: str, path: str, user: str, token: str, **kwargs: Any) -> Dict[str, Any]:
        return self._decode(self._call(method, path, user, token, **kwargs))

    # -- reading ---------------------------------------------------------

    def is_direct_upload(self) -> bool:
        return self.flags.direct_upload and self.settings.default_driver != ""

    def query(self, persistent_id: str, token: str, user: str) -> Dict[str, Node]:
        """List the files of the dataset's latest version as nodes."""
        path = "/api/v1/datasets/:persistentId/versions/:latest/files?persistentId=" + persistent_id
        payload = self._json("GET", path, user, token)
        if payload.get("status") != "OK":
            raise DataverseError(f"listing files for {persistent_id} failed: {payload}")
        mapped = map_to_nodes(payload.get("data") or [])
        if self.cache is not None:
            check_known_hashes(self.cache, persistent_id, mapped)
        return mapped

    def _no_slash_permission_path(self, persistent_id: str, token: str, user: str) -> str:
        payload = self._json(
            "GET", "/api/v1/datasets/:persistentId?persistentId=" + persistent_id, user, token
        )
        dataset_id = (payload.get("data") or {}).get("id", 0)
        if not dataset_id:
            raise DataverseError(f"dataset {persistent_id} not found")
        return f"/api/v1/admin/permissions/{dataset_id}?&unblock-key={self.settings.unblock_key}"

    def check_permission(self, token: str, user: str, persistent_id: str) -> None:
        """Raise DataverseError unless the user may edit the dataset."""
        unblock_key = self.settings.unblock_key
        if not unblock_key:
            return
        if self.flags.slash_in_permissions:
            path = (
                "/api/v1/admin/permissions/:persistentId?persistentId="
                f"{persistent_id}&unblock-key={unblock_key}"
            )
        else:
            path = self._no_slash_permission_path(persistent_id, token, user)
        payload = self._json("GET", path, user, token)
        status = payload.get("status", "")
        if status != "OK":
            raise DataverseError(
                f"permission check status is {status} for dataset {persistent_id}"
            )
        data = payload.get("data") or {}
        if "EditDataset" in (data.get("permissions") or []):
            return
        raise DataverseError(
            f"user {data.get('user', '')} has no permission to edit dataset {persistent_id}"
        )

    def get_repo_url(self, pid: str, draft: bool) -> str:
        return dataset_url(
            self.settings.dataverse_server, pid, draft, self.settings.dataverse_external_url
        )

    def get_stream(self, token: str, user: str, file_id: int) -> BinaryIO:
        """Open the content of a stored file for reading."""
        response = self._call(
            "GET", f"/api/v1/access/datafile/{file_id}", user, token, stream=True
        )
        if response.status_code >= 300:
            text = response.text
            response.close()
            raise DataverseError(f"downloading file {file_id} failed: {response.status_code} - {text}")
        return response.raw

    def _list_dv_objects(
        self, object_type: str, collection: str, search_term: str, token: str, user: str
    ) -> List[Mapping[str, Any]]:
        term = quote_plus(build_search_term(collection, search_term))
        role_ids = "".join(f"&role_ids={role}" for role in self.settings.my_data_role_ids)
        items: List[Mapping[str, Any]] = []
        page = 1
        while True:
            path = (
                "/api/v1/mydata/retrieve?"
                f"selected_page={page}"
                f"&dvobject_types={object_type}"
                "&published_states=Published&published_states=Unpublished&published_states=Draft"
                f"{role_ids}&mydata_search_term={term}"
            )
            if not self.flags.url_signing:
                path += "&key=" + token
            payload = self._json("GET", path, user, token)
            if not payload.get("success"):
                raise DataverseError(
                    f"listing {object_type} objects was not successful: "
                    f"{payload.get('error_message', '')}"
                )
            data = payload.get("data") or {}
            items.extend(data.get("items") or [])
            has_next = bool((data.get("pagination") or {}).get("hasNextPageNumber"))
            if not (has_next and page < self.settings.max_dv_object_pages):
                return items
            page += 1

    def options(
        self, object_type: str, collection: str, search_term: str, token: str, user: str
    ) -> List[SelectItem]:
        """Return the collections or datasets the user can choose from."""
        result: List[SelectItem] = []
        seen = set()
        for item in self._list_dv_objects(object_type, collection, search_term, token, user):
            object_id = item.get("global_id") or item.get("identifier") or ""
            label = f"{item.get('name', '')} ({object_id})"
            if label not in seen:
                seen.add(label)
                result.append(SelectItem(label=label, value=object_id))
        return result

    def _get_user(self, token: str, user: str) -> Dict[str, Any]:
        return self._json("GET", "/api/v1/users/:me", user, token)

    def get_user_email(self, token: str, user: str) -> str:
        return (self._get_user(token, user).get("data") or {}).get("email", "")

    # -- writing ---------------------------------------------------------

    def create_new_repo(self, collection: str, token: str, user: str) -> str:
        """Create an empty dataset in ``collection`` and return its persistent id."""
        collection = collection or self.settings.root_dataverse_id
        if not collection:
            raise ValueError(
                "dataverse collection was not specified: unable to create a new dataset"
            )
        user_data = self._get_user(token, user).get("data") or {}
        payload = self._json(
            "POST",
            f"/api/v1/dataverses/{collection}/datasets?doNotValidate=true",
            user,
            token,
            headers={"Content-Type": "application/json"},
            data=json.dumps(_dataset_body(user_data)),
        )
        return (payload.get("data") or {}).get("persistentId", "")

    def save_after_direct_upload(
        self,
        replace: bool,
        token: str,
        user: str,
        persistent_id: str,
        storage_identifiers: Sequence[str],
        nodes: Sequence[Node],
    ) -> None:
        """Register files already placed in storage with the dataset."""
        json_data = []
        for identifier, node in zip(storage_identifiers, nodes):
            stored = node.attributes.destination_file
            json_data.append(
                {
                    "fileToReplaceId": stored.id,
                    "forceReplace": stored.id != 0,
                    "storageIdentifier": identifier,
                    "fileName": node.name,
                    "directoryLabel": node.path,
                    # Dataverse replaces this default while adding the file.
                    "mimeType": "application/octet-stream",
                    "tabIngest": False,
                    "checksum": {"@type": stored.hash_type, "@value": stored.hash},
                }
            )
        action = "replaceFiles" if replace else "addFiles"
        path = f"/api/v1/datasets/:persistentId/{action}?persistentId={persistent_id}"
        payload = self._json(
            "POST", path, user, token, files={"jsonData": (None, json.dumps(json_data))}
        )
        if payload.get("status") != "OK":
            raise DataverseError(f"writting file failed: {payload}")

    def write_over_wire(
        self,
        db_id: int,
        node_id: str,
        token: str,
        user: str,
        persistent_id: str,
        source: BinaryIO,
    ) -> None:
        """Upload the content read from ``source`` as the file ``node_id``."""
        if node_id.endswith(".zip"):
            # Dataverse unpacks zips sent to the native API, so they go through SWORD.
            if db_id != 0:
                self.delete_file(token, user, db_id)
            self._upload_via_sword(node_id, token, persistent_id, source)
            return
        path = "/api/v1/datasets/:persistentId/add?persistentId=" + persistent_id
        if db_id != 0:
            path = f"/api/v1/files/{db_id}/replace"
        filename, directory = split_id(node_id)
        json_data = json.dumps({"directoryLabel": directory, "forceReplace": db_id != 0})
        try:
            payload = self._json(
                "POST",
                path,
                user,
                token,
                files={"jsonData": (None, json_data), "file": (filename, source)},
            )
        except DataverseError as error:
            raise DataverseError(f"writing file in {persistent_id} failed: {error}") from error
        if payload.get("status") != "OK":
            raise DataverseError(f"adding file failed: {payload}")

    def _upload_via_sword(
        self, node_id: str, token: str, persistent_id: str, source: BinaryIO
    ) -> None:
        url = f"{self.settings.dataverse_server}{_SWORD}/study/{persistent_id}"
        with tempfile.SpooledTemporaryFile(max_size=64 * _CHUNK) as spool:
            with zipfile.ZipFile(spool, "w", zipfile.ZIP_DEFLATED) as archive:
                with archive.open(node_id, "w") as entry:
                    shutil.copyfileobj(source, entry, _CHUNK)
            spool.seek(0)
            response = self._send(
                "POST",
                url,
                data=spool,
                headers={
                    "Content-Type": "application/zip",
                    "Content-Disposition": "attachment;filename=example.zip",
                    "Packaging": "http://purl.org/net/sword/package/SimpleZip",
                },
                auth=(token, ""),
            )
        if response.status_code != 201:
            raise DataverseError(
                f"writing file in {persistent_id} failed: {response.status_code} - {response.text}"
            )

    def _sword_delete(self, token: str, file_id: int) -> None:
        url = f"{self.settings.dataverse_server}{_SWORD}/file/{file_id}"
        response = self._send("DELETE", url, auth=(token, ""))
        if response.status_code not in (200, 202, 204):
            raise DataverseError(
                f"deleting file {file_id} failed: {response.status_code} - {response.text}"
            )

    def delete_file(self, token: str, user: str, file_id: int) -> None:
        if not self.flags.native_api_delete:
            self._sword_delete(token, file_id)
            return
        payload = self._json("DELETE", f"/api/v1/files/{file_id}", user, token)
        if payload.get("status") != "OK":
            raise DataverseError(f"deleting file {file_id} failed: {payload.get('message', '')}")

    def cleanup_left_over_files(self, persistent_id: str, token: str, user: str) -> None:
        """Ask Dataverse to remove stored files that belong to no dataset file."""
        if not self.flags.files_cleanup:
            return
        path = "/api/v1/datasets/:persistentId/cleanStorage?persistentId=" + persistent_id
        payload = self._json("GET", path, user, token)
        if payload.get("status") != "OK":
            raise DataverseError(f"cleaning up files for {persistent_id} failed: {payload}")