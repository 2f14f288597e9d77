import io
import json
import zipfile

import pytest

from datasync.cache import MemoryCache
from datasync.dataverse import (
    DataverseClient,
    DataverseError,
    build_search_term,
    dataset_url,
    map_to_nodes,
    split_id,
)
from datasync.rehashing import CalculatedHashes, get_known_hashes, store_known_hashes
from datasync.settings import Settings
from datasync.version import FeatureFlags

SERVER = "https://dv.example.com"


class FakeResponse:
    def __init__(self, payload=None, status_code=200, text=""):
        self.payload = payload
        self.status_code = status_code
        self.text = text or (json.dumps(payload) if payload is not None else "")
        self.raw = io.BytesIO(b"content")

    def json(self):
        if self.payload is None:
            raise ValueError("no json")
        return self.payload

    def close(self):
        pass


class FakeSession:
    def __init__(self, responder):
        self.responder = responder
        self.calls = []

    def request(self, method, url, **kwargs):
        call = {"method": method, "url": url, **kwargs}
        files = kwargs.get("files") or {}
        if "file" in files:
            call["file_bytes"] = files["file"][1].read()
        data = kwargs.get("data")
        if hasattr(data, "read"):
            call["body"] = data.read()
        self.calls.append(call)
        return self.responder(method, url)


def make_client(responder, flags=None, cache=None, **settings):
    session = FakeSession(responder)
    client = DataverseClient(
        Settings(dataverse_server=SERVER, **settings),
        flags=flags or FeatureFlags(),
        cache=cache,
        session=session,
    )
    return client, session


LISTING = [
    {
        "directoryLabel": "docs",
        "dataFile": {
            "id": 7,
            "filename": "a.txt",
            "filesize": 12,
            "md5": "abc",
            "storageIdentifier": "file://x",
        },
    },
    {
        "dataFile": {
            "id": 8,
            "filename": "b.txt",
            "filesize": 3,
            "checksum": {"type": "SHA-1", "value": "def"},
        }
    },
]


def test_map_to_nodes_uses_md5_or_checksum():
    nodes = map_to_nodes(LISTING)
    assert sorted(nodes) == ["b.txt", "docs/a.txt"]
    first = nodes["docs/a.txt"]
    assert first.name == "a.txt"
    assert first.path == "docs"
    assert first.attributes.is_file
    assert first.attributes.destination_file.id == 7
    assert first.attributes.destination_file.hash == "abc"
    assert first.attributes.destination_file.hash_type == "MD5"
    second = nodes["b.txt"].attributes.destination_file
    assert (second.hash, second.hash_type, second.filesize) == ("def", "SHA-1", 3)


@pytest.mark.parametrize(
    "node_id, expected",
    [("a/b/c.txt", ("c.txt", "a/b")), ("c.txt", ("c.txt", "")), ("d/e", ("e", "d"))],
)
def test_split_id(node_id, expected):
    assert split_id(node_id) == expected


def test_dataset_url_variants():
    assert (
        dataset_url(SERVER, "doi:10.1/X", True)
        == SERVER + "/dataset.xhtml?version=DRAFT&persistentId=doi:10.1/X"
    )
    assert dataset_url(SERVER, "doi:10.1/X", False, "https://ext.example.com") == (
        "https://ext.example.com/dataset.xhtml?persistentId=doi:10.1/X"
    )


def test_build_search_term():
    assert build_search_term("", "") == ""
    assert build_search_term("col", "") == "identifierOfDataverse:(+col)"
    assert build_search_term("", "word") == 'text:"word"'
    assert build_search_term("col", "word") == " identifierOfDataverse:(+col)"


def test_check_permission_skipped_without_unblock_key():
    client, session = make_client(lambda m, u: FakeResponse({}))
    client.check_permission("token", "user", "doi:10.1/X")
    assert session.calls == []


def permission_responder(permissions, dataset_id=5):
    def respond(method, url):
        if "/admin/permissions/" in url:
            return FakeResponse(
                {"status": "OK", "data": {"user": "alice", "permissions": permissions}}
            )
        return FakeResponse({"status": "OK", "data": {"id": dataset_id}})

    return respond


def test_check_permission_allows_editors():
    client, session = make_client(permission_responder(["EditDataset"]), unblock_key="secret")
    client.check_permission("token", "user", "doi:10.1/X")
    assert session.calls[-1]["url"] == SERVER + "/api/v1/admin/permissions/5?&unblock-key=secret"


def test_check_permission_rejects_non_editors():
    client, _ = make_client(permission_responder(["ViewDataset"]), unblock_key="secret")
    with pytest.raises(DataverseError, match="alice"):
        client.check_permission("token", "user", "doi:10.1/X")


def test_check_permission_missing_dataset():
    client, _ = make_client(permission_responder([], dataset_id=0), unblock_key="secret")
    with pytest.raises(DataverseError, match="not found"):
        client.check_permission("token", "user", "doi:10.1/X")


def test_options_deduplicates_and_stops_at_page_limit():
    def respond(method, url):
        return FakeResponse(
            {
                "success": True,
                "data": {
                    "items": [
                        {"name": "Data", "global_id": "doi:10.1/X"},
                        {"name": "Coll", "identifier": "coll"},
                    ],
                    "pagination": {"hasNextPageNumber": True},
                },
            }
        )

    client, session = make_client(respond, max_dv_object_pages=2)
    items = client.options("Dataset", "", "", "token", "user")
    assert [(item.label, item.value) for item in items] == [
        ("Data (doi:10.1/X)", "doi:10.1/X"),
        ("Coll (coll)", "coll"),
    ]
    assert len(session.calls) == 2
    assert "&key=token" in session.calls[0]["url"]
    assert "selected_page=2" in session.calls[1]["url"]


def test_options_failure_raises():
    client, _ = make_client(
        lambda m, u: FakeResponse({"success": False, "error_message": "nope"})
    )
    with pytest.raises(DataverseError, match="nope"):
        client.options("Dataset", "", "", "token", "user")


def test_delete_file_native_api():
    client, session = make_client(
        lambda m, u: FakeResponse({"status": "OK"}), flags=FeatureFlags(native_api_delete=True)
    )
    client.delete_file("token", "user", 9)
    assert session.calls[0]["method"] == "DELETE"
    assert session.calls[0]["url"] == SERVER + "/api/v1/files/9"


def test_delete_file_via_sword_failure():
    client, session = make_client(lambda m, u: FakeResponse(None, 500, "boom"))
    with pytest.raises(DataverseError, match="boom"):
        client.delete_file("token", "user", 9)
    assert session.calls[0]["auth"] == ("token", "")
    assert session.calls[0]["url"].endswith("/swordv2/edit-media/file/9")


def test_write_over_wire_adds_file_with_directory():
    client, session = make_client(lambda m, u: FakeResponse({"status": "OK"}))
    client.write_over_wire(0, "dir/f.txt", "token", "user", "doi:10.1/X", io.BytesIO(b"hello"))
    call = session.calls[0]
    assert call["url"] == SERVER + "/api/v1/datasets/:persistentId/add?persistentId=doi:10.1/X"
    assert json.loads(call["files"]["jsonData"][1]) == {
        "directoryLabel": "dir",
        "forceReplace": False,
    }
    assert call["files"]["file"][0] == "f.txt"
    assert call["file_bytes"] == b"hello"


def test_write_over_wire_reports_failed_status():
    client, _ = make_client(lambda m, u: FakeResponse({"status": "ERROR"}))
    with pytest.raises(DataverseError, match="adding file failed"):
        client.write_over_wire(3, "f.txt", "token", "user", "doi:10.1/X", io.BytesIO(b"x"))


def test_write_over_wire_zip_goes_through_sword():
    def respond(method, url):
        return FakeResponse(None, 204 if method == "DELETE" else 201)

    client, session = make_client(respond)
    client.write_over_wire(4, "d/a.zip", "token", "user", "doi:10.1/X", io.BytesIO(b"zipped"))
    assert session.calls[0]["method"] == "DELETE"
    upload = session.calls[1]
    assert upload["url"].endswith("/swordv2/edit-media/study/doi:10.1/X")
    archive = zipfile.ZipFile(io.BytesIO(upload["body"]))
    assert archive.read("d/a.zip") == b"zipped"


def test_save_after_direct_upload():
    client, session = make_client(lambda m, u: FakeResponse({"status": "OK"}))
    nodes = list(map_to_nodes(LISTING).values())
    client.save_after_direct_upload(True, "token", "user", "doi:10.1/X", ["s3://b:f1", "s3://b:f2"], nodes)
    call = session.calls[0]
    assert "/replaceFiles?persistentId=doi:10.1/X" in call["url"]
    sent = json.loads(call["files"]["jsonData"][1])
    assert [entry["storageIdentifier"] for entry in sent] == ["s3://b:f1", "s3://b:f2"]
    assert all(entry["forceReplace"] for entry in sent)


def test_save_after_direct_upload_failure():
    client, _ = make_client(lambda m, u: FakeResponse({"status": "ERROR"}))
    with pytest.raises(DataverseError):
        client.save_after_direct_upload(False, "token", "user", "doi:10.1/X", [], [])


def test_create_new_repo_uses_root_collection():
    def respond(method, url):
        if url.endswith("/users/:me"):
            return FakeResponse({"data": {"email": "alice@example.com", "firstName": "A"}})
        return FakeResponse({"status": "OK", "data": {"persistentId": "doi:10.1/NEW"}})

    client, session = make_client(respond, root_dataverse_id="root")
    assert client.create_new_repo("", "token", "user") == "doi:10.1/NEW"
    assert session.calls[1]["url"] == SERVER + "/api/v1/dataverses/root/datasets?doNotValidate=true"


def test_create_new_repo_needs_collection():
    client, _ = make_client(lambda m, u: FakeResponse({}))
    with pytest.raises(ValueError):
        client.create_new_repo("", "token", "user")


def test_get_user_email():
    client, session = make_client(lambda m, u: FakeResponse({"data": {"email": "bob@example.com"}}))
    assert client.get_user_email("token", "user") == "bob@example.com"
    assert session.calls[0]["headers"]["X-Dataverse-key"] == "token"


def test_query_invalidates_stale_known_hashes():
    cache = MemoryCache()
    store_known_hashes(
        cache,
        "doi:10.1/X",
        {"docs/a.txt": CalculatedHashes(local_hash_type="MD5", local_hash_value="old")},
    )
    client, _ = make_client(
        lambda m, u: FakeResponse({"status": "OK", "data": LISTING}), cache=cache
    )
    nodes = client.query("doi:10.1/X", "token", "user")
    assert set(nodes) == {"docs/a.txt", "b.txt"}
    assert get_known_hashes(cache, "doi:10.1/X") == {}


def test_query_failure_raises():
    client, _ = make_client(lambda m, u: FakeResponse({"status": "ERROR"}))
    with pytest.raises(DataverseError, match="listing files"):
        client.query("doi:10.1/X", "token", "user")


def test_is_direct_upload_needs_driver_and_feature():
    client, _ = make_client(lambda m, u: FakeResponse({}), flags=FeatureFlags(direct_upload=True))
    assert client.is_direct_upload() is False
    client.settings.default_driver = "file"
    assert client.is_direct_upload() is True


def test_cleanup_disabled_makes_no_request():
    client, session = make_client(lambda m, u: FakeResponse({"status": "ERROR"}))
    client.cleanup_left_over_files("doi:10.1/X", "token", "user")
    assert session.calls == []


def test_get_repo_url_prefers_external_url():
    client, _ = make_client(
        lambda m, u: FakeResponse({}), dataverse_external_url="https://ext.example.com"
    )
    assert client.get_repo_url("doi:10.1/X", True).startswith(
        "https://ext.example.com/dataset.xhtml?version=DRAFT&"
    )