import json

import pytest

from datasync.cache import MemoryCache
from datasync.handlers import (
    CachedResponse,
    Handlers,
    Response,
    cache_response,
)
from datasync.jobs import is_locked, pop_job
from datasync.model import (
    CompareResponse,
    CompareStatus,
    Node,
    SelectItem,
    Status,
    StreamParams,
)
from datasync.settings import Settings

HEADERS = {"Ajp_uid": "alice"}


class FakeDestination:
    def __init__(self):
        self.calls = []
        self.options_result = []
        self.fail = None

    def get_repo_url(self, pid, draft):
        return f"https://dv.example.com/{pid}?draft={draft}"

    def options(self, object_type, collection, search_term, token, user):
        self.calls.append(("options", object_type, collection, search_term, token, user))
        if self.fail:
            raise RuntimeError(self.fail)
        return self.options_result

    def create_new_repo(self, collection, token, user):
        self.calls.append(("create", collection, token, user))
        if self.fail:
            raise RuntimeError(self.fail)
        return "doi:10.5072/NEW"

    def is_direct_upload(self):
        return False


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def destination():
    return FakeDestination()


@pytest.fixture
def handlers(cache, destination):
    return Handlers(cache, destination, Settings())


def file_node(node_id, remote_hash="abc", remote_hash_type="MD5"):
    node = Node(id=node_id, name=node_id, path="")
    node.attributes.is_file = True
    node.attributes.remote_hash = remote_hash
    node.attributes.remote_hash_type = remote_hash_type
    return node


def test_response_helpers():
    response = Response(200, b'{"a": 1}')
    assert response.json() == {"a": 1}
    assert response.text == '{"a": 1}'


def test_cached_response_round_trip():
    cached = CachedResponse(key="k", ready=True, error_message="boom")
    again = CachedResponse.from_dict(json.loads(json.dumps(cached.to_dict())))
    assert again.key == "k"
    assert again.ready is True
    assert again.error_message == "boom"


def test_cached_response_dict_keys():
    assert set(CachedResponse(key="k").to_dict()) == {"key", "ready", "res", "err"}


def test_get_cached_response_without_cache(destination):
    response = Handlers(None, destination, Settings()).get_cached_response(b'{"key": "k"}')
    assert response.status == 500
    assert response.text == "500 - cache not ready"


def test_get_cached_response_bad_request(handlers):
    response = handlers.get_cached_response(b"not json")
    assert response.status == 500
    assert response.text == "500 - bad request"


def test_get_cached_response_not_ready(handlers):
    response = handlers.get_cached_response(json.dumps({"key": "k1"}))
    assert response.status == 200
    data = response.json()
    assert data["key"] == "k1"
    assert data["ready"] is False


def test_get_cached_response_ready_and_consumed(handlers, cache):
    stored = CompareResponse(id="doi:1", status=CompareStatus.FINISHED, url="u")
    cache_response(cache, CachedResponse(key="k2", response=stored))
    response = handlers.get_cached_response(json.dumps({"key": "k2"}))
    assert response.status == 200
    data = response.json()
    assert data["ready"] is True
    assert CompareResponse.from_dict(data["res"]).id == "doi:1"
    assert cache.get("k2") in (None, "")


def test_get_cached_response_error(handlers, cache):
    cache_response(cache, CachedResponse(key="k3", error_message="boom"))
    response = handlers.get_cached_response(json.dumps({"key": "k3"}))
    assert response.status == 500
    assert response.text == "500 - boom"


def test_compare_without_cache(destination):
    response = Handlers(None, destination, Settings()).compare(b"{}", HEADERS)
    assert response.text == "500 - cache not ready"


def test_compare_bad_request(handlers):
    response = handlers.compare(b"[1, 2", HEADERS)
    assert response.text == "500 - bad request"


def test_compare_reports_failed_job(handlers, cache):
    cache.set("error doi:1", "boom", 60)
    body = json.dumps({"data": [], "persistentId": "doi:1", "dataverseKey": "token"})
    response = handlers.compare(body, HEADERS)
    assert response.status == 500
    assert response.text == "Job failed: boom"


def test_compare_new_file(handlers):
    body = json.dumps(
        {
            "data": [file_node("a.txt").to_dict()],
            "persistentId": "doi:1",
            "dataverseKey": "token",
        }
    )
    response = handlers.compare(body, HEADERS)
    assert response.status == 200
    result = CompareResponse.from_dict(response.json())
    assert result.id == "doi:1"
    assert result.url == "https://dv.example.com/doi:1?draft=False"
    assert [node.id for node in result.data] == ["a.txt"]
    assert result.data[0].status == Status.NEW


def test_dv_objects(handlers, destination):
    destination.options_result = [SelectItem(label="A (doi:1)", value="doi:1")]
    body = json.dumps(
        {"token": "token", "collectionId": "root", "objectType": "Dataset", "searchTerm": "x"}
    )
    response = handlers.dv_objects(body, HEADERS)
    assert response.status == 200
    assert response.json() == [destination.options_result[0].to_dict()]
    assert destination.calls == [("options", "Dataset", "root", "x", "token", "alice")]


def test_dv_objects_error(handlers, destination):
    destination.fail = "nope"
    response = handlers.dv_objects(b"{}", HEADERS)
    assert response.status == 500
    assert response.text == "500 - nope"


def test_dv_objects_bad_request(handlers):
    assert handlers.dv_objects(b"{", HEADERS).text == "500 - bad request"


def test_new_dataset(handlers, destination):
    body = json.dumps({"collection": "root", "dataverseKey": "token"})
    response = handlers.new_dataset(body, HEADERS)
    assert response.status == 200
    assert response.json() == {"persistentId": "doi:10.5072/NEW"}
    assert destination.calls == [("create", "root", "token", "alice")]


def test_new_dataset_error(handlers, destination):
    destination.fail = "denied"
    response = handlers.new_dataset(b"{}", HEADERS)
    assert response.text == "500 - denied"


def test_store_without_cache(destination):
    response = Handlers(None, destination, Settings()).store(b"{}", HEADERS)
    assert response.text == "500 - cache not ready"


def test_store_bad_request(handlers):
    assert handlers.store(b"nope", HEADERS).text == "500 - bad request"


def test_store_without_nodes_queues_nothing(handlers, cache):
    body = json.dumps({"persistentId": "doi:1", "dataverseKey": "token", "selectedNodes": []})
    response = handlers.store(body, HEADERS)
    assert response.status == 200
    assert response.json() == {
        "status": "OK",
        "datasetUrl": "https://dv.example.com/doi:1?draft=True",
    }
    assert pop_job(cache) is None


def _store_body():
    params = StreamParams()
    params.token = "token"
    return json.dumps(
        {
            "plugin": "github",
            "streamParams": params.to_dict(),
            "persistentId": "doi:2",
            "dataverseKey": "token",
            "selectedNodes": [file_node("a.txt").to_dict(), file_node("b/c.txt").to_dict()],
            "sendEmailOnSucces": True,
        }
    )


def test_store_queues_job(handlers, cache):
    response = handlers.store(_store_body(), HEADERS)
    assert response.status == 200
    assert is_locked(cache, "doi:2")
    job = pop_job(cache)
    assert job.persistent_id == "doi:2"
    assert sorted(job.writable_nodes) == ["a.txt", "b/c.txt"]
    assert job.user == "alice"
    assert job.session_id == "token"
    assert job.plugin == "github"
    assert job.send_email_on_success is True
    assert job.deadline is not None


def test_store_twice_is_locked(handlers):
    assert handlers.store(_store_body(), HEADERS).status == 200
    response = handlers.store(_store_body(), HEADERS)
    assert response.status == 500
    assert response.text == "500 - Job for this dataverse is already in progress"