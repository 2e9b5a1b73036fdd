from __future__ import annotations

import json

import httpx
import pytest

from pendwrite.config import RemoteConfig
from pendwrite.errors import PermanentRemoteError, TransientRemoteError
from pendwrite.models import MutationType, QueuedMutation
from pendwrite.remote.postgrest import (
    PostgrestClient,
    filter_params,
    filter_value,
    is_transient_status,
)

BASE_URL = "https://demo.supabase.co/rest/v1"


class Recorder:
    """MockTransport handler that records requests and replays a fixed response."""

    def __init__(self, status_code: int = 200, body=None, raises: Exception | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = status_code
        self.body = body
        self.raises = raises

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raises is not None:
            raise self.raises
        if self.body is None:
            return httpx.Response(self.status_code)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


def _client(handler: Recorder, **config) -> PostgrestClient:
    remote_config = RemoteConfig(url="https://demo.supabase.co", api_key="anon-key", **config)
    http = httpx.Client(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return PostgrestClient(remote_config, client=http)


class TestFilters:
    """Tests for PostgREST filter rendering."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (7, "eq.7"),
            ("abc", "eq.abc"),
            (True, "eq.true"),
            (False, "eq.false"),
            (None, "is.null"),
        ],
    )
    def test_filter_value(self, value, expected) -> None:
        assert filter_value(value) == expected

    def test_filter_params_validates_columns(self) -> None:
        with pytest.raises(ValueError, match="filter column"):
            filter_params({"id; drop": 1})

    @pytest.mark.parametrize(
        "status,transient",
        [(500, True), (503, True), (408, True), (429, True), (400, False), (403, False), (409, False)],
    )
    def test_transient_statuses(self, status: int, transient: bool) -> None:
        assert is_transient_status(status) is transient


class TestRequests:
    """Tests for the requests each verb sends."""

    def test_insert(self) -> None:
        """Test that insert POSTs the row with auth headers and asks for the written rows back."""
        handler = Recorder(201, [{"id": 1, "name": "Strength"}])
        client = _client(handler)

        rows = client.insert("programs", {"name": "Strength"})

        request = handler.last
        assert rows == [{"id": 1, "name": "Strength"}]
        assert request.method == "POST"
        assert request.url.path == "/rest/v1/programs"
        assert json.loads(request.content) == {"name": "Strength"}
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["Authorization"] == "Bearer anon-key"
        assert request.headers["Prefer"] == "return=representation"

    def test_bulk_insert_sends_list(self) -> None:
        handler = Recorder(201, [{"id": 1}, {"id": 2}])
        client = _client(handler)

        client.insert("programs", [{"name": "a"}, {"name": "b"}])

        assert json.loads(handler.last.content) == [{"name": "a"}, {"name": "b"}]
        assert handler.last.url.params["columns"] == "name"

    def test_bulk_insert_with_differing_keys_names_every_column(self) -> None:
        """Test that rows naming different columns go out as one request with the column union."""
        handler = Recorder(201, [])
        client = _client(handler)

        client.insert(
            "programs", [{"name": "a"}, {"name": "b", "coach_id": "c1"}, {"archived": True}]
        )

        request = handler.last
        assert len(handler.requests) == 1
        assert request.url.params["columns"] == "name,coach_id,archived"
        assert request.headers["Prefer"] == "missing=default,return=representation"
        assert json.loads(request.content)[1] == {"name": "b", "coach_id": "c1"}

    def test_bulk_insert_rejects_unsafe_column(self) -> None:
        handler = Recorder(201, [])
        client = _client(handler)

        with pytest.raises(ValueError):
            client.insert("programs", [{"name": "a"}, {"name; drop": "b"}])
        assert handler.requests == []

    def test_select_narrows_returned_columns(self) -> None:
        handler = Recorder(200, [{"id": 7}])
        client = _client(handler)

        rows = client.update("programs", {"name": "new"}, {"id": 7}, select=["id"])

        assert rows == [{"id": 7}]
        assert handler.last.url.params["select"] == "id"
        assert handler.last.url.params["id"] == "eq.7"

    def test_user_token_and_schema(self) -> None:
        handler = Recorder(201, [])
        client = _client(handler, access_token="user-jwt", schema="coaching")

        client.insert("programs", {"name": "x"})

        headers = handler.last.headers
        assert headers["Authorization"] == "Bearer user-jwt"
        assert headers["Accept-Profile"] == "coaching"
        assert headers["Content-Profile"] == "coaching"

    def test_update(self) -> None:
        handler = Recorder(200, [{"id": 7, "name": "new", "archived": False}])
        client = _client(handler)

        client.update("programs", {"name": "new"}, {"id": 7, "archived": False, "deleted_at": None})

        request = handler.last
        assert request.method == "PATCH"
        assert dict(request.url.params) == {
            "archived": "eq.false",
            "deleted_at": "is.null",
            "id": "eq.7",
        }
        assert json.loads(request.content) == {"name": "new"}

    def test_delete(self) -> None:
        handler = Recorder(204)
        client = _client(handler)

        rows = client.delete("programs", {"id": 3})

        assert rows == []
        assert handler.last.method == "DELETE"
        assert handler.last.url.params["id"] == "eq.3"

    def test_upsert(self) -> None:
        handler = Recorder(201, [{"id": 1, "name": "x"}])
        client = _client(handler)

        client.upsert("programs", {"id": 1, "name": "x"}, ["id", "coach_id"])

        request = handler.last
        assert request.method == "POST"
        assert request.url.params["on_conflict"] == "id,coach_id"
        assert request.headers["Prefer"] == "resolution=merge-duplicates,return=representation"

    def test_bulk_upsert_sends_columns_and_conflict_key(self) -> None:
        handler = Recorder(201, [])
        client = _client(handler)

        client.upsert("programs", [{"id": 1, "name": "x"}, {"id": 2, "coach_id": "c1"}], ["id"])

        params = handler.last.url.params
        assert params["on_conflict"] == "id"
        assert params["columns"] == "id,name,coach_id"
        assert handler.last.headers["Prefer"] == (
            "resolution=merge-duplicates,missing=default,return=representation"
        )

    def test_execute_dispatches_on_type(self) -> None:
        handler = Recorder(200, [])
        client = _client(handler)
        mutation = QueuedMutation(
            type=MutationType.DELETE, table="messages", filters={"thread_id": "t1"}
        )

        client.execute(mutation)

        assert handler.last.method == "DELETE"
        assert handler.last.url.path == "/rest/v1/messages"
        assert "select" not in handler.last.url.params

    def test_execute_forwards_select(self) -> None:
        handler = Recorder(201, [{"id": 1}])
        client = _client(handler)
        mutation = QueuedMutation(
            type=MutationType.INSERT, table="programs", payload={"name": "x"}, select="id, name"
        )

        client.execute(mutation)

        assert handler.last.url.params["select"] == "id,name"

    def test_unsafe_table_never_reaches_the_wire(self) -> None:
        handler = Recorder(200, [])
        client = _client(handler)

        with pytest.raises(ValueError):
            client.insert("programs?select=*", {"name": "x"})
        assert handler.requests == []


class TestErrors:
    """Tests for mapping HTTP failures onto transient and permanent errors."""

    @pytest.mark.parametrize("status", [500, 502, 503, 408, 429])
    def test_retryable_statuses(self, status: int) -> None:
        client = _client(Recorder(status, {"message": "try later"}))

        with pytest.raises(TransientRemoteError, match=str(status)):
            client.insert("programs", {"name": "x"})

    def test_rejected_write_is_permanent(self) -> None:
        """Test that a constraint violation carries the service's error details."""
        body = {"code": "23505", "message": "duplicate key value", "details": "Key (id)=(1)"}
        client = _client(Recorder(409, body))

        with pytest.raises(PermanentRemoteError) as exc_info:
            client.insert("programs", {"id": 1})

        message = str(exc_info.value)
        assert "409" in message
        assert "23505" in message
        assert "duplicate key value" in message

    def test_timeout_is_transient(self) -> None:
        client = _client(Recorder(raises=httpx.ReadTimeout("read timed out")))

        with pytest.raises(TransientRemoteError, match="timed out") as exc_info:
            client.update("programs", {"name": "x"}, {"id": 1})

        assert isinstance(exc_info.value.__cause__, httpx.TimeoutException)

    def test_connection_failure_is_transient(self) -> None:
        client = _client(Recorder(raises=httpx.ConnectError("connection refused")))

        with pytest.raises(TransientRemoteError, match="connection refused"):
            client.delete("programs", {"id": 1})


class TestLifecycle:
    """Tests for client ownership."""

    def test_builds_bounded_client_from_config(self) -> None:
        client = PostgrestClient(
            RemoteConfig(url="https://demo.supabase.co/", api_key="k", timeout_s=2.5)
        )
        try:
            assert str(client.client.base_url) == "https://demo.supabase.co/rest/v1/"
            assert client.client.timeout.read == 2.5
        finally:
            client.close()

        assert client.client.is_closed

    def test_borrowed_client_is_left_open(self) -> None:
        http = httpx.Client(transport=httpx.MockTransport(Recorder()), base_url=BASE_URL)
        client = PostgrestClient(RemoteConfig(url="https://demo.supabase.co", api_key="k"), client=http)

        client.close()

        assert not http.is_closed
        http.close()
