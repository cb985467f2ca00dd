"""Tests for the AUR RPC client."""

import threading

import httpx
import pytest

from aurbuild.aur import AurClient, record_from_rpc
from aurbuild.config import Settings
from aurbuild.errors import FetchFailed
from aurbuild.models import PackageRef, Source
from aurbuild.version import parse_dependency

BASE = "https://aur.example"


def rpc_record(name, version="1.0-1", **extra):
    rec = {"Name": name, "Version": version, "PackageBase": name, "URLPath": f"/cgit/{name}.tar.gz"}
    rec.update(extra)
    return rec


class FakeRPC:
    """Serves ``type=info`` and ``type=search`` from a dict, optionally failing first."""

    def __init__(self, records=(), fail_first=0, status=503):
        self.records = {r["Name"]: r for r in records}
        self.fail_first = fail_first
        self.status = status
        self.requests = []
        self.lock = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self.lock:
            self.requests.append(request)
            if len(self.requests) <= self.fail_first:
                return httpx.Response(self.status, text="unavailable")
        params = request.url.params
        assert params["v"] == "5"
        if params["type"] == "info":
            results = [self.records[n] for n in params.get_list("arg[]") if n in self.records]
        else:
            field = "Provides" if params["by"] == "provides" else "Name"
            query = params["arg"]
            results = [
                r
                for r in self.records.values()
                if any(query in value for value in ([r[field]] if field == "Name" else r.get(field, [])))
            ]
        return httpx.Response(
            200, json={"version": 5, "type": "multiinfo", "resultcount": len(results), "results": results}
        )


def make_client(handler, **kwargs):
    sleeps = []
    client = AurClient(
        base_url=BASE,
        client=httpx.Client(base_url=BASE, transport=httpx.MockTransport(handler)),
        sleep=sleeps.append,
        **kwargs,
    )
    return client, sleeps


class TestRecordFromRpc:
    def test_fields(self):
        record = record_from_rpc(
            rpc_record(
                "foo",
                "2:1.0-3",
                Depends=["bar>=2.0", "glibc"],
                MakeDepends=["cmake"],
                CheckDepends=["python-pytest"],
                Provides=["libfoo=1.0"],
                Conflicts=["foo-git"],
                PackageBase="foo-base",
                NumVotes=12,
                Popularity=1.5,
                OutOfDate=None,
            )
        )
        assert record.source is Source.AUR
        assert record.version == "2:1.0-3"
        assert record.depends == (parse_dependency("bar>=2.0"), PackageRef("glibc"))
        assert [str(r) for r in record.makedepends] == ["cmake", "python-pytest"]
        assert record.provides == frozenset({parse_dependency("libfoo=1.0")})
        assert record.conflicts == frozenset({PackageRef("foo-git")})
        assert record.base == "foo-base"
        assert record.num_votes == 12

    def test_missing_lists(self):
        record = record_from_rpc(rpc_record("bare"))
        assert record.depends == ()
        assert record.makedepends == ()
        assert record.conflicts == frozenset()


class TestFetch:
    def test_found_and_missing(self):
        rpc = FakeRPC([rpc_record("foo", Depends=["bar"])])
        client, _ = make_client(rpc)

        result = client.fetch(["foo", "nothere"])

        assert result["foo"].name == "foo"
        assert result["foo"].depends == (PackageRef("bar"),)
        assert result["nothere"] is None
        assert len(rpc.requests) == 1
        assert rpc.requests[0].url.params.get_list("arg[]") == ["foo", "nothere"]

    def test_results_are_cached_for_the_client_lifetime(self):
        rpc = FakeRPC([rpc_record("foo")])
        client, _ = make_client(rpc)

        client.fetch(["foo", "nothere"])
        client.fetch(["nothere", "foo"])

        assert len(rpc.requests) == 1

        client.clear_cache()
        client.fetch(["foo"])
        assert len(rpc.requests) == 2

    def test_names_are_batched(self):
        names = [f"pkg{i}" for i in range(5)]
        rpc = FakeRPC([rpc_record(n) for n in names])
        client, _ = make_client(rpc, batch_size=2, workers=3)

        result = client.fetch(names)

        assert len(rpc.requests) == 3
        assert sorted(len(r.url.params.get_list("arg[]")) for r in rpc.requests) == [1, 2, 2]
        assert [r.name for r in result.values()] == names

    def test_transient_errors_are_retried_with_backoff(self):
        rpc = FakeRPC([rpc_record("foo")], fail_first=2)
        client, sleeps = make_client(rpc, retries=3, backoff=0.5)

        assert client.get("foo").name == "foo"
        assert len(rpc.requests) == 3
        assert sleeps == [0.5, 1.0]

    def test_retries_exhausted(self):
        rpc = FakeRPC([rpc_record("foo")], fail_first=10)
        client, sleeps = make_client(rpc, retries=3)

        result = client.fetch(["foo", "bar"])

        assert isinstance(result["foo"], FetchFailed)
        assert isinstance(result["bar"], FetchFailed)
        assert "after 3 attempts" in result["foo"].message
        assert len(rpc.requests) == 3
        with pytest.raises(FetchFailed):
            client.get("foo")
        assert len(rpc.requests) == 3

    def test_transport_errors_are_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"type": "multiinfo", "results": [rpc_record("foo")]})

        client, sleeps = make_client(handler)

        assert client.get("foo").name == "foo"
        assert len(sleeps) == 1

    def test_client_errors_are_not_retried(self):
        rpc = FakeRPC(fail_first=1, status=404)
        client, sleeps = make_client(rpc)

        outcome = client.fetch(["foo"])["foo"]

        assert isinstance(outcome, FetchFailed)
        assert "HTTP 404" in outcome.message
        assert sleeps == []

    def test_api_error_payload(self):
        def handler(request):
            return httpx.Response(200, json={"type": "error", "error": "Too many package results."})

        client, _ = make_client(handler)

        with pytest.raises(FetchFailed) as excinfo:
            client.get("foo")
        assert "Too many package results." in excinfo.value.message

    def test_malformed_record_fails_only_that_name(self):
        rpc = FakeRPC([rpc_record("good"), rpc_record("bad", Depends=["x>="])])
        client, _ = make_client(rpc)

        result = client.fetch(["good", "bad"])

        assert result["good"].name == "good"
        assert isinstance(result["bad"], FetchFailed)


class TestSearch:
    def test_search(self):
        rpc = FakeRPC([rpc_record("yay"), rpc_record("yay-bin"), rpc_record("paru")])
        client, _ = make_client(rpc)

        names = [r.name for r in client.search("yay")]

        assert names == ["yay", "yay-bin"]
        assert rpc.requests[0].url.params["by"] == "name-desc"

    def test_search_providers_filters_by_exact_provide(self):
        rpc = FakeRPC(
            [
                rpc_record("libx-git", Provides=["libx=1.2"]),
                rpc_record("libxy", Provides=["libxy"]),
            ]
        )
        client, _ = make_client(rpc)

        providers = client.search_providers("libx")

        assert [p.name for p in providers] == ["libx-git"]


def test_from_settings():
    settings = Settings(aur_url="https://aur.example/", fetch_retries=5, batch_size=50)
    client = AurClient.from_settings(settings)
    try:
        assert client.base_url == "https://aur.example"
        assert client.retries == 5
        assert client.batch_size == 50
    finally:
        client.close()
