import pytest
import requests

import artifact_fetcher
from artifact_fetcher import ArtifactFetcher, GitHubClient, pick_asset, request_with_retry
from build_errors import FetchError
from tests.conftest import FakeResponse, FakeSession


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr(artifact_fetcher.time, "sleep", sleeps.append)
    return sleeps


def test_retry_backs_off_exponentially(no_sleep):
    url = "https://api.example/x"
    session = FakeSession({url: [requests.ConnectionError("boom"), FakeResponse(503), FakeResponse(200)]})
    resp = request_with_retry(session, "GET", url, max_retries=4, backoff=1.0)
    assert resp.status_code == 200
    assert no_sleep == [1.0, 2.0]


def test_retry_gives_up():
    url = "https://api.example/x"
    session = FakeSession({url: [FakeResponse(502)]})
    with pytest.raises(FetchError, match="giving up after 3 attempts"):
        request_with_retry(session, "GET", url, max_retries=3)
    assert len(session.calls) == 3


def test_client_errors_are_not_retried():
    url = "https://api.example/x"
    session = FakeSession({url: [FakeResponse(404)]})
    assert request_with_retry(session, "GET", url).status_code == 404
    assert len(session.calls) == 1


def test_pick_asset():
    assets = [
        {"name": "revanced-cli-4.6.0-sources.jar", "browser_download_url": "u1"},
        {"name": "revanced-cli-4.6.0-all.jar", "browser_download_url": "u2"},
        {"name": "patches-5.0.0.rvp", "browser_download_url": "u3"},
    ]
    assert pick_asset(assets, "cli")["browser_download_url"] == "u2"
    assert pick_asset(assets, "patches")["browser_download_url"] == "u3"
    assert pick_asset([], "cli") is None


def test_dev_picks_newest_release_and_fetch_is_memoized(tmp_path, caplog):
    api = f"{artifact_fetcher.API_ROOT}/repos/owner/patches/releases"
    asset = {"name": "patches.rvp", "size": 5, "browser_download_url": "https://dl.example/patches.rvp"}
    session = FakeSession({
        api: [FakeResponse(200, [{"tag_name": "v5.0.0-dev.1", "prerelease": True, "assets": [asset]}])],
        asset["browser_download_url"]: [FakeResponse(200, body=b"12345")],
    })
    client = GitHubClient(token=None, session=session)
    assert "GITHUB_TOKEN not set" in caplog.text

    memo = {}
    fetcher = ArtifactFetcher(client, tmp_path / "bin", memo)
    first = fetcher.fetch("owner/patches", "dev", "patches")
    second = fetcher.fetch("owner/patches", "dev", "patches")

    assert first == second == tmp_path / "bin" / "owner-patches" / "patches.rvp"
    assert first.read_bytes() == b"12345"
    assert session.calls.count(api) == 1
    assert ("owner/patches", "dev", "patches") in memo
    assert not list(first.parent.glob("tmp.*"))


def test_existing_asset_is_not_downloaded_again(tmp_path):
    api = f"{artifact_fetcher.API_ROOT}/repos/owner/cli/releases/latest"
    asset = {"name": "cli.jar", "size": 3, "browser_download_url": "https://dl.example/cli.jar"}
    session = FakeSession({api: [FakeResponse(200, {"tag_name": "v1", "assets": [asset]})]})
    dest = tmp_path / "bin" / "owner-cli" / "cli.jar"
    dest.parent.mkdir(parents=True)
    dest.write_bytes(b"abc")

    fetcher = ArtifactFetcher(GitHubClient("tok", session), tmp_path / "bin")
    assert fetcher.fetch("owner/cli", "latest", "cli") == dest
    assert asset["browser_download_url"] not in session.calls
    assert session.headers["Authorization"] == "token tok"


def test_tag_lookup_tries_v_prefix(tmp_path):
    root = f"{artifact_fetcher.API_ROOT}/repos/owner/cli/releases/tags"
    session = FakeSession({
        f"{root}/1.2.3": [FakeResponse(404)],
        f"{root}/v1.2.3": [FakeResponse(200, {"tag_name": "v1.2.3", "assets": []})],
    })
    release = GitHubClient("tok", session).release("owner/cli", "1.2.3")
    assert release.tag == "v1.2.3"
