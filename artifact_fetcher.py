"""
Artifact Fetcher: downloads patcher CLI jars and patch bundles from GitHub
releases, with bounded retry + exponential backoff on every network call.

Files land in `bin/<owner>-<repo>/<asset>` and are reused across runs. Within
one run, (repository, version) lookups are memoized in a mapping that the
caller owns, so tests can hand in a plain dict and inspect it.
"""

import os
import re
import time
import logging
import tempfile
import threading
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Dict, List, MutableMapping, NamedTuple, Optional, Tuple

import requests

from build_errors import FetchError

logger = logging.getLogger(__name__)

API_ROOT = "https://api.github.com"
USER_AGENT = "rv-builder (+https://github.com)"

# Status codes worth retrying; anything else 4xx is final
RETRY_STATUS = frozenset({429, 500, 502, 503, 504})

ERROR_MAP = {
    401: "Invalid or expired GitHub token.",
    403: "Rate limited or forbidden (set GITHUB_TOKEN to raise the limit).",
    404: "Repository or release not found.",
}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Data Classes
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
@dataclass
class Release:
    repo: str
    tag: str
    prerelease: bool = False
    assets: List[Dict[str, Any]] = field(default_factory=list)


class ArtifactKey(NamedTuple):
    repo: str
    version: str
    kind: str  # "cli" | "patches"


@dataclass(frozen=True)
class ResolvedArtifactPair:
    cli: Path
    patches: Path


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  HTTP with retry
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def request_with_retry(session: requests.Session, method: str, url: str,
                       max_retries: int = 4, backoff: float = 2.0,
                       timeout: Tuple[float, float] = (10, 60), **kwargs) -> requests.Response:
    """
    Issue a request, retrying connection errors and 429/5xx responses.
    Sleeps backoff, 2*backoff, 4*backoff... between attempts.
    """
    last_error: Optional[str] = None
    for attempt in range(max_retries):
        try:
            resp = session.request(method, url, timeout=timeout, **kwargs)
            if resp.status_code not in RETRY_STATUS:
                return resp
            last_error = f"HTTP {resp.status_code}"
            resp.close()
        except requests.RequestException as e:
            last_error = str(e)
        if attempt < max_retries - 1:
            delay = backoff * (2 ** attempt)
            logger.warning("%s %s failed (%s), retry %d/%d in %.0fs",
                           method, url, last_error, attempt + 1, max_retries - 1, delay)
            time.sleep(delay)
    raise FetchError(f"{method} {url}: giving up after {max_retries} attempts ({last_error})")


def download_to(session: requests.Session, url: str, dest: Path, **retry_kwargs) -> Path:
    """Stream `url` into `dest` via a temp file in the same dir + atomic rename."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    resp = request_with_retry(session, "GET", url, stream=True, **retry_kwargs)
    with resp:
        if resp.status_code != 200:
            raise FetchError(f"GET {url}: HTTP {resp.status_code}")
        fd, tmp = tempfile.mkstemp(prefix="tmp.", dir=dest.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                for chunk in resp.iter_content(1024 * 64):
                    if chunk:
                        f.write(chunk)
            os.replace(tmp, dest)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
    return dest


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  GitHub releases
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
class GitHubClient:
    def __init__(self, token: Optional[str] = None, session: Optional[requests.Session] = None,
                 max_retries: int = 4, backoff: float = 2.0):
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
        })
        if token:
            self.session.headers["Authorization"] = f"token {token}"
        else:
            logger.warning("GITHUB_TOKEN not set: using the anonymous API rate limit")
        self.max_retries = max_retries
        self.backoff = backoff

    def _get_json(self, path: str, **params) -> Any:
        url = f"{API_ROOT}{path}"
        resp = request_with_retry(self.session, "GET", url, params=params or None,
                                  max_retries=self.max_retries, backoff=self.backoff)
        if resp.status_code != 200:
            reason = ERROR_MAP.get(resp.status_code, "Unknown API Error")
            raise FetchError(f"GET {url}: HTTP {resp.status_code} ({reason})")
        return resp.json()

    def release(self, repo: str, version: str) -> Release:
        """
        `latest` is the newest stable release, `dev` the newest release of any
        kind (pre-releases included); anything else is a tag name, tried with
        and without a leading `v`.
        """
        if version == "latest":
            data = self._get_json(f"/repos/{repo}/releases/latest")
        elif version == "dev":
            releases = self._get_json(f"/repos/{repo}/releases", per_page=1)
            if not releases:
                raise FetchError(f"{repo} has no releases")
            data = releases[0]
        else:
            data = None
            for tag in dict.fromkeys((version, f"v{version.lstrip('v')}", version.lstrip("v"))):
                try:
                    data = self._get_json(f"/repos/{repo}/releases/tags/{tag}")
                    break
                except FetchError:
                    continue
            if data is None:
                raise FetchError(f"{repo}: no release tagged '{version}'")
        return Release(repo=repo, tag=data.get("tag_name") or "",
                       prerelease=bool(data.get("prerelease")), assets=data.get("assets") or [])

    def download(self, url: str, dest: Path) -> Path:
        headers = {"Accept": "application/octet-stream"}
        return download_to(self.session, url, dest, headers=headers,
                           max_retries=self.max_retries, backoff=self.backoff)


def pick_asset(assets: List[Dict[str, Any]], kind: str) -> Optional[Dict[str, Any]]:
    """Choose the CLI jar or the patch bundle (.rvp / .mpp / patches*.jar) among release assets."""
    names = [(a, str(a.get("name", "")).lower()) for a in assets]
    if kind == "cli":
        jars = [a for a, n in names if n.endswith(".jar") and not n.endswith("-sources.jar")
                and not n.endswith("-javadoc.jar")]
        cli = [a for a in jars if "cli" in str(a.get("name", "")).lower()]
        candidates = cli or jars
    else:
        candidates = [a for a, n in names if n.endswith((".rvp", ".mpp"))]
        candidates += [a for a, n in names if n.endswith(".jar") and "patches" in n
                       and not n.endswith(("-sources.jar", "-javadoc.jar"))]
    for a in candidates:
        if a.get("browser_download_url"):
            return a
    return None


def repo_slug(repo: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "-", repo.strip("/"))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Fetcher
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
class ArtifactFetcher:
    """
    (repository, version, kind) -> local file.

    `memo` is the in-process cache; pass a dict to share it between resolvers
    or to inspect it in tests. The on-disk copy under `bin_dir` outlives the
    process: an asset already present is never downloaded twice.
    """

    def __init__(self, client: GitHubClient, bin_dir: Path,
                 memo: Optional[MutableMapping[ArtifactKey, Path]] = None):
        self.client = client
        self.bin_dir = Path(bin_dir)
        self.memo: MutableMapping[ArtifactKey, Path] = {} if memo is None else memo
        self._lock = threading.Lock()

    def fetch(self, repo: str, version: str, kind: str) -> Path:
        key = ArtifactKey(repo, version, kind)
        with self._lock:
            cached = self.memo.get(key)
        if cached is not None and cached.exists():
            return cached

        release = self.client.release(repo, version)
        asset = pick_asset(release.assets, kind)
        if asset is None:
            raise FetchError(f"{repo}@{release.tag}: no {kind} asset in release")
        dest = self.bin_dir / repo_slug(repo) / asset["name"]
        if dest.exists() and (not asset.get("size") or dest.stat().st_size == asset["size"]):
            logger.debug("Reusing %s", dest)
        else:
            logger.info("Downloading %s %s (%s)", repo, release.tag, asset["name"])
            self.client.download(asset["browser_download_url"], dest)

        with self._lock:
            self.memo[key] = dest
        return dest

    def prebuilts(self, cli_repo: str, cli_version: str,
                  patches_repo: str, patches_version: str) -> ResolvedArtifactPair:
        """CLI jar + patch bundle for one source."""
        return ResolvedArtifactPair(
            cli=self.fetch(cli_repo, cli_version, "cli"),
            patches=self.fetch(patches_repo, patches_version, "patches"),
        )
