"""
Stock APK download sources.

Three sources are supported, always tried in this order:
  archive    - plain directory listing of <pkg>-<version>-<arch>.apk files
  apkmirror  - apkmirror.com app page
  uptodown   - <app>.<lang>.uptodown.com/android page

Each one answers the same four questions: what is the package id, which
versions exist, and can you fetch version X for arch/dpi into a file. Pages
are fetched once per URL and kept in a shared ResponseCache for the whole run.
"""

import re
import html
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, MutableMapping, Optional, Type
from urllib.parse import urljoin, urlparse

import requests

from artifact_fetcher import download_to, request_with_retry
from build_errors import FetchError

logger = logging.getLogger(__name__)

BROWSER_UA = "Mozilla/5.0 (X11; Linux x86_64; rv:128.0) Gecko/20100101 Firefox/128.0"
BETA_RE = re.compile(r"\b(alpha|beta|rc)\b", re.I)
VERSION_RE = re.compile(r"\d+(?:\.\d+)+(?:[-.][\w.]+)?")

# arch name in config -> names the sources use for the same ABI
ARCH_ALIASES = {
    "arm64-v8a": ("arm64-v8a",),
    "arm-v7a": ("armeabi-v7a", "arm-v7a"),
    "all": ("universal", "noarch", "all"),
}
ARCH_SUFFIX = r"(?:arm64-v8a|armeabi-v7a|arm-v7a|x86_64|x86|universal|noarch|all)"


class ResponseCache:
    """URL -> page text, fetched at most once per process."""

    def __init__(self, session: Optional[requests.Session] = None,
                 store: Optional[MutableMapping[str, str]] = None,
                 max_retries: int = 3, backoff: float = 2.0):
        self.session = session or requests.Session()
        self.session.headers["User-Agent"] = BROWSER_UA
        self.store: MutableMapping[str, str] = {} if store is None else store
        self.max_retries = max_retries
        self.backoff = backoff
        self._lock = threading.Lock()

    def get(self, url: str) -> str:
        with self._lock:
            if url in self.store:
                return self.store[url]
        resp = request_with_retry(self.session, "GET", url,
                                  max_retries=self.max_retries, backoff=self.backoff)
        if resp.status_code != 200:
            raise FetchError(f"GET {url}: HTTP {resp.status_code}")
        text = resp.text
        with self._lock:
            self.store[url] = text
        return text

    def fresh(self, url: str) -> str:
        """Uncached GET for one-shot pages (download keys expire)."""
        resp = request_with_retry(self.session, "GET", url,
                                  max_retries=self.max_retries, backoff=self.backoff)
        if resp.status_code != 200:
            raise FetchError(f"GET {url}: HTTP {resp.status_code}")
        return resp.text

    def save(self, url: str, out: Path) -> bool:
        try:
            download_to(self.session, url, out, max_retries=self.max_retries, backoff=self.backoff)
            return True
        except FetchError as e:
            logger.error("Download failed: %s", e)
            return False


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Source interface
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
class ApkSource(ABC):
    name = ""

    def __init__(self, url: str, cache: ResponseCache):
        self.url = url.rstrip("/")
        self.cache = cache

    @property
    def probe_url(self) -> str:
        return self.url

    def probe(self) -> str:
        return self.cache.get(self.probe_url)

    @abstractmethod
    def package_id(self) -> str:
        """Package id of the app, or '' when the page doesn't reveal one."""

    @abstractmethod
    def versions(self, include_beta: bool = False) -> List[str]:
        """Versions offered, newest first where the site orders them."""

    @abstractmethod
    def download(self, version: str, out: Path, arch: str, dpi: str) -> bool:
        """Fetch `version` into `out`; False when this source cannot provide it."""

    def __repr__(self):
        return f"{type(self).__name__}({self.url!r})"


def _arch_names(arch: str) -> tuple:
    for key, names in ARCH_ALIASES.items():
        if arch.startswith(key):
            return names
    return (arch,)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  archive
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
class ArchiveSource(ApkSource):
    name = "archive"

    def package_id(self) -> str:
        self.probe()
        return urlparse(self.url).path.rstrip("/").rsplit("/", 1)[-1]

    def _files(self) -> List[str]:
        pkg = re.escape(self.package_id())
        return re.findall(rf'href="(?:[^"]*/)?({pkg}-[^"/]+?\.apk)"', self.probe())

    def versions(self, include_beta: bool = False) -> List[str]:
        pkg = self.package_id()
        out: List[str] = []
        for f in self._files():
            m = re.match(rf"{re.escape(pkg)}-(.+)-{ARCH_SUFFIX}\.apk$", f)
            if m and m.group(1) not in out:
                if include_beta or not BETA_RE.search(m.group(1)):
                    out.append(m.group(1))
        return out

    def download(self, version: str, out: Path, arch: str, dpi: str) -> bool:
        pkg = self.package_id()
        files = set(self._files())
        for a in (arch,) + _arch_names(arch):
            name = f"{pkg}-{version}-{a}.apk"
            if name in files:
                return self.cache.save(f"{self.url}/{name}", out)
        return False


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  apkmirror
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
class APKMirrorSource(ApkSource):
    name = "apkmirror"
    ROOT = "https://www.apkmirror.com"

    def package_id(self) -> str:
        m = re.search(r"play\.google\.com/store/apps/details\?id=([\w.]+)", self.probe())
        return m.group(1) if m else ""

    def versions(self, include_beta: bool = False) -> List[str]:
        titles = re.findall(r'class="fontBlack"[^>]*>([^<]+)</a>', self.probe())
        out: List[str] = []
        for title in map(html.unescape, titles):
            if not include_beta and BETA_RE.search(title):
                continue
            m = VERSION_RE.search(title)
            if m and m.group(0) not in out:
                out.append(m.group(0))
        return out

    def _variant_url(self, release_page: str, arch: str, dpi: str) -> Optional[str]:
        wanted_arch = _arch_names(arch)
        for row in release_page.split('class="table-row headerFont"')[1:]:
            link = re.search(r'href="(/apk/[^"]+-android-apk-download/)"', row)
            if not link or ">APK<" not in row:
                continue
            cells = [html.unescape(c).strip() for c in
                     re.findall(r'class="table-cell[^"]*"[^>]*>\s*([^<]*)', row)]
            if not any(c in wanted_arch for c in cells):
                continue
            if dpi and not any(dpi in c for c in cells):
                continue
            return urljoin(self.ROOT, link.group(1))
        return None

    def download(self, version: str, out: Path, arch: str, dpi: str) -> bool:
        slug = self.url.rsplit("/", 1)[-1]
        release = f"{self.url}/{slug}-{version.replace('.', '-')}-release/"
        try:
            variant = self._variant_url(self.cache.get(release), arch, dpi)
            if variant is None:
                return False
            m = re.search(r'href="(/apk/[^"]+/download/\?key=[^"]+)"', self.cache.fresh(variant))
            if not m:
                return False
            page = self.cache.fresh(urljoin(self.ROOT, html.unescape(m.group(1))))
            m = re.search(r'href="(/wp-content/themes/APKMirror/download\.php\?[^"]+)"', page)
            if not m:
                return False
        except FetchError as e:
            logger.error("apkmirror: %s", e)
            return False
        return self.cache.save(urljoin(self.ROOT, html.unescape(m.group(1))), out)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  uptodown
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
class UptodownSource(ApkSource):
    name = "uptodown"

    @property
    def probe_url(self) -> str:
        return f"{self.url}/download"

    def package_id(self) -> str:
        m = re.search(r"<t[dh][^>]*>\s*Package Name\s*</t[dh]>\s*<td[^>]*>\s*([\w.]+)\s*<", self.probe(), re.I)
        return m.group(1) if m else ""

    def _data_code(self) -> str:
        m = re.search(r'id="detail-app-name"[^>]*data-code="(\d+)"', self.probe()) or \
            re.search(r'data-code="(\d+)"', self.probe())
        if not m:
            raise FetchError(f"uptodown: no app code on {self.probe_url}")
        return m.group(1)

    def _entries(self, pages: int = 5) -> List[Dict]:
        code = self._data_code()
        entries: List[Dict] = []
        for page in range(1, pages + 1):
            resp = request_with_retry(self.cache.session, "GET", f"{self.url}/apps/{code}/versions/{page}",
                                      max_retries=self.cache.max_retries, backoff=self.cache.backoff)
            if resp.status_code != 200:
                break
            try:
                data = resp.json().get("data") or []
            except ValueError:
                raise FetchError(f"uptodown: bad version list for {self.url}") from None
            if not data:
                break
            entries.extend(d for d in data if str(d.get("kindFile", "apk")).lower() == "apk")
        return entries

    def versions(self, include_beta: bool = False) -> List[str]:
        out: List[str] = []
        for e in self._entries():
            v = str(e.get("version", "")).strip()
            if v and v not in out and (include_beta or not BETA_RE.search(v)):
                out.append(v)
        return out

    def download(self, version: str, out: Path, arch: str, dpi: str) -> bool:
        try:
            entry = next((e for e in self._entries() if str(e.get("version")) == version), None)
            if entry is None:
                return False
            page_url = entry.get("versionURL") or f"{self.url}/download/{entry.get('versionID')}"
            m = re.search(r'data-url="([^"]+)"', self.cache.fresh(page_url))
            if not m:
                return False
        except FetchError as e:
            logger.error("uptodown: %s", e)
            return False
        return self.cache.save(f"https://dw.uptodown.com/dwn/{m.group(1)}", out)


SOURCE_TYPES: Dict[str, Type[ApkSource]] = {
    "archive": ArchiveSource,
    "apkmirror": APKMirrorSource,
    "uptodown": UptodownSource,
}


def make_source(kind: str, url: str, cache: ResponseCache) -> ApkSource:
    try:
        cls = SOURCE_TYPES[kind]
    except KeyError:
        raise ValueError(f"Unknown download source '{kind}'") from None
    return cls(url, cache)
