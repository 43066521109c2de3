import zipfile
from pathlib import Path

import pytest

from build_env import BuildEnv


def make_zip(path: Path, entries, stored=()):
    """Write `entries` ({name: bytes}); names in `stored` are written uncompressed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as z:
        for name, data in entries.items():
            z.writestr(name, data, zipfile.ZIP_STORED if name in stored else zipfile.ZIP_DEFLATED)
    return path


@pytest.fixture
def env(tmp_path):
    return BuildEnv.from_environ(environ={}, workdir=tmp_path)


@pytest.fixture
def write_config(tmp_path):
    def _write(text: str, name: str = "config.toml") -> Path:
        p = tmp_path / name
        p.write_text(text, encoding="utf-8")
        return p
    return _write


class FakeResponse:
    def __init__(self, status=200, payload=None, body=b""):
        self.status_code = status
        self._payload = payload
        self._body = body
        self.text = body.decode() if body else ""

    def json(self):
        return self._payload

    def iter_content(self, size):
        yield self._body

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Answers requests from a {url: [responses...]} script; the last response repeats."""

    def __init__(self, script):
        self.script = {k: list(v) for k, v in script.items()}
        self.headers = {}
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append(url)
        queue = self.script[url]
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item
