"""
Runtime environment for the builder: directory layout and env overrides.

Every location the pipeline touches can be moved with an environment variable,
and a `.env` file next to the working directory is honoured the same way the
rest of the tooling reads secrets (GITHUB_TOKEN in particular).
"""

import os
import glob
import shlex
import shutil
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

TRUTHY = ("1", "true", "yes", "on")


def load_env_file(workdir: Optional[Path] = None) -> bool:
    """Load `<workdir>/.env` without overriding variables already exported."""
    path = Path(workdir or Path.cwd()) / ".env"
    if not path.exists():
        return False
    return load_dotenv(path, override=False)


@dataclass(frozen=True)
class BuildEnv:
    temp_dir: Path
    build_dir: Path
    bin_dir: Path
    logs_dir: Path
    log_file: Path
    workdir: Path
    github_token: Optional[str] = None
    no_rebuild: bool = False
    java_opts: List[str] = field(default_factory=list)
    is_android: bool = False

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None,
                     workdir: Optional[Path] = None) -> "BuildEnv":
        env = os.environ if environ is None else environ
        root = Path(workdir or Path.cwd())

        def _dir(var: str, default: str) -> Path:
            value = env.get(var)
            return Path(value) if value else root / default

        return cls(
            temp_dir=_dir("TEMP_DIR", "temp"),
            build_dir=_dir("BUILD_DIR", "build"),
            bin_dir=_dir("BIN_DIR", "bin"),
            logs_dir=_dir("LOGS_DIR", "logs"),
            log_file=_dir("BUILD_LOG", "build.md"),
            workdir=root,
            github_token=env.get("GITHUB_TOKEN") or None,
            no_rebuild=env.get("NORB", "").lower() in TRUTHY,
            java_opts=shlex.split(env.get("JAVA_OPTS", "")),
            is_android=env.get("OS", "") == "Android",
        )

    @property
    def patch_cache_dir(self) -> Path:
        return self.bin_dir / "patchcache"

    def prepare(self) -> None:
        for d in (self.temp_dir, self.build_dir, self.bin_dir, self.patch_cache_dir):
            d.mkdir(parents=True, exist_ok=True)

    def clean(self) -> None:
        """Remove everything the pipeline generates (the `clean` command)."""
        for d in (self.temp_dir, self.build_dir, self.logs_dir):
            shutil.rmtree(d, ignore_errors=True)
        self.log_file.unlink(missing_ok=True)

    def sweep_temporaries(self) -> int:
        """Delete half-written scratch files left behind by interrupted jobs."""
        # `tmp.` files from mkstemp, `<name>-tmp.` trees from mkdtemp
        patterns = ("tmp.*", "*/tmp.*", "*-tmp.*", "*-temporary-files")
        removed = 0
        for pattern in patterns:
            for p in glob.glob(str(self.temp_dir / pattern)):
                path = Path(p)
                if path.is_dir():
                    shutil.rmtree(path, ignore_errors=True)
                else:
                    path.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info("Swept %d temporary file(s) from %s", removed, self.temp_dir)
        return removed
