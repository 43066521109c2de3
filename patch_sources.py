"""
Combine patch bundles from several [PatchSources.*] entries into one.

Merge order:
  1) primary   - revanced / anddea / inotia family
  2) secondary - any other named source
  3) privacy   - privacy-revanced, ALWAYS LAST

Bundles are zip archives. They are extracted one after the other into the
same staging directory, so a later bundle overwrites same-named entries of an
earlier one; that is how privacy patches win every conflict. The merged
result is cached in bin/patchcache under a hash of the resolved sources.
"""

import os
import re
import enum
import shutil
import hashlib
import logging
import zipfile
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from app_config import ConfigStore, load_patch_source
from artifact_fetcher import ArtifactFetcher, ResolvedArtifactPair
from build_errors import (MissingSourceField, NoPatchSourcesResolved, PatchSourceError,
                          UnknownPatchSource)

logger = logging.getLogger(__name__)

PRIVACY_RE = re.compile(r"[Pp]rivacy[-_]?revanced")
PRIMARY_RE = re.compile(r"revanced|anddea|inotia")


class PatchTier(enum.IntEnum):
    PRIMARY = 0
    SECONDARY = 1
    PRIVACY = 2


def classify(key: str, repo: str) -> PatchTier:
    if key == "privacy" or PRIVACY_RE.search(repo):
        return PatchTier.PRIVACY
    if PRIMARY_RE.search(repo):
        return PatchTier.PRIMARY
    return PatchTier.SECONDARY


def bundle_hash(source_keys: Sequence[str]) -> str:
    """SHA-1 over NUL-joined `key:repo@version` strings, in request order."""
    blob = "".join(f"{k}\0" for k in source_keys)
    return hashlib.sha1(blob.encode("utf-8")).hexdigest()


class PatchSourceResolver:
    def __init__(self, store: ConfigStore, fetcher: ArtifactFetcher,
                 cache_dir: Path, staging_root: Path):
        self.store = store
        self.fetcher = fetcher
        self.cache_dir = Path(cache_dir)
        self.staging_root = Path(staging_root)

    def resolve(self, table: str, sources: Sequence[str]) -> ResolvedArtifactPair:
        tiers: Dict[PatchTier, List[Path]] = {t: [] for t in PatchTier}
        source_keys: List[str] = []
        first_cli: Optional[Path] = None

        for src in sources:
            if not src:
                continue
            entry = load_patch_source(self.store, src)
            if entry is None:
                raise UnknownPatchSource(f"Unknown patch source: {src}")
            if not entry.source:
                raise MissingSourceField(f"No source for {src}")

            pair = self.fetcher.prebuilts(entry.cli_source, entry.cli_version,
                                          entry.source, entry.version)
            if first_cli is None:
                first_cli = pair.cli

            tier = classify(src, entry.source)
            tiers[tier].append(pair.patches)
            source_keys.append(f"{src}:{entry.source}@{entry.version}")
            logger.info("%s: patch source '%s' -> %s (%s)", table, src, pair.patches.name, tier.name.lower())

        ordered = [jar for tier in PatchTier for jar in tiers[tier]]
        if not ordered or first_cli is None:
            raise NoPatchSourcesResolved(f"No patches found for {table}")

        if len(ordered) == 1:
            return ResolvedArtifactPair(cli=first_cli, patches=ordered[0])

        combined = self.cache_dir / f"combined-{bundle_hash(source_keys)}.jar"
        if combined.is_file():
            logger.info("%s: using cached combined bundle %s", table, combined.name)
            return ResolvedArtifactPair(cli=first_cli, patches=combined)

        self.merge(ordered, combined)
        return ResolvedArtifactPair(cli=first_cli, patches=combined)

    def merge(self, bundles: Sequence[Path], dest: Path) -> Path:
        """Extract `bundles` in order over each other and repack into `dest`."""
        self.staging_root.mkdir(parents=True, exist_ok=True)
        dest.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f"patches-{dest.stem}-tmp.", dir=self.staging_root))
        fd, tmp = tempfile.mkstemp(prefix="tmp.", suffix=".jar", dir=dest.parent)
        os.close(fd)
        try:
            for bundle in bundles:
                with zipfile.ZipFile(bundle) as z:
                    z.extractall(staging)
            with zipfile.ZipFile(tmp, "w", zipfile.ZIP_DEFLATED) as out:
                for path in sorted(staging.rglob("*")):
                    if path.is_file():
                        out.write(path, path.relative_to(staging).as_posix())
            os.replace(tmp, dest)
            logger.info("Combined %d bundles into %s", len(bundles), dest.name)
        except (zipfile.BadZipFile, OSError) as exc:
            raise PatchSourceError(f"Failed combining patches: {exc}") from exc
        finally:
            Path(tmp).unlink(missing_ok=True)
            shutil.rmtree(staging, ignore_errors=True)
        return dest
