"""
Pick the stock version to build.

  auto          highest version the patch bundle declares support for
                (the one covered by the most selected patches); falls back
                to `latest` when every patch is version-agnostic
  latest, beta  highest version the download source lists
  <anything>    that exact version
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Set

from build_errors import NoVersionResolved

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^(Name|Description|Enabled|Compatible packages|Package name|"
                     r"Compatible versions|Index|Options|Use|Default)\s*:\s*(.*)$", re.I)
_TOKEN_RE = re.compile(r"\d+|[A-Za-z]+")


class VersionSource(Protocol):
    def versions(self, include_beta: bool = False) -> List[str]: ...


def natural_key(version: str):
    """'1.10.0' > '1.9.9': numeric runs compare as numbers, not text."""
    parts = _TOKEN_RE.findall(version.strip().lstrip("vV"))
    return tuple((1, int(p), "") if p.isdigit() else (0, 0, p.lower()) for p in parts)


def highest_version(versions: Iterable[str]) -> Optional[str]:
    vs = [v.strip() for v in versions if v and v.strip()]
    if not vs:
        return None
    return max(vs, key=natural_key)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  list-patches parser
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
@dataclass
class PatchInfo:
    name: str
    enabled: bool = True
    # package -> versions; an empty set means "any version of that package"
    packages: Dict[str, Set[str]] = field(default_factory=dict)

    @property
    def universal(self) -> bool:
        return not self.packages

    def applies_to(self, package: str) -> bool:
        return self.universal or package in self.packages


def parse_patch_listing(text: str) -> List[PatchInfo]:
    """
    Parse `list-patches -v -p` output. Each patch is a block of
    `Key: value` lines; compatible versions follow on their own lines.
    """
    patches: List[PatchInfo] = []
    current: Optional[PatchInfo] = None
    package: Optional[str] = None
    in_versions = False

    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith("INFO:"):
            line = line[len("INFO:"):].strip()
        if not line:
            in_versions = False
            continue
        m = _KEY_RE.match(line)
        if not m:
            if in_versions and current is not None and package is not None and line.lower() != "any":
                current.packages[package].add(line)
            continue

        key, value = m.group(1).lower(), m.group(2).strip()
        in_versions = False
        if key == "name":
            current = PatchInfo(name=value)
            patches.append(current)
            package = None
        elif current is None:
            continue
        elif key == "enabled":
            current.enabled = value.lower() == "true"
        elif key == "package name":
            package = value
            current.packages.setdefault(package, set())
        elif key == "compatible versions":
            in_versions = package is not None
            if value and package is not None:
                current.packages[package].update(
                    v for v in re.split(r"[,\s]+", value) if v and v.lower() != "any")
    return patches


def last_supported_version(listing: str, package: str,
                           included: Sequence[str] = (), excluded: Sequence[str] = (),
                           exclusive: bool = False) -> Optional[str]:
    patches = [p for p in parse_patch_listing(listing) if p.applies_to(package)]

    if included:
        wanted = set(included)
        vers = {v for p in patches if p.name in wanted for v in p.packages.get(package, ())}
        if vers:
            return highest_version(vers)

    counts: Dict[str, int] = {}
    for p in patches:
        if p.name in excluded:
            continue
        if exclusive and p.name not in included:
            continue
        if not (p.enabled or p.name in included):
            continue
        for v in p.packages.get(package, ()):
            counts[v] = counts.get(v, 0) + 1
    if not counts:
        return None
    best = max(counts.values())
    return highest_version(v for v, n in counts.items() if n == best)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Public API
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
@dataclass(frozen=True)
class VersionChoice:
    version: str
    # the patcher must be forced (-f) when the version was not taken from the bundle
    force: bool = False
    from_source: bool = False


def resolve_version(policy: str, package_id: str, listing: str, source: Optional[VersionSource],
                    included: Sequence[str] = (), excluded: Sequence[str] = (),
                    exclusive: bool = False) -> VersionChoice:
    if policy == "auto":
        version = last_supported_version(listing, package_id, included, excluded, exclusive)
        if version:
            return VersionChoice(version)
        logger.info("%s: patches are version-agnostic, using latest", package_id)
        return VersionChoice(_latest(source, package_id, beta=False), from_source=True)
    if policy in ("latest", "beta"):
        return VersionChoice(_latest(source, package_id, beta=policy == "beta"),
                             force=True, from_source=True)
    return VersionChoice(policy, force=True)


def _latest(source: Optional[VersionSource], package_id: str, beta: bool) -> str:
    if source is None:
        raise NoVersionResolved(f"{package_id}: no download source to list versions from")
    version = highest_version(source.versions(include_beta=beta))
    if not version:
        raise NoVersionResolved(f"Empty version for {package_id}")
    return version
