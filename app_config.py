"""
app_config.py - configuration store and per-app build specs

The TOML file is read once into a `ConfigStore`, which only knows how to look
a key up in a table and how to enumerate tables. Everything else here turns
those raw values into validated, immutable objects:

  MainConfig        top-level keys (parallel-jobs, compression-level, defaults)
  AppBuildSpec      one per app table, split in two when arch = "both"
  PatchSourceEntry  one per [PatchSources.<key>] table

Any invalid value raises ConfigError, and the whole run is aborted before a
single job is scheduled.
"""

import os
import shlex
import tomllib
import dataclasses
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from build_errors import ConfigError

PATCH_SOURCES_TABLE = "PatchSources"

DEFAULT_PATCHES_SOURCE = "anddea/revanced-patches"
DEFAULT_PATCHES_VERSION = "dev"
DEFAULT_CLI_SOURCE = "inotia00/revanced-cli"
DEFAULT_CLI_VERSION = "dev"
DEFAULT_BRAND = "RVX App"

# Fallback CLI for [PatchSources.*] entries that don't name their own
PUBLISHER_CLI_SOURCE = "ReVanced/revanced-cli"

VERSION_KEYWORDS = ("auto", "latest", "beta")
ARCH_KEYWORDS = ("all", "both")
ARCH_PREFIXES = ("arm64-v8a", "arm-v7a")
BOTH_ARCHES = ("arm64-v8a", "arm-v7a")

# Order in which download sources are tried
DOWNLOAD_SOURCES = ("archive", "apkmirror", "uptodown")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Configuration store
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
class ConfigStore:
    """Key lookup over a parsed TOML document. `None` means "absent"."""

    def __init__(self, data: Mapping[str, Any], path: Optional[Path] = None):
        self._data = dict(data)
        self.path = path

    @classmethod
    def from_file(cls, path: Path) -> "ConfigStore":
        path = Path(path)
        if not path.is_file():
            raise ConfigError(f"Could not find config file '{path}'")
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Could not parse '{path}': {exc}") from exc
        return cls(data, path)

    def table_names(self) -> List[str]:
        return [k for k, v in self._data.items()
                if isinstance(v, dict) and k != PATCH_SOURCES_TABLE]

    def get(self, table: Optional[str], key: str) -> Optional[Any]:
        """Look `key` up in `table`, or among the top-level keys when table is None."""
        if table is None:
            value = self._data.get(key)
            return None if isinstance(value, dict) else value
        tbl = self._data.get(table)
        if not isinstance(tbl, dict):
            return None
        return tbl.get(key)

    def get_str(self, table: Optional[str], key: str) -> Optional[str]:
        value = self.get(table, key)
        if value is None:
            return None
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def patch_source(self, key: str) -> Optional[Mapping[str, Any]]:
        sources = self._data.get(PATCH_SOURCES_TABLE)
        if not isinstance(sources, dict):
            return None
        entry = sources.get(key)
        return entry if isinstance(entry, dict) else None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Value parsers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def parse_bool(value: Any, key: str, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    s = str(value).strip()
    if s not in ("true", "false"):
        raise ConfigError(f"'{s}' is not a valid option for '{key}': only true or false is allowed")
    return s == "true"


def parse_name_list(value: Any, key: str) -> Tuple[str, ...]:
    """
    Patch names are given either as a TOML array or as one string of quoted
    names: `"Hide ads" "Custom branding"`. Unquoted strings are rejected
    because names contain spaces.
    """
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(str(v).strip() for v in value if str(v).strip())
    s = str(value).strip()
    if not s:
        return ()
    if '"' not in s:
        raise ConfigError(f"Patch names inside {key} must be quoted")
    try:
        return tuple(n for n in shlex.split(s) if n)
    except ValueError as exc:
        raise ConfigError(f"Malformed quoting in {key}: {exc}") from exc


def parse_csv(value: Any) -> Tuple[str, ...]:
    """`"en,fr"`, `"[a, b]"` or a TOML array -> ('en', 'fr')."""
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        items = str(value).translate({ord(c): None for c in '[]"'}).split(",")
    return tuple(i.strip() for i in items if i.strip())


def parse_args(value: Any, key: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value)
    try:
        return tuple(shlex.split(str(value)))
    except ValueError as exc:
        raise ConfigError(f"Malformed quoting in {key}: {exc}") from exc


def parse_compression(value: Any, key: str = "compression-level") -> int:
    try:
        level = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer within 0-9, got '{value}'")
    if not 0 <= level <= 9:
        raise ConfigError(f"{key} must be within 0-9")
    return level


def validate_version(version: str, table: str) -> str:
    if not version or not version.strip():
        raise ConfigError(f"Empty version for '{table}'")
    return version.strip()


def validate_arch(arch: str, table: str) -> str:
    if arch in ARCH_KEYWORDS or arch.startswith(ARCH_PREFIXES):
        return arch
    raise ConfigError(f"Wrong arch '{arch}' for '{table}'")


def normalize_uptodown_url(url: str) -> str:
    url = url.rstrip("/")
    if url.endswith("download"):
        url = url[:-len("download")]
    return url.rstrip("/")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Data classes
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
@dataclass(frozen=True)
class MainConfig:
    parallel_jobs: int
    compression_level: int = 9
    patches_source: str = DEFAULT_PATCHES_SOURCE
    patches_version: str = DEFAULT_PATCHES_VERSION
    cli_source: str = DEFAULT_CLI_SOURCE
    cli_version: str = DEFAULT_CLI_VERSION
    brand: str = DEFAULT_BRAND
    jvm_flags: Tuple[str, ...] = ()

    @classmethod
    def from_store(cls, store: ConfigStore, is_android: bool = False,
                   java_opts: Tuple[str, ...] = ()) -> "MainConfig":
        jobs = store.get(None, "parallel-jobs")
        if jobs is None:
            parallel = 1 if is_android else (os.cpu_count() or 1)
        else:
            try:
                parallel = int(jobs)
            except (TypeError, ValueError):
                raise ConfigError(f"parallel-jobs must be an integer, got '{jobs}'")
            if parallel < 1:
                raise ConfigError("parallel-jobs must be at least 1")

        level = store.get(None, "compression-level")
        jvm = store.get(None, "jvm-flags")
        return cls(
            parallel_jobs=parallel,
            compression_level=9 if level is None else parse_compression(level),
            patches_source=store.get_str(None, "patches-source") or DEFAULT_PATCHES_SOURCE,
            patches_version=store.get_str(None, "patches-version") or DEFAULT_PATCHES_VERSION,
            cli_source=store.get_str(None, "cli-source") or DEFAULT_CLI_SOURCE,
            cli_version=store.get_str(None, "cli-version") or DEFAULT_CLI_VERSION,
            brand=store.get_str(None, "rv-brand") or DEFAULT_BRAND,
            jvm_flags=parse_args(jvm, "jvm-flags") if jvm is not None else tuple(java_opts),
        )


@dataclass(frozen=True)
class OptimizeSettings:
    enabled: bool = False
    languages: Tuple[str, ...] = ()
    densities: Tuple[str, ...] = ()
    zipalign: bool = False
    compression_level: int = 9
    strip_metadata: bool = False


@dataclass(frozen=True)
class PatchSourceEntry:
    key: str
    source: str
    version: str = "latest"
    cli_source: str = PUBLISHER_CLI_SOURCE
    cli_version: str = "latest"


@dataclass(frozen=True)
class AppBuildSpec:
    table: str
    app_name: str
    label: str
    brand: str = DEFAULT_BRAND
    version: str = "auto"
    arch: str = "all"
    dpi: str = "nodpi"
    included_patches: Tuple[str, ...] = ()
    excluded_patches: Tuple[str, ...] = ()
    exclusive_patches: bool = False
    patcher_args: Tuple[str, ...] = ()
    download_urls: Dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    optimize: OptimizeSettings = field(default_factory=OptimizeSettings)
    patch_sources: Tuple[str, ...] = ()
    cache_apk: bool = False
    riplib: bool = False
    patches_source: str = DEFAULT_PATCHES_SOURCE
    patches_version: str = DEFAULT_PATCHES_VERSION
    cli_source: str = DEFAULT_CLI_SOURCE
    cli_version: str = DEFAULT_CLI_VERSION

    @property
    def sources(self) -> List[Tuple[str, str]]:
        """Configured (source, url) pairs in preference order."""
        return [(s, self.download_urls[s]) for s in DOWNLOAD_SOURCES if self.download_urls.get(s)]

    def for_arch(self, arch: str) -> "AppBuildSpec":
        return dataclasses.replace(self, arch=arch, label=f"{self.table} ({arch})")

    def expand(self) -> List["AppBuildSpec"]:
        """`both` becomes one spec per architecture; anything else is unchanged."""
        if self.arch == "both":
            return [self.for_arch(a) for a in BOTH_ARCHES]
        return [self]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Loaders
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def load_patch_source(store: ConfigStore, key: str) -> Optional[PatchSourceEntry]:
    """Return the entry for `key`, or None when it is not declared.

    An entry without `source` is still returned with an empty source so the
    resolver can report it precisely.
    """
    raw = store.patch_source(key)
    if raw is None:
        return None
    return PatchSourceEntry(
        key=key,
        source=str(raw.get("source") or ""),
        version=str(raw.get("version") or "latest"),
        cli_source=str(raw.get("cli-source") or PUBLISHER_CLI_SOURCE),
        cli_version=str(raw.get("cli-version") or "latest"),
    )


def load_app_spec(store: ConfigStore, table: str, main: MainConfig) -> AppBuildSpec:
    g = lambda key: store.get(table, key)
    s = lambda key: store.get_str(table, key)

    urls: Dict[str, str] = {}
    if s("archive-dlurl"):
        urls["archive"] = s("archive-dlurl").rstrip("/")
    if s("apkmirror-dlurl"):
        urls["apkmirror"] = s("apkmirror-dlurl").rstrip("/")
    if s("uptodown-dlurl"):
        urls["uptodown"] = normalize_uptodown_url(s("uptodown-dlurl"))
    if not urls:
        raise ConfigError(
            f"No 'apkmirror-dlurl', 'uptodown-dlurl' or 'archive-dlurl' option was set for '{table}'.")

    level = g("compression-level")
    optimize = OptimizeSettings(
        enabled=parse_bool(g("optimize-apk"), "optimize-apk"),
        languages=parse_csv(g("optimize-languages")),
        densities=parse_csv(g("optimize-densities")),
        zipalign=parse_bool(g("zipalign"), "zipalign"),
        compression_level=main.compression_level if level is None else parse_compression(level),
        strip_metadata=parse_bool(g("strip-metadata"), "strip-metadata"),
    )

    return AppBuildSpec(
        table=table,
        app_name=s("app-name") or table,
        label=table,
        brand=s("rv-brand") or main.brand,
        version=validate_version(s("version") or "auto", table),
        arch=validate_arch(s("arch") or "all", table),
        dpi=s("dpi") or "nodpi",
        included_patches=parse_name_list(g("included-patches"), "included-patches"),
        excluded_patches=parse_name_list(g("excluded-patches"), "excluded-patches"),
        exclusive_patches=parse_bool(g("exclusive-patches"), "exclusive-patches"),
        patcher_args=parse_args(g("patcher-args"), "patcher-args"),
        download_urls=urls,
        enabled=parse_bool(g("enabled"), "enabled", default=True),
        optimize=optimize,
        patch_sources=parse_csv(g("patch-sources")),
        cache_apk=parse_bool(g("cache-apk"), "cache-apk"),
        riplib=parse_bool(g("riplib"), "riplib"),
        patches_source=s("patches-source") or main.patches_source,
        patches_version=s("patches-version") or main.patches_version,
        cli_source=s("cli-source") or main.cli_source,
        cli_version=s("cli-version") or main.cli_version,
    )


def load_app_specs(store: ConfigStore, main: MainConfig) -> List[AppBuildSpec]:
    """Validate every enabled app table; the first broken one aborts the run."""
    specs: List[AppBuildSpec] = []
    for table in store.table_names():
        enabled = parse_bool(store.get(table, "enabled"), "enabled", default=True)
        if not enabled:
            continue
        specs.append(load_app_spec(store, table, main))
    return specs
