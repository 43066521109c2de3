"""
Build orchestrator: one job per (app table, arch), run on a bounded pool.

Each job walks

    SourceProbing -> PatchResolving -> VersionResolving -> Downloading | CacheHit
      -> SigVerifying -> Patching -> Optimizing -> Finalized

and ends up Skipped when any step raises a BuildError. A job never takes its
siblings down with it; only configuration errors, which are raised before
anything is scheduled, stop the whole run.
"""

import os
import enum
import logging
import threading
import subprocess
from pathlib import Path
from dataclasses import dataclass, field
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import requests

from app_config import AppBuildSpec, ConfigStore, MainConfig, load_app_specs
from apk_optimizer import optimize
from apk_patcher import PatchArgs, add_auto_patch, apply_patches, list_patches
from apk_sources import ApkSource, ResponseCache, make_source
from artifact_fetcher import ArtifactFetcher, GitHubClient, ResolvedArtifactPair
from build_env import BuildEnv
from build_errors import BuildError, BuildSkipped, FetchError
from patch_sources import PatchSourceResolver
from sig_check import MISSING_MANIFEST, check_signature, load_known_signatures
from version_resolver import resolve_version

logger = logging.getLogger(__name__)

MICROG_NOTE = "▶️ Install [MicroG-RE](https://github.com/WSTxda/MicroG-RE/releases) for non-root YouTube/YT Music"

BuildFn = Callable[[AppBuildSpec], Path]
SourceFactory = Callable[[str, str, ResponseCache], ApkSource]


class JobStatus(enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class Stage(enum.Enum):
    SOURCE_PROBING = "probing sources"
    PATCH_RESOLVING = "resolving patches"
    VERSION_RESOLVING = "resolving version"
    DOWNLOADING = "downloading"
    CACHE_HIT = "using cached APK"
    SIG_VERIFYING = "checking signature"
    PATCHING = "patching"
    OPTIMIZING = "optimizing"
    FINALIZED = "done"


@dataclass
class BuildJob:
    label: str
    spec: AppBuildSpec
    future: Optional[Future] = None
    status: JobStatus = JobStatus.PENDING
    output: Optional[Path] = None
    error: Optional[str] = None


@dataclass
class BuildSummary:
    jobs: List[BuildJob] = field(default_factory=list)

    def _count(self, status: JobStatus) -> int:
        return sum(1 for j in self.jobs if j.status is status)

    @property
    def succeeded(self) -> int:
        return self._count(JobStatus.SUCCESS)

    @property
    def failures(self) -> int:
        return self._count(JobStatus.SKIPPED) + self._count(JobStatus.FAILED)

    @property
    def outputs(self) -> List[Path]:
        return [j.output for j in self.jobs if j.output is not None]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  build.md
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
class BuildLog:
    """Markdown summary shared by every job. Appends are serialized."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.skipped: List[str] = []
        self._lock = threading.Lock()

    def start(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("", encoding="utf-8")

    def write(self, line: str):
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")

    def success(self, label: str, version: str):
        self.write(f"🟢 » {label}: `{version}`")

    def skip(self, label: str, reason: str):
        with self._lock:
            self.skipped.append(f"{label}: {reason}")

    def finalize(self, built: bool = True):
        if built:
            self.write(f"\n{MICROG_NOTE}\n")
        if self.skipped:
            self.write("\nSkipped:")
            for entry in self.skipped:
                self.write(entry)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  One app
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def _slug(text: str) -> str:
    return text.lower().replace(" ", "-")


def _version_f(version: str) -> str:
    v = version.replace(" ", "")
    return v[1:] if v.startswith("v") else v


def output_name(spec: AppBuildSpec, version: str) -> str:
    return f"{_slug(spec.app_name)}-{_slug(spec.brand)}-v{_version_f(version)}-{spec.arch.replace(' ', '')}.apk"


class AppBuilder:
    """Builds one AppBuildSpec into the build directory; raises BuildError to skip."""

    def __init__(self, env: BuildEnv, store: ConfigStore, main: MainConfig,
                 fetcher: ArtifactFetcher, page_cache: ResponseCache, build_log: BuildLog,
                 source_factory: SourceFactory = make_source,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.env = env
        self.main = main
        self.fetcher = fetcher
        self.page_cache = page_cache
        self.build_log = build_log
        self.source_factory = source_factory
        self.runner = runner
        self.patch_resolver = PatchSourceResolver(store, fetcher, env.patch_cache_dir, env.temp_dir)
        self.known_sigs = load_known_signatures(env.workdir / "sig.txt")

    def _stage(self, spec: AppBuildSpec, stage: Stage):
        logger.debug("%s: %s", spec.label, stage.value)

    def _probe(self, spec: AppBuildSpec) -> Tuple[str, ApkSource, List[ApkSource]]:
        """Package id and the source that revealed it, plus every source still usable."""
        usable: List[ApkSource] = []
        found: Optional[Tuple[str, ApkSource]] = None
        for kind, url in spec.sources:
            src = self.source_factory(kind, url, self.page_cache)
            if found is not None:
                usable.append(src)
                continue
            try:
                pkg = src.package_id()
            except FetchError as e:
                logger.error("Could not find %s in %s: %s", spec.label, kind, e)
                continue
            if not pkg:
                logger.error("Could not find %s in %s", spec.label, kind)
                continue
            found = (pkg, src)
            usable.append(src)
        if found is None:
            raise BuildSkipped(f"Empty package name, not building {spec.label}.")
        return found[0], found[1], usable

    def _prebuilts(self, spec: AppBuildSpec) -> ResolvedArtifactPair:
        if spec.patch_sources:
            return self.patch_resolver.resolve(spec.label, spec.patch_sources)
        return self.fetcher.prebuilts(spec.cli_source, spec.cli_version,
                                      spec.patches_source, spec.patches_version)

    def _download(self, spec: AppBuildSpec, sources: Sequence[ApkSource],
                  version: str, stock: Path) -> bool:
        for src in sources:
            logger.info("Downloading '%s' from %s", spec.label, src.name)
            try:
                if src.download(version, stock, spec.arch, spec.dpi) and stock.is_file():
                    return True
            except FetchError as e:
                logger.error("%s: %s", src.name, e)
            logger.error("Could not download '%s' from %s with version '%s', arch '%s', dpi '%s'",
                         spec.label, src.name, version, spec.arch, spec.dpi)
        return False

    def build(self, spec: AppBuildSpec) -> Path:
        env = self.env
        jvm = self.main.jvm_flags

        self._stage(spec, Stage.SOURCE_PROBING)
        pkg, lister, sources = self._probe(spec)

        self._stage(spec, Stage.PATCH_RESOLVING)
        pair = self._prebuilts(spec)
        listing = list_patches(pair.cli, pair.patches, pkg, jvm, self.runner)
        if listing is None:
            raise BuildSkipped(f"Failed to list patches for {pkg}")

        self._stage(spec, Stage.VERSION_RESOLVING)
        choice = resolve_version(spec.version, pkg, listing, lister, spec.included_patches,
                                 spec.excluded_patches, spec.exclusive_patches)
        version = choice.version
        logger.info("Choosing version '%s' for %s", version, spec.label)
        version_f = _version_f(version)
        arch_f = spec.arch.replace(" ", "")

        stock = env.temp_dir / f"{pkg}-{version_f}-{arch_f}.apk"
        cached = spec.cache_apk and stock.is_file()
        if cached:
            self._stage(spec, Stage.CACHE_HIT)
            logger.info("Using cached APK for %s version %s", spec.label, version)
        else:
            self._stage(spec, Stage.DOWNLOADING)
            if not self._download(spec, sources, version, stock):
                raise BuildSkipped(f"No source could provide {pkg} {version}")

            self._stage(spec, Stage.SIG_VERIFYING)
            sig = check_signature(stock, pkg, self.known_sigs)
            if not sig.ok and sig.message != MISSING_MANIFEST:
                logger.warning("%s: %s", spec.label, sig.message)

        self._stage(spec, Stage.PATCHING)
        args = PatchArgs().exclude(spec.excluded_patches).include(spec.included_patches)
        if spec.exclusive_patches:
            args.exclusive()
        if choice.force:
            args.force()
        add_auto_patch(args, listing)
        if spec.riplib:
            args.rip_libs(spec.arch)
        args.extend(spec.patcher_args)

        base = f"{_slug(spec.app_name)}-{_slug(spec.brand)}-{version_f}-{arch_f}"
        patched = env.temp_dir / f"{base}.apk"
        if env.no_rebuild and patched.is_file():
            logger.info("%s: reusing %s", spec.label, patched.name)
        elif not apply_patches(stock, patched, args, pair.cli, pair.patches,
                               env.workdir, jvm, self.runner):
            raise BuildSkipped(f"Building '{spec.label}' failed!")

        self._stage(spec, Stage.OPTIMIZING)
        optimized = env.temp_dir / f"{base}-opt.apk"
        if not optimize(patched, optimized, spec.optimize, env.temp_dir, env.bin_dir):
            logger.warning("Optimization failed for %s, using unoptimized APK", spec.label)

        output = env.build_dir / output_name(spec, version)
        output.parent.mkdir(parents=True, exist_ok=True)
        os.replace(optimized, output)
        self._stage(spec, Stage.FINALIZED)
        self.build_log.success(spec.label, version)
        logger.info("Built %s: '%s'", spec.label, output)
        return output


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Pool
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def run_builds(specs: Sequence[AppBuildSpec], build_fn: BuildFn, max_jobs: int,
               build_log: Optional[BuildLog] = None) -> BuildSummary:
    """Run `build_fn` for each spec with at most `max_jobs` in flight."""
    summary = BuildSummary([BuildJob(s.label, s) for s in specs])
    if not summary.jobs:
        return summary

    pool = ThreadPoolExecutor(max_workers=max(1, max_jobs), thread_name_prefix="build")
    try:
        by_future: Dict[Future, BuildJob] = {}
        for job in summary.jobs:
            job.future = pool.submit(build_fn, job.spec)
            by_future[job.future] = job

        for fut in as_completed(by_future):
            job = by_future[fut]
            try:
                job.output = fut.result()
                job.status = JobStatus.SUCCESS
            except BuildError as e:
                job.status, job.error = JobStatus.SKIPPED, str(e)
                logger.error("%s skipped: %s", job.label, e)
            except Exception as e:
                job.status, job.error = JobStatus.FAILED, str(e)
                logger.exception("%s failed", job.label)
            if job.error and build_log is not None:
                build_log.skip(job.label, job.error)
    except KeyboardInterrupt:
        pool.shutdown(wait=False, cancel_futures=True)
        raise
    pool.shutdown()
    return summary


def run(config_path: Path, env: BuildEnv, session: Optional[requests.Session] = None,
        builder_factory: Optional[Callable[..., BuildFn]] = None) -> int:
    """
    Validate the whole config, schedule every enabled app and report.
    ConfigError propagates; the caller turns it into exit code 1.
    """
    store = ConfigStore.from_file(config_path)
    main = MainConfig.from_store(store, env.is_android, tuple(env.java_opts))
    specs = [s for spec in load_app_specs(store, main) for s in spec.expand()]

    env.prepare()
    build_log = BuildLog(env.log_file)
    build_log.start()

    if builder_factory is None:
        # the API session carries the GitHub token; mirror pages get their own
        fetcher = ArtifactFetcher(GitHubClient(env.github_token, session or requests.Session()), env.bin_dir)
        pages = ResponseCache(requests.Session())
        build_fn = AppBuilder(env, store, main, fetcher, pages, build_log).build
    else:
        build_fn = builder_factory(env, store, main, build_log)

    logger.info("Building %d job(s) with up to %d in parallel", len(specs), main.parallel_jobs)
    summary = run_builds(specs, build_fn, main.parallel_jobs, build_log)
    env.sweep_temporaries()

    if summary.failures:
        logger.warning("%d of %d build(s) failed", summary.failures, len(summary.jobs))
    built = env.build_dir.is_dir() and any(env.build_dir.iterdir())
    build_log.finalize(built)
    if not built:
        logger.error("All builds failed.")
        return 1

    logger.info("✅ Done")
    return 0
