import re
import shutil
import logging
import subprocess
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)

KEYSTORE = "ks.keystore"
OPTIONS_FILE = "options.json"

# Support patch the patcher needs for apps that depend on Google services;
# it is added automatically whenever the bundle ships one.
AUTO_PATCH_RE = re.compile(r"gmscore|microg", re.I)

RIP_ALWAYS = ("x86_64", "x86")
RIP_OTHER_ARM = {"arm64-v8a": "armeabi-v7a", "arm-v7a": "arm64-v8a"}

Runner = Callable[..., subprocess.CompletedProcess]


# =========================================================
# ⚙️ PATCHER ARGUMENTS
# =========================================================
class PatchArgs:
    """Ordered argv tokens for `patch`, filled in step by step."""

    def __init__(self):
        self.tokens: List[str] = []
        self.included: List[str] = []
        self.excluded: List[str] = []

    def exclude(self, names: Iterable[str]) -> "PatchArgs":
        for n in names:
            self.tokens += ["-d", n]
            self.excluded.append(n)
        return self

    def include(self, names: Iterable[str]) -> "PatchArgs":
        for n in names:
            self.tokens += ["-e", n]
            self.included.append(n)
        return self

    def exclusive(self) -> "PatchArgs":
        self.tokens.append("--exclusive")
        return self

    def force(self) -> "PatchArgs":
        if "-f" not in self.tokens:
            self.tokens.append("-f")
        return self

    def rip_libs(self, arch: str) -> "PatchArgs":
        for lib in RIP_ALWAYS:
            self.tokens += ["--rip-lib", lib]
        other = RIP_OTHER_ARM.get(arch)
        if other:
            self.tokens += ["--rip-lib", other]
        return self

    def extend(self, tokens: Sequence[str]) -> "PatchArgs":
        self.tokens += list(tokens)
        return self

    def __iter__(self):
        return iter(self.tokens)

    def __len__(self):
        return len(self.tokens)


def auto_patch_name(listing: str) -> Optional[str]:
    """First `Name:` in a list-patches listing that looks like the GmsCore/MicroG patch."""
    for line in listing.splitlines():
        line = line.strip()
        if line.startswith("INFO:"):
            line = line[len("INFO:"):].strip()
        if line.startswith("Name: ") and AUTO_PATCH_RE.search(line):
            return line[len("Name: "):].strip()
    return None


def add_auto_patch(args: PatchArgs, listing: str) -> Optional[str]:
    """
    Include the GmsCore/MicroG support patch when the bundle has one.
    An explicit exclusion wins; an explicit inclusion is not repeated.
    """
    name = auto_patch_name(listing)
    if not name:
        return None
    if name in args.excluded:
        logger.warning("'%s' is excluded in config; the app may not run without it", name)
        return None
    if name not in args.included:
        args.include([name])
    return name


# =========================================================
# 🔧 PATCHER INVOCATION
# =========================================================
def java_cmd(cli: Path, jvm_opts: Sequence[str] = ()) -> List[str]:
    return ["java", *jvm_opts, "-jar", str(cli)]


def build_patch_command(stock: Path, out: Path, args: Iterable[str], cli: Path, bundle: Path,
                        workdir: Path, jvm_opts: Sequence[str] = ()) -> List[str]:
    cmd = java_cmd(cli, jvm_opts) + ["patch", "-b", str(bundle), "-o", str(out)]
    if (workdir / KEYSTORE).is_file():
        cmd.append(f"--keystore={workdir / KEYSTORE}")
    if (workdir / OPTIONS_FILE).is_file():
        cmd.append(f"--options={workdir / OPTIONS_FILE}")
    cmd.append("--purge")
    cmd += list(args)
    cmd.append(str(stock))
    return cmd


def run_cmd(cmd: List[str], runner: Runner = subprocess.run, cwd: Optional[Path] = None):
    """Run `cmd`; return the CompletedProcess, or None if the tool is missing."""
    tool = cmd[0]
    if runner is subprocess.run and not shutil.which(tool):
        logger.error("'%s' not found in PATH.", tool)
        return None
    return runner(cmd, cwd=cwd, capture_output=True, text=True)


def apply_patches(stock: Path, out: Path, args: Iterable[str], cli: Path, bundle: Path,
                  workdir: Path, jvm_opts: Sequence[str] = (), runner: Runner = subprocess.run) -> bool:
    cmd = build_patch_command(stock, out, args, cli, bundle, workdir, jvm_opts)
    logger.debug("Running: %s", " ".join(cmd))
    r = run_cmd(cmd, runner, cwd=workdir)
    if r is None:
        return False
    if r.returncode != 0:
        tail = (r.stdout or "")[-2000:] + (r.stderr or "")[-2000:]
        logger.error("Patcher failed (rc=%d) for %s:\n%s", r.returncode, stock.name, tail)
        return False
    if not out.is_file():
        logger.error("Patcher exited cleanly but produced no %s", out.name)
        return False
    return True


def list_patches(cli: Path, bundle: Path, package: str, jvm_opts: Sequence[str] = (),
                 runner: Runner = subprocess.run) -> Optional[str]:
    """`list-patches` for one package with versions and packages; None on failure."""
    cmd = java_cmd(cli, jvm_opts) + ["list-patches", str(bundle), "-f", package, "-v", "-p"]
    r = run_cmd(cmd, runner)
    if r is None or r.returncode != 0:
        logger.error("Failed to list patches for %s: %s", package, (r.stderr if r else "")[-500:])
        return None
    return (r.stdout or "") + (r.stderr or "")
