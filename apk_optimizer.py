"""
Shrink a patched APK: drop unwanted locales and densities, strip build
metadata, repack aligned.

Never fatal. Whatever goes wrong, `output` ends up holding a usable APK
(the untouched input in the worst case) and the return value says whether
it was optimized.

The pruned APK carries the patcher's signature over the original file set,
so it has to be re-signed before install. Signing is out of scope here.
"""

import os
import re
import shutil
import logging
import zipfile
import tempfile
import subprocess
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from app_config import OptimizeSettings
from zip_aligner import ZipAligner

logger = logging.getLogger(__name__)

DENSITIES = frozenset({"ldpi", "mdpi", "tvdpi", "hdpi", "xhdpi", "xxhdpi", "xxxhdpi"})
# three-letter qualifiers that are not languages
NOT_LANGUAGE = frozenset({"car"})
_LANG_RE = re.compile(r"^[a-z]{2,3}$")

METADATA_PATTERNS = (
    re.compile(r"^META-INF/[^/]+\.version$"),
    re.compile(r"^META-INF/com/android/build/gradle/"),
    re.compile(r"(^|/)DebugProbesKt\.bin$"),
)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Qualifier rules
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def language_of(dirname: str) -> Optional[str]:
    """'values-fr-rCA' -> 'fr', 'values-b+sr+Latn' -> 'sr', 'values-v21' -> None."""
    if not dirname.startswith("values-"):
        return None
    first = dirname.split("-")[1]
    if first.startswith("b+"):
        return first[2:].split("+")[0].lower() or None
    if _LANG_RE.match(first) and first not in NOT_LANGUAGE:
        return first
    return None


def density_of(dirname: str) -> Optional[str]:
    for q in dirname.split("-")[1:]:
        if q in DENSITIES:
            return q
    return None


def _wanted(items: Iterable[str]) -> List[str]:
    return [i.strip().lower() for i in items if i and i.strip()]


def prune_languages(res: Path, keep: Sequence[str]) -> List[str]:
    langs = {k.split("-")[0] for k in _wanted(keep)}
    removed = []
    for d in sorted(res.glob("values-*")):
        lang = language_of(d.name)
        if d.is_dir() and lang is not None and lang not in langs:
            shutil.rmtree(d)
            removed.append(d.name)
    return removed


def prune_densities(res: Path, keep: Sequence[str]) -> List[str]:
    dens = set(_wanted(keep))
    removed = []
    for d in sorted(res.iterdir()):
        q = density_of(d.name)
        if d.is_dir() and q is not None and q not in dens:
            shutil.rmtree(d)
            removed.append(d.name)
    return removed


def strip_metadata(root: Path) -> List[str]:
    removed = []
    for f in sorted(root.rglob("*")):
        rel = f.relative_to(root).as_posix()
        if f.is_file() and any(p.search(rel) for p in METADATA_PATTERNS):
            f.unlink()
            removed.append(rel)
    return removed


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  zipalign
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def find_zipalign(bin_dir: Optional[Path] = None) -> Optional[str]:
    found = shutil.which("zipalign")
    if found:
        return found
    if bin_dir:
        for p in sorted(Path(bin_dir).glob("android-sdk/build-tools/*/zipalign"), reverse=True):
            if p.exists():
                return str(p)
    return None


def zipalign(apk: Path, bin_dir: Optional[Path] = None, compression_level: int = 9) -> bool:
    """`zipalign -p -f 4` in place; falls back to ZipAligner when the tool is missing."""
    za = find_zipalign(bin_dir)
    if not za:
        logger.warning("zipalign not found, using built-in aligner")
        ZipAligner.fix_inplace(apk, compression_level=compression_level)
        return ZipAligner.verify(apk)

    fd, tmp = tempfile.mkstemp(prefix="tmp.", suffix=".apk", dir=apk.parent)
    os.close(fd)
    try:
        r = subprocess.run([za, "-p", "-f", "4", str(apk), tmp],
                           capture_output=True, text=True)
        if r.returncode != 0 or os.path.getsize(tmp) == 0:
            logger.error("zipalign failed: %s", r.stderr[:200])
            return False
        os.replace(tmp, apk)
        return True
    finally:
        Path(tmp).unlink(missing_ok=True)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Public API
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def _copy_atomic(src: Path, dst: Path):
    fd, tmp = tempfile.mkstemp(prefix="tmp.", suffix=".apk", dir=dst.parent)
    os.close(fd)
    try:
        shutil.copyfile(src, tmp)
        os.replace(tmp, dst)
    finally:
        Path(tmp).unlink(missing_ok=True)


def _repack(src: Path, tree: Path, dst: Path, compression_level: int):
    """Rebuild from the pruned tree, keeping the source's entry order and storage."""
    with zipfile.ZipFile(src) as z:
        infos = z.infolist()
    entries = []
    for info in infos:
        f = tree / info.filename
        if not info.is_dir() and f.is_file():
            entries.append((info, f.read_bytes()))
    ZipAligner.rebuild(entries, dst, alignment=4, compression_level=compression_level)


def optimize(inp: Path, out: Path, settings: OptimizeSettings, scratch_dir: Path,
             bin_dir: Optional[Path] = None) -> bool:
    inp, out = Path(inp), Path(out)
    out.parent.mkdir(parents=True, exist_ok=True)
    if not settings.enabled:
        _copy_atomic(inp, out)
        return True

    scratch_dir.mkdir(parents=True, exist_ok=True)
    tree = Path(tempfile.mkdtemp(prefix=f"opt-{inp.stem}-tmp.", dir=scratch_dir))
    fd, tmp = tempfile.mkstemp(prefix="tmp.", suffix=".apk", dir=out.parent)
    os.close(fd)
    try:
        with zipfile.ZipFile(inp) as z:
            z.extractall(tree)

        res = tree / "res"
        removed: List[str] = []
        if res.is_dir() and settings.languages:
            removed += prune_languages(res, settings.languages)
        if res.is_dir() and settings.densities:
            removed += prune_densities(res, settings.densities)
        if settings.strip_metadata:
            removed += strip_metadata(tree)
        logger.info("%s: pruned %d resource dirs/files", inp.name, len(removed))

        _repack(inp, tree, Path(tmp), settings.compression_level)
        if settings.zipalign and not zipalign(Path(tmp), bin_dir, settings.compression_level):
            logger.warning("%s: alignment failed, keeping the repacked APK", inp.name)
        os.replace(tmp, out)
        logger.info("%s: %d -> %d bytes", inp.name, inp.stat().st_size, out.stat().st_size)
        return True
    except (zipfile.BadZipFile, OSError, ValueError) as exc:
        logger.error("Optimization failed for %s: %s", inp.name, exc)
        _copy_atomic(inp, out)
        return False
    finally:
        Path(tmp).unlink(missing_ok=True)
        shutil.rmtree(tree, ignore_errors=True)
