"""
Stock APK signature check.

Reads the v1 (JAR) signature block from META-INF, takes the signing
certificate's SHA-256 fingerprint and compares it against `sig.txt`
(`<sha256> <package>` per line). A mismatch means the mirror served a
re-signed APK; it is reported, never fatal.
"""

import re
import logging
import zipfile
from pathlib import Path
from dataclasses import dataclass
from typing import Dict, Optional, Set

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import pkcs7

logger = logging.getLogger(__name__)

SIG_BLOCK_RE = re.compile(r"^META-INF/[^/]+\.(RSA|DSA|EC)$", re.I)
MISSING_MANIFEST = "Missing META-INF/MANIFEST.MF"


@dataclass
class SigResult:
    ok: bool
    message: str = ""
    fingerprint: Optional[str] = None


def load_known_signatures(path: Path) -> Dict[str, Set[str]]:
    """sig.txt -> {package: {sha256, ...}}. Missing file -> {}."""
    known: Dict[str, Set[str]] = {}
    if not path.is_file():
        return known
    for line in path.read_text(encoding="utf-8").splitlines():
        parts = line.split()
        if len(parts) >= 2 and not line.lstrip().startswith("#"):
            known.setdefault(parts[1], set()).add(parts[0].lower())
    return known


def signing_fingerprint(apk: Path) -> Optional[str]:
    with zipfile.ZipFile(apk) as z:
        names = z.namelist()
        if "META-INF/MANIFEST.MF" not in names:
            return None
        blocks = sorted(n for n in names if SIG_BLOCK_RE.match(n))
        if not blocks:
            return None
        certs = pkcs7.load_der_pkcs7_certificates(z.read(blocks[0]))
    if not certs:
        return None
    return certs[0].fingerprint(hashes.SHA256()).hex()


def check_signature(apk: Path, package: str, known: Dict[str, Set[str]]) -> SigResult:
    try:
        fp = signing_fingerprint(apk)
    except (zipfile.BadZipFile, ValueError) as exc:
        return SigResult(False, f"Unreadable signature in {apk.name}: {exc}")
    if fp is None:
        return SigResult(False, MISSING_MANIFEST)

    expected = known.get(package)
    if not expected:
        return SigResult(True, f"No known signature for {package}", fp)
    if fp in expected:
        return SigResult(True, "Signature OK", fp)
    return SigResult(False, f"APK signature mismatch '{apk.name}': {fp}", fp)
