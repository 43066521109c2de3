"""
Pure-Python APK repacker with zipalign-compatible layout.

Android R+ refuses APKs whose resources.arsc is compressed or not on a 4-byte
boundary. Every STORED entry is padded through the extra field of its Local
File Header so the data lands aligned:

    [LFH 30B][filename][extra <- padding][DATA  % alignment == 0]

Native libraries that are already stored get page alignment, the same as
`zipalign -p`.
"""

import os
import re
import struct
import zlib
import logging
import zipfile
import tempfile
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

logger = logging.getLogger(__name__)

Entry = Tuple[zipfile.ZipInfo, bytes]

PAGE_ALIGNMENT = 4096


class ZipAligner:
    _LFH = b'PK\x03\x04'
    _CFH = b'PK\x01\x02'
    _EOCD = b'PK\x05\x06'

    #  LFH 30 bytes: sig ver flag comp time date crc csz usz fnl exl
    _FMT_LFH = '<4sHHHHHIIIHH'
    #  CFH 46 bytes: sig vmade vneed flag comp time date crc csz usz fnl exl cml dsk iat eat off
    _FMT_CFH = '<4sHHHHHHIIIHHHHHII'
    #  EOCD 22 bytes: sig dsk dsk_cd ent tot cdsz cdoff cml
    _FMT_EOCD = '<4sHHHHIIH'

    _FORCE_STORE = frozenset({'resources.arsc'})
    _FORCE_STORE_RE = re.compile(r'^classes\d*\.dex$')
    _NATIVE_LIB_RE = re.compile(r'^lib/[^/]+/[^/]+\.so$')

    @classmethod
    def must_store(cls, name: str) -> bool:
        return name in cls._FORCE_STORE or bool(cls._FORCE_STORE_RE.match(name))

    @staticmethod
    def _dos_datetime(dt) -> Tuple[int, int]:
        y, mo, d, h, mi, s = (int(x) for x in dt)
        if y < 1980:
            return (0, 0x21)  # 1980-01-01
        return (h * 2048 + mi * 32 + s // 2, (y - 1980) * 512 + mo * 32 + d)

    @classmethod
    def _data_alignment(cls, name: str, alignment: int) -> int:
        return PAGE_ALIGNMENT if cls._NATIVE_LIB_RE.match(name) else alignment

    @classmethod
    def rebuild(cls, entries: Iterable[Entry], dst: Path,
                alignment: int = 4, compression_level: int = 9) -> Dict[str, List[str]]:
        """
        Write `entries` (ZipInfo, uncompressed bytes) into a fresh archive at `dst`.

        resources.arsc, classes*.dex and anything that was STORED in the
        source stay STORED and aligned; the rest is deflated at
        `compression_level`. Level 0 stores everything.
        """
        stats: Dict[str, List[str]] = {'aligned': [], 'stored': [], 'deflated': []}
        central: List[bytes] = []
        seen = set()

        with open(dst, 'wb') as fh:
            for info, raw in entries:
                if info.filename in seen or info.is_dir():
                    continue
                seen.add(info.filename)
                name_b = info.filename.encode('utf-8')

                store = (cls.must_store(info.filename)
                         or info.compress_type == zipfile.ZIP_STORED
                         or compression_level == 0)
                if store:
                    method, data = zipfile.ZIP_STORED, raw
                else:
                    c = zlib.compressobj(compression_level, zlib.DEFLATED, -15)
                    method, data = zipfile.ZIP_DEFLATED, c.compress(raw) + c.flush()
                    stats['deflated'].append(info.filename)

                crc = zlib.crc32(raw) & 0xFFFFFFFF
                offset = fh.tell()
                extra = b''
                if method == zipfile.ZIP_STORED:
                    align = cls._data_alignment(info.filename, alignment)
                    rem = (offset + 30 + len(name_b)) % align
                    if rem:
                        extra = b'\x00' * (align - rem)
                        stats['aligned'].append(info.filename)
                    stats['stored'].append(info.filename)

                dt, dd = cls._dos_datetime(info.date_time)
                # no data descriptor; keep the UTF-8 name flag
                flags = info.flag_bits & 0x0800
                fh.write(struct.pack(cls._FMT_LFH, cls._LFH, 20, flags, method, dt, dd,
                                     crc, len(data), len(raw), len(name_b), len(extra)))
                fh.write(name_b)
                fh.write(extra)
                fh.write(data)

                central.append(struct.pack(
                    cls._FMT_CFH, cls._CFH,
                    (3 << 8) | 20, 20,
                    flags, method, dt, dd,
                    crc, len(data), len(raw),
                    len(name_b), 0, 0,
                    0, 0,
                    info.external_attr,
                    offset) + name_b)

            cd_start = fh.tell()
            for rec in central:
                fh.write(rec)
            cd_size = fh.tell() - cd_start
            n = len(central)
            fh.write(struct.pack(cls._FMT_EOCD, cls._EOCD, 0, 0, n, n, cd_size, cd_start, 0))
        return stats

    @classmethod
    def fix_inplace(cls, apk: Path, alignment: int = 4, compression_level: int = 9) -> Dict[str, List[str]]:
        """Rebuild `apk` aligned, swapping the result in only once it is complete."""
        with zipfile.ZipFile(apk, 'r') as z:
            entries = [(info, z.read(info.filename)) for info in z.infolist()]
        fd, tmp = tempfile.mkstemp(prefix='tmp.', suffix='.apk', dir=apk.parent)
        os.close(fd)
        try:
            stats = cls.rebuild(entries, Path(tmp), alignment, compression_level)
            os.replace(tmp, apk)
        finally:
            Path(tmp).unlink(missing_ok=True)
        return stats

    @classmethod
    def verify(cls, apk: Path, alignment: int = 4) -> bool:
        """
        True when resources.arsc and every dex are STORED and every STORED
        entry's data is aligned. Offsets are read from the raw local headers.
        """
        issues = []
        with open(apk, 'rb') as fh, zipfile.ZipFile(apk, 'r') as z:
            for info in z.infolist():
                if info.compress_type != zipfile.ZIP_STORED:
                    if cls.must_store(info.filename):
                        issues.append(f"{info.filename}: compressed, must be STORED")
                    continue
                if not info.file_size:
                    continue
                fh.seek(info.header_offset + 26)
                name_len, extra_len = struct.unpack('<HH', fh.read(4))
                data_off = info.header_offset + 30 + name_len + extra_len
                if data_off % alignment:
                    issues.append(f"{info.filename}: data@{data_off} not {alignment}-byte aligned")

        for issue in issues:
            logger.error("  ✗ %s", issue)
        if not issues:
            logger.debug("%s: all STORED entries %dB-aligned", apk.name, alignment)
        return not issues
