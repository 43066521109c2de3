#!/usr/bin/env python3
"""
Helpers for CI matrix builds.

  separate-config <config> <key> <out>   one-app config: globals + PatchSources + [key]
  combine-logs [dir]                     merge build-log-*/build.md from matrix jobs
"""

import re
import sys
import argparse
import logging
from pathlib import Path
from typing import List, Optional

from app_config import PATCH_SOURCES_TABLE

logger = logging.getLogger("rv-builder-extras")

_HEADER_RE = re.compile(r"^\s*\[\s*([^\]]+?)\s*\]")


def _sections(lines: List[str]):
    """Yield (header name or None for the global part, lines) in file order."""
    name, body = None, []
    for line in lines:
        m = _HEADER_RE.match(line)
        if m:
            yield name, body
            name, body = m.group(1), [line]
        else:
            body.append(line)
    yield name, body


def separate_config(config: Path, key: str, out: Path) -> bool:
    """
    Write a config holding only the global settings, every PatchSources
    table and the `[key]` table (matched case-insensitively). Text is copied
    as-is so comments and formatting survive.
    """
    globals_, patch_sources, section = [], [], []
    for name, body in _sections(config.read_text(encoding="utf-8").splitlines()):
        if name is None:
            globals_ = [l for l in body if l.strip() and not l.lstrip().startswith("#")]
        elif name.startswith(PATCH_SOURCES_TABLE + "."):
            patch_sources += body
        elif name.strip('"').lower() == key.lower():
            section = body

    if not section:
        logger.error("Key '%s' not found in the config file.", key)
        return False

    parts = ["# ---- Global Settings ----", *globals_, ""]
    if patch_sources:
        parts += ["# ---- Patch Sources ----", *patch_sources, ""]
    parts += ["# ---- App Configuration ----", *section]
    out.write_text("\n".join(parts).rstrip("\n") + "\n", encoding="utf-8")
    logger.info("Section for '%s' written to %s with global config and patch sources", key, out)
    return True


def combine_logs(logs_dir: Path) -> str:
    """Success lines from every job, the MicroG note once, then skipped entries, deduplicated."""
    logs = sorted(logs_dir.glob("build-log-*/build.md"))
    built, skipped, note = [], [], None
    for log in logs:
        in_skipped = False
        for line in log.read_text(encoding="utf-8").splitlines():
            if line.startswith("🟢"):
                built.append(line)
            elif "MicroG" in line and note is None:
                note = line
            elif line.strip() == "Skipped:":
                in_skipped = True
            elif in_skipped and line.strip():
                skipped.append(line)

    out = list(dict.fromkeys(built)) + [""]
    if note:
        out += [note, ""]
    if skipped:
        out += ["Skipped:", *dict.fromkeys(skipped)]
    return "\n".join(out).rstrip("\n") + "\n"


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(format='%(asctime)s - %(name)s - %(levelname)s - %(message)s', level=logging.INFO)
    p = argparse.ArgumentParser(prog="rv-builder-extras", description="CI helpers for rv-builder")
    sub = p.add_subparsers(dest="cmd")

    sc = sub.add_parser("separate-config", help="Extract one app table with globals and PatchSources")
    sc.add_argument("config", type=Path)
    sc.add_argument("key")
    sc.add_argument("output", type=Path)

    cl = sub.add_parser("combine-logs", help="Merge build.md files from matrix jobs")
    cl.add_argument("dir", nargs="?", type=Path, default=Path("build-logs"))

    args = p.parse_args(argv)
    if not args.cmd:
        p.print_help()
        return 1

    if args.cmd == "separate-config":
        if not args.config.is_file():
            logger.error("Config not found: %s", args.config)
            return 1
        return 0 if separate_config(args.config, args.key, args.output) else 1

    sys.stdout.write(combine_logs(args.dir))
    return 0


if __name__ == "__main__":
    sys.exit(main())
