#!/usr/bin/env python3
"""
rv-builder - build patched APKs for every enabled app in a TOML config.

Usage:
  rv-builder [config.toml]     build (default config: config.toml)
  rv-builder clean             remove temp/, build/, logs/ and the build log

Exit codes: 0 at least one APK built, 1 config error or nothing built,
130 interrupted.
"""

import os
import sys
import shutil
import logging
from pathlib import Path
from typing import List, Optional

from build_env import BuildEnv, load_env_file
from build_errors import ConfigError
from build_orchestrator import run

logger = logging.getLogger("rv-builder")

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
REQUIRED_TOOLS = ("java",)
OPTIONAL_TOOLS = ("zipalign",)


def check_tools() -> bool:
    ok = True
    for tool in REQUIRED_TOOLS:
        if shutil.which(tool):
            logger.info("✓ %s installed", tool)
        else:
            logger.error("✗ %s missing. Install: apt install openjdk-17-jre", tool)
            ok = False
    for tool in OPTIONAL_TOOLS:
        if not shutil.which(tool):
            logger.warning("%s not found, the built-in aligner will be used", tool)
    return ok


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    workdir = Path.cwd()
    load_env_file(workdir)
    logging.basicConfig(format=LOG_FORMAT, level=logging.INFO)
    env = BuildEnv.from_environ(workdir=workdir)

    if argv and argv[0] == "clean":
        env.clean()
        return 0

    config = Path(argv[0] if argv else "config.toml")
    try:
        if not check_tools():
            return 1
        return run(config, env)
    except ConfigError as e:
        logger.error("%s", e)
        logger.error("Usage: rv-builder <config.toml>")
        return 1
    except KeyboardInterrupt:
        env.sweep_temporaries()
        logger.warning("Interrupted")
        os._exit(130)


if __name__ == "__main__":
    sys.exit(main())
