#!/usr/bin/env python3

import sys
from pathlib import Path

from esk_ci.pipeline import main

# Root directory of this script, used as the default workspace
ROOT_DIR = Path(__file__).resolve().parent

if __name__ == "__main__":
    main(["--workspace", str(ROOT_DIR)] + sys.argv[1:])
