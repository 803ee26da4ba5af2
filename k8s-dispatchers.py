#!/usr/bin/env python3

"""Run k8s-dispatchers from a source checkout without installing it.

    ./k8s-dispatchers.py --set voip:asterisk=1 -o /data/kamailio/dispatcher.list
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from dispatchers.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
