# pyright: standard

"""rbackup: rbackup/__main__.py.

Block-device image backups of remote machines over SSH.
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
