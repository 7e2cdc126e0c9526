"""Allow `python -m cpu`."""

import sys

from .cli import main

sys.exit(main())
