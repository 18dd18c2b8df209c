"""Allow ``python -m keybound``."""

import sys

from keybound.cli import main

sys.exit(main())
