"""Allow ``python -m kinuxota_executor``."""

import sys

from kinuxota_executor.cli import main

sys.exit(main())
