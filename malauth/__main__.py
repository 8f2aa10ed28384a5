"""Allow ``python -m malauth``."""

import sys

from .cli import main


sys.exit(main())
