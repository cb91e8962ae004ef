# SPDX-License-Identifier: MIT
"""Allow ``python -m taskforge``."""

import sys

from taskforge.cli import main

sys.exit(main())
