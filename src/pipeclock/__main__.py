"""Allow `python -m pipeclock` to run the state inspection CLI."""

import sys

from pipeclock.main import main

sys.exit(main())
