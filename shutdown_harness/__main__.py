import sys

from shutdown_harness.cli import main

sys.exit(main())
