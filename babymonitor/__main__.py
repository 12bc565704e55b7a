import sys

from babymonitor.cli import main

sys.exit(main())
