import sys

from taskpipe.cli import main

sys.exit(main())
