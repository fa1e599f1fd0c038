import sys

from cold_archiver.cli import main

sys.exit(main())
