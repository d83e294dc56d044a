import sys

from uke_ingest.cli import main

sys.exit(main())
