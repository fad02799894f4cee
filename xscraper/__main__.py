import sys

from xscraper.cli import main

sys.exit(main())
