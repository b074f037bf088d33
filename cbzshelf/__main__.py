import sys

from cbzshelf.cli import main

sys.exit(main())
