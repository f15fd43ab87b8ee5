import sys

from hostblock.cli import main

sys.exit(main())
