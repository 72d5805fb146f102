import sys

from ssmxfer.cli import main

sys.exit(main())
