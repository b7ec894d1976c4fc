import sys

from branchflow.cli import main

sys.exit(main())
