import sys

from rpcbench.cli import main

sys.exit(main())
