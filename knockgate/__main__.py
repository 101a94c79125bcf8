import sys

from knockgate.app import main

sys.exit(main())
