import sys

from gangway.main import main

sys.exit(main())
