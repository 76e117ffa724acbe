import sys

from growclone.main import main

sys.exit(main())
