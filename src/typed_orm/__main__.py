"""Allow ``python -m typed_orm``."""

import sys

from typed_orm.cli import main

sys.exit(main())
