"""Allow ``python -m oauthloop``."""

import sys

from .cli import main


sys.exit(main())
