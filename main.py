"""
DLC File Server - launcher.

Same as ``python -m dlcserver``; kept so the server can be started from a
checkout without installing it.
"""

import sys

from dlcserver.__main__ import main

# ============================================================================
# ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    sys.exit(main())
