#!/usr/bin/env python3
"""
Refund watchdog, one pass, from the command line.

Needs the package installed (`pip install -e .`) so that fatebox_platform
is importable. The install also provides the same command as
`fatebox-mark-refunds`.

Usage:
    fatebox-mark-refunds --dry-run
    python scripts/mark_refund_eligible.py --dry-run
    python scripts/mark_refund_eligible.py --project demo
"""

import sys

from fatebox_platform.refund_cli import main

if __name__ == "__main__":
    sys.exit(main())
