# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/jira_time/utils/headless_detection.py

import os
import sys


def is_headless_environment() -> bool:
    """
    Detects if running somewhere a browser cannot be opened for the user.

    Returns:
        True if in headless environment, False otherwise
    """
    if os.getenv("JIRA_TIME_NO_BROWSER"):
        return True

    # CI/CD
    if os.getenv("CI") or os.getenv("CONTINUOUS_INTEGRATION"):
        return True

    # Remote shell without X forwarding
    if os.getenv("SSH_CONNECTION") and not os.getenv("DISPLAY"):
        return True

    # Linux/BSD without a display server; macOS and Windows always have one
    if sys.platform.startswith(("linux", "freebsd", "openbsd")):
        if not os.getenv("DISPLAY") and not os.getenv("WAYLAND_DISPLAY"):
            return True

    return False
