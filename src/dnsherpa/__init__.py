"""dnsherpa - Automatic DNS management for Docker and Proxmox.

Build metadata is injected through the environment at image build time
(see the Dockerfile build arguments).
"""

from __future__ import annotations

import os
import platform
from typing import Dict

__version__ = os.getenv("DNSHERPA_VERSION", "dev")


def get_version() -> str:
    """Return the application version, formatted for display.

    Development builds with a known commit are reported as
    ``dev-<short commit>`` or ``dev-<branch>-<short commit>``.
    """
    commit = os.getenv("DNSHERPA_GIT_COMMIT", "unknown")
    branch = os.getenv("DNSHERPA_GIT_BRANCH", "unknown")
    if __version__ != "dev" or commit == "unknown":
        return __version__

    short_commit = commit[:8]
    if branch not in ("unknown", "main", "master"):
        return f"dev-{branch}-{short_commit}"
    return f"dev-{short_commit}"


def get_version_info() -> Dict[str, str]:
    return {
        "version": get_version(),
        "git_commit": os.getenv("DNSHERPA_GIT_COMMIT", "unknown"),
        "git_branch": os.getenv("DNSHERPA_GIT_BRANCH", "unknown"),
        "build_time": os.getenv("DNSHERPA_BUILD_TIME", "unknown"),
        "python_version": platform.python_version(),
        "platform": f"{platform.system().lower()}/{platform.machine()}",
    }
