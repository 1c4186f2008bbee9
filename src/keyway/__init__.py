"""
Keyway — GitHub-permission-gated secrets, synced to your working copy.

The vault lives on the server. This package is the local agent:
it pushes and pulls env files, diffs environments, keeps deployment
providers in sync, and injects secrets into subprocesses without
ever writing them to disk.
"""

import os

__version__ = "0.4.0"
__author__ = "Keyway"

KEYWAY_HOME = os.environ.get("KEYWAY_HOME", "~/.keyway")
