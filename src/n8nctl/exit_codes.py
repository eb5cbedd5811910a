"""Process exit statuses returned by n8nctl commands."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit statuses shared by every command.

    ``backup run`` is started by cron, so these are the values that end up in
    the backup log when a nightly run fails.
    """

    OK = 0
    # Bad operator input or an invalid config file.
    VALIDATION = 2
    # Host not ready: missing tools, unwritable directories, no .env yet.
    ENVIRONMENT = 3
    # An external tool failed or another run holds the lock.
    PROVIDER = 4
