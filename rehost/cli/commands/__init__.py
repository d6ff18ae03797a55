"""CLI commands."""

from rehost.cli.commands.run import run_command
from rehost.cli.commands.state import pause_command, requeue_command, resume_command
from rehost.cli.commands.status import errors_command, status_command

__all__ = [
    "errors_command",
    "pause_command",
    "requeue_command",
    "resume_command",
    "run_command",
    "status_command",
]
