"""Run PowerShell commands and collect their output."""

import json
import subprocess
from typing import Any


class PowerShellError(Exception):
    """A PowerShell command failed; the message is what the command reported."""


def _wrap(command: str) -> str:
    # Exceptions are written to stdout and the process exits with a failure code.
    return f'$ErrorActionPreference="Stop";try {{ {command} }} catch {{ Write-Host $_; exit -1 }}'


def run_command(command: str) -> bytes:
    """Run ``command`` in PowerShell and return its standard output.

    If the command throws, the exception message is raised as PowerShellError.
    """
    args = ["powershell.exe", "-NoLogo", "-NoProfile", "-NonInteractive", "-Command", _wrap(command)]
    try:
        completed = subprocess.run(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=False)
    except OSError as exc:
        raise PowerShellError(str(exc)) from exc
    if completed.returncode != 0:
        raise PowerShellError(completed.stdout.decode(errors="replace").strip())
    return completed.stdout


def run_command_f(command: str, *args: Any) -> bytes:
    """Format ``command`` with ``args`` (printf style) and run it."""
    return run_command(command % args if args else command)


def run_command_with_json_result(command: str) -> Any:
    """Run ``command`` piped through ConvertTo-Json and return the decoded result.

    Wrap the command in ``@(...)`` to make sure the result is a list.
    """
    stdout = run_command(_wrap(f"ConvertTo-Json ({command})"))
    return json.loads(stdout)