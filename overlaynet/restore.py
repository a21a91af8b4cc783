"""Applying rule sets through iptables-restore."""

import enum
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# table name -> list of rule specs, each a list of arguments
RestoreRules = dict[str, list[list[str]]]

_VERSION_PATTERN = re.compile(r"v([0-9]+)\.([0-9]+)\.([0-9]+)")


class Protocol(enum.Enum):
    """IP protocol family handled by iptables or ip6tables."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"


def iptables_command(protocol: Protocol) -> str:
    """Name of the iptables command for ``protocol``.

    ``protocol`` may also be given by its value (``"ipv4"`` or ``"ipv6"``).
    """
    family = Protocol(protocol)
    prefix = "ip6" if family is Protocol.IPV6 else "ip"
    return f"{prefix}tables"


def restore_command(protocol: Protocol) -> str:
    """Name of the restore command for ``protocol``."""
    return f"{iptables_command(protocol)}-restore"


def _format_line(spec: list[str]) -> str:
    if not spec:
        return ""
    # Comments are quoted because the payload goes through stdin.
    tokens = (f'"{token}"' if previous == "--comment" else token for previous, token in zip([None, *spec], spec))
    return " ".join(tokens) + "\n"


def build_restore_payload(table_rules: RestoreRules) -> str:
    """Build the ``*table ... COMMIT`` payload for iptables-restore."""
    blocks = []
    for table, rules in table_rules.items():
        body = "".join(_format_line(spec) for spec in rules)
        blocks.append(f"*{table}\n{body}COMMIT\n")
    return "".join(blocks)


def has_wait_support(major: int, minor: int, patch: int) -> bool:
    """Whether the given iptables-restore version (1.6.2 and later) accepts ``--wait``."""
    return (major, minor, patch) >= (1, 6, 2)


def extract_restore_version(text: str) -> tuple[int, int, int]:
    """Return the first three version components found in ``text``, e.g. ``v1.3.66``."""
    match = _VERSION_PATTERN.search(text)
    if match is None:
        raise ValueError(f"no iptables-restore version found in string: {text}")
    major, minor, patch = (int(part) for part in match.groups())
    return major, minor, patch


def _version_string(path: str) -> str:
    try:
        completed = subprocess.run(
            [path, "--version"], stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, check=True
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise RuntimeError(f"unable to find iptables-restore version: {exc}") from exc
    return completed.stdout


@dataclass
class IPTablesRestore:
    """Runs iptables-restore (or ip6tables-restore) at ``path``."""

    path: str
    protocol: Protocol
    has_wait: bool

    def apply_without_flush(self, rules: RestoreRules) -> None:
        """Apply ``rules`` without flushing the chains they touch."""
        payload = build_restore_payload(rules)
        logger.debug("trying to run with payload %s", payload)
        self._run(["--noflush"], payload)

    def _run(self, args: list[str], stdin: str) -> tuple[str, str]:
        if self.has_wait:
            args = [*args, "--wait"]
        try:
            completed = subprocess.run(
                [self.path, *args],
                input=stdin.encode(),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                check=True,
            )
        except subprocess.CalledProcessError as exc:
            stdout = (exc.stdout or b"").decode(errors="replace")
            stderr = (exc.stderr or b"").decode(errors="replace")
            raise RuntimeError(f"unable to run iptables-restore ({stdout}, {stderr}): {exc}") from exc
        except OSError as exc:
            raise RuntimeError(f"unable to run iptables-restore (, ): {exc}") from exc
        return completed.stdout.decode(errors="replace"), completed.stderr.decode(errors="replace")


def _look_path(command: str) -> str:
    path = shutil.which(command)
    if path is None:
        raise FileNotFoundError(f'exec: "{command}": executable file not found in $PATH')
    return path


def new_iptables_restore(protocol: Protocol) -> IPTablesRestore:
    """Locate the restore binary for ``protocol`` and detect ``--wait`` support."""
    path = _look_path(restore_command(protocol))
    iptables_path = _look_path(iptables_command(protocol))
    version = extract_restore_version(_version_string(iptables_path))
    return IPTablesRestore(path=path, protocol=protocol, has_wait=has_wait_support(*version))