"""Masquerade and forward rules for the overlay, kept in place with iptables."""

import logging
import shutil
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol as _Interface

from overlaynet.restore import (
    Protocol,
    RestoreRules,
    extract_restore_version,
    iptables_command,
    new_iptables_restore,
)

logger = logging.getLogger(__name__)

KUBE_PROXY_MARK = "0x4000/0x4000"
FORWARD_CHAIN = "FLANNEL-FWD"
POSTROUTING_CHAIN = "FLANNEL-POSTRTG"

_MASQ_COMMENT = ("-m", "comment", "--comment", "flanneld masq")
_FORWARD_COMMENT = ("-m", "comment", "--comment", "flanneld forward")


class IPTablesError(RuntimeError):
    """An iptables operation failed."""


@dataclass(frozen=True)
class IPTablesRule:
    """One rule: the table, the action (``-A``), the chain and the rule arguments."""

    table: str
    action: str
    chain: str
    rulespec: tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "rulespec", tuple(self.rulespec))


class _RuleTable(_Interface):
    def chain_exists(self, table: str, chain: str) -> bool: ...

    def clear_chain(self, table: str, chain: str) -> None: ...

    def exists(self, table: str, chain: str, *args: str) -> bool: ...


class _Restorer(_Interface):
    def apply_without_flush(self, rules: RestoreRules) -> None: ...


class IPTables:
    """Runs the iptables (or ip6tables) command for one protocol family."""

    def __init__(self, protocol: Protocol = Protocol.IPV4, path: Optional[str] = None) -> None:
        self.protocol = protocol
        if path is None:
            command = iptables_command(protocol)
            path = shutil.which(command)
            if path is None:
                raise IPTablesError(f'exec: "{command}": executable file not found in $PATH')
        self.path = path
        self._has_wait = False
        completed = self._execute(["--version"], wait=False)
        if completed.returncode != 0:
            raise IPTablesError(f"unable to find iptables version: {self._stderr(completed)}")
        try:
            self.version = extract_restore_version(completed.stdout.decode(errors="replace"))
        except ValueError as exc:
            raise IPTablesError(str(exc)) from exc
        self._has_wait = self.version >= (1, 4, 20)

    def _execute(self, args: list[str], wait: bool = True) -> subprocess.CompletedProcess:
        command = [self.path]
        if wait and self._has_wait:
            command.append("--wait")
        command.extend(args)
        try:
            return subprocess.run(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=False)
        except OSError as exc:
            raise IPTablesError(f"running {command}: {exc}") from exc

    @staticmethod
    def _stderr(completed: subprocess.CompletedProcess) -> str:
        return (completed.stderr or b"").decode(errors="replace").strip()

    def _status(self, args: list[str]) -> int:
        """Run and return 0 or 1; any other exit status is an error."""
        completed = self._execute(args)
        if completed.returncode not in (0, 1):
            raise IPTablesError(
                f"running {[self.path, *args]}: exit status {completed.returncode}: {self._stderr(completed)}"
            )
        return completed.returncode

    def _run(self, args: list[str]) -> None:
        completed = self._execute(args)
        if completed.returncode != 0:
            raise IPTablesError(
                f"running {[self.path, *args]}: exit status {completed.returncode}: {self._stderr(completed)}"
            )

    def chain_exists(self, table: str, chain: str) -> bool:
        """Whether ``chain`` exists in ``table``."""
        return self._status(["-t", table, "-n", "-L", chain]) == 0

    def clear_chain(self, table: str, chain: str) -> None:
        """Create ``chain`` if it is missing, otherwise flush it."""
        if self._status(["-t", table, "-N", chain]) == 1:
            self._run(["-t", table, "-F", chain])

    def exists(self, table: str, chain: str, *args: str) -> bool:
        """Whether the rule ``args`` is present in ``chain``."""
        return self._status(["-t", table, "-C", chain, *args]) == 0

    def append_unique(self, table: str, chain: str, *args: str) -> None:
        """Append the rule unless it is already present."""
        if not self.exists(table, chain, *args):
            self._run(["-t", table, "-A", chain, *args])

    def delete(self, table: str, chain: str, *args: str) -> None:
        """Delete the rule from ``chain``."""
        self._run(["-t", table, "-D", chain, *args])

    def has_random_fully(self) -> bool:
        """Whether MASQUERADE accepts ``--random-fully`` (iptables 1.6.2 and later)."""
        return self.version >= (1, 6, 2)


def _detect_random_fully(protocol: Protocol) -> bool:
    try:
        return IPTables(protocol).has_random_fully()
    except (IPTablesError, OSError):
        return False


def _build_masq_rules(
    cluster_cidrs: Iterable[object], pod_subnet: object, random_fully: bool, multicast: str
) -> list[IPTablesRule]:
    pod = str(pod_subnet)
    cidrs = [str(cidr) for cidr in cluster_cidrs]
    masquerade = ("-j", "MASQUERADE", "--random-fully") if random_fully else ("-j", "MASQUERADE")

    def rule(chain: str, *spec: str) -> IPTablesRule:
        return IPTablesRule("nat", "-A", chain, spec)

    rules = [
        # Run the flannel rules before other rules on the node.
        rule("POSTROUTING", *_MASQ_COMMENT, "-j", POSTROUTING_CHAIN),
        # Leave traffic marked by kube-proxy alone to avoid double NAT.
        rule(POSTROUTING_CHAIN, "-m", "mark", "--mark", KUBE_PROXY_MARK, *_MASQ_COMMENT, "-j", "RETURN"),
    ]
    for cidr in cidrs:
        # No NAT for traffic inside the overlay network.
        rules.append(rule(POSTROUTING_CHAIN, "-s", pod, "-d", cidr, *_MASQ_COMMENT, "-j", "RETURN"))
        rules.append(rule(POSTROUTING_CHAIN, "-s", cidr, "-d", pod, *_MASQ_COMMENT, "-j", "RETURN"))
    for cidr in cidrs:
        # No masquerade for external traffic arriving from the node that owns the pod address.
        rules.append(rule(POSTROUTING_CHAIN, "!", "-s", cidr, "-d", pod, *_MASQ_COMMENT, "-j", "RETURN"))
    for cidr in cidrs:
        # NAT anything that is not multicast.
        rules.append(rule(POSTROUTING_CHAIN, "-s", cidr, "!", "-d", multicast, *_MASQ_COMMENT, *masquerade))
    for cidr in cidrs:
        # Masquerade anything headed towards the overlay from the host.
        rules.append(rule(POSTROUTING_CHAIN, "!", "-s", cidr, "-d", cidr, *_MASQ_COMMENT, *masquerade))
    return rules


def masq_rules(
    cluster_cidrs: Iterable[object], pod_subnet: object, random_fully: Optional[bool] = None
) -> list[IPTablesRule]:
    """IPv4 masquerade rules for the cluster networks and the local pod subnet.

    When ``random_fully`` is None, support for ``--random-fully`` is detected.
    """
    if random_fully is None:
        random_fully = _detect_random_fully(Protocol.IPV4)
    return _build_masq_rules(cluster_cidrs, pod_subnet, random_fully, "224.0.0.0/4")


def masq_ip6_rules(
    cluster_cidrs: Iterable[object], pod_subnet: object, random_fully: Optional[bool] = None
) -> list[IPTablesRule]:
    """IPv6 masquerade rules for the cluster networks and the local pod subnet."""
    if random_fully is None:
        random_fully = _detect_random_fully(Protocol.IPV6)
    return _build_masq_rules(cluster_cidrs, pod_subnet, random_fully, "ff00::/8")


def forward_rules(flannel_network: str) -> list[IPTablesRule]:
    """Rules that accept forwarded traffic to or from the overlay network."""
    return [
        IPTablesRule("filter", "-A", "FORWARD", (*_FORWARD_COMMENT, "-j", FORWARD_CHAIN)),
        IPTablesRule("filter", "-A", FORWARD_CHAIN, ("-s", flannel_network, *_FORWARD_COMMENT, "-j", "ACCEPT")),
        IPTablesRule("filter", "-A", FORWARD_CHAIN, ("-d", flannel_network, *_FORWARD_COMMENT, "-j", "ACCEPT")),
    ]


def _create_chain(protocol: Protocol, label: str, table: str, chain: str) -> None:
    try:
        ipt = IPTables(protocol)
    except IPTablesError as exc:
        logger.error("Failed to setup %s. iptables binary was not found: %s", label, exc)
        return
    try:
        ipt.clear_chain(table, chain)
    except IPTablesError as exc:
        logger.error("Failed to setup %s. Error on creating the chain: %s", label, exc)


def create_ip4_chain(table: str, chain: str) -> None:
    """Create (or flush) an IPv4 chain, logging any failure."""
    _create_chain(Protocol.IPV4, "IPTables", table, chain)


def create_ip6_chain(table: str, chain: str) -> None:
    """Create (or flush) an IPv6 chain, logging any failure."""
    _create_chain(Protocol.IPV6, "IP6Tables", table, chain)


def _flannel_chain(rule: IPTablesRule) -> Optional[str]:
    last = rule.rulespec[-1] if rule.rulespec else None
    for chain in (FORWARD_CHAIN, POSTROUTING_CHAIN):
        if rule.chain == chain or last == chain:
            return chain
    return None


def _check(call: Callable[[], bool]) -> bool:
    try:
        return call()
    except (RuntimeError, OSError) as exc:
        raise IPTablesError(f"failed to check rule existence: {exc}") from exc


def rules_exist(ipt: _RuleTable, rules: Iterable[IPTablesRule]) -> bool:
    """Whether every rule (and the flannel chain it needs) is present."""
    for rule in rules:
        chain = _flannel_chain(rule)
        if chain is not None and not _check(lambda: ipt.chain_exists(rule.table, chain)):
            return False
        if not _check(lambda: ipt.exists(rule.table, rule.chain, *rule.rulespec)):
            return False
    return True


def clean_and_build(ipt: _RuleTable, rules: Iterable[IPTablesRule]) -> RestoreRules:
    """Build a restore transaction that re-creates ``rules`` in order.

    Rules already present are deleted first; missing flannel chains are created.
    """
    tables: RestoreRules = {}
    for rule in rules:
        chain = _flannel_chain(rule)
        if chain is not None and not _check(lambda: ipt.chain_exists(rule.table, chain)):
            try:
                ipt.clear_chain(rule.table, chain)
            except (RuntimeError, OSError) as exc:
                raise IPTablesError(f"failed to create rule chain: {exc}") from exc
        specs = tables.setdefault(rule.table, [])
        if _check(lambda: ipt.exists(rule.table, rule.chain, *rule.rulespec)):
            specs.append(["-D", rule.chain, *rule.rulespec])
        specs.append([rule.action, rule.chain, *rule.rulespec])
    return tables


def bootstrap(ipt: _RuleTable, restorer: _Restorer, rules: Iterable[IPTablesRule]) -> None:
    """Install ``rules`` through iptables-restore, replacing any that already exist."""
    try:
        tables = clean_and_build(ipt, rules)
    except IPTablesError as exc:
        raise IPTablesError(f"failed to setup iptables-restore payload: {exc}") from exc
    logger.debug("trying to run iptables-restore < %r", tables)
    try:
        restorer.apply_without_flush(tables)
    except (RuntimeError, OSError) as exc:
        raise IPTablesError(f"failed to apply partial iptables-restore {exc}") from exc
    logger.info("bootstrap done")


def ensure(ipt: _RuleTable, restorer: _Restorer, rules: list[IPTablesRule]) -> None:
    """Re-install all ``rules`` if any of them is missing, keeping their order."""
    try:
        present = rules_exist(ipt, rules)
    except IPTablesError as exc:
        raise IPTablesError(f"error checking rule existence: {exc}") from exc
    if present:
        return
    logger.info("Some iptables rules are missing; deleting and recreating rules")
    try:
        bootstrap(ipt, restorer, rules)
    except IPTablesError as exc:
        raise IPTablesError(f"error setting up rules: {exc}") from exc


def teardown(ipt: _RuleTable, restorer: _Restorer, rules: Iterable[IPTablesRule]) -> None:
    """Delete whichever of ``rules`` are present, in one restore transaction."""
    tables: RestoreRules = {}
    for rule in rules:
        chain = _flannel_chain(rule)
        if chain is not None and not _check(lambda: ipt.chain_exists(rule.table, chain)):
            continue
        if _check(lambda: ipt.exists(rule.table, rule.chain, *rule.rulespec)):
            tables.setdefault(rule.table, []).append(["-D", rule.chain, *rule.rulespec])
    try:
        restorer.apply_without_flush(tables)
    except (RuntimeError, OSError) as exc:
        raise IPTablesError(f"unable to teardown iptables: {exc}") from exc


def _setup_and_ensure(
    protocol: Protocol,
    get_rules: Callable[[], list[IPTablesRule]],
    resync_period: float,
) -> None:
    rules = get_rules()
    logger.info("generated %d rules", len(rules))
    try:
        ipt = IPTables(protocol)
    except IPTablesError as exc:
        logger.error("Failed to setup IPTables. iptables binary was not found: %s", exc)
        return
    try:
        restorer = new_iptables_restore(protocol)
    except (RuntimeError, OSError, ValueError) as exc:
        logger.error("Failed to setup iptables-restore: %s", exc)
        return

    try:
        bootstrap(ipt, restorer, rules)
    except IPTablesError as exc:
        logger.error("Failed to bootstrap IPTables: %s", exc)

    try:
        while True:
            try:
                ensure(ipt, restorer, get_rules())
            except IPTablesError as exc:
                logger.error("Failed to ensure iptables rules: %s", exc)
            time.sleep(resync_period)
    finally:
        try:
            teardown(ipt, restorer, rules)
        except IPTablesError as exc:
            logger.error("Failed to tear down IPTables: %s", exc)


def setup_and_ensure_ip4_tables(
    get_rules: Callable[[], list[IPTablesRule]],
    resync_period: float,
) -> None:
    """Install IPv4 rules and re-check them every ``resync_period`` seconds.

    Runs until interrupted; the rules are torn down when the loop ends.
    """
    _setup_and_ensure(Protocol.IPV4, get_rules, resync_period)


def setup_and_ensure_ip6_tables(
    get_rules: Callable[[], list[IPTablesRule]],
    resync_period: float,
) -> None:
    """Install IPv6 rules and re-check them every ``resync_period`` seconds until interrupted."""
    _setup_and_ensure(Protocol.IPV6, get_rules, resync_period)


def _delete_tables(protocol: Protocol, rules: list[IPTablesRule]) -> None:
    try:
        ipt = IPTables(protocol)
    except IPTablesError as exc:
        logger.error("Failed to setup IPTables. iptables binary was not found: %s", exc)
        raise
    try:
        restorer = new_iptables_restore(protocol)
    except (RuntimeError, OSError, ValueError) as exc:
        logger.error("Failed to setup iptables-restore: %s", exc)
        raise
    try:
        teardown(ipt, restorer, rules)
    except IPTablesError as exc:
        logger.error("Failed to teardown iptables: %s", exc)
        raise


def delete_ip4_tables(rules: list[IPTablesRule]) -> None:
    """Delete the given IPv4 rules."""
    _delete_tables(Protocol.IPV4, rules)


def delete_ip6_tables(rules: list[IPTablesRule]) -> None:
    """Delete the given IPv6 rules."""
    _delete_tables(Protocol.IPV6, rules)