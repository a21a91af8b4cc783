import copy
import subprocess
from unittest import mock

import pytest

from overlaynet.iptables import (
    IPTables,
    IPTablesError,
    IPTablesRule,
    bootstrap,
    clean_and_build,
    delete_ip4_tables,
    ensure,
    forward_rules,
    masq_ip6_rules,
    masq_rules,
    rules_exist,
    setup_and_ensure_ip4_tables,
    teardown,
)

POD_SUBNET = "192.168.0.0/16"
POD_V6_SUBNET = "fc00::/48"


class MockIPTables:
    def __init__(self, chains_exist=True):
        self.rules = []
        self.chains_exist = chains_exist
        self.cleared = []

    def _index(self, table, chain, spec):
        for i, (t, c, s) in enumerate(self.rules):
            if t == table and c == chain and s == tuple(spec):
                return i
        return -1

    def chain_exists(self, table, chain):
        return self.chains_exist

    def clear_chain(self, table, chain):
        self.cleared.append((table, chain))

    def exists(self, table, chain, *args):
        return self._index(table, chain, args) != -1

    def append_unique(self, table, chain, *args):
        if self._index(table, chain, args) == -1:
            self.rules.append((table, chain, tuple(args)))

    def delete(self, table, chain, *args):
        index = self._index(table, chain, args)
        if index != -1:
            del self.rules[index]


class MockRestore:
    def __init__(self):
        self.rules = []

    def apply_without_flush(self, rules):
        self.rules.append(copy.deepcopy(rules))


class FailingIPTables(MockIPTables):
    def exists(self, table, chain, *args):
        raise RuntimeError("boom")


def setup_iptables(ipt, rules):
    for rule in rules:
        ipt.append_unique(rule.table, rule.chain, *rule.rulespec)


BASE_RULES = [
    IPTablesRule("filter", "-A", "INPUT", ["-s", "127.0.0.1", "-d", "127.0.0.1", "-j", "RETURN"]),
    IPTablesRule("filter", "-A", "INPUT", ["-s", "127.0.0.1", "!", "-d", "224.0.0.0/4", "-j", "MASQUERADE", "--random-fully"]),
    IPTablesRule("nat", "-A", "POSTROUTING", ["-s", "127.0.0.1", "-d", "127.0.0.1", "-j", "RETURN"]),
    IPTablesRule("nat", "-A", "POSTROUTING", ["-s", "127.0.0.1", "!", "-d", "224.0.0.0/4", "-j", "MASQUERADE", "--random-fully"]),
]

V6_NET = "::/0"
MASQ = ["-m", "comment", "--comment", "flanneld masq"]


def ip6_rules():
    n, sn = V6_NET, POD_V6_SUBNET
    return [
        IPTablesRule("nat", "-A", "POSTROUTING", ["-s", n, "-d", n, *MASQ, "-j", "RETURN"]),
        IPTablesRule("nat", "-A", "POSTROUTING", ["-s", n, "!", "-d", "ff00::/8", *MASQ, "-j", "MASQUERADE", "--random-fully"]),
        IPTablesRule("nat", "-A", "POSTROUTING", ["!", "-s", n, "-d", sn, *MASQ, "-j", "RETURN"]),
        IPTablesRule("nat", "-A", "POSTROUTING", ["!", "-s", n, "-d", n, *MASQ, "-j", "MASQUERADE", "--random-fully"]),
    ]


def ip6_restore_rules(action):
    n, sn = V6_NET, POD_V6_SUBNET
    return {
        "nat": [
            [action, "POSTROUTING", "-s", n, "-d", n, *MASQ, "-j", "RETURN"],
            [action, "POSTROUTING", "-s", n, "!", "-d", "ff00::/8", *MASQ, "-j", "MASQUERADE", "--random-fully"],
            [action, "POSTROUTING", "!", "-s", n, "-d", sn, *MASQ, "-j", "RETURN"],
            [action, "POSTROUTING", "!", "-s", n, "-d", n, *MASQ, "-j", "MASQUERADE", "--random-fully"],
        ]
    }


@pytest.mark.parametrize("random_fully", [True, False])
def test_delete_rules(random_fully):
    ipt = MockIPTables()
    iptr = MockRestore()
    base = masq_rules(["10.0.1.0/16"], POD_SUBNET, random_fully)
    expected = {}
    for rule in base:
        expected.setdefault(rule.table, []).append(["-D", rule.chain, *rule.rulespec])

    bootstrap(ipt, iptr, base)
    setup_iptables(ipt, base)
    assert len(ipt.rules) == 7

    iptr.rules = []
    teardown(ipt, iptr, base)
    assert iptr.rules == [expected]


def test_delete_more_rules():
    ipt = MockIPTables()
    iptr = MockRestore()
    bootstrap(ipt, iptr, BASE_RULES)
    setup_iptables(ipt, BASE_RULES)
    assert len(ipt.rules) == 4

    iptr.rules = []
    teardown(ipt, iptr, BASE_RULES)
    assert iptr.rules == [
        {
            "filter": [
                ["-D", "INPUT", "-s", "127.0.0.1", "-d", "127.0.0.1", "-j", "RETURN"],
                ["-D", "INPUT", "-s", "127.0.0.1", "!", "-d", "224.0.0.0/4", "-j", "MASQUERADE", "--random-fully"],
            ],
            "nat": [
                ["-D", "POSTROUTING", "-s", "127.0.0.1", "-d", "127.0.0.1", "-j", "RETURN"],
                ["-D", "POSTROUTING", "-s", "127.0.0.1", "!", "-d", "224.0.0.0/4", "-j", "MASQUERADE", "--random-fully"],
            ],
        }
    ]


def test_bootstrap_rules():
    ipt = MockIPTables()
    iptr = MockRestore()
    bootstrap(ipt, iptr, BASE_RULES)
    setup_iptables(ipt, BASE_RULES)
    assert iptr.rules == [
        {
            "filter": [
                ["-A", "INPUT", "-s", "127.0.0.1", "-d", "127.0.0.1", "-j", "RETURN"],
                ["-A", "INPUT", "-s", "127.0.0.1", "!", "-d", "224.0.0.0/4", "-j", "MASQUERADE", "--random-fully"],
            ],
            "nat": [
                ["-A", "POSTROUTING", "-s", "127.0.0.1", "-d", "127.0.0.1", "-j", "RETURN"],
                ["-A", "POSTROUTING", "-s", "127.0.0.1", "!", "-d", "224.0.0.0/4", "-j", "MASQUERADE", "--random-fully"],
            ],
        }
    ]

    iptr.rules = []
    bootstrap(ipt, iptr, BASE_RULES)
    assert iptr.rules == [
        {
            "filter": [
                ["-D", "INPUT", "-s", "127.0.0.1", "-d", "127.0.0.1", "-j", "RETURN"],
                ["-A", "INPUT", "-s", "127.0.0.1", "-d", "127.0.0.1", "-j", "RETURN"],
                ["-D", "INPUT", "-s", "127.0.0.1", "!", "-d", "224.0.0.0/4", "-j", "MASQUERADE", "--random-fully"],
                ["-A", "INPUT", "-s", "127.0.0.1", "!", "-d", "224.0.0.0/4", "-j", "MASQUERADE", "--random-fully"],
            ],
            "nat": [
                ["-D", "POSTROUTING", "-s", "127.0.0.1", "-d", "127.0.0.1", "-j", "RETURN"],
                ["-A", "POSTROUTING", "-s", "127.0.0.1", "-d", "127.0.0.1", "-j", "RETURN"],
                ["-D", "POSTROUTING", "-s", "127.0.0.1", "!", "-d", "224.0.0.0/4", "-j", "MASQUERADE", "--random-fully"],
                ["-A", "POSTROUTING", "-s", "127.0.0.1", "!", "-d", "224.0.0.0/4", "-j", "MASQUERADE", "--random-fully"],
            ],
        }
    ]


def test_delete_ip6_rules():
    ipt = MockIPTables()
    iptr = MockRestore()
    base = ip6_rules()
    bootstrap(ipt, iptr, base)
    setup_iptables(ipt, base)
    assert len(ipt.rules) == 4
    iptr.rules = []
    teardown(ipt, iptr, base)
    assert iptr.rules == [ip6_restore_rules("-D")]


def test_ensure_rules():
    ipt = MockIPTables()
    iptr = MockRestore()
    setup_iptables(ipt, [IPTablesRule("nat", "-A", "POSTROUTING", ["-A", "POSTROUTING", "-j", "KUBE-POSTROUTING"])])
    base = BASE_RULES[2:]

    ensure(ipt, iptr, base)
    setup_iptables(ipt, base)
    assert iptr.rules == [
        {
            "nat": [
                ["-A", "POSTROUTING", "-s", "127.0.0.1", "-d", "127.0.0.1", "-j", "RETURN"],
                ["-A", "POSTROUTING", "-s", "127.0.0.1", "!", "-d", "224.0.0.0/4", "-j", "MASQUERADE", "--random-fully"],
            ]
        }
    ]

    iptr.rules = []
    ensure(ipt, iptr, base)
    assert iptr.rules == []


def test_ensure_ip6_rules():
    ipt = MockIPTables()
    iptr = MockRestore()
    setup_iptables(ipt, [IPTablesRule("nat", "-A", "POSTROUTING", ["-A", "POSTROUTING", "-j", "KUBE-POSTROUTING"])])
    base = ip6_rules()

    ensure(ipt, iptr, base)
    setup_iptables(ipt, base)
    assert iptr.rules == [ip6_restore_rules("-A")]

    iptr.rules = []
    ensure(ipt, iptr, base)
    assert iptr.rules == []


def test_masq_rules_content():
    rules = masq_rules(["10.0.0.0/8"], "10.1.2.0/24", True)
    assert rules[0] == IPTablesRule("nat", "-A", "POSTROUTING", (*MASQ, "-j", "FLANNEL-POSTRTG"))
    assert rules[1].rulespec == ("-m", "mark", "--mark", "0x4000/0x4000", *MASQ, "-j", "RETURN")
    assert rules[4].rulespec == ("!", "-s", "10.0.0.0/8", "-d", "10.1.2.0/24", *MASQ, "-j", "RETURN")
    assert rules[5].rulespec == ("-s", "10.0.0.0/8", "!", "-d", "224.0.0.0/4", *MASQ, "-j", "MASQUERADE", "--random-fully")
    assert rules[6].rulespec[-1] == "--random-fully"


def test_masq_rules_grouped_by_kind_for_several_cidrs():
    rules = masq_rules(["10.0.0.0/8", "172.16.0.0/12"], POD_SUBNET, False)
    assert len(rules) == 2 + 4 + 2 + 2 + 2
    assert [r.rulespec[1] for r in rules[2:6]] == [POD_SUBNET, "10.0.0.0/8", POD_SUBNET, "172.16.0.0/12"]
    assert all(r.rulespec[-1] == "MASQUERADE" for r in rules[8:])


def test_masq_ip6_rules_use_ipv6_multicast():
    rules = masq_ip6_rules(["fd00::/8"], POD_V6_SUBNET, False)
    assert rules[5].rulespec == ("-s", "fd00::/8", "!", "-d", "ff00::/8", *MASQ, "-j", "MASQUERADE")


def test_forward_rules():
    rules = forward_rules("10.244.0.0/16")
    assert [r.chain for r in rules] == ["FORWARD", "FLANNEL-FWD", "FLANNEL-FWD"]
    assert rules[1].rulespec == ("-s", "10.244.0.0/16", "-m", "comment", "--comment", "flanneld forward", "-j", "ACCEPT")
    assert rules[2].rulespec[:2] == ("-d", "10.244.0.0/16")


def test_rules_exist_false_when_chain_missing():
    ipt = MockIPTables(chains_exist=False)
    rules = forward_rules("10.244.0.0/16")
    setup_iptables(ipt, rules)
    assert rules_exist(ipt, rules) is False
    ipt.chains_exist = True
    assert rules_exist(ipt, rules) is True


def test_clean_and_build_creates_missing_chains():
    ipt = MockIPTables(chains_exist=False)
    result = clean_and_build(ipt, forward_rules("10.244.0.0/16"))
    assert ("filter", "FLANNEL-FWD") in ipt.cleared
    assert [spec[0] for spec in result["filter"]] == ["-A", "-A", "-A"]


def test_teardown_skips_rules_in_missing_chain():
    ipt = MockIPTables(chains_exist=False)
    iptr = MockRestore()
    rules = forward_rules("10.244.0.0/16")
    setup_iptables(ipt, rules)
    teardown(ipt, iptr, rules)
    assert iptr.rules == [{}]


def test_errors_are_wrapped():
    with pytest.raises(IPTablesError, match="failed to check rule existence"):
        rules_exist(FailingIPTables(), BASE_RULES)
    with pytest.raises(IPTablesError, match="failed to setup iptables-restore payload"):
        bootstrap(FailingIPTables(), MockRestore(), BASE_RULES)
    with pytest.raises(IPTablesError, match="error checking rule existence"):
        ensure(FailingIPTables(), MockRestore(), BASE_RULES)


class FakeSystem:
    """Stands in for the iptables binaries."""

    def __init__(self, version="iptables v1.8.7 (nf_tables)"):
        self.version = version
        self.calls = []
        self.chains = set()
        self.rules = set()
        self.restore_inputs = []

    def run(self, command, **kwargs):
        self.calls.append(list(command))
        args = [a for a in command[1:] if a != "--wait"]
        code, out = 0, self.version if args == ["--version"] else ""
        if command[0].endswith("-restore"):
            self.restore_inputs.append(kwargs.get("input", b"").decode())
        elif "-L" in args:
            code = 0 if args[args.index("-L") + 1] in self.chains else 1
        elif "-N" in args:
            chain = args[args.index("-N") + 1]
            code = 1 if chain in self.chains else 0
            self.chains.add(chain)
        elif "-C" in args:
            code = 0 if tuple(args) in self.rules else 1
        stdout = out if kwargs.get("text") else out.encode()
        stderr = "" if kwargs.get("text") else b""
        if kwargs.get("check") and code != 0:
            raise subprocess.CalledProcessError(code, command, stdout, stderr)
        return subprocess.CompletedProcess(command, code, stdout, stderr)


class _StopLoop(BaseException):
    """Raised by a rule source to end the resync loop."""


@pytest.fixture
def system():
    fake = FakeSystem()
    with mock.patch("shutil.which", side_effect=lambda name: f"/sbin/{name}"), mock.patch(
        "subprocess.run", side_effect=fake.run
    ):
        yield fake


def test_iptables_command_behaviour(system):
    ipt = IPTables()
    assert ipt.has_random_fully() is True
    assert ipt.chain_exists("nat", "FLANNEL-POSTRTG") is False
    ipt.clear_chain("nat", "FLANNEL-POSTRTG")
    assert ipt.chain_exists("nat", "FLANNEL-POSTRTG") is True
    ipt.clear_chain("nat", "FLANNEL-POSTRTG")
    assert system.calls[-1] == ["/sbin/iptables", "--wait", "-t", "nat", "-F", "FLANNEL-POSTRTG"]
    assert ipt.exists("nat", "POSTROUTING", "-j", "RETURN") is False
    assert system.calls[-1] == ["/sbin/iptables", "--wait", "-t", "nat", "-C", "POSTROUTING", "-j", "RETURN"]


def test_iptables_old_version_lacks_random_fully(system):
    system.version = "iptables v1.4.21"
    ipt = IPTables()
    assert ipt.has_random_fully() is False
    ipt.chain_exists("nat", "X")
    assert "--wait" in system.calls[-1]


def test_setup_and_ensure_installs_rules(system):
    rules = forward_rules("10.244.0.0/16")
    calls = []

    def get_rules():
        calls.append(1)
        if len(calls) > 1:
            raise _StopLoop()
        return rules

    with pytest.raises(_StopLoop):
        setup_and_ensure_ip4_tables(get_rules, 1)
    assert len(calls) == 2
    assert "*filter\n-A FORWARD -m comment --comment \"flanneld forward\" -j FLANNEL-FWD\n" in system.restore_inputs[0]
    assert "FLANNEL-FWD" in system.chains


def test_delete_ip4_tables_without_binary_raises():
    with mock.patch("shutil.which", return_value=None):
        with pytest.raises(IPTablesError, match="executable file not found"):
            delete_ip4_tables(BASE_RULES)