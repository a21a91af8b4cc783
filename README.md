# overlaynet

Host-side networking helpers for nodes that take part in an overlay network.

- `overlaynet.iptables`: builds the masquerade rule sets (`masq_rules`,
  `masq_ip6_rules`) and the forwarding rule set (`forward_rules`) for a node's
  pod subnet. `bootstrap` applies them in one `iptables-restore --noflush`
  transaction. `rules_exist` and `ensure` check that they are still in place,
  and `ensure` re-installs them if any is missing. `teardown`,
  `delete_ip4_tables` and `delete_ip6_tables` remove them. `IPTables` runs the
  `iptables` / `ip6tables` binary. Its methods are `chain_exists`,
  `clear_chain`, `exists`, `append_unique`, `delete` and `has_random_fully`.
  `setup_and_ensure_ip4_tables` / `setup_and_ensure_ip6_tables` install the
  rules and re-check them periodically until interrupted, then tear them down.
- `overlaynet.restore`: `build_restore_payload` renders per-table rule lists
  in the `*table ... COMMIT` format, and quotes the argument after
  `--comment`. `new_iptables_restore` finds the binaries for a `Protocol`
  (`IPV4` or `IPV6`) and works out whether `--wait` is supported (version
  1.6.2 or later). It returns an `IPTablesRestore` with `apply_without_flush`.
- `overlaynet.ipmatch`: `lookup_ext_iface` picks the external interface and
  addresses. It can select by interface name, by IP address, by a regular
  expression over addresses and then names, by the route to a reachable
  address, or by the default gateway. It handles IPv4, IPv6 and dual stacks
  (`IPStack`, `get_ip_family`). The host's interfaces come from
  `SystemInterfaces`, which reads them through psutil and reads default routes
  from `/proc/net`. Any object with the same methods can be passed in its
  place.
- `overlaynet.routing`: a `Route` value type, an abstract `Router`, and a
  `WindowsRouter` backed by PowerShell's `Get-NetRoute`, `New-NetRoute` and
  `Remove-NetRoute`. `parse_net_routes` turns NetRoute records into routes.
- `overlaynet.powershell`: `run_command`, `run_command_f` and
  `run_command_with_json_result` run `powershell.exe`.
- `overlaynet.mac`: `new_hardware_addr` returns a random six-byte MAC that is
  locally administered and unicast.
- `overlaynet.retry`: `do` calls a function until it stops raising. It makes
  at most ten attempts with growing delays and raises the last error if all
  of them fail.

## Installation

```
pip install overlaynet
```

To change iptables rules you need root, or the `CAP_NET_ADMIN` capability. The
`iptables` and `iptables-restore` binaries, or `ip6tables` and
`ip6tables-restore`, must be on `PATH`.

## Examples

Build masquerade rules for a pod subnet and apply them once:

```python
import ipaddress

from overlaynet import iptables
from overlaynet.restore import Protocol, new_iptables_restore

cluster = [ipaddress.ip_network("10.244.0.0/16")]
pod_subnet = ipaddress.ip_network("10.244.1.0/24")

ipt = iptables.IPTables(Protocol.IPV4)
rules = iptables.masq_rules(cluster, pod_subnet, ipt.has_random_fully())
iptables.bootstrap(ipt, new_iptables_restore(Protocol.IPV4), rules)
```

Keep the rules in place, checking every five seconds:

```python
iptables.setup_and_ensure_ip4_tables(
    lambda: iptables.masq_rules(cluster, pod_subnet, True), 5
)
```

Render an `iptables-restore` payload without running anything:

```python
from overlaynet.restore import build_restore_payload

print(build_restore_payload({
    "nat": [["-A", "POSTROUTING", "-m", "comment", "--comment", "my rule", "-j", "RETURN"]],
}))
```

Find the external interface:

```python
from overlaynet.ipmatch import PublicIPOpts, get_ip_family, lookup_ext_iface

stack = get_ip_family(True, False)
ext = lookup_ext_iface("", r"192\.168\.\d+\.\d+", "", stack, PublicIPOpts(), None)
print(ext.iface.name, ext.iface_addr, ext.ext_addr)
```

Generate a MAC address:

```python
from overlaynet.mac import new_hardware_addr

addr = new_hardware_addr()  # six bytes
```

## Errors

Failures raise exceptions. Functions do not return status values.

- iptables operations raise `overlaynet.iptables.IPTablesError`.
- A PowerShell command that fails raises
  `overlaynet.powershell.PowerShellError`, which carries the command's
  message.
- `lookup_ext_iface` raises `ValueError` for a bad pattern, an empty stack or
  an invalid public address. It raises `LookupError` when no suitable
  interface or address is found.
- `get_ip_family(False, False)` raises `ValueError`.

## What it does not do

This is a library. It has no command-line program or daemon, and it does not
allocate subnets or run an overlay backend. Route management is provided only
for Windows, through PowerShell. On other systems, `Router` is an abstract
interface that you implement yourself.

## Running the tests

```
pip install -e ".[test]"
pytest
```