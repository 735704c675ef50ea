# sriovkit

A library for managing SR-IOV network resources on a Linux host.

## What is in it

- `sriovkit.types` – `DriverType` (`NO_DRIVER`, `KERNEL`, `VFIO_PCI`) and the
  `PCIFunction` protocol (`pci_address`, `net_interface_name()`,
  `iommu_group()`).
- `sriovkit.config` – `read_config(path)` loads and validates a YAML file into
  `Config`, `PhysicalFunction` and `VirtualFunction` dataclasses;
  `load_yaml_file(path)` returns the raw document. Problems raise
  `ConfigError`.
- `sriovkit.tokens` – `new_token_id()`, `is_token_id(s)`, and
  `to_env(name, ids)` / `from_env(envs)` to pass token IDs through
  environment variables prefixed `NSM_SRIOV_TOKENS_`.
- `sriovkit.token_pool` – `TokenPool(cfg)` creates one token per virtual
  function for every `<service domain>/<capability>` name and tracks each
  token's `TokenState` (free, allocated, inUse, closed) through `allocate`,
  `free`, `use`, `stop_using`, `find`, `tokens` and `restore`. Listeners
  added with `add_listener` are run in background threads when `use` or
  `stop_using` changes state. Errors raise `TokenPoolError`. It is safe to
  share between threads.
- `sriovkit.resource_pool` – `ResourcePool(token_pool, cfg)` selects a free
  virtual function for a token and a driver type (`select`) and releases it
  (`free`). It prefers IOMMU groups already set to the requested driver, then
  physical functions with the most free VFs, then the lowest PCI address.
  Errors raise `ResourcePoolError`. It is not thread safe.
- `sriovkit.pcifunction` – `Function` and `PhysicalFunction` read and change
  PCI functions under a sysfs-like directory: net interface name, IOMMU
  group, bound driver, `bind_driver`. `new_physical_function(address,
  devices_path, drivers_path)` checks the address and SR-IOV capability,
  writes `sriov_numvfs` from `sriov_totalvfs` when no VFs are configured, and
  loads the `virtfn*` links. Errors raise `PCIFunctionError`.
- `sriovkit.sriovtest` – `FakePCIFunction` and `FakePhysicalFunction`,
  in-memory functions with `from_dict` builders, for tests.
- `sriovkit.pci_pool` – `PciPool` groups functions by IOMMU group;
  `bind_driver(group, driver_type)` binds every function in the group to its
  kernel driver or to `vfio-pci` and waits up to one second for the driver to
  come up. Build it with `new_pool(...)` from sysfs or `new_test_pool(...)`
  from fakes. `update_config(...)` appends the VFs found in sysfs to a
  config. Errors raise `PciPoolError`.
- `sriovkit.cgroup` – `Device` rules (`"c 1:2 rwm"`), `parse_device`,
  `Cgroup` with `allow`, `deny`, `is_allowed` and `is_wider_than` on
  `devices.list` / `devices.allow` / `devices.deny`, `new_cgroups(pattern)`,
  and `dir_path()` / `pod_dir_path()` to find the pod's devices cgroup
  pattern from `/proc/self/cgroup`. Errors raise `CgroupError`.
- `sriovkit.fake_cgroup` – `FakeCgroup`, a cgroup directory whose allow and
  deny files are FIFOs served by background threads that keep `devices.list`
  up to date (with `DeviceSet` holding the rules), for tests. Use it as a
  context manager or call `close()` to stop it and remove the directory.
  `new_fake_cgroup(path)` starts with some default k8s rules,
  `new_fake_wide_cgroup(path)` with `a *:* rwm`.

## Installation

```
pip install sriovkit
```

## Configuration file

```yaml
physicalFunctions:
  0000:01:00.0:
    pfKernelDriver: pf-driver
    vfKernelDriver: vf-driver
    capabilities:
      - intel
      - 10G
    serviceDomains:
      - service.domain.1
    virtualFunctions:
      - address: 0000:01:00.1
        iommuGroup: 1
      - address: 0000:01:00.2
        iommuGroup: 2
```

PCI addresses are kept as strings. Every physical function must set
`pfKernelDriver`, `vfKernelDriver`, at least one capability and at least one
service domain; otherwise `read_config` raises `ConfigError`.

## Example

```python
from sriovkit.config import read_config
from sriovkit.token_pool import TokenPool
from sriovkit.resource_pool import ResourcePool
from sriovkit.types import DriverType

cfg = read_config("config.yml")

tokens = TokenPool(cfg)
resources = ResourcePool(tokens, cfg)

# token names are "<service domain>/<capability>"
token_id = next(iter(tokens.tokens()["service.domain.1/intel"]))
tokens.allocate(token_id)

vf_address = resources.select(token_id, DriverType.VFIO_PCI)
print("selected VF", vf_address)

resources.free(vf_address)
```

Tokens can be handed to another process through the environment:

```python
from sriovkit.tokens import to_env, from_env

name, value = to_env("service.domain.1/intel", ["id-1", "id-2"])
# name == "NSM_SRIOV_TOKENS_service.domain.1/intel", value == "id-1,id-2"
restored = from_env([f"{name}={value}"])
```

## What it does not do

sriovkit is a library only: it has no command-line program, no daemon and no
network service endpoints. It does not create `/dev/vfio` device nodes or
hand devices to clients; it leaves request handling, token insertion into
connections and wiring the pools into a service to the application that
uses it.

## Running the tests

```
pip install -e ".[test]"
pytest
```