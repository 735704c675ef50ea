"""SR-IOV configuration: physical functions, capabilities and virtual functions."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

import yaml

_log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when a configuration cannot be read or is invalid."""


class _Loader(yaml.SafeLoader):
    """Safe loader that keeps PCI addresses such as 0000:01:00.0 as strings."""


_INT_TAG = "tag:yaml.org,2002:int"
_FLOAT_TAG = "tag:yaml.org,2002:float"

# YAML 1.1 base-60 numbers would otherwise turn PCI addresses into numbers.
_Loader.yaml_implicit_resolvers = {
    first: [(tag, rx) for tag, rx in resolvers if tag not in (_INT_TAG, _FLOAT_TAG)]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
_Loader.add_implicit_resolver(
    _INT_TAG,
    re.compile(
        r"^(?:[-+]?0b[0-1_]+|[-+]?0[0-7_]+|[-+]?(?:0|[1-9][0-9_]*)|[-+]?0x[0-9a-fA-F_]+)$"
    ),
    list("-+0123456789"),
)
_Loader.add_implicit_resolver(
    _FLOAT_TAG,
    re.compile(
        r"^(?:[-+]?(?:[0-9][0-9_]*)\.[0-9_]*(?:[eE][-+][0-9]+)?"
        r"|\.[0-9_]+(?:[eE][-+][0-9]+)?"
        r"|[-+]?\.(?:inf|Inf|INF)"
        r"|\.(?:nan|NaN|NAN))$"
    ),
    list("-+0123456789."),
)


def _string(value: Any, what: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"{what} must be a string, got: {value!r}")
    return value


def _string_list(value: Any, what: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{what} must be a list, got: {value!r}")
    return [_string(item, what) for item in value]


def _mapping(value: Any, what: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{what} must be a mapping, got: {value!r}")
    return value


@dataclass
class VirtualFunction:
    """A virtual function: its PCI address and IOMMU group."""

    address: str = ""
    iommu_group: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> VirtualFunction:
        data = _mapping(data, "virtual function")
        group = data.get("iommuGroup", 0)
        if group is None:
            group = 0
        if isinstance(group, bool) or not isinstance(group, int) or group < 0:
            raise ConfigError(f"iommuGroup must be a non-negative integer, got: {group!r}")
        return cls(address=_string(data.get("address"), "address"), iommu_group=group)

    def __str__(self) -> str:
        return f"&{{Address:{self.address} IOMMUGroup:{self.iommu_group}}}"


@dataclass
class PhysicalFunction:
    """A physical function: drivers, capabilities, service domains and VFs."""

    pf_kernel_driver: str = ""
    vf_kernel_driver: str = ""
    capabilities: list[str] = field(default_factory=list)
    service_domains: list[str] = field(default_factory=list)
    virtual_functions: list[VirtualFunction] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> PhysicalFunction:
        data = _mapping(data, "physical function")
        vfs = data.get("virtualFunctions")
        if vfs is not None and not isinstance(vfs, list):
            raise ConfigError(f"virtualFunctions must be a list, got: {vfs!r}")
        return cls(
            pf_kernel_driver=_string(data.get("pfKernelDriver"), "pfKernelDriver"),
            vf_kernel_driver=_string(data.get("vfKernelDriver"), "vfKernelDriver"),
            capabilities=_string_list(data.get("capabilities"), "capabilities"),
            service_domains=_string_list(data.get("serviceDomains"), "serviceDomains"),
            virtual_functions=[VirtualFunction.from_dict(vf) for vf in vfs or []],
        )

    def __str__(self) -> str:
        vfs = " ".join(str(vf) for vf in self.virtual_functions)
        return (
            f"&{{PFKernelDriver:{self.pf_kernel_driver}"
            f" VFKernelDriver:{self.vf_kernel_driver}"
            f" Capabilities:[{' '.join(self.capabilities)}]"
            f" ServiceDomains:[{' '.join(self.service_domains)}]"
            f" VirtualFunctions:[{vfs}]}}"
        )


@dataclass
class Config:
    """Available physical functions keyed by PCI address."""

    physical_functions: dict[str, PhysicalFunction] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> Config:
        """Build a config from the decoded YAML document."""
        data = _mapping(data, "config")
        pfs = _mapping(data.get("physicalFunctions"), "physicalFunctions")
        return cls(
            physical_functions={
                str(addr): PhysicalFunction.from_dict(pf) for addr, pf in pfs.items()
            }
        )

    def __str__(self) -> str:
        pfs = " ".join(f"{addr}:{pf}" for addr, pf in self.physical_functions.items())
        return f"&{{PhysicalFunctions:map[{pfs}]}}"


def load_yaml_file(file_name: str) -> Any:
    """Read a YAML file and return the decoded document."""
    try:
        with open(file_name, encoding="utf-8") as f:
            text = f.read()
    except OSError as err:
        raise ConfigError(f"error reading file: {file_name}") from err
    try:
        return yaml.load(text, Loader=_Loader)
    except yaml.YAMLError as err:
        raise ConfigError(f"error unmarshalling yaml: {text}") from err


def read_config(config_file: str) -> Config:
    """Read and validate the configuration from a YAML file."""
    cfg = Config.from_dict(load_yaml_file(config_file))

    for pci_addr, pf in cfg.physical_functions.items():
        if not pf.pf_kernel_driver:
            raise ConfigError(f"{pci_addr} has no PFKernelDriver set")
        if not pf.vf_kernel_driver:
            raise ConfigError(f"{pci_addr} has no VFKernelDriver set")
        if not pf.capabilities:
            raise ConfigError(f"{pci_addr} has no Capabilities set")
        if not pf.service_domains:
            raise ConfigError(f"{pci_addr} has no ServiceDomains set")

    _log.info("unmarshalled Config: %s", cfg)
    return cfg