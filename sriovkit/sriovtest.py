"""In-memory PCI functions for testing SR-IOV pools."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _mapping(data: Any) -> dict:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"PCI function must be a mapping, got: {data!r}")
    return data


def _text(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got: {value!r}")
    return value


def _function_fields(data: dict) -> dict[str, Any]:
    group = data.get("iommuGroup", 0)
    if group is None:
        group = 0
    if isinstance(group, bool) or not isinstance(group, int) or group < 0:
        raise ValueError(f"iommuGroup must be a non-negative integer, got: {group!r}")
    return {
        "addr": _text(data, "addr"),
        "if_name": _text(data, "ifName"),
        "iommu_group_id": group,
        "driver": _text(data, "driver"),
    }


@dataclass
class FakePCIFunction:
    """A PCI function whose information is held in memory."""

    addr: str = ""
    if_name: str = ""
    iommu_group_id: int = 0
    driver: str = ""

    @property
    def pci_address(self) -> str:
        """PCI address of the function."""
        return self.addr

    def net_interface_name(self) -> str:
        """Return the stored interface name."""
        return self.if_name

    def iommu_group(self) -> int:
        """Return the stored IOMMU group."""
        return self.iommu_group_id

    def bound_driver(self) -> str:
        """Return the stored driver name."""
        return self.driver

    def bind_driver(self, driver: str) -> None:
        """Store the given driver name."""
        self.driver = driver

    @classmethod
    def from_dict(cls, data: Any) -> FakePCIFunction:
        """Build a function from a mapping with addr, ifName, iommuGroup and driver."""
        return cls(**_function_fields(_mapping(data)))


@dataclass
class FakePhysicalFunction(FakePCIFunction):
    """A physical function held in memory, with its virtual functions."""

    vfs: list[FakePCIFunction] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> FakePhysicalFunction:
        """Build a physical function from a mapping that may hold a vfs list."""
        data = _mapping(data)
        vfs = data.get("vfs")
        if vfs is not None and not isinstance(vfs, list):
            raise ValueError(f"vfs must be a list, got: {vfs!r}")
        return cls(
            **_function_fields(data),
            vfs=[FakePCIFunction.from_dict(vf) for vf in vfs or []],
        )