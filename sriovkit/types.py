"""Core SR-IOV types shared by the pools."""

from __future__ import annotations

from enum import Enum
from typing import Protocol, runtime_checkable


class DriverType(str, Enum):
    """Driver type that a virtual function is bound to."""

    NO_DRIVER = "no-driver"
    KERNEL = "kernel"
    VFIO_PCI = "vfio-pci"

    def __str__(self) -> str:
        return self.value


@runtime_checkable
class PCIFunction(Protocol):
    """Information about an OS PCI function."""

    @property
    def pci_address(self) -> str:
        """PCI address of the function."""

    def net_interface_name(self) -> str:
        """Name of the single net interface of the function."""

    def iommu_group(self) -> int:
        """IOMMU group id of the function."""