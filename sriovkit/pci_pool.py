"""Pool of PCI functions that binds IOMMU groups to drivers."""

from __future__ import annotations

import os
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

from sriovkit.config import Config, VirtualFunction
from sriovkit.pcifunction import PCIFunctionError, new_physical_function
from sriovkit.sriovtest import FakePhysicalFunction
from sriovkit.types import DriverType

_VFIO_DRIVER = "vfio-pci"
_DRIVER_BIND_TIMEOUT = 1.0
_DRIVER_BIND_CHECK = _DRIVER_BIND_TIMEOUT / 10


class PciPoolError(Exception):
    """Raised when a PCI function is unknown or a driver cannot be bound."""


class _BindableFunction(Protocol):
    @property
    def pci_address(self) -> str: ...

    def net_interface_name(self) -> str: ...

    def iommu_group(self) -> int: ...

    def bound_driver(self) -> str: ...

    def bind_driver(self, driver: str) -> None: ...


@dataclass
class _Entry:
    function: _BindableFunction
    kernel_driver: str


class PciPool:
    """Manages PCI functions grouped by IOMMU group."""

    def __init__(self, vfio_dir: str = "", skip_driver_check: bool = False) -> None:
        self._functions: dict[str, _Entry] = {}
        self._functions_by_iommu_group: dict[int, list[_Entry]] = {}
        self._vfio_dir = vfio_dir
        self._skip_driver_check = skip_driver_check

    def _add_function(self, function: _BindableFunction, kernel_driver: str) -> None:
        entry = _Entry(function, kernel_driver)
        self._functions[function.pci_address] = entry
        group = function.iommu_group()
        self._functions_by_iommu_group.setdefault(group, []).append(entry)

    def pci_function(self, pci_addr: str) -> _BindableFunction:
        """Return the PCI function with the given PCI address."""
        entry = self._functions.get(pci_addr)
        if entry is None:
            raise PciPoolError(f"PCI function doesn't exist: {pci_addr}")
        return entry.function

    def bind_driver(self, iommu_group: int, driver_type: DriverType) -> None:
        """Bind every function of the IOMMU group to the driver of the given type."""
        entries = self._functions_by_iommu_group.get(iommu_group, [])
        for entry in entries:
            if driver_type == DriverType.KERNEL:
                entry.function.bind_driver(entry.kernel_driver)
            elif driver_type == DriverType.VFIO_PCI:
                entry.function.bind_driver(_VFIO_DRIVER)
            else:
                raise PciPoolError(f"driver type is not supported: {driver_type}")

        for entry in entries:
            self._wait_driver_getting_bound(entry.function, driver_type)

    def _wait_driver_getting_bound(
        self, function: _BindableFunction, driver_type: DriverType
    ) -> None:
        deadline = time.monotonic() + _DRIVER_BIND_TIMEOUT
        while True:
            try:
                self._driver_check(function, driver_type)
                return
            except (PCIFunctionError, OSError) as err:
                cause = err
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise PciPoolError(
                    "time for binding kernel driver exceeded: "
                    f"{function.pci_address}, cause: {cause}"
                ) from cause
            time.sleep(min(_DRIVER_BIND_CHECK, remaining))

    def _driver_check(self, function: _BindableFunction, driver_type: DriverType) -> None:
        if driver_type == DriverType.KERNEL:
            if not self._skip_driver_check:
                function.net_interface_name()
        elif driver_type == DriverType.VFIO_PCI:
            if not self._skip_driver_check:
                group = function.iommu_group()
                os.stat(os.path.join(self._vfio_dir, str(group)))
        else:
            raise PciPoolError(f"driver type is not supported: {driver_type}")


def new_pool(
    pci_devices_path: str,
    pci_drivers_path: str,
    vfio_dir: str,
    cfg: Config,
    skip_driver_check: bool = False,
) -> PciPool:
    """Build a pool from the physical functions of the config found in sysfs."""
    pool = PciPool(vfio_dir=vfio_dir, skip_driver_check=skip_driver_check)
    for pf_pci_addr, pf_cfg in cfg.physical_functions.items():
        pf = new_physical_function(pf_pci_addr, pci_devices_path, pci_drivers_path)
        pool._add_function(pf, pf_cfg.pf_kernel_driver)
        for vf in pf.virtual_functions():
            pool._add_function(vf, pf_cfg.vf_kernel_driver)
    return pool


def new_test_pool(
    physical_functions: Mapping[str, FakePhysicalFunction], cfg: Config
) -> PciPool:
    """Build a pool from in-memory functions; driver checks are skipped."""
    pool = PciPool(skip_driver_check=True)
    for pf_pci_addr, pf_cfg in cfg.physical_functions.items():
        pf = physical_functions.get(pf_pci_addr)
        if pf is None:
            raise PciPoolError(f"PF doesn't exist: {pf_pci_addr}")
        pool._add_function(pf, pf_cfg.pf_kernel_driver)
        for vf in pf.vfs:
            pool._add_function(vf, pf_cfg.vf_kernel_driver)
    return pool


def update_config(pci_devices_path: str, pci_drivers_path: str, cfg: Config) -> None:
    """Append the virtual functions found in sysfs to each physical function of the config."""
    for pf_pci_addr, pf_cfg in cfg.physical_functions.items():
        pf = new_physical_function(pf_pci_addr, pci_devices_path, pci_drivers_path)
        for vf in pf.virtual_functions():
            pf_cfg.virtual_functions.append(
                VirtualFunction(address=vf.pci_address, iommu_group=vf.iommu_group())
            )