"""Resource pool for SR-IOV PCI virtual functions."""

from __future__ import annotations

import posixpath
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

from sriovkit.config import Config
from sriovkit.types import DriverType


class ResourcePoolError(Exception):
    """Raised when a virtual function cannot be selected or freed."""


class TokenSource(Protocol):
    """The part of a token pool that the resource pool uses."""

    def find(self, id: str) -> str: ...

    def use(self, id: str, names: Iterable[str]) -> None: ...

    def stop_using(self, id: str) -> None: ...


@dataclass
class _VirtualFunction:
    pci_addr: str
    pf_pci_addr: str
    iommu_group: int
    token_id: str = ""


@dataclass
class _PhysicalFunction:
    token_names: set[str] = field(default_factory=set)
    virtual_functions: dict[int, list[_VirtualFunction]] = field(default_factory=dict)
    free_vfs_count: int = 0


class ResourcePool:
    """Manages host SR-IOV state.

    Not thread safe: synchronise outside if used concurrently.
    """

    def __init__(self, token_pool: TokenSource, cfg: Config) -> None:
        self._physical_functions: dict[str, _PhysicalFunction] = {}
        self._virtual_functions: dict[str, _VirtualFunction] = {}
        self._tokens: dict[str, _VirtualFunction] = {}
        self._iommu_groups: dict[int, DriverType] = {}
        self._token_pool = token_pool

        for pf_pci_addr, pf_cfg in cfg.physical_functions.items():
            pf = _PhysicalFunction(free_vfs_count=len(pf_cfg.virtual_functions))
            self._physical_functions[pf_pci_addr] = pf

            pf.token_names = {
                posixpath.join(sd, cap)
                for sd in pf_cfg.service_domains
                for cap in pf_cfg.capabilities
            }

            for vf_cfg in pf_cfg.virtual_functions:
                vf = _VirtualFunction(
                    pci_addr=vf_cfg.address,
                    pf_pci_addr=pf_pci_addr,
                    iommu_group=vf_cfg.iommu_group,
                )
                self._virtual_functions[vf.pci_addr] = vf
                pf.virtual_functions.setdefault(vf.iommu_group, []).append(vf)
                self._iommu_groups[vf.iommu_group] = DriverType.NO_DRIVER

    def select(self, token_id: str, driver_type: DriverType) -> str:
        """Select a VF for the driver type, mark it in use and return its PCI address."""
        selected = self._try_selected(token_id, driver_type)
        if selected is not None:
            return selected.pci_addr

        token_name = self._token_pool.find(token_id)

        candidates = self._find(driver_type, token_name)
        if not candidates:
            raise ResourcePoolError(f"no free VF for the driver type: {driver_type}")

        best = min(
            candidates,
            key=lambda vf: (
                self._iommu_groups[vf.iommu_group] != driver_type,
                -self._physical_functions[vf.pf_pci_addr].free_vfs_count,
                vf.pci_addr,
            ),
        )
        self._select_vf(best, token_id, driver_type)
        return best.pci_addr

    def free(self, vf_pci_addr: str) -> None:
        """Mark the VF as free; release its IOMMU group if nothing in it is used."""
        vf = self._virtual_functions.get(vf_pci_addr)
        if vf is None:
            raise ResourcePoolError(f"VF doesn't exist: {vf_pci_addr}")
        if not vf.token_id:
            raise ResourcePoolError(f"trying to free not selected VF: {vf.pci_addr}")

        self._token_pool.stop_using(vf.token_id)
        del self._tokens[vf.token_id]
        vf.token_id = ""

        self._physical_functions[vf.pf_pci_addr].free_vfs_count += 1

        for pf in self._physical_functions.values():
            if any(other.token_id for other in pf.virtual_functions.get(vf.iommu_group, [])):
                return
        self._iommu_groups[vf.iommu_group] = DriverType.NO_DRIVER

    def _try_selected(self, token_id: str, driver_type: DriverType) -> _VirtualFunction | None:
        vf = self._tokens.get(token_id)
        if vf is None:
            return None
        if self._iommu_groups[vf.iommu_group] != driver_type:
            self.free(vf.pci_addr)
            return None
        return vf

    def _find(self, driver_type: DriverType, token_name: str) -> list[_VirtualFunction]:
        return [
            vf
            for pf in self._physical_functions.values()
            if token_name in pf.token_names
            for group, vfs in pf.virtual_functions.items()
            if self._iommu_groups[group] in (DriverType.NO_DRIVER, driver_type)
            for vf in vfs
            if not vf.token_id
        ]

    def _select_vf(self, vf: _VirtualFunction, token_id: str, driver_type: DriverType) -> None:
        pf = self._physical_functions[vf.pf_pci_addr]
        self._token_pool.use(token_id, list(pf.token_names))

        self._tokens[token_id] = vf
        vf.token_id = token_id

        pf.free_vfs_count -= 1
        self._iommu_groups[vf.iommu_group] = driver_type