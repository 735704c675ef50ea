"""Linux PCI functions exposed through sysfs."""

from __future__ import annotations

import glob
import os
import re
import stat
from dataclasses import dataclass, field

_NET_INTERFACES_PATH = "net"
_IOMMU_GROUP = "iommu_group"
_BOUND_DRIVER_PATH = "driver"
_BIND_DRIVER_PATH = "bind"
_UNBIND_DRIVER_PATH = "unbind"

_BDF_DOMAIN = "0000:"
_TOTAL_VF_FILE = "sriov_totalvfs"
_CONFIGURED_VF_FILE = "sriov_numvfs"
_VIRTUAL_FUNCTION_PREFIX = "virtfn"

_VALID_LONG_PCI_ADDR = re.compile(r"[0-9a-f]{4}:[0-9a-f]{2}:[0-9a-f]{2}\.[0-7]")
_VALID_SHORT_PCI_ADDR = re.compile(r"[0-9a-f]{2}:[0-9a-f]{2}\.[0-7]")
_INTEGER = re.compile(r"[+-]?[0-9]+")
_UINT_MASK = (1 << 64) - 1


class PCIFunctionError(Exception):
    """Raised when PCI function information cannot be read or changed."""


def _is_file_exists(path: str) -> bool:
    return os.path.exists(path)


def _to_uint(text: str) -> int | None:
    text = text.strip()
    if not _INTEGER.fullmatch(text):
        return None
    return int(text) & _UINT_MASK


def _read_uint_from_file(path: str) -> int:
    try:
        with open(os.path.normpath(path), encoding="utf-8") as f:
            data = f.read()
    except OSError as err:
        raise PCIFunctionError(f"unable to locate file: {path}") from err

    value = _to_uint(data)
    if value is None:
        raise PCIFunctionError(f"unable to convert string to int: {data}")
    return value


def _eval_symlink_and_get_base_name(path: str) -> str:
    try:
        info = os.lstat(path)
    except OSError as err:
        raise PCIFunctionError(f"error getting info about specified file: {path}") from err
    if not stat.S_ISLNK(info.st_mode):
        raise PCIFunctionError(f"specified file is not a symbolic link: {path}")

    try:
        real_path = os.path.realpath(path, strict=True)
    except OSError as err:
        raise PCIFunctionError(f"error evaluating symbolic link: {path}") from err
    return os.path.basename(real_path)


def _write_address(path: str, address: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(address)


@dataclass
class Function:
    """A Linux PCI function."""

    address: str
    pci_devices_path: str
    pci_drivers_path: str

    @property
    def pci_address(self) -> str:
        """PCI address of the function."""
        return self.address

    def net_interface_name(self) -> str:
        """Return the single net interface name of the function."""
        try:
            names = sorted(os.listdir(self._device_path(_NET_INTERFACES_PATH)))
        except OSError as err:
            raise PCIFunctionError(
                f"failed to read net directory for the device: {self.address}"
            ) from err

        if len(names) == 1:
            return names[0]
        listing = f"[{' '.join(names)}]"
        if not names:
            raise PCIFunctionError(f"no interfaces found for the device: {self.address} - {listing}")
        raise PCIFunctionError(
            f"found multiple interfaces for the device: {self.address} - {listing}"
        )

    def iommu_group(self) -> int:
        """Return the IOMMU group id of the function."""
        try:
            name = _eval_symlink_and_get_base_name(self._device_path(_IOMMU_GROUP))
        except PCIFunctionError as err:
            raise PCIFunctionError(
                f"error evaluating IOMMU group id for the device: {self.address}"
            ) from err
        value = _to_uint(name)
        return 0 if value is None else value

    def bound_driver(self) -> str:
        """Return the name of the bound driver, or "" when none is bound."""
        driver_path = self._device_path(_BOUND_DRIVER_PATH)
        if not _is_file_exists(driver_path):
            return ""
        try:
            return _eval_symlink_and_get_base_name(driver_path)
        except PCIFunctionError as err:
            raise PCIFunctionError(
                f"error evaluating bound driver for the device: {self.address}"
            ) from err

    def bind_driver(self, driver: str) -> None:
        """Unbind the current driver and bind the given one to the function."""
        bound = self.bound_driver()
        if bound == driver:
            return
        if bound:
            unbind_path = self._device_path(_BOUND_DRIVER_PATH, _UNBIND_DRIVER_PATH)
            try:
                _write_address(unbind_path, self.address)
            except OSError as err:
                raise PCIFunctionError(
                    f"failed to unbind driver from the device: {self.address}"
                ) from err

        # Writing the bind file may fail and still bind the driver, so the
        # outcome is judged by the bound driver; only a failed write counts.
        bind_path = os.path.join(self.pci_drivers_path, driver, _BIND_DRIVER_PATH)
        bind_error: OSError | None = None
        try:
            _write_address(bind_path, self.address)
        except OSError as err:
            bind_error = err

        try:
            now_bound = self.bound_driver()
        except PCIFunctionError:
            now_bound = ""
        if now_bound != driver and bind_error is not None:
            raise PCIFunctionError(
                f"failed to bind the driver to the device: {self.address} {driver}"
            ) from bind_error

    def _device_path(self, *elems: str) -> str:
        return os.path.join(self.pci_devices_path, self.address, *elems)


@dataclass
class PhysicalFunction(Function):
    """A Linux PCI physical function with its virtual functions."""

    _virtual_functions: list[Function] = field(default_factory=list, repr=False)

    def virtual_functions(self) -> list[Function]:
        """Return a copy of the list of virtual functions."""
        return list(self._virtual_functions)

    def _create_virtual_functions(self) -> None:
        try:
            count = _read_uint_from_file(self._device_path(_CONFIGURED_VF_FILE))
        except PCIFunctionError as err:
            raise PCIFunctionError(
                f"failed to get configured VFs number for the PCI device: {self.address}"
            ) from err
        if count > 0:
            return

        try:
            with open(self._device_path(_TOTAL_VF_FILE), "rb") as f:
                total = f.read()
        except OSError as err:
            raise PCIFunctionError(
                f"failed to get available VFs number for the PCI device: {self.address}"
            ) from err

        try:
            with open(self._device_path(_CONFIGURED_VF_FILE), "wb") as f:
                f.write(total)
        except OSError as err:
            raise PCIFunctionError(
                f"failed to create VFs for the PCI device: {self.address}"
            ) from err

    def _load_virtual_functions(self) -> None:
        vf_dirs = sorted(glob.glob(self._device_path(_VIRTUAL_FUNCTION_PREFIX + "*")))
        vf_dirs.sort(key=_vf_number)

        for vf_dir in vf_dirs:
            try:
                info = os.lstat(vf_dir)
                if not stat.S_ISLNK(info.st_mode):
                    raise PCIFunctionError(f"invalid virtual function directory: {vf_dir}")
                link_name = os.path.realpath(vf_dir, strict=True)
            except OSError as err:
                raise PCIFunctionError(f"invalid virtual function directory: {vf_dir}") from err

            self._virtual_functions.append(
                Function(
                    address=os.path.basename(link_name),
                    pci_devices_path=self.pci_devices_path,
                    pci_drivers_path=self.pci_drivers_path,
                )
            )


def _vf_number(vf_dir: str) -> int:
    suffix = os.path.basename(vf_dir)[len(_VIRTUAL_FUNCTION_PREFIX):]
    return int(suffix) if suffix.isdigit() else 0


def new_physical_function(
    pci_address: str, pci_devices_path: str, pci_drivers_path: str
) -> PhysicalFunction:
    """Open an SR-IOV capable physical function, creating its VFs when needed."""
    if _VALID_LONG_PCI_ADDR.fullmatch(pci_address):
        bdf_address = pci_address
    elif _VALID_SHORT_PCI_ADDR.fullmatch(pci_address):
        bdf_address = _BDF_DOMAIN + pci_address
    else:
        raise PCIFunctionError(f"invalid PCI address format: {pci_address}")

    device_path = os.path.join(pci_devices_path, bdf_address)
    if not _is_file_exists(device_path):
        raise PCIFunctionError(f"PCI device doesn't exist: {bdf_address}")
    if not _is_file_exists(os.path.join(device_path, _TOTAL_VF_FILE)):
        raise PCIFunctionError(f"PCI device is not SR-IOV capable: {bdf_address}")

    pf = PhysicalFunction(
        address=pci_address,
        pci_devices_path=pci_devices_path,
        pci_drivers_path=pci_drivers_path,
    )
    pf._create_virtual_functions()
    pf._load_virtual_functions()
    return pf