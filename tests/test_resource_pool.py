import posixpath

import pytest

from sriovkit.config import Config
from sriovkit.resource_pool import ResourcePool, ResourcePoolError
from sriovkit.types import DriverType

SD1 = "service.domain.1"
SD2 = "service.domain.2"
INTEL = "intel"
C10G = "10G"
VF11 = "0000:01:00.1"
VF21 = "0000:02:00.1"
VF22 = "0000:02:00.2"
VF31 = "0000:03:00.1"


def _config():
    def pf(caps, domains, vfs):
        return {
            "pfKernelDriver": "pf-driver",
            "vfKernelDriver": "vf-driver",
            "capabilities": caps,
            "serviceDomains": domains,
            "virtualFunctions": [{"address": a, "iommuGroup": g} for a, g in vfs],
        }

    return Config.from_dict(
        {
            "physicalFunctions": {
                "0000:01:00.0": pf([INTEL], [SD1], [(VF11, 1)]),
                "0000:02:00.0": pf([INTEL, C10G], [SD2], [(VF21, 1), (VF22, 2)]),
                "0000:03:00.0": pf(
                    [INTEL], [SD2], [(VF31, 1), ("0000:03:00.2", 1), ("0000:03:00.3", 1)]
                ),
            }
        }
    )


class InvalidTokenError(Exception):
    pass


class TokenPoolStub:
    def __init__(self, tokens):
        self.tokens = tokens
        self.used = []
        self.stopped = []

    def find(self, id):
        if id in self.tokens:
            return self.tokens[id]
        raise InvalidTokenError("invalid token ID")

    def use(self, id, names):
        if id not in self.tokens:
            raise InvalidTokenError("invalid token ID")
        self.used.append((id, sorted(names)))

    def stop_using(self, id):
        if id not in self.tokens:
            raise InvalidTokenError("invalid token ID")
        self.stopped.append(id)


def _pool(tokens):
    stub = TokenPoolStub(tokens)
    return ResourcePool(stub, _config()), stub


def test_select_selected():
    p, _ = _pool({"1": posixpath.join(SD1, INTEL)})
    assert p.select("1", DriverType.VFIO_PCI) == VF11
    assert p.select("1", DriverType.VFIO_PCI) == VF11


def test_select_selected_another_driver():
    p, stub = _pool(
        {
            "1": posixpath.join(SD1, INTEL),
            "2": posixpath.join(SD2, INTEL),
            "3": posixpath.join(SD2, INTEL),
        }
    )
    assert p.select("1", DriverType.VFIO_PCI) == VF11
    assert p.select("2", DriverType.KERNEL) == VF22
    assert p.select("2", DriverType.VFIO_PCI) == VF31
    assert stub.stopped == ["2"]
    assert p.select("3", DriverType.KERNEL) == VF22


def test_select_capability():
    p, _ = _pool({"1": posixpath.join(SD2, C10G)})
    assert p.select("1", DriverType.VFIO_PCI) == VF21


def test_select_free_vfs_count():
    p, _ = _pool({"1": posixpath.join(SD2, INTEL)})
    assert p.select("1", DriverType.VFIO_PCI) == VF31


def test_free():
    p, stub = _pool({"1": posixpath.join(SD1, INTEL)})
    addr = p.select("1", DriverType.VFIO_PCI)
    assert addr == VF11
    p.free(addr)
    assert stub.stopped == ["1"]
    assert p.select("1", DriverType.VFIO_PCI) == VF11


def test_select_uses_all_pf_token_names():
    p, stub = _pool({"1": posixpath.join(SD2, C10G)})
    p.select("1", DriverType.KERNEL)
    assert stub.used == [("1", [posixpath.join(SD2, C10G), posixpath.join(SD2, INTEL)])]


def test_free_unknown_vf():
    p, _ = _pool({})
    with pytest.raises(ResourcePoolError, match="VF doesn't exist: 0000:09:00.1"):
        p.free("0000:09:00.1")


def test_free_not_selected_vf():
    p, _ = _pool({})
    with pytest.raises(ResourcePoolError, match="trying to free not selected VF"):
        p.free(VF11)


def test_no_free_vf():
    p, _ = _pool({"1": posixpath.join(SD1, INTEL), "2": posixpath.join(SD1, INTEL)})
    assert p.select("1", DriverType.KERNEL) == VF11
    with pytest.raises(ResourcePoolError, match="no free VF for the driver type: kernel"):
        p.select("2", DriverType.KERNEL)


def test_unknown_token_propagates():
    p, _ = _pool({})
    with pytest.raises(InvalidTokenError):
        p.select("missing", DriverType.KERNEL)


def test_group_bound_to_other_driver_is_skipped():
    p, _ = _pool({"1": posixpath.join(SD1, INTEL), "2": posixpath.join(SD2, C10G)})
    assert p.select("1", DriverType.VFIO_PCI) == VF11
    # VF21 shares IOMMU group 1 with VF11, now bound to vfio-pci
    assert p.select("2", DriverType.KERNEL) == VF22