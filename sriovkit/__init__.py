"""SR-IOV resource management: configuration, token and VF pools, PCI functions and devices cgroups."""

__version__ = "0.1.0"