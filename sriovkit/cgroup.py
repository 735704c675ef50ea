"""Utilities for Linux devices cgroups."""

from __future__ import annotations

import glob
import os
import re
from dataclasses import dataclass, field
from collections.abc import Iterable

DEVICE_LIST_FILE_NAME = "devices.list"
DEVICE_ALLOW_FILE_NAME = "devices.allow"
DEVICE_DENY_FILE_NAME = "devices.deny"

_MODE_ORDER = "rwm"
_DEVICE_PATTERN = re.compile(r"(?P<type>[abc]) (?P<major>[*0-9]+):(?P<minor>[*0-9]+) (?P<mode>[rwm]+)")
_DEVICES_CGROUP = re.compile(r"^[1-9][0-9]*?:devices:(.*)$")


class CgroupError(Exception):
    """Raised on invalid cgroup data or missing cgroup information."""


@dataclass
class Device:
    """A device cgroup rule such as "c 1:2 rwm"."""

    type: str
    major: str
    minor: str
    modes: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def char(cls, major: int, minor: int, modes: Iterable[str]) -> Device:
        """Return a character device rule for the given numbers and modes."""
        return cls("c", str(major), str(minor), frozenset(modes))

    def __str__(self) -> str:
        modes = "".join(sorted(self.modes, key=_MODE_ORDER.index))
        return f"{self.type} {self.major}:{self.minor} {modes}\n"

    def is_wider_than(self, other: Device) -> bool:
        """Return whether this rule strictly covers the other one."""
        is_wider = False

        if self.type != other.type:
            if self.type != "a":
                return False
            is_wider = True

        if self.major != other.major:
            if self.major != "*":
                return False
            is_wider = True

        if self.minor != other.minor:
            if self.minor != "*":
                return False
            is_wider = True

        if not other.modes <= self.modes:
            return False
        if len(self.modes) > len(other.modes):
            is_wider = True

        return is_wider


def parse_device(s: str) -> Device:
    """Parse a device rule string."""
    match = _DEVICE_PATTERN.search(s)
    if match is None:
        raise CgroupError(f"invalid device string: {s}")
    return Device(
        type=match["type"],
        major=match["major"],
        minor=match["minor"],
        modes=frozenset(match["mode"]),
    )


@dataclass
class Cgroup:
    """A Linux devices cgroup directory."""

    path: str

    def allow(self, major: int, minor: int) -> None:
        """Allow "c major:minor rwm" for the cgroup."""
        self._write(DEVICE_ALLOW_FILE_NAME, Device.char(major, minor, "rwm"))

    def deny(self, major: int, minor: int) -> None:
        """Deny "c major:minor rw" for the cgroup."""
        self._write(DEVICE_DENY_FILE_NAME, Device.char(major, minor, "rw"))

    def is_allowed(self, major: int, minor: int) -> bool:
        """Return whether "c major:minor rwm" is allowed for the cgroup."""
        return self._compare_to(Device.char(major, minor, "rwm"))[0]

    def is_wider_than(self, major: int, minor: int) -> bool:
        """Return whether the cgroup allows a wider group than "c major:minor rwm"."""
        return self._compare_to(Device.char(major, minor, "rwm"))[1]

    def _write(self, file_name: str, dev: Device) -> None:
        with open(os.path.join(self.path, file_name), "w", encoding="utf-8") as f:
            f.write(str(dev))

    def _compare_to(self, dev: Device) -> tuple[bool, bool]:
        with open(os.path.join(self.path, DEVICE_LIST_FILE_NAME), encoding="utf-8") as f:
            lines = f.read().splitlines()

        is_allowed = False
        for line in lines:
            d = parse_device(line)
            if d == dev:
                is_allowed = True
            elif d.is_wider_than(dev):
                return True, True
        return is_allowed, False


def new_cgroups(path_pattern: str) -> list[Cgroup]:
    """Return all cgroups whose directory matches the pattern."""
    paths = sorted(glob.glob(os.path.join(path_pattern, DEVICE_LIST_FILE_NAME)))
    return [Cgroup(os.path.dirname(p)) for p in paths]


def dir_path(cgroup_info_path: str = "/proc/self/cgroup") -> str:
    """Return the cgroup dir path pattern matching all pod containers."""
    try:
        with open(cgroup_info_path, encoding="utf-8") as f:
            lines = f.read().splitlines()
    except OSError as err:
        raise CgroupError("error opening cgroup info file") from err

    for line in lines:
        match = _DEVICES_CGROUP.match(line)
        if match:
            return pod_dir_path(match.group(1))

    raise CgroupError("can't find out cgroup directory")


def pod_dir_path(container_cgroup_dir_path: str) -> str:
    """Replace the container part of a cgroup path with a wildcard."""
    parts = container_cgroup_dir_path.split(os.sep)
    parts[-1] = "*"
    return os.path.normpath(os.sep.join(p for p in parts if p))