"""Fake devices cgroups backed by FIFOs, for testing."""

from __future__ import annotations

import contextlib
import dataclasses
import os
import select
import shutil
import threading
from collections.abc import Callable, Iterable, Iterator

from sriovkit.cgroup import (
    DEVICE_ALLOW_FILE_NAME,
    DEVICE_DENY_FILE_NAME,
    DEVICE_LIST_FILE_NAME,
    Cgroup,
    CgroupError,
    Device,
    new_cgroups,
    parse_device,
)

_MKDIR_PERM = 0o750
_CREATE_PERM = 0o666
_POLL_INTERVAL = 0.05


class DeviceSet:
    """An ordered set of device rules where no rule covers another."""

    def __init__(self) -> None:
        self._devices: list[Device] = []

    def __iter__(self) -> Iterator[Device]:
        return iter(self._devices)

    def __len__(self) -> int:
        return len(self._devices)

    def __str__(self) -> str:
        return "".join(str(dev) for dev in self._devices)

    def allow(self, dev: Device) -> None:
        """Add a rule unless it is already covered; drop the rules it covers."""
        if any(d == dev or d.is_wider_than(dev) for d in self._devices):
            return
        self._devices = [d for d in self._devices if not dev.is_wider_than(d)]
        self._devices.append(dev)

    def deny(self, dev: Device) -> None:
        """Remove the rules the given one covers and narrow the rules covering it."""
        kept: list[Device] = []
        for d in self._devices:
            if d == dev or dev.is_wider_than(d):
                continue
            if d.is_wider_than(dev):
                d = dataclasses.replace(d, modes=d.modes - dev.modes)
                if not d.modes:
                    continue
            kept.append(d)
        self._devices = kept


class FakeCgroup(Cgroup):
    """A cgroup directory whose allow and deny files are served by threads."""

    def __init__(self, path: str, devices: Iterable[str] = ()) -> None:
        super().__init__(path)
        self._lock = threading.Lock()
        self._devices = DeviceSet()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

        os.makedirs(path, mode=_MKDIR_PERM, exist_ok=True)
        try:
            for rule in devices:
                self._devices.allow(parse_device(rule))
            self._publish()
            self._serve_input(DEVICE_ALLOW_FILE_NAME, self._devices.allow)
            self._serve_input(DEVICE_DENY_FILE_NAME, self._devices.deny)

            if len(new_cgroups(path)) != 1:
                raise CgroupError(f"expected exactly 1 cgroup for path: {path}")
        except BaseException:
            self.close()
            raise

    def __enter__(self) -> FakeCgroup:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Stop serving the input files and remove the cgroup directory."""
        self._stop.set()
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        shutil.rmtree(self.path, ignore_errors=True)

    def _publish(self) -> None:
        list_path = os.path.join(self.path, DEVICE_LIST_FILE_NAME)
        tmp_path = os.path.join(self.path, "." + DEVICE_LIST_FILE_NAME + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(str(self._devices))
        os.chmod(tmp_path, _CREATE_PERM)
        os.replace(tmp_path, list_path)

    def _serve_input(self, file_name: str, consume: Callable[[Device], None]) -> None:
        fifo_path = os.path.join(self.path, file_name)
        with contextlib.suppress(FileNotFoundError):
            os.remove(fifo_path)
        os.mkfifo(fifo_path, _CREATE_PERM)
        fd = os.open(fifo_path, os.O_RDWR | os.O_NONBLOCK)

        thread = threading.Thread(target=self._read_loop, args=(fd, consume), daemon=True)
        self._threads.append(thread)
        thread.start()

    def _read_loop(self, fd: int, consume: Callable[[Device], None]) -> None:
        buffer = b""
        try:
            while not self._stop.is_set():
                ready, _, _ = select.select([fd], [], [], _POLL_INTERVAL)
                if not ready:
                    continue
                try:
                    chunk = os.read(fd, 4096)
                except BlockingIOError:
                    continue
                buffer += chunk
                *lines, buffer = buffer.split(b"\n")
                for line in lines:
                    self._handle_line(line.decode("utf-8", errors="replace"), consume)
        finally:
            os.close(fd)

    def _handle_line(self, line: str, consume: Callable[[Device], None]) -> None:
        try:
            dev = parse_device(line)
        except CgroupError:
            return
        with self._lock:
            consume(dev)
            self._publish()


def new_fake_cgroup(path: str) -> FakeCgroup:
    """Create a fake cgroup with some default k8s devices allowed."""
    return FakeCgroup(path, ("c 136:* rwm", "c *:* m", "b *:* m"))


def new_fake_wide_cgroup(path: str) -> FakeCgroup:
    """Create a fake cgroup with "a *:* rwm" allowed."""
    return FakeCgroup(path, ("a *:* rwm",))