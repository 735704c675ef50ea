import os
import time

import pytest

from sriovkit.cgroup import new_cgroups, parse_device
from sriovkit.fake_cgroup import DeviceSet, new_fake_cgroup, new_fake_wide_cgroup


def _eventually(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _rules(*lines):
    return [parse_device(line) for line in lines]


def test_allow_ignores_covered_rule():
    ds = DeviceSet()
    ds.allow(parse_device("c *:* rwm"))
    ds.allow(parse_device("c 1:2 rwm"))
    assert list(ds) == _rules("c *:* rwm")


def test_allow_drops_narrower_rules():
    ds = DeviceSet()
    ds.allow(parse_device("c 1:2 rwm"))
    ds.allow(parse_device("c 1:3 rwm"))
    ds.allow(parse_device("c 1:* rwm"))
    assert list(ds) == _rules("c 1:* rwm")


def test_allow_same_rule_twice():
    ds = DeviceSet()
    ds.allow(parse_device("c 1:2 rwm"))
    ds.allow(parse_device("c 1:2 rwm"))
    assert len(ds) == 1


def test_deny_removes_covered_rules():
    ds = DeviceSet()
    ds.allow(parse_device("c 1:2 rwm"))
    ds.allow(parse_device("c 3:4 rwm"))
    ds.deny(parse_device("c 1:2 rwm"))
    assert list(ds) == _rules("c 3:4 rwm")


def test_deny_narrows_wider_rule():
    ds = DeviceSet()
    ds.allow(parse_device("a *:* rwm"))
    ds.deny(parse_device("c 1:2 rw"))
    assert str(ds) == "a *:* m\n"


@pytest.fixture
def fake(tmp_path):
    cg = new_fake_cgroup(str(tmp_path / "cg"))
    yield cg
    cg.close()


def test_fake_cgroup_is_found_by_new_cgroups(fake):
    found = new_cgroups(fake.path)
    assert [c.path for c in found] == [fake.path]


def test_fake_cgroup_defaults_listed(fake):
    with open(os.path.join(fake.path, "devices.list"), encoding="utf-8") as f:
        lines = f.read().splitlines()
    assert lines == ["c 136:* rwm", "c *:* m", "b *:* m"]
    assert fake.is_allowed(136, 1) is True
    assert fake.is_wider_than(1, 2) is False


def test_fake_cgroup_allow_then_deny(fake):
    assert fake.is_allowed(1, 2) is False
    fake.allow(1, 2)
    assert _eventually(lambda: fake.is_allowed(1, 2))
    fake.deny(1, 2)
    assert _eventually(lambda: not fake.is_allowed(1, 2))


def test_fake_cgroup_ignores_invalid_input(fake):
    with open(os.path.join(fake.path, "devices.allow"), "w", encoding="utf-8") as f:
        f.write("garbage\n")
    fake.allow(3, 4)
    _eventually(lambda: fake.is_allowed(3, 4))
    assert fake.is_allowed(3, 4) is True
    assert fake.is_allowed(136, 1) is True


def test_wide_cgroup_is_wider(tmp_path):
    with new_fake_wide_cgroup(str(tmp_path / "wide")) as cg:
        assert cg.is_wider_than(1, 2) is True
        assert cg.is_allowed(3, 4) is True


def test_close_removes_directory(tmp_path):
    path = tmp_path / "gone"
    cg = new_fake_cgroup(str(path))
    assert path.is_dir()
    cg.close()
    assert not path.exists()