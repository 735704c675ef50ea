import pytest

from sriovkit.tokens import from_env, is_token_id, new_token_id, to_env


def test_to_env():
    name, value = to_env("name", ["1", "2", "3"])
    assert name == "NSM_SRIOV_TOKENS_name"
    assert value == "1,2,3"


def test_from_env():
    envs = [
        "A=aaa",
        "NSM_SRIOV_TOKENS_name-1=1,2,3",
        "B=bbb",
        "NSM_SRIOV_TOKENS_name-2=4",
    ]
    assert from_env(envs) == {
        "name-1": ["1", "2", "3"],
        "name-2": ["4"],
    }


def test_to_env_from_env_round_trip():
    name, value = to_env("service.domain/10G", ["a", "b"])
    assert from_env([f"{name}={value}"]) == {"service.domain/10G": ["a", "b"]}


def test_from_env_without_value_is_error():
    with pytest.raises(ValueError):
        from_env(["NSM_SRIOV_TOKENS_name"])


def test_new_token_id_is_token_id():
    token_id = new_token_id()
    assert token_id.startswith("sriov-")
    assert is_token_id(token_id)


def test_new_token_ids_are_unique():
    assert len({new_token_id() for _ in range(50)}) == 50


@pytest.mark.parametrize(
    "value, expected",
    [
        ("sriov-xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx", True),
        ("sriov-xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxx", False),
        ("other-xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx", False),
        ("", False),
    ],
)
def test_is_token_id(value, expected):
    assert is_token_id(value) is expected