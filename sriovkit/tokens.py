"""Storing and loading SR-IOV tokens to and from environment variables."""

from __future__ import annotations

import uuid
from collections.abc import Iterable

ENV_PREFIX = "NSM_SRIOV_TOKENS_"
_SRIOV_PREFIX = "sriov-"
_TOKEN_ID_LEN = len(_SRIOV_PREFIX) + len(str(uuid.UUID(int=0)))


def to_env(token_name: str, token_ids: Iterable[str]) -> tuple[str, str]:
    """Return a (name, value) pair storing the given tokens in an env variable."""
    return f"{ENV_PREFIX}{token_name}", ",".join(token_ids)


def from_env(envs: Iterable[str]) -> dict[str, list[str]]:
    """Return all tokens stored in a list of "NAME=VALUE" environment entries."""
    tokens: dict[str, list[str]] = {}
    for env in envs:
        if not env.startswith(ENV_PREFIX):
            continue
        name_ids = env[len(ENV_PREFIX):].split("=")
        if len(name_ids) < 2:
            raise ValueError(f"invalid token environment entry: {env}")
        tokens[name_ids[0]] = name_ids[1].split(",")
    return tokens


def new_token_id() -> str:
    """Return a new SR-IOV token ID."""
    return _SRIOV_PREFIX + str(uuid.uuid4())


def is_token_id(s: str) -> bool:
    """Return whether the given string is an SR-IOV token ID."""
    return s.startswith(_SRIOV_PREFIX) and len(s) == _TOKEN_ID_LEN