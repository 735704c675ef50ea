"""Pool of SR-IOV resource tokens shared between service domains and capabilities."""

from __future__ import annotations

import posixpath
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import IntEnum

from sriovkit import tokens as sriov_tokens
from sriovkit.config import Config


class TokenPoolError(Exception):
    """Raised on an invalid token or an invalid token state transition."""


class TokenState(IntEnum):
    """State of a single token."""

    FREE = 0
    ALLOCATED = 1
    IN_USE = 2
    CLOSED = 3

    def __str__(self) -> str:
        return ("free", "allocated", "inUse", "closed")[self.value]


@dataclass
class _Token:
    id: str
    name: str
    state: TokenState = TokenState.FREE


class TokenPool:
    """Manages forwarder SR-IOV resource tokens; safe to use from several threads."""

    def __init__(self, cfg: Config) -> None:
        self._tokens: dict[str, _Token] = {}
        self._tokens_by_names: dict[str, list[_Token]] = {}
        self._closed_tokens: dict[str, list[_Token]] = {}
        self._listeners: list[Callable[[], None]] = []
        self._lock = threading.Lock()
        self._dirty = False

        for pf in cfg.physical_functions.values():
            for service_domain in pf.service_domains:
                for capability in pf.capabilities:
                    name = posixpath.join(service_domain, capability)
                    for _ in pf.virtual_functions:
                        tok = _Token(id=sriov_tokens.new_token_id(), name=name)
                        self._tokens[tok.id] = tok
                        self._tokens_by_names.setdefault(name, []).append(tok)

    def restore(self, tokens: Mapping[str, Iterable[str]]) -> None:
        """Replace existing token IDs with the given ones and mark them allocated.

        Only an untouched pool can be restored.
        """
        with self._lock:
            if self._dirty:
                raise TokenPoolError("token pool has already been accessed")
            self._dirty = True

            for name, ids in tokens.items():
                toks = self._tokens_by_names.get(name)
                if toks is None:
                    continue
                for tok, new_id in zip(toks, ids):
                    del self._tokens[tok.id]
                    tok.id = new_id
                    tok.state = TokenState.ALLOCATED
                    self._tokens[tok.id] = tok

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Add a listener fired when tokens change state to or from closed."""
        with self._lock:
            self._listeners.append(listener)

    def tokens(self) -> dict[str, dict[str, bool]]:
        """Return token IDs by name, each marked as available or not."""
        with self._lock:
            self._dirty = True
            return {
                name: {tok.id: tok.state is not TokenState.CLOSED for tok in toks}
                for name, toks in self._tokens_by_names.items()
            }

    def find(self, id: str) -> str:
        """Return the name of the token with the given ID."""
        with self._lock:
            self._dirty = True
            return self._find(id).name

    def allocate(self, id: str) -> None:
        """Mark a token as allocated.

        free -> allocated, allocated -> allocated, inUse -> allocated (stops
        using it), closed -> error.
        """
        with self._lock:
            self._dirty = True
            tok = self._find(id)
            if tok.state is TokenState.IN_USE:
                self._stop_using(id)
                return
            if tok.state is TokenState.CLOSED:
                raise TokenPoolError(f"token is closed: {tok.name}:{tok.id}")
            tok.state = TokenState.ALLOCATED

    def free(self, id: str) -> None:
        """Mark a token as free.

        free -> free, allocated -> free, inUse -> free (stops using it first),
        closed -> closed.
        """
        with self._lock:
            self._dirty = True
            tok = self._find(id)
            if tok.state is TokenState.IN_USE:
                try:
                    self._stop_using(id)
                except TokenPoolError:
                    pass
            elif tok.state is TokenState.CLOSED:
                return
            tok.state = TokenState.FREE

    def use(self, id: str, names: Iterable[str]) -> None:
        """Mark a token as in use and close one token for each other given name.

        free -> inUse, allocated -> inUse, inUse -> error, closed -> error.
        """
        with self._lock:
            self._dirty = True
            tok = self._find(id)
            if tok.state in (TokenState.IN_USE, TokenState.CLOSED):
                raise TokenPoolError(f"token is {tok.state}: {tok.name}:{tok.id}")
            tok.state = TokenState.IN_USE

            for name in names:
                if name == tok.name:
                    continue
                to_close = self._find_to_close(name)
                if to_close is None:
                    continue
                to_close.state = TokenState.CLOSED
                self._closed_tokens.setdefault(tok.id, []).append(to_close)

            self._notify()

    def stop_using(self, id: str) -> None:
        """Mark an in-use token as allocated and free the tokens it closed."""
        with self._lock:
            self._dirty = True
            self._stop_using(id)

    def to_env(self, token_name: str, token_ids: Iterable[str]) -> tuple[str, str]:
        """Return a (name, value) pair storing the given tokens in an env variable."""
        return sriov_tokens.to_env(token_name, token_ids)

    def _find(self, id: str) -> _Token:
        try:
            return self._tokens[id]
        except KeyError:
            raise TokenPoolError(f"token doesn't exist: {id}") from None

    def _find_to_close(self, name: str) -> _Token | None:
        toks = self._tokens_by_names.get(name, [])
        for wanted in (TokenState.FREE, TokenState.ALLOCATED):
            for tok in toks:
                if tok.state is wanted:
                    return tok
        return None

    def _stop_using(self, id: str) -> None:
        tok = self._find(id)
        if tok.state is not TokenState.IN_USE:
            raise TokenPoolError(f"token is not in use: {tok.name}:{tok.id} - {tok.state}")
        tok.state = TokenState.ALLOCATED

        for closed in self._closed_tokens.pop(tok.id, []):
            closed.state = TokenState.FREE

        self._notify()

    def _notify(self) -> None:
        for listener in self._listeners:
            threading.Thread(target=listener, daemon=True).start()