"""Versioned application state shared by the sync components.

The store is an explicit object, not a module global: components receive
it at construction, or pick up the one installed by ``StateStore.provide()``
through ``use_store()``. Using ``use_store()`` outside a provider is a
programming error and raises immediately.

Every ``update`` is one transaction: one version bump, one persistence
write and one notification carrying the set of keys that changed, however
many keys it touched.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Mapping, Optional, Union

from marketsync.config.constants import APP_STATE_KEY
from marketsync.core.models import PortfolioSnapshot, positions_from_payload
from marketsync.utils.kv_cache import KeyValueStore
from marketsync.utils.logging import get_logger
from marketsync.utils.validation import optional_float


logger = get_logger("store")

Subscriber = Callable[[FrozenSet[str]], None]
Changes = Union[Mapping[str, Any], Callable[[Mapping[str, Any]], Mapping[str, Any]]]

STATE_KEYS = (
    "wallet_address",
    "balance",
    "positions",
    "prices",
    "portfolio",
    "refreshing",
    "last_error",
)
TRANSIENT_KEYS = frozenset({"refreshing", "last_error"})

_current_store: ContextVar[Optional["StateStore"]] = ContextVar("marketsync_store", default=None)


class StoreUnavailableError(RuntimeError):
    """Raised when state is requested outside a ``StateStore.provide()`` scope."""


def default_state() -> Dict[str, Any]:
    return {
        "wallet_address": None,
        "balance": None,
        "positions": [],
        "prices": {},
        "portfolio": None,
        "refreshing": False,
        "last_error": None,
    }


def use_store() -> "StateStore":
    store = _current_store.get()
    if store is None:
        raise StoreUnavailableError("use_store() must be called within StateStore.provide()")
    return store


class StateStore:
    def __init__(self, persistence: Optional[KeyValueStore] = None, key: str = APP_STATE_KEY):
        self._persistence = persistence
        self._key = key
        self._state: Dict[str, Any] = default_state()
        self._subscribers: List[Subscriber] = []
        self.version = 0

    @classmethod
    def load(cls, persistence: KeyValueStore, key: str = APP_STATE_KEY) -> "StateStore":
        """Create a store rehydrated from the last persisted snapshot."""
        store = cls(persistence, key)
        store._rehydrate()
        return store

    @contextmanager
    def provide(self) -> Iterator["StateStore"]:
        token = _current_store.set(self)
        try:
            yield self
        finally:
            _current_store.reset(token)

    def get(self, key: str, default: Any = None) -> Any:
        value = self._state.get(key)
        return default if value is None else value

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._state)

    def set(self, key: str, value: Any) -> bool:
        return self.update({key: value})

    def update(self, changes: Optional[Changes] = None, **kwargs: Any) -> bool:
        """Apply ``changes`` atomically; returns whether anything changed.

        ``changes`` may be a mapping or a function of the current state
        returning one.
        """
        if callable(changes):
            changes = changes(dict(self._state))
        merged: Dict[str, Any] = dict(changes or {})
        merged.update(kwargs)

        unknown = set(merged) - set(STATE_KEYS)
        if unknown:
            raise KeyError(f"unknown state keys: {sorted(unknown)}")

        changed = frozenset(
            k for k, v in merged.items() if not (self._state[k] is v or self._state[k] == v)
        )
        if not changed:
            return False

        for k in changed:
            self._state[k] = merged[k]
        self.version += 1
        if changed - TRANSIENT_KEYS:
            self._persist()
        self._notify(changed)
        return True

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def reset(self) -> None:
        """Restore defaults and drop the persisted snapshot (logout)."""
        changed = frozenset(k for k, v in default_state().items() if self._state[k] != v)
        self._state = default_state()
        self.version += 1
        if self._persistence is not None:
            self._persistence.delete(self._key)
        logger.info("State reset")
        if changed:
            self._notify(changed)

    def _notify(self, changed: FrozenSet[str]) -> None:
        for callback in list(self._subscribers):
            callback(changed)

    def _serialize(self) -> str:
        portfolio = self._state["portfolio"]
        return json.dumps(
            {
                "wallet_address": self._state["wallet_address"],
                "balance": self._state["balance"],
                "positions": [p.to_dict() for p in self._state["positions"]],
                "prices": dict(self._state["prices"]),
                "portfolio": portfolio.to_dict() if portfolio is not None else None,
            }
        )

    def _persist(self) -> None:
        if self._persistence is None:
            return
        try:
            self._persistence.put(self._key, self._serialize())
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Could not persist application state: %s", exc)

    def _rehydrate(self) -> None:
        if self._persistence is None:
            return
        try:
            raw = self._persistence.get(self._key)
            if raw is None:
                return
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError(f"persisted state is a {type(data).__name__}")
            prices = {
                str(k): float(v)
                for k, v in (data.get("prices") or {}).items()
                if optional_float(v) is not None
            }
            portfolio = data.get("portfolio")
            self._state.update(
                wallet_address=data.get("wallet_address"),
                balance=optional_float(data.get("balance")),
                positions=positions_from_payload(data.get("positions") or []),
                prices=prices,
                portfolio=PortfolioSnapshot.from_dict(portfolio) if isinstance(portfolio, dict) else None,
            )
        except (AttributeError, TypeError, ValueError) as exc:
            logger.warning("Discarding corrupted persisted state: %s", exc)
            self._persistence.delete(self._key)
            self._state = default_state()
            return
        logger.info(
            "Rehydrated state: %d positions, %d prices", len(self._state["positions"]), len(self._state["prices"])
        )
