"""Runtime configuration for a Database."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from typing import Any, Callable


def _new_lock_token() -> str:
    return uuid.uuid4().hex


@dataclass
class OrmConfig:
    """Settings that change how records are loaded and saved.

    Attributes:
        strict_loading: Reading a column the query did not select raises
            FieldNotLoadedError. When False, such reads return None.
        atomic_cascades: Run each save/delete cascade inside one store
            transaction when the store offers ``transaction()``.
        default_timeout: Seconds allowed for an operation when the caller
            supplies no context. None means no deadline.
        lock_token_factory: Produces a fresh optimistic lock token.
    """

    strict_loading: bool = True
    atomic_cascades: bool = True
    default_timeout: float | None = None
    lock_token_factory: Callable[[], Any] = field(default=_new_lock_token)

    @classmethod
    def from_mapping(cls, settings: dict[str, Any]) -> OrmConfig:
        """Build a config from plain settings, e.g. a parsed settings file.

        Raises:
            ValueError: If a key is not a config field or a value has the
                wrong type.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(settings) - known)
        if unknown:
            raise ValueError(f"Unknown config settings: {unknown}")

        values = dict(settings)
        for name in ("strict_loading", "atomic_cascades"):
            if name in values and not isinstance(values[name], bool):
                raise ValueError(f"Config setting '{name}' must be a boolean")
        timeout = values.get("default_timeout")
        if timeout is not None:
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
                raise ValueError("Config setting 'default_timeout' must be a number")
            if timeout <= 0:
                raise ValueError("Config setting 'default_timeout' must be positive")
            values["default_timeout"] = float(timeout)
        if "lock_token_factory" in values and not callable(values["lock_token_factory"]):
            raise ValueError("Config setting 'lock_token_factory' must be callable")
        return cls(**values)
