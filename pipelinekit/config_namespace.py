"""Strict, consumed-keys configuration namespace helper for `pipelinekit`."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterable

_MISSING = object()


def _join_path(parent: str, key: str) -> str:
    if not parent:
        return key
    return f"{parent}.{key}"


class ConfigFieldError(ValueError):
    """A single config/descriptor field failed a rule.

    `path` is the dotted field path, `rule` a short human-readable statement of
    the rule that failed and `value` the observed value.
    """

    def __init__(self, path: str, rule: str, value: Any = None):
        self.path = path
        self.rule = rule
        self.value = value
        super().__init__(f"{path} {rule} (got {value!r})")


class ConfigTypeError(ConfigFieldError, TypeError):
    pass


@dataclass
class ConfigNamespace:
    """Small helper for strict mapping parsing with consumed-keys enforcement."""

    data: Mapping[str, Any]
    path: str
    _consumed: set[str] = field(default_factory=set, init=False, repr=False)
    _children: dict[str, "ConfigNamespace"] = field(default_factory=dict, init=False, repr=False)

    @classmethod
    def empty(cls, *, path: str) -> "ConfigNamespace":
        return cls({}, path=path)

    def field_path(self, key: str) -> str:
        return _join_path(self.path, key.strip())

    def consumed_keys(self) -> tuple[str, ...]:
        return tuple(sorted(self._consumed))

    def unconsumed_keys(self) -> tuple[str, ...]:
        return tuple(sorted((k for k in self.data.keys() if k not in self._consumed), key=str))

    def unknown_items(self) -> list[tuple[str, Any]]:
        """`(dotted_path, value)` for every key nobody read, including nested namespaces."""

        out = [(_join_path(self.path, str(key)), self.data[key]) for key in self.unconsumed_keys()]
        for child in self._children.values():
            out.extend(child.unknown_items())
        return out

    def unknown_paths(self) -> list[str]:
        return [path for path, _value in self.unknown_items()]

    def assert_consumed(self) -> None:
        unknown = self.unknown_paths()
        if unknown:
            consumed = ", ".join(self.consumed_keys()) or "<none>"
            raise ValueError(f"Unknown config keys: {', '.join(unknown)} (consumed: {consumed})")

    def has(self, key: str) -> bool:
        return key.strip() in self.data

    def _get_raw(self, key: str, *, default: Any) -> Any:
        if not isinstance(key, str) or not key.strip():
            raise TypeError("ConfigNamespace key must be a non-empty string")
        normalized = key.strip()
        if normalized in self._children:
            raise ValueError(f"{self.field_path(normalized)} already accessed as a nested namespace")

        self._consumed.add(normalized)
        if normalized not in self.data:
            if default is _MISSING:
                raise ConfigFieldError(self.field_path(normalized), "is required", None)
            return default
        return self.data.get(normalized)

    def get_raw(self, key: str, *, default: Any = _MISSING) -> Any:
        return self._get_raw(key, default=default)

    def namespace(
        self,
        key: str,
        *,
        default: Mapping[str, Any] | None | object = _MISSING,
    ) -> "ConfigNamespace":
        normalized = (key or "").strip()
        if not normalized:
            raise TypeError("ConfigNamespace key must be a non-empty string")
        if normalized in self._children:
            return self._children[normalized]

        child_path = _join_path(self.path, normalized)
        self._consumed.add(normalized)
        raw = self.data.get(normalized)
        if raw is None:
            if default is _MISSING:
                raise ConfigFieldError(child_path, "is required", None)
            child = ConfigNamespace(dict(default or {}), path=child_path)  # type: ignore[arg-type]
        elif not isinstance(raw, Mapping):
            raise ConfigTypeError(child_path, "must be a mapping", raw)
        else:
            child = ConfigNamespace(dict(raw), path=child_path)

        self._children[normalized] = child
        return child

    def get_bool(self, key: str, *, default: bool | object = _MISSING) -> bool:
        value = self._get_raw(key, default=default)
        if not isinstance(value, bool):
            raise ConfigTypeError(self.field_path(key), "must be a boolean", value)
        return value

    def get_int(
        self,
        key: str,
        *,
        default: int | object = _MISSING,
        min_value: int | None = None,
        max_value: int | None = None,
    ) -> int:
        value = self._get_raw(key, default=default)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigTypeError(self.field_path(key), "must be an int", value)
        if min_value is not None and value < min_value:
            raise ConfigFieldError(self.field_path(key), f"must be >= {min_value}", value)
        if max_value is not None and value > max_value:
            raise ConfigFieldError(self.field_path(key), f"must be <= {max_value}", value)
        return value

    def get_optional_int(
        self,
        key: str,
        *,
        min_value: int | None = None,
        max_value: int | None = None,
    ) -> int | None:
        if self._get_raw(key, default=None) is None:
            return None
        return self.get_int(key, min_value=min_value, max_value=max_value)

    def get_float(
        self,
        key: str,
        *,
        default: float | object = _MISSING,
        min_value: float | None = None,
        max_value: float | None = None,
    ) -> float:
        raw = self._get_raw(key, default=default)
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise ConfigTypeError(self.field_path(key), "must be a number", raw)
        value = float(raw)
        if min_value is not None and value < float(min_value):
            raise ConfigFieldError(self.field_path(key), f"must be >= {min_value}", raw)
        if max_value is not None and value > float(max_value):
            raise ConfigFieldError(self.field_path(key), f"must be <= {max_value}", raw)
        return value

    def get_str(
        self,
        key: str,
        *,
        default: str | None | object = _MISSING,
        allow_empty: bool = False,
        choices: Iterable[str] | None = None,
    ) -> str | None:
        raw = self._get_raw(key, default=default)
        if raw is None:
            if default is None:
                return None
            raise ConfigFieldError(self.field_path(key), "is required", None)
        if not isinstance(raw, str):
            raise ConfigTypeError(self.field_path(key), "must be a string", raw)
        value = raw.strip()
        if not value and not allow_empty:
            raise ConfigFieldError(self.field_path(key), "cannot be empty", raw)
        if choices is not None:
            choice_set = {str(item).strip() for item in choices if str(item).strip()}
            if value not in choice_set:
                allowed = ", ".join(sorted(choice_set)) or "<none>"
                raise ConfigFieldError(self.field_path(key), f"must be one of: {allowed}", raw)
        return value

    def get_list_str(
        self,
        key: str,
        *,
        default: list[str] | tuple[str, ...] | object = _MISSING,
        allow_empty: bool = False,
    ) -> list[str]:
        raw = self._get_raw(key, default=default)
        if not isinstance(raw, (list, tuple)):
            raise ConfigTypeError(self.field_path(key), "must be a list of strings", raw)

        items: list[str] = []
        for idx, item in enumerate(raw):
            item_path = f"{self.field_path(key)}[{idx}]"
            if not isinstance(item, str):
                raise ConfigTypeError(item_path, "must be a string", item)
            trimmed = item.strip()
            if not trimmed:
                raise ConfigFieldError(item_path, "cannot be empty", item)
            items.append(trimmed)

        if not items and not allow_empty:
            raise ConfigFieldError(self.field_path(key), "cannot be empty", raw)
        return items

    def get_str_mapping(self, key: str, *, default: Mapping[str, str] | object = _MISSING) -> dict[str, str]:
        raw = self._get_raw(key, default=default)
        if not isinstance(raw, Mapping):
            raise ConfigTypeError(self.field_path(key), "must be a mapping of strings", raw)
        out: dict[str, str] = {}
        for item_key, item_value in raw.items():
            if not isinstance(item_key, str) or not isinstance(item_value, str):
                raise ConfigTypeError(
                    f"{self.field_path(key)}.{item_key}", "must map a string to a string", item_value
                )
            out[item_key] = item_value
        return out
