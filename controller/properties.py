"""
Runner Pool - Proxmox Property Lists

Proxmox stores several VM descriptors (meta, smbios1, net0, ...) as a single
comma separated `key=value` string:

    meta:    creation-qemu=8.1.2,ctime=1700000000
    smbios1: uuid=5b0f...,base64=1,serial=ZHM9bm9jbG91ZDtz...

PropertyList is an ordered, immutable mapping over such a string:
  - empty segments are ignored, bare keys (no '=') keep the value None
  - only the first '=' splits, so base64 padding in values survives
  - duplicate keys: the last occurrence wins
  - merged() keeps every unrelated key untouched and in place
  - equality ignores ordering
"""

from __future__ import annotations

from typing import Iterator, Mapping


class PropertyList(Mapping[str, "str | None"]):
    """Immutable ordered view of a `key=value,...` descriptor."""

    __slots__ = ("_items",)

    def __init__(self, items: Mapping[str, str | None] | None = None):
        self._items: dict[str, str | None] = dict(items or {})

    @classmethod
    def parse(cls, text: str | None) -> PropertyList:
        items: dict[str, str | None] = {}
        for segment in (text or "").split(","):
            segment = segment.strip()
            if not segment:
                continue
            key, sep, value = segment.partition("=")
            key = key.strip()
            if not key:
                continue
            items[key] = value if sep else None
        return cls(items)

    def merged(self, updates: Mapping[str, object]) -> PropertyList:
        """New list with `updates` applied; values are stringified, None stays bare."""
        items = dict(self._items)
        for key, value in updates.items():
            items[key] = None if value is None else str(value)
        return PropertyList(items)

    def serialize(self) -> str:
        return ",".join(
            key if value is None else f"{key}={value}"
            for key, value in self._items.items()
        )

    def get_int(self, key: str, default: int = 0) -> int:
        """Integer value of `key`, or `default` when missing or unparseable."""
        value = self._items.get(key)
        if value is None:
            return default
        try:
            return int(value.strip())
        except ValueError:
            return default

    def __getitem__(self, key: str) -> str | None:
        return self._items[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __str__(self) -> str:
        return self.serialize()

    def __repr__(self) -> str:
        return f"PropertyList({self.serialize()!r})"
