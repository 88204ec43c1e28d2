"""Small helpers shared across the package."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Hashable, Iterator, Mapping, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass(frozen=True)
class JSONInfo:
    """How a field is treated when encoded as JSON."""

    omit: bool = False
    name: str = ""
    settings: frozenset[str] = field(default_factory=frozenset)


def field_json_info(name: str, tag: str | None = None, exported: bool = True) -> JSONInfo:
    """Describe a field from its name, its JSON tag (None if untagged) and visibility.

    A tag of "-" omits the field; "-," names it "-". Options after the first
    comma, such as "omitempty", become settings.
    """
    if not exported:
        return JSONInfo(omit=True)
    if tag is None:
        return JSONInfo(name=name)
    tag_name, found, rest = tag.partition(",")
    if tag_name == "-" and not found:
        return JSONInfo(omit=True)
    settings = frozenset(rest.split(",")) if rest else frozenset()
    return JSONInfo(name=tag_name or name, settings=settings)


def sorted_items(mapping: Mapping[K, V]) -> Iterator[tuple[K, V]]:
    """Yield the entries of mapping in key order."""
    for key in sorted(mapping):
        yield key, mapping[key]


def key_list(mapping: Mapping[K, Any]) -> list[K]:
    """Return the keys of mapping as a list."""
    return list(mapping)


class _WrappedError(Exception):
    """An error annotated with context; the original is its __cause__."""


def wrapf(err: BaseException | None, fmt: str, *args: Any) -> BaseException | None:
    """Return err prefixed with a formatted message, or None if err is None."""
    if err is None:
        return None
    prefix = fmt % args if args else fmt
    wrapped = _WrappedError(f"{prefix}: {err}")
    wrapped.__cause__ = err
    return wrapped