from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .errors import InvalidPath

if TYPE_CHECKING:
    from collections.abc import Iterable

DATA_SUBPATH = "/data"

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def join_path(base: str, suffix: str) -> str:
    """Join two path fragments with exactly one slash between them."""
    if base.endswith("/") and suffix.startswith("/"):
        return base + suffix[1:]
    if not base.endswith("/") and not suffix.startswith("/"):
        return f"{base}/{suffix}"
    return base + suffix


def _compile(pattern: str) -> re.Pattern[str]:
    if pattern.endswith("*"):
        head, tail = pattern[:-1], "(?P<rest>.*)"
    else:
        head, tail = pattern, ""
    parts: list[str] = []
    position = 0
    for match in _PLACEHOLDER.finditer(head):
        parts.append(re.escape(head[position : match.start()]))
        parts.append(f"(?P<{match.group(1)}>[^/]+)")
        position = match.end()
    parts.append(re.escape(head[position:]))
    return re.compile("".join(parts) + tail + r"\Z")


@dataclass(frozen=True)
class RouteRule:
    """Maps request paths matching ``pattern`` to an object path suffix.

    ``pattern`` is a literal path prefix that may contain ``{name}`` segment
    placeholders and end in ``*``. ``template`` is formatted with the named
    segments, ``rest`` (whatever ``*`` matched) and ``path`` (the full request
    path).
    """

    name: str
    pattern: str
    template: str
    _regex: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_regex", _compile(self.pattern))

    @property
    def is_catch_all(self) -> bool:
        return self.pattern == "/*"

    def rewrite(self, path: str) -> str | None:
        match = self._regex.match(path)
        if match is None:
            return None
        return self.template.format(path=path, **match.groupdict())


DEFAULT_RULES: tuple[RouteRule, ...] = (
    RouteRule("manifests", "/manifests/*", "{path}"),
    RouteRule("apps", "/apps/{app}/*", DATA_SUBPATH + "/{rest}"),
    RouteRule("catch-all", "/*", DATA_SUBPATH + "{path}"),
)


class RouteTable:
    """Ordered, immutable rule list; the first matching rule wins."""

    def __init__(self, rules: Iterable[RouteRule] = DEFAULT_RULES) -> None:
        self._rules = tuple(rules)
        catch_alls = [rule for rule in self._rules if rule.is_catch_all]
        if len(catch_alls) != 1:
            msg = f"expected exactly one catch-all rule, got {len(catch_alls)}"
            raise ValueError(msg)
        if not self._rules[-1].is_catch_all:
            msg = "the catch-all rule must be declared last"
            raise ValueError(msg)

    @property
    def rules(self) -> tuple[RouteRule, ...]:
        return self._rules

    @property
    def catch_all(self) -> RouteRule:
        return self._rules[-1]

    def resolve(self, request_path: str, prefix: str) -> str:
        """Return ``<prefix>/<rewritten-suffix>`` for the first matching rule."""
        for rule in self._rules:
            suffix = rule.rewrite(request_path)
            if suffix is not None:
                return join_path(prefix, suffix)
        # only paths without a leading slash get here
        raise InvalidPath(request_path)

    def resolve_catch_all(self, request_path: str, prefix: str) -> str:
        suffix = self.catch_all.rewrite(request_path)
        if suffix is None:
            raise InvalidPath(request_path)
        return join_path(prefix, suffix)


def resolve(
    request_path: str, rules: RouteTable | Iterable[RouteRule], prefix: str
) -> str:
    """Resolve an inbound URL path to a full ``/<bucket>/<key>`` object path."""
    table = rules if isinstance(rules, RouteTable) else RouteTable(rules)
    return table.resolve(request_path, prefix)
