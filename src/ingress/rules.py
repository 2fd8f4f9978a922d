"""Rewrite rule table for the ingress.

A rule is an ordered list of predicates evaluated as a conjunction, a
query-string transform, and a terminal flag. Rule tables are tuples built
once at startup.

Predicates:
- HeaderMatches: header present and its value matches a regex
- PathEquals: exact path match
- QueryParamAbsent: no query parameter with the given name

Transform:
- AppendQueryParam: append name=value unless the name is already present

Config format (YAML, under the ``rules`` key):

    rules:
      - name: ios-capability-version
        match:
          - header: User-Agent
            pattern: "Tailscale.*iOS"
            ignore_case: true
          - path: /key
          - query_absent: v
        append:
          name: v           # value defaults to capability_version
        terminal: true
"""

import re
from dataclasses import dataclass, field
from typing import Optional, Protocol

from ingress.request import Request, CLIENT_ID_HEADER


class RuleError(Exception):
    """Invalid rule table entry."""

    def __init__(self, message: str, rule: Optional[str] = None):
        self.rule = rule
        self.message = message
        super().__init__(f"rule {rule}: {message}" if rule else message)


class Predicate(Protocol):
    def matches(self, request: Request) -> bool: ...


@dataclass(frozen=True)
class HeaderMatches:
    """Header is present and its first value matches ``pattern`` (search)."""

    name: str
    pattern: str
    ignore_case: bool = False
    _compiled: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        try:
            compiled = re.compile(self.pattern, re.IGNORECASE if self.ignore_case else 0)
        except re.error as e:
            raise RuleError(f"invalid header pattern {self.pattern!r}: {e}") from e
        object.__setattr__(self, "_compiled", compiled)

    def matches(self, request: Request) -> bool:
        value = request.header(self.name)
        if not value:
            return False
        return self._compiled.search(value) is not None


@dataclass(frozen=True)
class PathEquals:
    path: str

    def matches(self, request: Request) -> bool:
        return request.path == self.path


@dataclass(frozen=True)
class QueryParamAbsent:
    name: str

    def matches(self, request: Request) -> bool:
        return not request.has_query_param(self.name)


@dataclass(frozen=True)
class AppendQueryParam:
    """Append ``name=value`` to the query string.

    Never replaces an existing parameter, so applying the transform to its
    own output is a no-op.
    """

    name: str
    value: str

    def apply(self, request: Request) -> Request:
        if request.has_query_param(self.name):
            return request
        return request.with_query_param(self.name, self.value)


@dataclass(frozen=True)
class RewriteRule:
    name: str
    predicates: tuple
    transform: AppendQueryParam
    terminal: bool = True

    def matches(self, request: Request) -> bool:
        return all(p.matches(request) for p in self.predicates)


def default_rules(capability_version: int) -> tuple:
    """Built-in rule table.

    iOS clients omit the capability version when fetching the server key,
    so the backend answers with a legacy key format they cannot use.
    """
    return (
        RewriteRule(
            name="ios-capability-version",
            predicates=(
                HeaderMatches(CLIENT_ID_HEADER, r"Tailscale.*iOS", ignore_case=True),
                PathEquals("/key"),
                QueryParamAbsent("v"),
            ),
            transform=AppendQueryParam("v", str(capability_version)),
            terminal=True,
        ),
    )


def _predicate_from_dict(item: dict, rule_name: str):
    if not isinstance(item, dict):
        raise RuleError(f"predicate must be a mapping, got {item!r}", rule_name)
    if "header" in item:
        if "pattern" not in item:
            raise RuleError("header predicate requires 'pattern'", rule_name)
        return HeaderMatches(
            str(item["header"]),
            str(item["pattern"]),
            ignore_case=bool(item.get("ignore_case", False)),
        )
    if "path" in item:
        return PathEquals(str(item["path"]))
    if "query_absent" in item:
        return QueryParamAbsent(str(item["query_absent"]))
    raise RuleError(f"unknown predicate: {sorted(item)}", rule_name)


def rule_from_dict(data: dict, capability_version: int) -> RewriteRule:
    """Create a rule from its config mapping.

    Raises:
        RuleError: On missing or malformed fields
    """
    if not isinstance(data, dict):
        raise RuleError(f"rule must be a mapping, got {data!r}")
    name = str(data.get("name", "")).strip()
    if not name:
        raise RuleError("rule requires a 'name'")

    match = data.get("match")
    if not isinstance(match, list) or not match:
        raise RuleError("'match' must be a non-empty list", name)
    try:
        predicates = tuple(_predicate_from_dict(item, name) for item in match)
    except RuleError as e:
        if e.rule is None:
            raise RuleError(e.message, name) from e
        raise

    append = data.get("append")
    if not isinstance(append, dict) or not append.get("name"):
        raise RuleError("'append' requires a 'name'", name)
    value = append.get("value", capability_version)

    return RewriteRule(
        name=name,
        predicates=predicates,
        transform=AppendQueryParam(str(append["name"]), str(value)),
        terminal=bool(data.get("terminal", True)),
    )


def rules_from_config(entries: list, capability_version: int) -> tuple:
    """Load an ordered rule table from config entries."""
    if not isinstance(entries, list):
        raise RuleError("'rules' must be a list")
    rules = tuple(rule_from_dict(entry, capability_version) for entry in entries)
    names = [rule.name for rule in rules]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise RuleError(f"duplicate rule names: {', '.join(duplicates)}")
    return rules
