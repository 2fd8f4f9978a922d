"""Ingress rule engine.

Classifies inbound requests against an ordered, static rule table and
returns a new request value; nothing is mutated and nothing is rejected.
A request that no rule recognises is returned unchanged (fail-open).
"""

import logging
from typing import Iterable

from ingress.request import Request

logger = logging.getLogger(__name__)


def _connection_tokens(request: Request) -> set[str]:
    tokens = set()
    for value in request.header_values("Connection"):
        tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
    return tokens


def is_upgrade_request(request: Request) -> bool:
    """True if the request asks for a protocol upgrade.

    Any Upgrade token is accepted; the control protocol uses its own
    token rather than ``websocket``.
    """
    upgrade = request.header("Upgrade")
    return bool(upgrade and upgrade.strip()) and "upgrade" in _connection_tokens(request)


class RuleEngine:
    """Ordered rewrite rule evaluation plus upgrade tagging."""

    def __init__(self, rules: Iterable = (), upgrade_paths: Iterable[str] = ()):
        self.rules = tuple(rules)
        self.upgrade_paths = frozenset(upgrade_paths)
        self._warn_shadowed_terminals()

    def _warn_shadowed_terminals(self):
        seen = {}
        for rule in self.rules:
            if not rule.terminal:
                continue
            if rule.predicates in seen:
                logger.warning(
                    "Terminal rule '%s' can never run: '%s' has the same predicates",
                    rule.name, seen[rule.predicates],
                )
            else:
                seen[rule.predicates] = rule.name

    def apply_rules(self, request: Request) -> Request:
        """Run the rule table over a request."""
        for rule in self.rules:
            if not rule.matches(request):
                continue
            rewritten = rule.transform.apply(request)
            if rewritten is not request:
                logger.debug(
                    "Rule %s: %s -> %s", rule.name, request.target, rewritten.target
                )
            request = rewritten
            if rule.terminal:
                break
        return request

    def classify(self, request: Request) -> Request:
        """Classify and conditionally rewrite a request.

        Returns:
            The input object itself when nothing applies, otherwise a new
            Request carrying the rewrite and/or the upgrade tag.
        """
        request = self.apply_rules(request)
        if request.path in self.upgrade_paths and is_upgrade_request(request):
            request = request.with_upgrade()
        return request
