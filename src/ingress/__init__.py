"""Ingress package: request classification and rewriting."""

from ingress.request import Request
from ingress.rules import (
    RuleError,
    RewriteRule,
    HeaderMatches,
    PathEquals,
    QueryParamAbsent,
    AppendQueryParam,
    default_rules,
    rules_from_config,
)
from ingress.engine import RuleEngine, is_upgrade_request

__all__ = [
    "Request",
    "RuleError",
    "RewriteRule",
    "HeaderMatches",
    "PathEquals",
    "QueryParamAbsent",
    "AppendQueryParam",
    "default_rules",
    "rules_from_config",
    "RuleEngine",
    "is_upgrade_request",
]
