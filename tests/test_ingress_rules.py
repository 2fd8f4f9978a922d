"""Tests for ingress/request.py and ingress/rules.py."""

import pytest

from ingress.request import Request
from ingress.rules import (
    AppendQueryParam,
    HeaderMatches,
    PathEquals,
    QueryParamAbsent,
    RewriteRule,
    RuleError,
    default_rules,
    rule_from_dict,
    rules_from_config,
)

IOS_UA = "Tailscale iOS/1.50.0"


def make_request(target="/key", user_agent=IOS_UA, method="GET", extra=()):
    headers = [("Host", "hs.example.ts.net")]
    if user_agent is not None:
        headers.append(("User-Agent", user_agent))
    headers.extend(extra)
    return Request.from_target(method, target, headers)


class TestRequest:
    """Tests for the Request value type."""

    def test_from_target_splits_query(self):
        """Path and raw query string are separated."""
        req = Request.from_target("GET", "/key?a=1&b=2", [])
        assert req.path == "/key"
        assert req.query_string == "a=1&b=2"
        assert req.target == "/key?a=1&b=2"

    def test_from_target_without_query(self):
        """Target without '?' has an empty query."""
        req = Request.from_target("GET", "/machine/register", [])
        assert req.query_string == ""
        assert req.target == "/machine/register"

    def test_header_lookup_is_case_insensitive(self):
        """header() ignores name case and returns the first value."""
        req = make_request(extra=[("X-Test", "one"), ("x-test", "two")])
        assert req.header("x-TEST") == "one"
        assert req.header_values("X-Test") == ["one", "two"]
        assert req.header("Missing") is None

    def test_client_id_is_user_agent(self):
        """client_id reads the User-Agent header."""
        assert make_request().client_id == IOS_UA
        assert make_request(user_agent=None).client_id is None

    def test_query_params_keep_order_and_blanks(self):
        """query_params preserves order and blank values."""
        req = Request.from_target("GET", "/x?b=2&a=&b=3", [])
        assert req.query_params == [("b", "2"), ("a", ""), ("b", "3")]
        assert req.has_query_param("a")
        assert not req.has_query_param("c")

    def test_with_query_param_appends_to_raw_query(self):
        """Existing query text is kept byte-for-byte."""
        req = Request.from_target("GET", "/key?key=A%2Fb", [])
        out = req.with_query_param("v", "88")
        assert out.target == "/key?key=A%2Fb&v=88"
        assert req.target == "/key?key=A%2Fb"

    def test_with_query_param_on_empty_query(self):
        """No leading '&' when the query was empty."""
        req = Request.from_target("GET", "/key", [])
        assert req.with_query_param("v", "88").target == "/key?v=88"

    def test_request_is_immutable(self):
        """Request values cannot be mutated."""
        req = make_request()
        with pytest.raises(AttributeError):
            req.path = "/other"


class TestPredicates:
    """Tests for rule predicates."""

    def test_header_matches_search(self):
        """HeaderMatches uses regex search on the header value."""
        pred = HeaderMatches("User-Agent", r"Tailscale.*iOS")
        assert pred.matches(make_request())
        assert pred.matches(make_request(user_agent="Mozilla Tailscale-iOS build"))
        assert not pred.matches(make_request(user_agent="Tailscale Android/1.50.0"))

    def test_header_matches_case_sensitive_by_default(self):
        """Without ignore_case the pattern is matched as written."""
        pred = HeaderMatches("User-Agent", r"Tailscale.*iOS")
        assert not pred.matches(make_request(user_agent="tailscale ios/1.50.0"))

    def test_header_matches_ignore_case(self):
        """ignore_case matches any letter case."""
        pred = HeaderMatches("User-Agent", r"Tailscale.*iOS", ignore_case=True)
        assert pred.matches(make_request(user_agent="tailscale ios/1.50.0"))
        assert pred.matches(make_request(user_agent="TAILSCALE-IOS"))
        assert not pred.matches(make_request(user_agent="tailscale android/1.50.0"))

    def test_header_matches_missing_header(self):
        """Missing or empty header never matches."""
        pred = HeaderMatches("User-Agent", r".*")
        assert not pred.matches(make_request(user_agent=None))
        assert not pred.matches(make_request(user_agent=""))

    def test_header_matches_invalid_pattern(self):
        """Bad regex raises RuleError at construction."""
        with pytest.raises(RuleError):
            HeaderMatches("User-Agent", "Tailscale(")

    def test_path_equals_is_exact(self):
        """PathEquals does not prefix-match."""
        pred = PathEquals("/key")
        assert pred.matches(make_request("/key?x=1"))
        assert not pred.matches(make_request("/keys"))
        assert not pred.matches(make_request("/key/"))

    def test_query_param_absent(self):
        """QueryParamAbsent checks parameter names only."""
        pred = QueryParamAbsent("v")
        assert pred.matches(make_request("/key"))
        assert pred.matches(make_request("/key?vv=1"))
        assert not pred.matches(make_request("/key?v=1"))
        assert not pred.matches(make_request("/key?v="))


class TestAppendQueryParam:
    """Tests for the append transform."""

    def test_appends_when_absent(self):
        """Parameter is added when missing."""
        out = AppendQueryParam("v", "88").apply(make_request("/key"))
        assert out.target == "/key?v=88"

    def test_never_overrides(self):
        """An existing parameter is left alone and the same object returned."""
        req = make_request("/key?v=71")
        assert AppendQueryParam("v", "88").apply(req) is req

    def test_idempotent(self):
        """Applying the transform to its own output is a no-op."""
        transform = AppendQueryParam("v", "88")
        once = transform.apply(make_request("/key"))
        assert transform.apply(once) is once


class TestDefaultRules:
    """Tests for the built-in rule table."""

    def test_single_ios_rule(self):
        """Built-in table holds the iOS capability rule."""
        rules = default_rules(88)
        assert len(rules) == 1
        rule = rules[0]
        assert rule.name == "ios-capability-version"
        assert rule.terminal
        assert rule.transform == AppendQueryParam("v", "88")

    def test_capability_version_is_configurable(self):
        """The appended value follows the configured version."""
        rule = default_rules(95)[0]
        assert rule.transform.apply(make_request("/key")).target == "/key?v=95"

    def test_rule_matches_conjunction(self):
        """All predicates must hold."""
        rule = default_rules(88)[0]
        assert rule.matches(make_request("/key"))
        assert not rule.matches(make_request("/key?v=88"))
        assert not rule.matches(make_request("/other"))
        assert not rule.matches(make_request("/key", user_agent="curl/8.0"))

    @pytest.mark.parametrize("user_agent", [
        "Tailscale iOS/1.50.0",
        "tailscale ios/1.50.0",
        "Tailscale-IOS/1.62",
    ])
    def test_ios_match_ignores_case(self, user_agent):
        """The iOS client is recognised whatever the letter case."""
        rule = default_rules(88)[0]
        assert rule.matches(make_request("/key", user_agent=user_agent))

    def test_rules_are_immutable(self):
        """Rule table is a tuple of frozen rules."""
        rules = default_rules(88)
        assert isinstance(rules, tuple)
        with pytest.raises(AttributeError):
            rules[0].terminal = False


class TestRulesFromConfig:
    """Tests for loading rules from config mappings."""

    def test_full_rule(self):
        """All predicate kinds and an explicit value load."""
        rule = rule_from_dict({
            "name": "android-key",
            "match": [
                {"header": "User-Agent", "pattern": "Android"},
                {"path": "/key"},
                {"query_absent": "v"},
            ],
            "append": {"name": "v", "value": 90},
            "terminal": False,
        }, 88)
        assert rule == RewriteRule(
            name="android-key",
            predicates=(
                HeaderMatches("User-Agent", "Android"),
                PathEquals("/key"),
                QueryParamAbsent("v"),
            ),
            transform=AppendQueryParam("v", "90"),
            terminal=False,
        )

    def test_header_ignore_case_option(self):
        """Header predicates accept ignore_case from config."""
        rule = rule_from_dict({
            "name": "r",
            "match": [{"header": "User-Agent", "pattern": "android", "ignore_case": True}],
            "append": {"name": "v"},
        }, 88)
        assert rule.predicates == (HeaderMatches("User-Agent", "android", ignore_case=True),)
        assert rule.matches(make_request("/key", user_agent="Tailscale Android/1.50.0"))

    def test_value_defaults_to_capability_version(self):
        """append.value falls back to the capability version."""
        rule = rule_from_dict({
            "name": "r", "match": [{"path": "/key"}], "append": {"name": "v"},
        }, 77)
        assert rule.transform.value == "77"
        assert rule.terminal

    def test_missing_name(self):
        """Rules require a name."""
        with pytest.raises(RuleError, match="name"):
            rule_from_dict({"match": [{"path": "/"}], "append": {"name": "v"}}, 88)

    def test_empty_match(self):
        """An empty match list is rejected."""
        with pytest.raises(RuleError, match="match"):
            rule_from_dict({"name": "r", "match": [], "append": {"name": "v"}}, 88)

    def test_unknown_predicate(self):
        """Unknown predicate kinds name the rule."""
        with pytest.raises(RuleError) as exc_info:
            rule_from_dict({
                "name": "r", "match": [{"method": "GET"}], "append": {"name": "v"},
            }, 88)
        assert exc_info.value.rule == "r"

    def test_header_without_pattern(self):
        """Header predicates need a pattern."""
        with pytest.raises(RuleError, match="pattern"):
            rule_from_dict({
                "name": "r", "match": [{"header": "User-Agent"}], "append": {"name": "v"},
            }, 88)

    def test_missing_append(self):
        """A rule without a transform is rejected."""
        with pytest.raises(RuleError, match="append"):
            rule_from_dict({"name": "r", "match": [{"path": "/"}]}, 88)

    def test_table_keeps_order(self):
        """rules_from_config returns rules in declared order."""
        rules = rules_from_config([
            {"name": "first", "match": [{"path": "/a"}], "append": {"name": "x"}},
            {"name": "second", "match": [{"path": "/b"}], "append": {"name": "y"}},
        ], 88)
        assert [r.name for r in rules] == ["first", "second"]
        assert isinstance(rules, tuple)

    def test_duplicate_names(self):
        """Rule names must be unique."""
        entry = {"name": "dup", "match": [{"path": "/a"}], "append": {"name": "x"}}
        with pytest.raises(RuleError, match="duplicate"):
            rules_from_config([entry, dict(entry)], 88)

    def test_rules_must_be_list(self):
        """A mapping instead of a list is rejected."""
        with pytest.raises(RuleError):
            rules_from_config({"name": "r"}, 88)
