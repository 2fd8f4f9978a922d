"""Tests for credentials/headscale.py - admin CLI backend."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from credentials import DuplicatePrincipal, HeadscaleCLI, UpstreamError
from credentials.headscale import parse_timestamp


def ok(payload):
    return (0, json.dumps(payload), "")


class TestParseTimestamp:
    """Tests for timestamp decoding."""

    def test_protobuf_object(self):
        parsed = parse_timestamp({"seconds": 1767225600, "nanos": 500000000})
        assert parsed == datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(milliseconds=500)

    def test_rfc3339_with_nanoseconds(self):
        parsed = parse_timestamp("2026-01-01T12:00:00.123456789Z")
        assert parsed == datetime(2026, 1, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)

    def test_rfc3339_offset(self):
        parsed = parse_timestamp("2026-01-01T13:00:00+01:00")
        assert parsed == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_epoch_number(self):
        assert parse_timestamp(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", {}])
    def test_missing(self, value):
        assert parse_timestamp(value) is None

    def test_garbage(self):
        with pytest.raises(UpstreamError):
            parse_timestamp("next tuesday")


class TestCommands:
    """Tests for the admin command lines."""

    def test_command_prefix_and_json_output(self):
        cli = HeadscaleCLI(["docker", "compose", "exec", "-T", "headscale", "headscale"])
        with patch("credentials.headscale.run_command", return_value=ok([])) as mock_run:
            cli.list_principals()
        cmd = mock_run.call_args.args[0]
        assert cmd == [
            "docker", "compose", "exec", "-T", "headscale", "headscale",
            "users", "list", "-o", "json",
        ]

    def test_create_credential_args(self):
        cli = HeadscaleCLI()
        payload = {"id": "7", "key": "hskey-auth-abc", "reusable": False,
                   "expiration": "2026-01-01T13:00:00Z"}
        with patch("credentials.headscale.run_command", return_value=ok(payload)) as mock_run:
            credential = cli.create_credential("3", timedelta(hours=1), reusable=False)
        cmd = mock_run.call_args.args[0]
        assert cmd == [
            "headscale", "preauthkeys", "create",
            "--user", "3", "--expiration", "3600s", "-o", "json",
        ]
        assert credential.owner_principal_id == "3"
        assert credential.secret == "hskey-auth-abc"
        assert credential.expires_at == datetime(2026, 1, 1, 13, 0, tzinfo=timezone.utc)

    def test_reusable_flag(self):
        cli = HeadscaleCLI()
        payload = {"id": 8, "key": "hskey-auth-def", "reusable": True}
        with patch("credentials.headscale.run_command", return_value=ok(payload)) as mock_run:
            credential = cli.create_credential("3", timedelta(days=7), reusable=True)
        cmd = mock_run.call_args.args[0]
        assert "--reusable" in cmd
        assert "604800s" in cmd
        assert credential.reusable is True
        assert credential.id == "8"

    def test_list_credentials_for_user(self):
        cli = HeadscaleCLI()
        with patch("credentials.headscale.run_command", return_value=ok([])) as mock_run:
            assert cli.list_credentials("3") == []
        assert mock_run.call_args.args[0][1:5] == ["preauthkeys", "list", "--user", "3"]


class TestParsing:
    """Tests for JSON record decoding."""

    def test_list_principals(self):
        payload = [
            {"id": "1", "name": "alice", "created_at": {"seconds": 1767225600}},
            {"id": 2, "name": "bob"},
        ]
        with patch("credentials.headscale.run_command", return_value=ok(payload)):
            principals = HeadscaleCLI().list_principals()
        assert [(p.id, p.name) for p in principals] == [("1", "alice"), ("2", "bob")]
        assert principals[0].created_at == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert principals[1].created_at is None

    def test_empty_output_is_empty_list(self):
        with patch("credentials.headscale.run_command", return_value=(0, "\n", "")):
            assert HeadscaleCLI().list_principals() == []

    def test_nested_user_owner(self):
        payload = [{"id": "5", "key": "k", "used": True, "user": {"id": "3", "name": "alice"}}]
        with patch("credentials.headscale.run_command", return_value=ok(payload)):
            [credential] = HeadscaleCLI().list_credentials()
        assert credential.owner_principal_id == "3"
        assert credential.used is True

    def test_owner_by_name_resolved(self):
        keys = [{"id": "5", "key": "k", "user": "alice"}]
        users = [{"id": "3", "name": "alice"}]
        with patch("credentials.headscale.run_command", side_effect=[ok(keys), ok(users)]):
            [credential] = HeadscaleCLI().list_credentials()
        assert credential.owner_principal_id == "3"

    def test_missing_id(self):
        with patch("credentials.headscale.run_command", return_value=ok([{"name": "alice"}])):
            with pytest.raises(UpstreamError, match="no id"):
                HeadscaleCLI().list_principals()


class TestErrors:
    """Tests for failure mapping."""

    def test_nonzero_exit(self):
        with patch("credentials.headscale.run_command",
                   return_value=(1, "", "dial unix /var/run/headscale.sock: connect: no such file")):
            with pytest.raises(UpstreamError) as exc_info:
                HeadscaleCLI().list_principals()
        assert exc_info.value.code == "E303"
        assert "users list failed" in exc_info.value.message

    def test_invalid_json(self):
        with patch("credentials.headscale.run_command", return_value=(0, "not json", "")):
            with pytest.raises(UpstreamError, match="invalid JSON"):
                HeadscaleCLI().list_principals()

    @pytest.mark.parametrize("stderr", [
        "Error: user already exists",
        "UNIQUE constraint failed: users.name",
    ])
    def test_duplicate_user(self, stderr):
        with patch("credentials.headscale.run_command", return_value=(1, "", stderr)):
            with pytest.raises(DuplicatePrincipal) as exc_info:
                HeadscaleCLI().create_principal("alice")
        assert exc_info.value.code == "E302"

    def test_create_principal_other_failure(self):
        with patch("credentials.headscale.run_command", return_value=(1, "", "permission denied")):
            with pytest.raises(UpstreamError) as exc_info:
                HeadscaleCLI().create_principal("alice")
        assert not isinstance(exc_info.value, DuplicatePrincipal)

    def test_key_missing_from_output(self):
        with patch("credentials.headscale.run_command", return_value=ok({"id": "7"})):
            with pytest.raises(UpstreamError, match="no key"):
                HeadscaleCLI().create_credential("3", timedelta(hours=1), reusable=False)

    def test_timeout_surfaces_as_upstream_error(self):
        with patch("credentials.headscale.run_command",
                   return_value=(-1, "", "Command timed out after 60s")):
            with pytest.raises(UpstreamError, match="timed out"):
                HeadscaleCLI().list_principals()
