"""Unit tests for main.py -- the operator CLI.

Covers:
- purge prints the number of removed sessions
- check-password lists violations and sets the exit status
- deactivate revokes sessions; activate restores login; unknown email fails
"""

from unittest.mock import patch

import pytest

import main
from auth.gateway import AuthenticationGateway
from auth.store import AuthStore

PASSWORD = "StrongPass123!"


@pytest.fixture
def cli_gateway(settings, store: AuthStore, clock):
    """Route main._build_gateway to the test store; the CLI's close() is a no-op here."""
    gateway = AuthenticationGateway(settings, sessions=store, accounts=store, clock=clock)
    with patch.object(main, "get_settings", return_value=settings), patch.object(
        main, "_build_gateway", return_value=(gateway, store)
    ), patch.object(store, "close"):
        yield gateway


def test_no_command_prints_help(capsys):
    assert main.main([]) == 2
    assert "usage" in capsys.readouterr().out.lower()


def test_purge(cli_gateway: AuthenticationGateway, capsys):
    result = cli_gateway.register("ada@example.com", PASSWORD)
    cli_gateway.logout(result.tokens.refresh_token)
    assert main.main(["purge"]) == 0
    assert "Purged 0 refresh session(s)." in capsys.readouterr().out


def test_check_password_weak(cli_gateway, capsys):
    with patch("main.getpass.getpass", return_value="weak"):
        assert main.main(["check-password"]) == 1
    assert "Password must contain at least one number" in capsys.readouterr().out


def test_check_password_strong(cli_gateway, capsys):
    with patch("main.getpass.getpass", return_value=PASSWORD):
        assert main.main(["check-password"]) == 0
    assert "meets all requirements" in capsys.readouterr().out


def test_deactivate_and_activate(cli_gateway: AuthenticationGateway, store: AuthStore, clock, capsys):
    result = cli_gateway.register("ada@example.com", PASSWORD)
    account_id = result.principal.account_id

    assert main.main(["deactivate", "ada@example.com"]) == 0
    assert store.get_account(account_id).is_active is False
    assert store.count_valid_for_account(account_id, now=clock()) == 0

    assert main.main(["activate", "ada@example.com"]) == 0
    assert store.get_account(account_id).is_active is True
    assert "activated" in capsys.readouterr().out


def test_unknown_email(cli_gateway, capsys):
    assert main.main(["deactivate", "nobody@example.com"]) == 1
    assert "No account" in capsys.readouterr().out
