import pytest
from typer.testing import CliRunner

from relay_console import cli

from .conftest import open_console

runner = CliRunner()


@pytest.fixture
def signed_in(monkeypatch, authority, settings):
    monkeypatch.setattr(cli, "build_console", lambda: open_console(authority, settings))
    return authority


@pytest.fixture
def signed_out(monkeypatch, authority, settings):
    monkeypatch.setattr(cli, "build_console", lambda: open_console(authority, settings, signed_in=False))
    return authority


def invoke(*args):
    return runner.invoke(cli.app, list(args))


def test_add_node_inbound_user_and_show_config(signed_in):
    result = invoke("nodes", "add", "fra-1", "1.2.3.4")
    assert result.exit_code == 0, result.output
    assert "Node 'fra-1' created (id=1)" in result.output

    result = invoke("inbounds", "add", "1", "main", "--protocol", "reality", "--port", "443", "--set", "sni=www.example.com")
    assert result.exit_code == 0, result.output
    assert "Inbound 'main' created (id=1)" in result.output

    result = invoke("users", "add", "alice", "--inbound", "1", "--limit-gb", "5")
    assert result.exit_code == 0, result.output
    assert signed_in.users[1]["data_limit"] == 5 * 1024 ** 3

    result = invoke("users", "config", "1")
    assert result.exit_code == 0, result.output
    assert "[fra-1 / main]" in result.output
    assert f"vless://{signed_in.users[1]['uuid']}@1.2.3.4:443" in result.output
    assert "https://panel.example.com/sub/" in result.output


def test_foreign_inbound_field_rejected(signed_in):
    signed_in.add_node()
    result = invoke("inbounds", "add", "1", "main", "--protocol", "reality", "--set", "sni=a.example.com", "--set", "ws_path=/x")
    assert result.exit_code == 1
    assert "not valid for protocol reality" in result.output
    assert signed_in.inbounds == {}


def test_users_list_shows_status(signed_in):
    signed_in.add_user("bob", enabled=False)
    signed_in.add_user("carol", expires_at="2020-01-01T00:00:00Z")
    result = invoke("users", "list")
    assert result.exit_code == 0
    lines = result.output.splitlines()
    assert "bob" in lines[0] and "disabled" in lines[0]
    assert "carol" in lines[1] and "expired" in lines[1]


def test_nodes_list_marks_offline(signed_in):
    signed_in.add_node("fra-1")
    n = signed_in.add_node("ams-1")
    signed_in.offline.add(n["id"])
    result = invoke("nodes", "list")
    assert result.exit_code == 0
    assert "fra-1" in result.output and "online" in result.output
    assert "ams-1" in result.output and "offline" in result.output


def test_edit_inbound_through_draft(signed_in):
    node = signed_in.add_node()
    ib = signed_in.add_inbound(node["id"], "hysteria2", "hy", 443)
    result = invoke("inbounds", "edit", str(node["id"]), str(ib["id"]), "--set", "up_mbps=300", "--set", "enabled=false")
    assert result.exit_code == 0, result.output
    assert signed_in.inbounds[ib["id"]]["up_mbps"] == 300
    assert signed_in.inbounds[ib["id"]]["enabled"] is False


def test_generate_keys(signed_in):
    node = signed_in.add_node()
    ib = signed_in.add_inbound(node["id"])
    result = invoke("inbounds", "keys", str(node["id"]), str(ib["id"]))
    assert result.exit_code == 0, result.output
    assert signed_in.inbounds[ib["id"]]["public_key"] in result.output


def test_delete_user_with_yes(signed_in):
    signed_in.add_user("dave")
    result = invoke("users", "delete", "1", "--yes")
    assert result.exit_code == 0
    assert signed_in.users == {}


def test_sync_failure_exit_code(signed_in):
    n = signed_in.add_node()
    signed_in.offline.add(n["id"])
    result = invoke("nodes", "sync", str(n["id"]))
    assert result.exit_code == 1
    assert "Failed to sync node" in result.output


def test_requires_login(signed_out):
    result = invoke("users", "list")
    assert result.exit_code == 1
    assert "relay-console login" in result.output


def test_login_then_whoami(signed_out):
    result = invoke("login", "--username", "admin", "--password", "secret")
    assert result.exit_code == 0, result.output
    assert "Signed in as admin" in result.output

    result = invoke("whoami")
    assert result.exit_code == 0, result.output
    assert result.output.strip() == "admin"


def test_dashboard(signed_in):
    signed_in.add_node("fra-1")
    signed_in.add_user("erin", data_used=2048)
    result = invoke("dashboard")
    assert result.exit_code == 0, result.output
    assert "total users" in result.output
    assert "2 KB" in result.output
    assert "fra-1" in result.output


def test_configure_writes_settings(monkeypatch, tmp_path):
    path = tmp_path / "config.json"
    monkeypatch.setenv("RELAY_CONSOLE_CONFIG", str(path))
    result = invoke("configure", "--api-url", "https://panel.example.com/api", "--public-url", "sub.example.com")
    assert result.exit_code == 0, result.output
    assert path.exists()
    text = path.read_text()
    assert "https://panel.example.com/api" in text


def test_inbound_add_set_overrides_name_and_port(signed_in):
    signed_in.add_node()
    result = invoke(
        "inbounds", "add", "1", "main", "--protocol", "hysteria2",
        "--set", "name=fast", "--set", "listen_port=8443",
        "--set", "up_mbps=100", "--set", "down_mbps=100",
    )
    assert result.exit_code == 0, result.output
    created = signed_in.inbounds[1]
    assert (created["name"], created["listen_port"]) == ("fast", 8443)


def test_users_edit_clear_inbounds(signed_in):
    node = signed_in.add_node()
    ib = signed_in.add_inbound(node["id"])
    signed_in.add_user("frank", [ib["id"]])
    result = invoke("users", "edit", "1", "--clear-inbounds")
    assert result.exit_code == 0, result.output
    assert signed_in.users[1]["inbound_ids"] == []


def test_users_edit_clear_inbounds_conflicts_with_inbound(signed_in):
    signed_in.add_user("grace")
    result = invoke("users", "edit", "1", "--clear-inbounds", "--inbound", "1")
    assert result.exit_code != 0
    assert signed_in.count("PUT", "/users/1") == 0
