import json

from relay_console.core.settings import DEFAULT_API_URL, ConsoleSettings, load_settings, save_settings


def test_defaults_without_file(tmp_path):
    s = load_settings(str(tmp_path / "none.json"), environ={})
    assert s.api_url == DEFAULT_API_URL
    assert s.timeout == 10.0
    assert s.verify_tls is True
    assert s.public_url == ""


def test_file_then_env_overlay(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"api_url": "panel.example.com/api/", "public_url": "sub.example.com", "timeout": 30}))
    env = {"RELAY_CONSOLE_TIMEOUT": "500", "RELAY_CONSOLE_VERIFY_TLS": "no", "RELAY_CONSOLE_SUB_PASSWORD": " pw "}
    s = load_settings(str(path), environ=env)
    assert s.api_url == "http://panel.example.com/api"
    assert s.public_url == "https://sub.example.com"
    assert s.timeout == 120.0
    assert s.verify_tls is False
    assert s.sub_password == "pw"


def test_bad_timeout_falls_back(tmp_path):
    s = load_settings(str(tmp_path / "none.json"), environ={"RELAY_CONSOLE_TIMEOUT": "soon"})
    assert s.timeout == 10.0
    s = load_settings(str(tmp_path / "none.json"), environ={"RELAY_CONSOLE_TIMEOUT": "0.1"})
    assert s.timeout == 1.0


def test_malformed_file_ignored(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    assert load_settings(str(path), environ={}).api_url == DEFAULT_API_URL


def test_save_and_reload(tmp_path):
    path = str(tmp_path / "nested" / "config.json")
    save_settings(ConsoleSettings(api_url="https://p.example.com/api", state_dir=str(tmp_path)), path)
    s = load_settings(path, environ={})
    assert s.api_url == "https://p.example.com/api"
    assert s.state_dir == str(tmp_path)
