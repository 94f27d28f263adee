from datetime import datetime, timedelta, timezone

import pytest

from relay_console.models import (
    USER_STATUS_ACTIVE,
    USER_STATUS_DISABLED,
    USER_STATUS_EXPIRED,
    ConfigArtifact,
    Inbound,
    User,
    settings_from_dict,
    subscription_urls,
)
from relay_console.utils.format import format_bytes, format_date, format_limit, gb_to_bytes
from relay_console.utils.normalize import format_timestamp, parse_timestamp

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def test_disabled_takes_precedence_over_expiry():
    u = User(id=1, name="a", enabled=False, expires_at=NOW - timedelta(days=3))
    assert u.status(NOW) == USER_STATUS_DISABLED


def test_expired_and_active():
    assert User(id=1, name="a", expires_at=NOW - timedelta(seconds=1)).status(NOW) == USER_STATUS_EXPIRED
    assert User(id=1, name="a", expires_at=NOW + timedelta(days=1)).status(NOW) == USER_STATUS_ACTIVE
    assert User(id=1, name="a").status(NOW) == USER_STATUS_ACTIVE


def test_usage_percent():
    assert User(id=1, name="a", data_limit=0, data_used=10).usage_percent is None
    assert User(id=1, name="a", data_limit=200, data_used=50).usage_percent == 25.0
    assert User(id=1, name="a", data_limit=100, data_used=500).usage_percent == 100.0


def test_user_from_dict_attachments():
    assert User.from_dict({"id": 1, "name": "a"}).inbound_ids is None
    assert User.from_dict({"id": 1, "name": "a", "inbound_ids": [2, "3"]}).inbound_ids == [2, 3]
    assert User.from_dict({"id": 1, "name": "a", "inbounds": [{"id": 4}]}).inbound_ids == [4]


def test_user_timestamps_parsed_as_utc():
    u = User.from_dict({"id": 1, "name": "a", "expires_at": "2030-01-01T00:00:00Z"})
    assert u.expires_at == datetime(2030, 1, 1, tzinfo=timezone.utc)


def test_inbound_keeps_only_its_variant_fields():
    ib = Inbound.from_dict({
        "id": 1, "node_id": 2, "name": "x", "protocol": "ws-tls", "listen_port": 443,
        "sni": "a.example.com", "ws_path": "/p", "short_id": "leftover",
    })
    d = ib.to_dict()
    assert d["ws_path"] == "/p"
    assert "short_id" not in d


def test_unknown_protocol_in_settings():
    with pytest.raises(ValueError):
        settings_from_dict("trojan", {})


def test_config_artifact_from_dict():
    a = ConfigArtifact.from_dict({
        "singbox": {"outbounds": []},
        "share_urls": [{"node_name": "fra-1", "inbound_name": "main", "url": "vless://x"}],
    })
    assert a.share_url == "vless://x"
    assert a.url_for(0) == "vless://x"
    assert a.url_for(5) == "vless://x"


def test_subscription_urls():
    urls = subscription_urls("panel.example.com/", "abc-123", "p w")
    assert urls["subscription_url"] == "https://panel.example.com/sub/abc-123?key=p+w"
    assert urls["raw_subscription_url"] == "https://panel.example.com/sub/abc-123/raw?key=p+w"
    assert subscription_urls("", "abc")["subscription_url"] == ""


def test_timestamp_roundtrip_format():
    assert format_timestamp(parse_timestamp("2030-05-06T07:08:09+02:00")) == "2030-05-06T05:08:09Z"
    assert parse_timestamp("not a date") is None
    assert parse_timestamp("") is None


def test_formatting_helpers():
    assert format_bytes(0) == "0 B"
    assert format_bytes(1536) == "1.5 KB"
    assert format_limit(0) == "Unlimited"
    assert gb_to_bytes(1) == 1024 ** 3
    assert format_date(None) == "Never"
    assert format_date(NOW) == "2026-10-17"
