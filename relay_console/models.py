"""
Models - entity types exchanged with the remote authority

Contains:
- User / Node / Inbound entities
- Protocol settings variants (one dataclass per inbound protocol)
- Read-only artifacts: ConfigArtifact, RealityKeys, DashboardData
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Optional, Type, Union
from urllib.parse import quote, urlencode

from .utils.normalize import normalize_base_url, parse_bool, parse_timestamp, safe_int_list


# ==================== Protocol variants ====================

PROTOCOL_REALITY = "reality"
PROTOCOL_WS_TLS = "ws-tls"
PROTOCOL_HYSTERIA2 = "hysteria2"
PROTOCOLS = (PROTOCOL_REALITY, PROTOCOL_WS_TLS, PROTOCOL_HYSTERIA2)

FINGERPRINTS = ("chrome", "firefox", "safari", "edge", "random")


@dataclass
class RealitySettings:
    protocol: ClassVar[str] = PROTOCOL_REALITY

    sni: str = ""
    fallback_addr: str = "127.0.0.1"
    fallback_port: int = 8443
    private_key: str = ""
    public_key: str = ""
    short_id: str = ""
    fingerprint: str = "chrome"


@dataclass
class WsTlsSettings:
    protocol: ClassVar[str] = PROTOCOL_WS_TLS

    sni: str = ""
    ws_path: str = "/ws"


@dataclass
class Hysteria2Settings:
    protocol: ClassVar[str] = PROTOCOL_HYSTERIA2

    up_mbps: int = 100
    down_mbps: int = 100


ProtocolSettings = Union[RealitySettings, WsTlsSettings, Hysteria2Settings]

SETTINGS_TYPES: Dict[str, Type[Any]] = {
    PROTOCOL_REALITY: RealitySettings,
    PROTOCOL_WS_TLS: WsTlsSettings,
    PROTOCOL_HYSTERIA2: Hysteria2Settings,
}


def settings_field_names(protocol: str) -> List[str]:
    cls = SETTINGS_TYPES.get(protocol)
    if cls is None:
        raise ValueError(f"unsupported protocol: {protocol}")
    return [f.name for f in dataclasses.fields(cls)]


def settings_from_dict(protocol: str, data: Dict[str, Any]) -> ProtocolSettings:
    """Build the settings variant for ``protocol``; keys of other protocols are ignored."""
    cls = SETTINGS_TYPES.get(protocol)
    if cls is None:
        raise ValueError(f"unsupported protocol: {protocol}")
    kwargs = {}
    for f in dataclasses.fields(cls):
        if f.name in data and data[f.name] is not None:
            kwargs[f.name] = data[f.name]
    return cls(**kwargs)


def settings_to_dict(settings: ProtocolSettings) -> Dict[str, Any]:
    return dataclasses.asdict(settings)


# ==================== Entities ====================

USER_STATUS_ACTIVE = "active"
USER_STATUS_DISABLED = "disabled"
USER_STATUS_EXPIRED = "expired"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    name: str
    uuid: str = ""
    enabled: bool = True
    data_limit: int = 0
    data_used: int = 0
    expires_at: Optional[datetime] = None
    # None means the authority did not report attachments for this record.
    inbound_ids: Optional[List[int]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        inbound_ids: Optional[List[int]] = None
        if isinstance(data.get("inbound_ids"), list):
            inbound_ids = safe_int_list(data["inbound_ids"])
        elif isinstance(data.get("inbounds"), list):
            inbound_ids = safe_int_list([i.get("id") for i in data["inbounds"] if isinstance(i, dict)])
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or ""),
            uuid=str(data.get("uuid") or ""),
            enabled=parse_bool(data.get("enabled"), default=True),
            data_limit=int(data.get("data_limit") or 0),
            data_used=int(data.get("data_used") or 0),
            expires_at=parse_timestamp(data.get("expires_at")),
            inbound_ids=inbound_ids,
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or _utcnow())

    def status(self, now: Optional[datetime] = None) -> str:
        """Badge status; a disabled account reads as disabled whatever its expiry."""
        if not self.enabled:
            return USER_STATUS_DISABLED
        if self.is_expired(now):
            return USER_STATUS_EXPIRED
        return USER_STATUS_ACTIVE

    @property
    def usage_percent(self) -> Optional[float]:
        if self.data_limit <= 0:
            return None
        return min(100.0, self.data_used / self.data_limit * 100.0)


@dataclass
class Node:
    id: int
    name: str
    address: str
    api_port: int = 9090
    api_token: str = ""
    enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or ""),
            address=str(data.get("address") or ""),
            api_port=int(data.get("api_port") or 9090),
            api_token=str(data.get("api_token") or ""),
            enabled=parse_bool(data.get("enabled"), default=True),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


@dataclass
class Inbound:
    id: int
    node_id: int
    name: str
    protocol: str
    listen_port: int
    settings: ProtocolSettings
    enabled: bool = True
    created_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Inbound":
        protocol = str(data.get("protocol") or "")
        return cls(
            id=int(data["id"]),
            node_id=int(data["node_id"]),
            name=str(data.get("name") or ""),
            protocol=protocol,
            listen_port=int(data.get("listen_port") or 0),
            settings=settings_from_dict(protocol, data),
            enabled=parse_bool(data.get("enabled"), default=True),
            created_at=parse_timestamp(data.get("created_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "node_id": self.node_id,
            "name": self.name,
            "protocol": self.protocol,
            "listen_port": self.listen_port,
            "enabled": self.enabled,
        }
        out.update(settings_to_dict(self.settings))
        return out


# ==================== Read-only artifacts ====================

@dataclass
class Identity:
    id: int
    username: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Identity":
        return cls(id=int(data.get("id") or 0), username=str(data.get("username") or ""))


@dataclass
class RealityKeys:
    private_key: str
    public_key: str
    short_id: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RealityKeys":
        return cls(
            private_key=str(data.get("private_key") or ""),
            public_key=str(data.get("public_key") or ""),
            short_id=str(data.get("short_id") or ""),
        )


@dataclass
class ShareUrl:
    node_name: str
    inbound_name: str
    url: str


@dataclass
class ConfigArtifact:
    singbox: Dict[str, Any]
    share_url: str
    share_urls: List[ShareUrl] = field(default_factory=list)
    subscription_url: str = ""
    raw_subscription_url: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfigArtifact":
        urls = []
        for item in data.get("share_urls") or []:
            if not isinstance(item, dict):
                continue
            urls.append(
                ShareUrl(
                    node_name=str(item.get("node_name") or ""),
                    inbound_name=str(item.get("inbound_name") or ""),
                    url=str(item.get("url") or ""),
                )
            )
        singbox = data.get("singbox")
        return cls(
            singbox=singbox if isinstance(singbox, dict) else {},
            share_url=str(data.get("share_url") or (urls[0].url if urls else "")),
            share_urls=urls,
        )

    def url_for(self, index: int = 0) -> str:
        """Share URL by position, falling back to the default one."""
        if 0 <= index < len(self.share_urls):
            return self.share_urls[index].url
        return self.share_url


def subscription_urls(public_url: str, user_uuid: str, password: str = "") -> Dict[str, str]:
    """Derive the public subscription endpoints for a user.

    ``<public_url>/sub/<uuid>`` is the human page, ``.../raw`` the base64 feed
    for client applications. Both carry ``?key=`` when a subscription password
    is configured.
    """
    base = normalize_base_url(public_url, default_scheme="https")
    if not base or not user_uuid:
        return {"subscription_url": "", "raw_subscription_url": ""}
    page = f"{base}/sub/{quote(user_uuid, safe='')}"
    raw = f"{page}/raw"
    if password:
        qs = urlencode({"key": password})
        page = f"{page}?{qs}"
        raw = f"{raw}?{qs}"
    return {"subscription_url": page, "raw_subscription_url": raw}


@dataclass
class NodeSummary:
    id: int
    name: str
    address: str
    online: bool
    users_count: int = 0
    inbounds_count: int = 0


@dataclass
class DashboardData:
    stats: Dict[str, int]
    nodes: List[NodeSummary] = field(default_factory=list)
    traffic_chart: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DashboardData":
        stats = data.get("stats") if isinstance(data.get("stats"), dict) else {}
        nodes = []
        for n in data.get("nodes") or []:
            if not isinstance(n, dict):
                continue
            nodes.append(
                NodeSummary(
                    id=int(n.get("id") or 0),
                    name=str(n.get("name") or ""),
                    address=str(n.get("address") or ""),
                    online=parse_bool(n.get("online")),
                    users_count=int(n.get("users_count") or 0),
                    inbounds_count=int(n.get("inbounds_count") or 0),
                )
            )
        chart = [p for p in (data.get("traffic_chart") or []) if isinstance(p, dict)]
        return cls(
            stats={k: int(v or 0) for k, v in stats.items()},
            nodes=nodes,
            traffic_chart=chart,
        )
