"""
Protocol Schema - inbound variants, field rules and payload building

Contains:
- ordered field specs per protocol (REALITY / WS-TLS / Hysteria2)
- per-field validation (required / integer range / length / choice)
- InboundDraft: a form model that keeps exactly one settings variant
- user / node payload rules
"""

from __future__ import annotations

import dataclasses
import secrets
import string
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..clients.api import ValidationError
from ..models import (
    FINGERPRINTS,
    PROTOCOL_HYSTERIA2,
    PROTOCOL_REALITY,
    PROTOCOL_WS_TLS,
    PROTOCOLS,
    SETTINGS_TYPES,
    Inbound,
    ProtocolSettings,
    RealityKeys,
    settings_field_names,
    settings_to_dict,
)
from ..utils.normalize import format_timestamp, normalize_host_input, parse_timestamp

MAX_PORT = 65535
SHORT_ID_MAX_LEN = 16
API_TOKEN_LEN = 32
API_TOKEN_ALPHABET = string.ascii_letters + string.digits


# ==================== Field specs ====================

@dataclass(frozen=True)
class FieldSpec:
    name: str
    kind: str = "str"  # str / int / bool / choice
    required: bool = False
    min_value: Optional[int] = None
    max_value: Optional[int] = None
    max_length: Optional[int] = None
    choices: Tuple[str, ...] = ()
    label: str = ""


COMMON_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("name", required=True, max_length=64, label="Inbound Name"),
    FieldSpec("listen_port", "int", required=True, min_value=1, max_value=MAX_PORT, label="Listen Port"),
    FieldSpec("enabled", "bool", label="Enabled"),
)

PROTOCOL_FIELDS: Dict[str, Tuple[FieldSpec, ...]] = {
    PROTOCOL_REALITY: (
        FieldSpec("sni", required=True, max_length=253, label="SNI"),
        FieldSpec("fallback_addr", max_length=253, label="Fallback Address"),
        FieldSpec("fallback_port", "int", min_value=1, max_value=MAX_PORT, label="Fallback Port"),
        FieldSpec("fingerprint", "choice", choices=FINGERPRINTS, label="TLS Fingerprint"),
        FieldSpec("private_key", max_length=128, label="Private Key"),
        FieldSpec("public_key", max_length=128, label="Public Key"),
        FieldSpec("short_id", max_length=SHORT_ID_MAX_LEN, label="Short ID"),
    ),
    PROTOCOL_WS_TLS: (
        FieldSpec("sni", required=True, max_length=253, label="SNI"),
        FieldSpec("ws_path", required=True, max_length=256, label="WebSocket Path"),
    ),
    PROTOCOL_HYSTERIA2: (
        FieldSpec("up_mbps", "int", required=True, min_value=1, label="Upload Speed (Mbps)"),
        FieldSpec("down_mbps", "int", required=True, min_value=1, label="Download Speed (Mbps)"),
    ),
}

# Keys every inbound payload carries besides the form fields.
INBOUND_ROUTING_KEYS = ("node_id", "protocol")


def _require_protocol(protocol: Any) -> str:
    p = str(protocol or "").strip().lower()
    if p not in PROTOCOLS:
        raise ValidationError(
            f"Unsupported protocol: {protocol!r} (allowed: {', '.join(PROTOCOLS)})", field="protocol"
        )
    return p


def field_specs(protocol: str) -> Tuple[FieldSpec, ...]:
    """Ordered field list for a protocol: common fields first, then the variant's."""
    p = _require_protocol(protocol)
    return COMMON_FIELDS + PROTOCOL_FIELDS[p]


def protocol_field_names(protocol: str) -> List[str]:
    return [f.name for f in PROTOCOL_FIELDS[_require_protocol(protocol)]]


def allowed_inbound_keys(protocol: str) -> List[str]:
    return list(INBOUND_ROUTING_KEYS) + [f.name for f in field_specs(protocol)]


def default_settings(protocol: str) -> ProtocolSettings:
    return SETTINGS_TYPES[_require_protocol(protocol)]()


# ==================== Field validation ====================

def check_field(spec: FieldSpec, value: Any) -> Any:
    """Validate and coerce one value; raises ValidationError naming the field."""
    label = spec.label or spec.name

    if spec.kind == "bool":
        if not isinstance(value, bool):
            raise ValidationError(f"{label} must be true or false", field=spec.name)
        return value

    if spec.kind == "int":
        if isinstance(value, bool):
            raise ValidationError(f"{label} must be an integer", field=spec.name)
        try:
            n = int(str(value).strip())
        except (TypeError, ValueError):
            raise ValidationError(f"{label} must be an integer: {value!r}", field=spec.name)
        if spec.min_value is not None and n < spec.min_value:
            if spec.max_value is not None:
                raise ValidationError(f"{label} must be between {spec.min_value}-{spec.max_value}: {n}", field=spec.name)
            raise ValidationError(f"{label} must be at least {spec.min_value}: {n}", field=spec.name)
        if spec.max_value is not None and n > spec.max_value:
            raise ValidationError(f"{label} must be between {spec.min_value}-{spec.max_value}: {n}", field=spec.name)
        return n

    s = str(value if value is not None else "").strip()
    if spec.required and not s:
        raise ValidationError(f"{label} is required", field=spec.name)
    if spec.max_length is not None and len(s) > spec.max_length:
        raise ValidationError(f"{label} must be at most {spec.max_length} characters", field=spec.name)
    if spec.kind == "choice" and s and s not in spec.choices:
        raise ValidationError(f"{label} must be one of: {', '.join(spec.choices)}", field=spec.name)
    return s


def validate_inbound_payload(payload: Dict[str, Any], *, creating: bool) -> Dict[str, Any]:
    """Check an inbound payload against its protocol's field set.

    Any key outside the protocol's set is rejected, not dropped. On create
    every required field must be present; on update only the present ones are
    checked. ``node_id`` and ``protocol`` are always required.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Inbound payload must be an object")
    protocol = _require_protocol(payload.get("protocol"))

    try:
        node_id = int(payload.get("node_id"))
    except (TypeError, ValueError):
        raise ValidationError("node_id is required", field="node_id")
    if node_id <= 0:
        raise ValidationError("node_id is required", field="node_id")

    allowed = set(allowed_inbound_keys(protocol))
    illegal = [k for k in payload if k not in allowed]
    if illegal:
        raise ValidationError(
            f"Field(s) not valid for protocol {protocol}: {', '.join(sorted(illegal))}", field=sorted(illegal)[0]
        )

    out: Dict[str, Any] = {"node_id": node_id, "protocol": protocol}
    for spec in field_specs(protocol):
        if spec.name not in payload:
            if creating and spec.required:
                raise ValidationError(f"{spec.label or spec.name} is required", field=spec.name)
            continue
        out[spec.name] = check_field(spec, payload[spec.name])
    return out


# ==================== Inbound draft ====================

@dataclass
class InboundDraft:
    """Editable inbound holding exactly one protocol settings variant."""

    node_id: int
    protocol: str = PROTOCOL_REALITY
    name: str = ""
    listen_port: int = 443
    enabled: bool = True
    settings: ProtocolSettings = field(default_factory=lambda: default_settings(PROTOCOL_REALITY))
    id: Optional[int] = None

    @classmethod
    def new(cls, node_id: int, protocol: str = PROTOCOL_REALITY, **fields: Any) -> "InboundDraft":
        p = _require_protocol(protocol)
        draft = cls(node_id=int(node_id), protocol=p, settings=default_settings(p))
        for k, v in fields.items():
            draft.set(k, v)
        return draft

    @classmethod
    def from_inbound(cls, inbound: Inbound) -> "InboundDraft":
        return cls(
            node_id=inbound.node_id,
            protocol=inbound.protocol,
            name=inbound.name,
            listen_port=inbound.listen_port,
            enabled=inbound.enabled,
            settings=dataclasses.replace(inbound.settings),
            id=inbound.id,
        )

    @property
    def saved(self) -> bool:
        return self.id is not None

    def switch_protocol(self, protocol: str) -> None:
        """Change protocol before first save, keeping only fields the new variant knows."""
        p = _require_protocol(protocol)
        if self.saved:
            raise ValidationError("Protocol cannot be changed after the inbound is created", field="protocol")
        if p == self.protocol:
            return
        carried = {
            k: v for k, v in settings_to_dict(self.settings).items() if k in settings_field_names(p)
        }
        self.settings = dataclasses.replace(default_settings(p), **carried)
        self.protocol = p

    def set(self, name: str, value: Any) -> None:
        if name == "protocol":
            self.switch_protocol(value)
            return
        if name == "node_id":
            if self.saved and int(value) != self.node_id:
                raise ValidationError("An inbound cannot move to another node", field="node_id")
            self.node_id = int(value)
            return
        if name in ("name", "listen_port", "enabled"):
            setattr(self, name, value)
            return
        if name not in settings_field_names(self.protocol):
            raise ValidationError(f"Field {name} is not valid for protocol {self.protocol}", field=name)
        setattr(self.settings, name, value)

    def apply_keys(self, keys: RealityKeys) -> None:
        if self.protocol != PROTOCOL_REALITY:
            raise ValidationError("Key material only applies to REALITY inbounds", field="protocol")
        # the authority may hand back only a short_id when the node agent is unreachable
        fresh = {k: v for k, v in dataclasses.asdict(keys).items() if v}
        self.settings = dataclasses.replace(self.settings, **fresh)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "node_id": self.node_id,
            "protocol": self.protocol,
            "name": self.name,
            "listen_port": self.listen_port,
            "enabled": self.enabled,
        }
        payload.update(settings_to_dict(self.settings))
        return validate_inbound_payload(payload, creating=not self.saved)


# ==================== User / node rules ====================

USER_CREATE_FIELDS = ("name", "enabled", "data_limit", "expires_at", "inbound_ids")
USER_SERVER_FIELDS = ("uuid", "data_used")

NODE_FIELDS = ("name", "address", "api_port", "api_token", "enabled")


def _expiry_to_wire(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return format_timestamp(datetime.combine(value, time.min, tzinfo=timezone.utc))
    dt = parse_timestamp(value)
    if dt is None:
        raise ValidationError(f"Invalid expiry date: {value!r}", field="expires_at")
    return format_timestamp(dt)


def _unknown_keys(fields: Dict[str, Any], allowed: Iterable[str]) -> List[str]:
    allowed_set = set(allowed)
    return sorted(k for k in fields if k not in allowed_set)


def build_user_payload(fields: Dict[str, Any], *, creating: bool) -> Dict[str, Any]:
    """Payload for user create (full) or update (partial overlay)."""
    for k in USER_SERVER_FIELDS:
        if k in fields:
            raise ValidationError(f"{k} is maintained by the server and cannot be written", field=k)
    if not creating and "name" in fields:
        raise ValidationError("User name cannot be changed after creation", field="name")
    allowed = USER_CREATE_FIELDS if creating else USER_CREATE_FIELDS[1:]
    unknown = _unknown_keys(fields, allowed)
    if unknown:
        raise ValidationError(f"Unknown user field(s): {', '.join(unknown)}", field=unknown[0])

    out: Dict[str, Any] = {}
    if creating:
        name = str(fields.get("name") or "").strip()
        if not name:
            raise ValidationError("Username is required", field="name")
        out["name"] = name
        out["enabled"] = True
        out["data_limit"] = 0
        out["expires_at"] = None
        out["inbound_ids"] = []

    if "enabled" in fields:
        out["enabled"] = check_field(FieldSpec("enabled", "bool"), fields["enabled"])
    if "data_limit" in fields:
        out["data_limit"] = check_field(
            FieldSpec("data_limit", "int", min_value=0, label="Data limit"), fields["data_limit"] or 0
        )
    if "expires_at" in fields:
        out["expires_at"] = _expiry_to_wire(fields["expires_at"])
    if "inbound_ids" in fields:
        raw = fields["inbound_ids"]
        if raw is None:
            raw = []
        if not isinstance(raw, (list, tuple, set)):
            raise ValidationError("inbound_ids must be a list", field="inbound_ids")
        ids: List[int] = []
        for v in raw:
            if isinstance(v, bool):
                raise ValidationError("inbound_ids must contain integer ids", field="inbound_ids")
            try:
                n = int(v)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid inbound id: {v!r}", field="inbound_ids")
            if n not in ids:
                ids.append(n)
        out["inbound_ids"] = ids
    return out


def generate_api_token(length: int = API_TOKEN_LEN) -> str:
    """Alphanumeric secret the node agent expects."""
    return "".join(secrets.choice(API_TOKEN_ALPHABET) for _ in range(length))


def build_node_payload(fields: Dict[str, Any], *, creating: bool) -> Dict[str, Any]:
    unknown = _unknown_keys(fields, NODE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown node field(s): {', '.join(unknown)}", field=unknown[0])

    out: Dict[str, Any] = {}
    if "name" in fields or creating:
        out["name"] = check_field(FieldSpec("name", required=True, max_length=64, label="Node Name"), fields.get("name"))
    if "address" in fields or creating:
        address = normalize_host_input(str(fields.get("address") or ""))
        if not address:
            raise ValidationError("Address is required", field="address")
        out["address"] = address
    if "api_port" in fields or creating:
        out["api_port"] = check_field(
            FieldSpec("api_port", "int", min_value=1, max_value=MAX_PORT, label="API Port"),
            fields.get("api_port", 9090),
        )
    if "api_token" in fields or creating:
        token = str(fields.get("api_token") or "").strip()
        if not token:
            if not creating:
                raise ValidationError("API token cannot be empty", field="api_token")
            token = generate_api_token()
        out["api_token"] = token
    if "enabled" in fields or creating:
        out["enabled"] = check_field(FieldSpec("enabled", "bool"), fields.get("enabled", True))
    return out
