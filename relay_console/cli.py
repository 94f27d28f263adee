# cli.py
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import typer

from .clients.api import ApiError, AuthError, ValidationError
from .core.settings import config_path, load_settings, save_settings
from .models import PROTOCOL_REALITY, PROTOCOLS, Inbound, User, settings_to_dict
from .services.orchestrator import Console
from .services.protocols import InboundDraft, field_specs
from .utils.format import format_bytes, format_date, format_limit, gb_to_bytes
from .utils.normalize import format_host_for_url, parse_bool

T = TypeVar("T")

app = typer.Typer(
    help="Relay node management console",
    add_completion=False,
    no_args_is_help=True,
)
users_app = typer.Typer(help="Manage users", no_args_is_help=True)
nodes_app = typer.Typer(help="Manage relay nodes", no_args_is_help=True)
inbounds_app = typer.Typer(help="Manage inbounds on a node", no_args_is_help=True)
app.add_typer(users_app, name="users")
app.add_typer(nodes_app, name="nodes")
app.add_typer(inbounds_app, name="inbounds")


def build_console() -> Console:
    return Console.open(load_settings())


def _execute(action: Callable[[Console], Awaitable[T]]) -> T:
    async def runner() -> T:
        console = build_console()
        try:
            return await action(console)
        finally:
            await console.close()

    try:
        return asyncio.run(runner())
    except AuthError as e:
        typer.echo(f"❌ {e.message}. Run `relay-console login` first.", err=True)
        raise typer.Exit(code=1)
    except ApiError as e:
        typer.echo(f"❌ {e.message}", err=True)
        raise typer.Exit(code=1)


def _parse_pairs(protocol: str, pairs: List[str]) -> Dict[str, Any]:
    """Turn repeated ``key=value`` options into typed inbound fields."""
    kinds = {spec.name: spec.kind for spec in field_specs(protocol)}
    out: Dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValidationError(f"Expected key=value, got {pair!r}")
        key, value = pair.split("=", 1)
        key = key.strip()
        if kinds.get(key) == "bool":
            out[key] = parse_bool(value)
        else:
            out[key] = value.strip()
    return out


def _user_line(u: User) -> str:
    return (
        f"{u.id:>4}  {u.name:<20} {u.status():<9} "
        f"{format_bytes(u.data_used):>10} / {format_limit(u.data_limit):<10} "
        f"expires {format_date(u.expires_at)}"
    )


def _inbound_line(i: Inbound) -> str:
    state = "on" if i.enabled else "off"
    return f"{i.id:>4}  {i.name:<20} {i.protocol:<10} :{i.listen_port:<6} {state}"


@app.callback()
def main_options(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ==================== Session ====================

@app.command()
def configure(
    api_url: Optional[str] = typer.Option(None, help="Authority base URL, e.g. https://panel.example.com/api"),
    public_url: Optional[str] = typer.Option(None, help="Public URL used for subscription links"),
    sub_password: Optional[str] = typer.Option(None, help="Subscription password"),
    timeout: Optional[float] = typer.Option(None, help="Request timeout in seconds"),
):
    """Write console settings to the config file."""
    settings = load_settings()
    if api_url is not None:
        settings.api_url = api_url
    if public_url is not None:
        settings.public_url = public_url
    if sub_password is not None:
        settings.sub_password = sub_password
    if timeout is not None:
        settings.timeout = timeout
    path = save_settings(settings, config_path())
    typer.echo(f"✅ Settings saved to {path}")


@app.command()
def login(
    username: str = typer.Option(..., prompt=True),
    password: str = typer.Option(..., prompt=True, hide_input=True),
):
    """Sign in and persist the session credential."""
    identity = _execute(lambda c: c.login(username, password))
    typer.echo(f"✅ Signed in as {identity.username}")


@app.command()
def logout():
    """Sign out and forget the persisted credential."""
    _execute(lambda c: c.logout())
    typer.echo("✅ Signed out")


@app.command()
def whoami():
    identity = _execute(lambda c: c.whoami())
    typer.echo(identity.username)


@app.command()
def passwd(
    old_password: str = typer.Option(..., prompt=True, hide_input=True),
    new_password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
):
    """Change the administrator password."""
    _execute(lambda c: c.change_password(old_password, new_password))
    typer.echo("✅ Password changed")


@app.command()
def dashboard():
    """Totals and per-node summary."""
    data = _execute(lambda c: c.dashboard())
    for key, value in data.stats.items():
        label = key.replace("_", " ")
        typer.echo(f"{label:<16} {format_bytes(value) if 'traffic' in key else value}")
    if data.nodes:
        typer.echo("")
    for n in data.nodes:
        state = "online" if n.online else "offline"
        typer.echo(f"{n.id:>4}  {n.name:<20} {n.address:<24} {state:<8} users={n.users_count} inbounds={n.inbounds_count}")


# ==================== Users ====================

@users_app.command("list")
def users_list():
    users = _execute(lambda c: c.load_users())
    if not users:
        typer.echo("No users yet")
    for u in users:
        typer.echo(_user_line(u))


@users_app.command("show")
def users_show(user_id: int = typer.Argument(...)):
    u = _execute(lambda c: c.open_user(user_id))
    typer.echo(_user_line(u))
    typer.echo(f"uuid      {u.uuid}")
    pct = u.usage_percent
    typer.echo(f"usage     {'-' if pct is None else f'{pct:.1f}%'}")
    typer.echo(f"inbounds  {', '.join(str(i) for i in (u.inbound_ids or [])) or '-'}")


@users_app.command("add")
def users_add(
    name: str = typer.Argument(...),
    limit_gb: float = typer.Option(0, help="Data limit in GB, 0 = unlimited"),
    expires: Optional[str] = typer.Option(None, help="Expiry date (YYYY-MM-DD)"),
    inbound: List[int] = typer.Option([], "--inbound", "-i", help="Inbound id to attach (repeatable)"),
    disabled: bool = typer.Option(False, help="Create the account disabled"),
):
    fields: Dict[str, Any] = {
        "name": name,
        "enabled": not disabled,
        "data_limit": gb_to_bytes(limit_gb),
        "expires_at": expires,
        "inbound_ids": list(inbound),
    }
    u = _execute(lambda c: c.create_user(fields))
    typer.echo(f"✅ User '{u.name}' created (id={u.id}, uuid={u.uuid})")


@users_app.command("edit")
def users_edit(
    user_id: int = typer.Argument(...),
    limit_gb: Optional[float] = typer.Option(None, help="Data limit in GB, 0 = unlimited"),
    expires: Optional[str] = typer.Option(None, help="Expiry date (YYYY-MM-DD), 'never' to clear"),
    inbound: Optional[List[int]] = typer.Option(None, "--inbound", "-i", help="Replace attachments"),
    clear_inbounds: bool = typer.Option(False, "--clear-inbounds", help="Detach the user from every inbound"),
):
    fields: Dict[str, Any] = {}
    if limit_gb is not None:
        fields["data_limit"] = gb_to_bytes(limit_gb)
    if expires is not None:
        fields["expires_at"] = None if expires.strip().lower() == "never" else expires
    if clear_inbounds and inbound:
        raise typer.BadParameter("--clear-inbounds cannot be combined with --inbound")
    if clear_inbounds:
        fields["inbound_ids"] = []
    elif inbound:
        fields["inbound_ids"] = list(inbound)
    u = _execute(lambda c: c.update_user(user_id, fields))
    typer.echo(f"✅ User '{u.name}' updated")


@users_app.command("delete")
def users_delete(
    user_id: int = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    if not yes:
        typer.confirm(f"Delete user #{user_id}?", abort=True)
    _execute(lambda c: c.delete_user(user_id))
    typer.echo(f"✅ User #{user_id} deleted")


@users_app.command("enable")
def users_enable(user_id: int = typer.Argument(...)):
    _execute(lambda c: c.enable_user(user_id))
    typer.echo("✅ User enabled")


@users_app.command("disable")
def users_disable(user_id: int = typer.Argument(...)):
    _execute(lambda c: c.disable_user(user_id))
    typer.echo("✅ User disabled")


@users_app.command("reset-uuid")
def users_reset_uuid(user_id: int = typer.Argument(...)):
    u = _execute(lambda c: c.reset_user_uuid(user_id))
    typer.echo(f"✅ New uuid: {u.uuid}")


@users_app.command("reset-traffic")
def users_reset_traffic(user_id: int = typer.Argument(...)):
    _execute(lambda c: c.reset_user_traffic(user_id))
    typer.echo("✅ Traffic reset")


@users_app.command("config")
def users_config(
    user_id: int = typer.Argument(...),
    as_json: bool = typer.Option(False, "--json", help="Print the sing-box client config"),
):
    """Show share URLs (or the sing-box config) for a user."""

    async def action(c: Console):
        await c.open_user(user_id)
        return await c.open_config(user_id)

    view = _execute(action)
    if view is None:
        raise typer.Exit(code=1)
    artifact = view.artifact
    if as_json:
        typer.echo(json.dumps(artifact.singbox, ensure_ascii=False, indent=2))
        return
    for item in artifact.share_urls:
        typer.echo(f"[{item.node_name} / {item.inbound_name}]")
        typer.echo(item.url)
    if not artifact.share_urls and artifact.share_url:
        typer.echo(artifact.share_url)
    if artifact.subscription_url:
        typer.echo(f"subscription  {artifact.subscription_url}")
        typer.echo(f"raw           {artifact.raw_subscription_url}")


# ==================== Nodes ====================

@nodes_app.command("list")
def nodes_list():
    async def action(c: Console):
        nodes = await c.load_nodes()
        return [(n, c.store.online(n.id)) for n in nodes]

    rows = _execute(action)
    if not rows:
        typer.echo("No nodes yet")
    for n, online in rows:
        state = "online" if online else "offline"
        typer.echo(f"{n.id:>4}  {n.name:<20} {format_host_for_url(n.address)}:{n.api_port:<6} {state}")


@nodes_app.command("add")
def nodes_add(
    name: str = typer.Argument(...),
    address: str = typer.Argument(..., help="Host, IP or URL of the node"),
    api_port: int = typer.Option(9090, help="Node agent API port"),
    api_token: str = typer.Option("", help="Agent token; generated when empty"),
):
    fields = {"name": name, "address": address, "api_port": api_port, "api_token": api_token}
    n = _execute(lambda c: c.create_node(fields))
    typer.echo(f"✅ Node '{n.name}' created (id={n.id})")
    typer.echo(f"api token: {n.api_token}")


@nodes_app.command("edit")
def nodes_edit(
    node_id: int = typer.Argument(...),
    name: Optional[str] = typer.Option(None),
    address: Optional[str] = typer.Option(None),
    api_port: Optional[int] = typer.Option(None),
    api_token: Optional[str] = typer.Option(None),
):
    fields = {
        k: v
        for k, v in (("name", name), ("address", address), ("api_port", api_port), ("api_token", api_token))
        if v is not None
    }
    n = _execute(lambda c: c.update_node(node_id, fields))
    typer.echo(f"✅ Node '{n.name}' updated")


@nodes_app.command("delete")
def nodes_delete(
    node_id: int = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    if not yes:
        typer.confirm(f"Delete node #{node_id} and all of its inbounds?", abort=True)
    _execute(lambda c: c.delete_node(node_id))
    typer.echo(f"✅ Node #{node_id} deleted")


@nodes_app.command("sync")
def nodes_sync(node_id: int = typer.Argument(...)):
    """Push the node's inbounds to its agent."""
    _execute(lambda c: c.sync_node(node_id))
    typer.echo("✅ Node synced")


@nodes_app.command("status")
def nodes_status(node_id: int = typer.Argument(...)):
    online = _execute(lambda c: c.node_online(node_id))
    typer.echo("online" if online else "offline")


# ==================== Inbounds ====================

@inbounds_app.command("list")
def inbounds_list(node_id: int = typer.Argument(...)):
    inbounds = _execute(lambda c: c.load_inbounds(node_id))
    if not inbounds:
        typer.echo("No inbounds on this node")
    for i in inbounds:
        typer.echo(_inbound_line(i))


@inbounds_app.command("show")
def inbounds_show(node_id: int = typer.Argument(...), inbound_id: int = typer.Argument(...)):
    async def action(c: Console) -> Inbound:
        await c.load_inbounds(node_id)
        found = c.store.find_inbound(inbound_id)
        if found is None:
            raise ValidationError(f"Inbound #{inbound_id} not found on node #{node_id}")
        return found

    i = _execute(action)
    typer.echo(_inbound_line(i))
    for key, value in settings_to_dict(i.settings).items():
        typer.echo(f"  {key:<14} {value}")


@inbounds_app.command("add")
def inbounds_add(
    node_id: int = typer.Argument(...),
    name: str = typer.Argument(...),
    protocol: str = typer.Option(PROTOCOL_REALITY, help=f"One of: {', '.join(PROTOCOLS)}"),
    port: int = typer.Option(443, help="Listen port"),
    setting: List[str] = typer.Option([], "--set", "-s", help="Protocol field as key=value (repeatable)"),
):
    async def action(c: Console) -> Inbound:
        fields: Dict[str, Any] = {"name": name, "listen_port": port}
        fields.update(_parse_pairs(protocol, setting))
        draft = InboundDraft.new(node_id, protocol, **fields)
        return await c.create_inbound(draft)

    i = _execute(action)
    typer.echo(f"✅ Inbound '{i.name}' created (id={i.id})")


@inbounds_app.command("edit")
def inbounds_edit(
    node_id: int = typer.Argument(...),
    inbound_id: int = typer.Argument(...),
    setting: List[str] = typer.Option([], "--set", "-s", help="Field as key=value (repeatable)"),
):
    async def action(c: Console) -> Inbound:
        await c.load_inbounds(node_id)
        found = c.store.find_inbound(inbound_id)
        if found is None:
            raise ValidationError(f"Inbound #{inbound_id} not found on node #{node_id}")
        draft = InboundDraft.from_inbound(found)
        for key, value in _parse_pairs(found.protocol, setting).items():
            draft.set(key, value)
        return await c.update_inbound(inbound_id, draft)

    i = _execute(action)
    typer.echo(f"✅ Inbound '{i.name}' updated")


@inbounds_app.command("delete")
def inbounds_delete(
    node_id: int = typer.Argument(...),
    inbound_id: int = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    if not yes:
        typer.confirm(f"Delete inbound #{inbound_id}?", abort=True)

    async def action(c: Console) -> None:
        await c.load_inbounds(node_id)
        await c.delete_inbound(inbound_id)

    _execute(action)
    typer.echo(f"✅ Inbound #{inbound_id} deleted")


@inbounds_app.command("keys")
def inbounds_keys(node_id: int = typer.Argument(...), inbound_id: int = typer.Argument(...)):
    """Generate a fresh REALITY keypair and short id."""

    async def action(c: Console):
        await c.load_inbounds(node_id)
        found = c.store.find_inbound(inbound_id)
        return await c.generate_keys(found if found is not None else inbound_id)

    keys = _execute(action)
    typer.echo(f"public key   {keys.public_key}")
    typer.echo(f"short id     {keys.short_id}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
