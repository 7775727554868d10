"""anontrust CLI — operator tooling for identities, roles, and the moderation queue."""

import json
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from anontrust import __version__
from anontrust.config import Settings
from anontrust.errors import AnonTrustError, NotFound

console = Console()

_PRIORITY_STYLE = {"urgent": "bold red", "high": "yellow", "normal": "white", "low": "dim"}
_LABEL_STYLE = {"high": "green", "medium": "yellow", "low": "red"}


class _Context:
    """Lazily built services for the configured home directory."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._services = None

    @property
    def services(self):
        if self._services is None:
            from anontrust.services import build_services

            self._services = build_services(self.settings)
        return self._services

    def actor(self):
        """The identity stored on this device acts for every command."""
        try:
            return self.services.identity_store.load()
        except NotFound:
            console.print("[red]No identity on this device.[/] Run [bold]anontrust setup[/] or [bold]anontrust login[/].")
            raise SystemExit(1)


def _fail(exc: AnonTrustError) -> None:
    console.print(f"[red]{exc.code}:[/] {exc.message}")
    raise SystemExit(1)


pass_ctx = click.make_pass_decorator(_Context)


@click.group()
@click.version_option(version=__version__)
@click.option("--home", type=click.Path(file_okay=False), default=None, help="Data directory (default ~/.anontrust)")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), default=None, help="YAML settings file")
@click.option("--verbose", "-v", is_flag=True, help="Show log output")
@click.pass_context
def main(ctx: click.Context, home: str | None, config_path: str | None, verbose: bool):
    """anontrust — anonymous identities, earned trust, role-gated moderation."""
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )
    settings = Settings.from_file(config_path) if config_path else Settings.from_env()
    if home:
        settings.home = Path(home).expanduser()
    ctx.obj = _Context(settings)


# ── Identity ─────────────────────────────────────────────────────────


@main.command()
@click.option("--nickname", "-n", default=None, help="Display name")
@click.option("--avatar", default=None, help="Avatar emoji")
@pass_ctx
def setup(ctx: _Context, nickname: str | None, avatar: str | None):
    """Create a new anonymous identity on this device."""
    from anontrust.session import IdentitySession

    session = IdentitySession.from_services(ctx.services)
    try:
        session.initialize()
        session.complete_onboarding()
        identity = session.complete_setup(nickname=nickname, avatar=avatar)
    except AnonTrustError as exc:
        _fail(exc)
    except ValueError as exc:
        console.print(f"[red]Invalid input:[/] {exc}")
        raise SystemExit(1)
    console.print(f"[green]Created identity[/] {identity.avatar} {identity.nickname} [dim]{identity.id}[/]")


@main.command()
@click.argument("identity_id")
@click.option("--credential", default=None, help="Credential of a claimed identity")
@click.option("--remember", is_flag=True, help="Remember this identity for later logins")
@pass_ctx
def login(ctx: _Context, identity_id: str, credential: str | None, remember: bool):
    """Log in as an existing identity."""
    from anontrust.session import IdentitySession

    session = IdentitySession.from_services(ctx.services)
    try:
        session.initialize()
        identity = session.login_with_identity(identity_id, credential=credential, remember=remember)
    except AnonTrustError as exc:
        _fail(exc)
    console.print(f"[green]Logged in as[/] {identity.avatar} {identity.nickname}")


@main.command()
@pass_ctx
def whoami(ctx: _Context):
    """Show the identity, role, and progression of this device."""
    from anontrust.progression.engine import level_progress

    identity = ctx.actor()
    services = ctx.services
    try:
        state = services.progression.state(identity)
        role = services.roles.effective_role(identity)
    except AnonTrustError as exc:
        _fail(exc)
    into, span = level_progress(state.xp)
    label = services.roles.trust_label(identity)
    lines = [
        f"[bold]{identity.avatar} {identity.nickname}[/]  [dim]{identity.id}[/]",
        f"Role: [cyan]{role.value}[/]   Trust: [{_LABEL_STYLE[label]}]{state.trust_score:.2f} ({label})[/]",
        f"Level {state.level} — {state.xp} XP ({into}/{span} to next)   Streak: {state.streak_days} days",
        f"Badges: {', '.join(state.badges) or 'none'}",
        f"Claimed: {'yes' if identity.is_claimed or not identity.is_anonymous else 'no'}",
    ]
    console.print(Panel("\n".join(lines), title="whoami"))


# ── Moderation ───────────────────────────────────────────────────────


@main.command()
@click.option("--status", "-s", default=None, type=click.Choice(["pending", "approved", "rejected", "escalated"]))
@click.option("--priority", "-p", default=None, type=click.Choice(["urgent", "high", "normal", "low"]))
@pass_ctx
def queue(ctx: _Context, status: str | None, priority: str | None):
    """List moderation items, most urgent first."""
    engine = ctx.services.moderation
    try:
        items = engine.ordered(status=status, priority=priority)
    except AnonTrustError as exc:
        _fail(exc)

    if not items:
        console.print("[yellow]The moderation queue is empty.[/]")
        return

    table = Table(title=f"Moderation Queue ({len(items)} items)")
    table.add_column("ID", style="dim")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Content")
    table.add_column("Author trust")
    table.add_column("Flags", justify="right")
    table.add_column("Reason")

    for item in items:
        entry = engine.annotate(item)
        table.add_row(
            item.id,
            f"[{_PRIORITY_STYLE[item.priority.value]}]{item.priority.value}[/]",
            item.status.value,
            f"{item.content_type.value}:{item.content_id}",
            f"[{_LABEL_STYLE[entry.trust_label]}]{entry.trust_text} ({item.author_trust_score:.1f})[/]",
            str(item.community_flag_count),
            item.flag_reason[:40],
        )
    console.print(table)


@main.command()
@click.argument("content_type", type=click.Choice(["post", "submission"]))
@click.argument("content_id")
@click.option("--author", required=True, help="Author identity id")
@click.option("--reason", "-r", required=True, help="Why the content is flagged")
@click.option("--preview", default="", help="Short excerpt of the content")
@pass_ctx
def flag(ctx: _Context, content_type: str, content_id: str, author: str, reason: str, preview: str):
    """Report a piece of content for moderation as this device's identity."""
    try:
        item = ctx.services.moderation.flag_content(
            content_type, content_id, author, reason, reporter=ctx.actor(), preview=preview
        )
    except AnonTrustError as exc:
        _fail(exc)
    console.print(f"[green]Flagged[/] as item {item.id} ([{_PRIORITY_STYLE[item.priority.value]}]{item.priority.value}[/])")


@main.command()
@click.argument("item_id")
@click.argument("action", type=click.Choice(["approve", "reject", "escalate"]))
@click.option("--notes", "-m", default="", help="Review notes")
@pass_ctx
def moderate(ctx: _Context, item_id: str, action: str, notes: str):
    """Approve, reject, or escalate one moderation item."""
    try:
        item = ctx.services.moderation.apply(ctx.actor(), item_id, action, notes)
    except AnonTrustError as exc:
        _fail(exc)
    console.print(f"[green]{item.id}[/] is now [bold]{item.status.value}[/] ({item.priority.value})")


@main.command()
@click.argument("action", type=click.Choice(["approve", "reject", "escalate"]))
@click.argument("item_ids", nargs=-1, required=True)
@click.option("--notes", "-m", default="", help="Review notes")
@pass_ctx
def bulk(ctx: _Context, action: str, item_ids: tuple, notes: str):
    """Apply one action to several items; failures are reported per item."""
    result = ctx.services.moderation.bulk_apply(ctx.actor(), list(item_ids), action, notes)
    for item_id in result.succeeded:
        console.print(f"  [green]v[/] {item_id}")
    for failure in result.failed:
        console.print(f"  [red]x[/] {failure.item_id} [{failure.error_code}] {failure.message}")
    console.print(f"\n{len(result.succeeded)} succeeded, {len(result.failed)} failed")
    if result.failed:
        raise SystemExit(1)


@main.command()
@pass_ctx
def stats(ctx: _Context):
    """Show moderation queue counts."""
    s = ctx.services.moderation.stats()
    table = Table(title=f"Moderation Stats ({s.total} items, {s.open_urgent} open urgent)")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for name, count in s.by_status.items():
        table.add_row(name, str(count))
    console.print(table)


# ── Roles ────────────────────────────────────────────────────────────


@main.group()
def roles():
    """Assign, revoke, and inspect role tiers."""


@roles.command()
@click.argument("target_id")
@click.argument("tier", type=click.Choice(["trusted", "educator", "moderator", "admin"]))
@click.option("--reason", "-r", default="", help="Why the role is granted")
@pass_ctx
def assign(ctx: _Context, target_id: str, tier: str, reason: str):
    """Grant TIER to TARGET_ID."""
    try:
        record = ctx.services.roles.assign_role(ctx.actor(), target_id, tier, reason)
    except AnonTrustError as exc:
        _fail(exc)
    console.print(f"[green]Assigned[/] {record.new_tier.value} to {target_id} (was {record.previous_tier.value})")


@roles.command()
@click.argument("target_id")
@click.option("--reason", "-r", required=True, help="Why the role is revoked")
@pass_ctx
def revoke(ctx: _Context, target_id: str, reason: str):
    """Reset TARGET_ID to anonymous."""
    try:
        record = ctx.services.roles.revoke_role(ctx.actor(), target_id, reason)
    except AnonTrustError as exc:
        _fail(exc)
    console.print(f"[green]Revoked[/] {record.previous_tier.value} from {target_id}")


@roles.command()
@click.argument("target_id")
@pass_ctx
def history(ctx: _Context, target_id: str):
    """Show the role history of TARGET_ID."""
    try:
        records = ctx.services.roles.role_history(ctx.actor(), target_id)
    except AnonTrustError as exc:
        _fail(exc)
    if not records:
        console.print("[yellow]No role changes recorded.[/]")
        return
    table = Table(title=f"Role history of {target_id[:8]}")
    table.add_column("When", style="dim")
    table.add_column("Action")
    table.add_column("Change")
    table.add_column("By")
    table.add_column("Reason")
    for r in records:
        table.add_row(
            r.timestamp[:19], r.action, f"{r.previous_tier.value} -> {r.new_tier.value}", r.actor_id[:8], r.reason
        )
    console.print(table)


@roles.command(name="list")
@click.option("--role", default=None, type=click.Choice(["anonymous", "trusted", "educator", "moderator", "admin"]))
@click.option("--search", default="", help="Match nickname or id")
@pass_ctx
def list_users(ctx: _Context, role: str | None, search: str):
    """List known identities and their roles."""
    try:
        grants = ctx.services.roles.list_users(ctx.actor(), role=role, search=search)
    except AnonTrustError as exc:
        _fail(exc)
    table = Table(title=f"Users ({len(grants)})")
    table.add_column("ID", style="dim")
    table.add_column("Nickname", style="cyan")
    table.add_column("Role")
    table.add_column("Trust", justify="right")
    for g in grants:
        table.add_row(g.identity_id[:8], g.nickname, g.tier.value, f"{g.trust_score:.2f}")
    console.print(table)


@roles.command()
@click.option("--reason", "-r", default="initial administrator", help="Audit reason")
@pass_ctx
def bootstrap(ctx: _Context, reason: str):
    """Make this device's identity the first admin."""
    try:
        ctx.services.roles.bootstrap_admin(ctx.actor(), reason)
    except AnonTrustError as exc:
        _fail(exc)
    console.print("[green]This identity is now an admin.[/]")


# ── Audit ────────────────────────────────────────────────────────────


@main.command()
@click.option("--actor", default=None, help="Filter by actor identity id")
@click.option("--action", default=None, help="Filter by action, e.g. role.assign")
@click.option("--limit", default=50, show_default=True)
@click.option("--format", "fmt", default="table", type=click.Choice(["table", "json", "csv"]))
@pass_ctx
def audit(ctx: _Context, actor: str | None, action: str | None, limit: int, fmt: str):
    """Show recorded role, moderation, trust and identity events."""
    logger = ctx.services.audit
    if fmt != "table":
        click.echo(logger.export_events(fmt, actor=actor, action=action, limit=limit))
        return
    events = logger.get_events(actor=actor, action=action, limit=limit)
    table = Table(title=f"Audit events ({len(events)})")
    table.add_column("When", style="dim")
    table.add_column("Actor")
    table.add_column("Action", style="cyan")
    table.add_column("Resource")
    table.add_column("Result")
    table.add_column("Details")
    for e in events:
        result = "[green]ok[/]" if e.success else f"[red]{e.error_code}[/]"
        table.add_row(
            e.timestamp[:19], e.actor[:8], e.action, f"{e.resource_type}:{e.resource_id[:12]}", result,
            json.dumps(e.details)[:50] if e.details else "",
        )
    console.print(table)


if __name__ == "__main__":
    main()
