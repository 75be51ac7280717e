"""
Tandem CLI: run and inspect AP2 payment agents.

Commands:
    tandem demo      Run a full purchase across four in-process agents
    tandem serve     Serve one agent role over HTTP
    tandem audit     View the audit trail
    tandem keygen    Generate a merchant signing key
    tandem config    Print the resolved configuration for a role
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Optional

import click
from eth_account import Account

from . import __version__
from .audit import AuditTrail, EventType, MemoryAuditSink
from .challenge import DEMO_CHALLENGE_CODE
from .config import AgentRole, load_config
from .errors import ConfigError, TandemError
from .money import format_amount
from .network import LocalNetwork, build_agent
from .signing import generate_merchant_key, private_key_pem, public_key_pem
from .storage import write_private_bytes
from .task import TaskState


DEMO_USER_EMAIL = "bugsbunny@gmail.com"
ROLE_CHOICES = [r.value for r in AgentRole]
SERVED_ROLES = [r.value for r in AgentRole if r is not AgentRole.SHOPPER]


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Log protocol traffic at INFO level")
def main(verbose: bool):
    """Tandem: AP2 mandate chain and settlement agents."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--query", default="buy shoes", show_default=True, help="What the user wants to buy")
@click.option("--challenge-code", default=DEMO_CHALLENGE_CODE, show_default=True,
              help="Answer given to the processor's challenge")
@click.option("--audit-path", type=click.Path(path_type=Path), default=None,
              help="Also write events to this audit trail file")
def demo(query: str, challenge_code: str, audit_path: Optional[Path]):
    """Run a full purchase: intent, cart, token, mandate, challenge, settlement."""
    audit = AuditTrail(audit_path) if audit_path else MemoryAuditSink()
    network = LocalNetwork.build(audit=audit)
    user = Account.create()
    shopper = network.shopper(user.key.hex(), DEMO_USER_EMAIL)

    click.echo("🎬 Tandem Demo — AP2 Purchase Flow")
    click.echo("=" * 50)

    try:
        click.echo(f"\n1️⃣  Creating intent mandate: \"{query}\"")
        intent = shopper.create_intent(query)
        click.echo(f"   Expires: {intent.intent_expiry:%Y-%m-%d %H:%M} UTC")

        click.echo("\n2️⃣  Asking the merchant for carts...")
        carts = shopper.find_products(intent)
        for cart in carts:
            item = cart.contents.payment_request.details.display_items[0]
            click.echo(f"   🛒 {cart.cart_id}: {item.label} — {format_amount(cart.contents.total.amount.value)}")
        cart = carts[0]

        click.echo("\n3️⃣  Fetching shipping address and repricing the cart...")
        address = shopper.shipping_address()
        if address is None:
            raise click.ClickException(f"No shipping address on file for {DEMO_USER_EMAIL}")
        click.echo(f"   📦 Ship to: {address.recipient}, {address.city} {address.country}")
        cart = shopper.update_cart(cart, address)
        for item in cart.contents.payment_request.details.display_items:
            click.echo(f"   • {item.label}: {format_amount(item.amount.value)}")
        click.echo(f"   Total: {format_amount(cart.contents.total.amount.value)}")

        click.echo("\n4️⃣  Choosing a payment method...")
        aliases = shopper.eligible_payment_methods(cart)
        if not aliases:
            raise click.ClickException("No eligible payment methods")
        click.echo(f"   Eligible: {', '.join(aliases)}")
        token = shopper.create_token(aliases[0])
        click.echo(f"   🔑 Token issued by {token.issuer_url or 'credentials provider'}")

        click.echo("\n5️⃣  Signing the payment mandate...")
        mandate = shopper.create_payment_mandate(cart, token, address)
        click.echo(f"   ✍️  Mandate {mandate.contents.payment_mandate_id} signed by {shopper.user_address}")
        shopper.send_signed_mandate(mandate)
        click.echo("   ✅ Token bound at the credentials provider")

        click.echo("\n6️⃣  Initiating payment...")
        task = shopper.initiate_payment(mandate)
        if task.state is TaskState.INPUT_REQUIRED:
            click.echo(f"   🔐 Challenge: {task.status_text}")
            click.echo(f"   Answering with {challenge_code}")
            task = shopper.initiate_payment(mandate, challenge_response=challenge_code)
    except TandemError as e:
        click.echo(f"\n❌ Demo failed: {e}", err=True)
        raise SystemExit(1)

    if task.state is TaskState.COMPLETED:
        click.echo(f"   ✅ Payment complete: {task.find_artifact_data('transaction_id')}")
    else:
        click.echo(f"   ❌ Payment {task.state.value}: {task.status_text}")

    events = audit.events if isinstance(audit, MemoryAuditSink) else audit.read_events(limit=10000)
    transitions = [e for e in events if e.event_type == EventType.TASK_TRANSITION.value]
    click.echo("\n7️⃣  Audit trail...")
    click.echo(f"   {len(events)} events, {len(transitions)} task transitions")
    if task.state is not TaskState.COMPLETED:
        raise SystemExit(1)


@main.command()
@click.option("--role", type=click.Choice(SERVED_ROLES), required=True, help="Agent role to serve")
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Port (default from config)")
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="JSON config file keyed by role")
@click.option("--audit-path", type=click.Path(path_type=Path), default=None,
              help="Audit trail file (default from config)")
def serve(role: str, host: Optional[str], port: Optional[int], config_path: Optional[Path],
          audit_path: Optional[Path]):
    """Serve one agent over HTTP."""
    import uvicorn

    from .server import create_app

    try:
        config = load_config(role, config_path)
    except ConfigError as e:
        click.echo(f"❌ {e}", err=True)
        raise SystemExit(1)

    path = audit_path or config.audit_path
    audit = AuditTrail(path) if path else None
    orchestrator = build_agent(config, audit=audit)
    bind_host = host or config.host
    bind_port = port or config.port
    click.echo(f"🚀 {config.name} ({role}) on http://{bind_host}:{bind_port}")
    uvicorn.run(create_app(orchestrator), host=bind_host, port=bind_port)


@main.command()
@click.option("--task", "task_id", default=None, help="Filter by task id")
@click.option("--type", "event_type", type=click.Choice([e.value for e in EventType]), default=None,
              help="Filter by event type")
@click.option("--limit", default=20, help="Number of events to show")
@click.option("--path", type=click.Path(path_type=Path), default=None, help="Audit trail file")
def audit(task_id: Optional[str], event_type: Optional[str], limit: int, path: Optional[Path]):
    """View the audit trail."""
    trail = AuditTrail(path)
    try:
        events = trail.read_events(
            task_id=task_id,
            event_type=EventType(event_type) if event_type else None,
            limit=limit,
        )
    except RuntimeError as e:
        click.echo(f"❌ {e}", err=True)
        raise SystemExit(1)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        agent = f" [{event.agent}]" if event.agent else ""
        task = f" task={event.task_id[:8]}" if event.task_id else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{agent}{task}{reason}")

    summary = trail.summary(task_id=task_id)
    click.echo(f"\n  {summary['total_events']} events, {summary['failures']} failures")


@main.command()
@click.option("--out", type=click.Path(path_type=Path), required=True, help="Where to write the PEM key")
@click.option("--force", is_flag=True, help="Overwrite an existing key file")
def keygen(out: Path, force: bool):
    """Generate a merchant signing key (P-256) for merchant_key_path."""
    if out.exists() and out.stat().st_size > 0 and not force:
        click.echo(f"❌ {out} already exists (use --force to overwrite)", err=True)
        raise SystemExit(1)
    key = generate_merchant_key()
    write_private_bytes(out, private_key_pem(key))
    click.echo(f"🔑 Merchant key written to {out}")
    click.echo(public_key_pem(key).rstrip())


@main.command("config")
@click.option("--role", type=click.Choice(ROLE_CHOICES), required=True, help="Agent role")
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="JSON config file keyed by role")
def show_config(role: str, config_path: Optional[Path]):
    """Print the resolved configuration for a role."""
    try:
        config = load_config(role, config_path)
    except ConfigError as e:
        click.echo(f"❌ {e}", err=True)
        raise SystemExit(1)
    click.echo(json.dumps(config.to_dict(), indent=2))


if __name__ == "__main__":
    main()
