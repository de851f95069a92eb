# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Create all tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users create-admin --name "Admin" --email admin@storefront.local --password "Password123"
#   Create an admin account (prompts if options are omitted).
# - python -m flask users list
#   List all users with role and active status.
# - python -m flask users set-role buyer@example.com moderator
#   Change a user's role (user, moderator, admin).
#
# Payments:
# - python -m flask payments expire-stale [--minutes 30]
#   Fail payments stuck in processing longer than the timeout (cron-friendly).
#
# Orders:
# - python -m flask orders show ORD-20260101-0001
#   Print an order with its lines, payments and payment events.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import User
from .services import order_service, payment_service
from .services.auth_service import (
    ROLES,
    PasswordValidationError,
    RegistrationError,
    create_user,
    normalize_email,
    set_role,
)


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """Create database tables if they do not exist."""
    click.echo("START Initializing storefront database...")
    db.create_all()
    click.echo("PASS Tables ready.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('users')
def users_group():
    """User management commands."""


@users_group.command('create-admin')
@click.option('--name', prompt=True, help='Display name')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@with_appcontext
def create_admin_cli(name, email, password):
    """Create an admin account."""
    try:
        user = create_user(name, email, password, role="admin")
    except (PasswordValidationError, RegistrationError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created admin {user.email} (ID: {user.id})")


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with their roles."""
    users = db.session.query(User).order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Name':<20} {'Email':<30} {'Role':<10} {'Active'}")
    click.echo("="*80)

    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.name[:20]:<20} {user.email[:30]:<30} {user.role:<10} {active_str}")

    click.echo("="*80 + "\n")


@users_group.command('set-role')
@click.argument('email')
@click.argument('role', type=click.Choice(ROLES))
@with_appcontext
def set_role_cli(email, role):
    """Change a user's role."""
    user = db.session.query(User).filter_by(email=normalize_email(email)).first()
    if not user:
        raise click.ClickException(f"User {email} not found")
    try:
        user = set_role(user.id, role)
    except RegistrationError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS {user.email} is now {user.role}")


@click.group('payments')
def payments_group():
    """Payment reconciliation commands."""


@payments_group.command('expire-stale')
@click.option('--minutes', type=int, default=None,
              help='Timeout in minutes (defaults to PAYMENT_PROCESSING_TIMEOUT_MINUTES)')
@with_appcontext
def expire_stale_cli(minutes):
    """Fail payments left in processing past the timeout."""
    expired = payment_service.expire_stale_payments(older_than_minutes=minutes)
    if not expired:
        click.echo("PASS No stale payments.")
        return
    click.echo(f"PASS Expired {len(expired)} payment(s): {', '.join(str(pid) for pid in expired)}")


@click.group('orders')
def orders_group():
    """Order inspection commands."""


@orders_group.command('show')
@click.argument('order_number')
@with_appcontext
def show_order_cli(order_number):
    """Print an order with its lines and payment history."""
    order = order_service.get_order_by_number(order_number)
    if not order:
        raise click.ClickException(f"Order {order_number} not found")

    click.echo(f"\n{order.order_number}  status={order.status}  payment_status={order.payment_status}")
    click.echo(f"user={order.user.email}  created={order.created_at}  paid={order.paid_at or '-'}")
    if order.attention_reason:
        click.echo(f"ATTENTION {order.attention_reason}")

    click.echo("-"*80)
    for line in order.lines:
        click.echo(
            f"{line.position:>3}  {line.sku:<16} {line.quantity:>5} x {line.unit_price_cents:>10}"
            f" = {line.line_total_cents:>10}"
        )
    click.echo("-"*80)
    click.echo(f"subtotal={order.subtotal_cents} tax={order.tax_cents} shipping={order.shipping_cents} "
               f"discount={order.discount_cents} total={order.total_cents} {order.currency}")
    click.echo(f"inventory committed: {order.inventory_committed_at or 'no'}")

    for payment in order.payments:
        click.echo(f"\npayment {payment.id} {payment.payment_method} {payment.status} ref={payment.provider_ref or '-'}")
        for event in payment.events:
            click.echo(f"    {event.occurred_at}  {event.event_type:<22} {event.from_status or '-'} -> "
                       f"{event.to_status or '-'}  [{event.source or '-'}] {event.note or ''}")
    click.echo("")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(payments_group)
    app.cli.add_command(orders_group)
