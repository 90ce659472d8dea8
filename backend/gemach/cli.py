# Overview: Flask CLI command groups for bootstrap, administration and payment sweeps.

# backend/gemach/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py.
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: payment methods, a default location and an admin user.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Administration:
# - python -m flask users create --username op1 --email op1@gemach.local --password "Password123" --role operator --location-id 1
# - python -m flask locations create --name "Lakewood" --code LKW --methods cash,stripe
# - python -m flask locations list
# - python -m flask inventory set --location-id 1 --color blue --quantity 10
#
# Payment sweeps (schedule with cron):
# - python -m flask payments retry-due
#   Re-check payments in pending_retry whose next_retry_at has passed.
# - python -m flask payments monitor
#   Poll the provider for card/PayPal payments stuck in pending.
# - python -m flask paylater expire
#   Expire pay-later requests whose borrower link timed out.
# - python -m flask sessions cleanup
#   Delete old expired or revoked session tokens.

import click
from flask.cli import with_appcontext

from .errors import DepositError
from .extensions import db
from .models import Location, User
from .services import inventory_service, location_service, pay_later_service, payment_sync_service, session_service
from .services.auth_service import create_user
from .services.authorization import ROLE_ADMIN, ROLE_OPERATOR, Actor


DEFAULT_PAYMENT_METHODS = [
    # name, display name, fee bps, fixed fee cents
    ("cash", "Cash", 0, 0),
    ("stripe", "Credit/Debit Card", 290, 30),
    ("paypal", "PayPal", 349, 49),
]


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--admin-password', default='Password123', help='Password for the default admin')
@with_appcontext
def init_system(admin_password):
    """
    Initialize the gemach ledger.

    Creates (when missing):
    - Global payment methods: cash, stripe, paypal
    - Default location MAIN accepting cash
    - User admin/admin@gemach.local

    SECURITY: Change the admin password immediately in production!
    """
    click.echo("START Initializing gemach ledger...")
    actor = Actor.system()

    for name, display_name, bps, fixed in DEFAULT_PAYMENT_METHODS:
        location_service.upsert_payment_method(
            name,
            actor=actor,
            display_name=display_name,
            is_active=True,
            is_available_to_locations=True,
            processing_fee_bps=bps,
            fixed_fee_cents=fixed,
        )
    click.echo("PASS Payment methods configured")

    location = db.session.query(Location).filter_by(location_code="MAIN").first()
    if not location:
        location = location_service.create_location("Main Gemach", "MAIN", actor=actor)
        click.echo(f"PASS Created default location: {location.name} (ID: {location.id})")
    else:
        click.echo(f"PASS Using existing location: {location.name} (ID: {location.id})")

    if not db.session.query(User).filter_by(username="admin").first():
        create_user("admin", "admin@gemach.local", admin_password, role=ROLE_ADMIN)
        click.echo("PASS Created user: admin")
    else:
        click.echo("PASS User admin already exists")

    click.echo("DONE System initialized")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('users')
def users_group():
    """Staff account commands."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice([ROLE_ADMIN, ROLE_OPERATOR]), default=ROLE_OPERATOR, help='Role')
@click.option('--location-id', type=int, help='Location for operators')
@with_appcontext
def create_user_cli(username, email, password, role, location_id):
    """Create a staff account (password hashed with bcrypt)."""
    try:
        user = create_user(username, email, password, role=role, location_id=location_id)
    except DepositError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created user: {user.username} ({user.email}) with role '{user.role}'")


@users_group.command('list')
@with_appcontext
def list_users():
    users = db.session.query(User).order_by(User.id.asc()).all()
    if not users:
        click.echo("No users found.")
        return
    for user in users:
        status = "active" if user.is_active else "inactive"
        click.echo(f"{user.id:>4}  {user.username:<20} {user.role:<9} location={user.location_id} {status}")


@click.group('locations')
def locations_group():
    """Location commands."""


@locations_group.command('create')
@click.option('--name', required=True, help='Location name')
@click.option('--code', required=True, help='Unique location code')
@click.option('--deposit', type=int, default=20, help='Deposit amount (whole units)')
@click.option('--methods', default='cash', help='Comma separated payment methods')
@click.option('--pin', help='Operator PIN')
@with_appcontext
def create_location_cli(name, code, deposit, methods, pin):
    try:
        location = location_service.create_location(
            name,
            code,
            actor=Actor.system(),
            deposit_amount=deposit,
            payment_methods=[m.strip() for m in methods.split(',') if m.strip()],
            operator_pin=pin,
        )
    except DepositError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created location: {location.name} (ID: {location.id}, Code: {location.location_code})")


@locations_group.command('list')
@click.option('--all', 'include_inactive', is_flag=True, help='Include inactive locations')
@with_appcontext
def list_locations_cli(include_inactive):
    for location in location_service.list_locations(include_inactive=include_inactive):
        methods = ",".join(location.payment_methods or [])
        click.echo(f"{location.id:>4}  {location.location_code:<8} {location.name:<30} deposit={location.deposit_amount} methods={methods}")


@click.group('inventory')
def inventory_group():
    """Inventory commands."""


@inventory_group.command('set')
@click.option('--location-id', type=int, required=True)
@click.option('--color', required=True)
@click.option('--quantity', type=int, required=True)
@with_appcontext
def set_inventory_cli(location_id, color, quantity):
    try:
        item = inventory_service.set_absolute(location_id, color, quantity, actor=Actor.system())
    except DepositError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS {item.color} at location {location_id}: {item.quantity}")


@click.group('payments')
def payments_group():
    """Payment status sweeps."""


@payments_group.command('retry-due')
@with_appcontext
def retry_due_cli():
    outcomes = payment_sync_service.process_due_retries()
    applied = sum(1 for o in outcomes if o.applied)
    click.echo(f"PASS Retry sweep: {len(outcomes)} checked, {applied} updated")


@payments_group.command('monitor')
@with_appcontext
def monitor_cli():
    outcomes = payment_sync_service.monitor_pending_payments()
    applied = sum(1 for o in outcomes if o.applied)
    click.echo(f"PASS Pending monitor: {len(outcomes)} checked, {applied} updated")


@click.group('paylater')
def paylater_group():
    """Pay-later maintenance."""


@paylater_group.command('expire')
@with_appcontext
def expire_cli():
    count = pay_later_service.expire_stale_requests()
    click.echo(f"PASS Expired {count} pay-later request(s)")


@click.group('sessions')
def sessions_group():
    """Session maintenance."""


@sessions_group.command('cleanup')
@with_appcontext
def cleanup_sessions_cli():
    deleted = session_service.cleanup_expired_sessions()
    click.echo(f"PASS Deleted {deleted} session(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(locations_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(payments_group)
    app.cli.add_command(paylater_group)
    app.cli.add_command(sessions_group)
