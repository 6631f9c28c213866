"""
Flask CLI commands for inspecting stored carts.

Commands:
- flask cart-show <session_id>: print a stored cart and its totals
- flask cart-release <session_id> [--purge]: release the reservations of a stored cart
"""

import click
from flask import current_app

from pharmacy_pos.services.pos_session import PosSession


def _load(session_id):
    services = current_app.extensions['pos']
    if services.storage is None:
        click.echo(click.style('Cart storage is disabled.', fg='red'))
        return None
    pos = PosSession(services, session_id).load()
    if pos.store.is_empty():
        click.echo(click.style(f'No stored cart for {session_id}.', fg='yellow'))
        return None
    return pos


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('cart-show')
    @click.argument('session_id')
    def cart_show(session_id):
        """Print the stored cart of a POS session."""
        pos = _load(session_id)
        if pos is None:
            return

        snapshot = pos.store.snapshot()
        for line in snapshot.lines:
            hold = line.reservation_id or '-'
            click.echo(f'{line.quantity:>4} x {line.display_name:<40} {line.unit_price:>10}  '
                       f'batch={line.batch_id or "-"}  reservation={hold}')
        click.echo(f'\nSubtotal: {snapshot.subtotal}')
        click.echo(f'Tax:      {snapshot.tax}')
        click.echo(click.style(f'Total:    {snapshot.total}', bold=True))
        if pos.prescription_lines:
            click.echo(f'Held prescription lines: {len(pos.prescription_lines)}')

    @app.cli.command('cart-release')
    @click.argument('session_id')
    @click.option('--purge', is_flag=True, help='Also delete the stored cart')
    def cart_release(session_id, purge):
        """Release the reservations of a stored cart and mark its lines unbacked."""
        pos = _load(session_id)
        if pos is None:
            return

        held = [line.reservation_id for line in pos.store.lines if line.reservation_id]
        for reservation_id in held:
            pos.services.reservations.release(reservation_id)
        for line in pos.store.lines:
            if line.reservation_id:
                pos.store.update(line.id, {'reservation_id': None, 'reservation_expires_at': None})
        click.echo(click.style(f'Released {len(held)} reservation(s) for {session_id}.', fg='green'))
        if purge:
            pos.services.storage.delete(session_id)
            click.echo(f'Deleted stored cart {session_id}.')
