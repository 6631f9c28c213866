"""Middleware for the POS session and organizational context."""
import uuid

from flask import current_app, g, session

from pharmacy_pos.models import PosContext
from pharmacy_pos.services.pos_session import PosSession

SESSION_ID_KEY = 'pos_session_id'
CONTEXT_KEY = 'pos_context'


def load_pos_context():
    """
    Load the POS session id and context into g (Flask's per-request global).

    Called before each request. The session id is minted on first use and
    kept in the Flask session; it keys the stored cart.
    """
    session_id = session.get(SESSION_ID_KEY)
    if not session_id:
        session_id = str(uuid.uuid4())
        session[SESSION_ID_KEY] = session_id
    g.pos_session_id = session_id
    g.pos_context = PosContext.from_dict(session.get(CONTEXT_KEY))


def save_pos_context(context: PosContext) -> None:
    session[CONTEXT_KEY] = context.to_dict()
    g.pos_context = context
    pos = g.get('pos_session')
    if pos is not None:
        pos.context = context


def get_pos_session() -> PosSession:
    """PosSession of the current request, loaded from storage once per request."""
    pos = g.get('pos_session')
    if pos is None:
        if g.get('pos_session_id') is None:
            load_pos_context()
        services = current_app.extensions['pos']
        pos = PosSession(services, g.pos_session_id, g.pos_context).load()
        g.pos_session = pos
    return pos
