"""Propagate the acting user through the call stack using contextvars."""

from contextvars import ContextVar
from contextlib import contextmanager

SYSTEM_ACTOR = "system"

_current_actor: ContextVar[str | None] = ContextVar("current_actor", default=None)


def get_current_actor() -> str:
    """
    Get the acting user from context.

    Authentication happens upstream; whoever calls into the edit core is
    expected to have set the actor. Falls back to SYSTEM_ACTOR so that
    background jobs still produce attributable audit entries.
    """
    actor = _current_actor.get()
    if actor is None:
        return SYSTEM_ACTOR
    return actor


def set_current_actor(actor: str) -> None:
    """Set the acting user in context."""
    _current_actor.set(actor)


def clear_current_actor() -> None:
    """
    Clear the actor.

    Must be called in a finally block to prevent context leakage.
    """
    _current_actor.set(None)


@contextmanager
def actor_context(actor: str):
    """
    Context manager for temporarily setting the acting user.

    Example:
        with actor_context("mechanic-7"):
            session = manager.start_edit(invoice_id)
    """
    previous = _current_actor.get()
    set_current_actor(actor)
    try:
        yield
    finally:
        if previous is None:
            clear_current_actor()
        else:
            set_current_actor(previous)
