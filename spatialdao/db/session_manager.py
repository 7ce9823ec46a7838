"""
Per-thread session and transaction lifecycle.

Each (thread, persistence unit) pair owns at most one SQLAlchemy session,
created lazily on first use and kept until :func:`close` is called from the
same thread. The mapping is keyed by the ``threading.Thread`` object rather
than its ident, since idents are recycled once a thread exits. Sessions
left open by threads that have finished are closed (and their uncommitted
work rolled back) the next time a session is created, counted or closed for
a thread.
"""
from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from spatialdao.db import database
from spatialdao.exceptions import DaoError

logger = logging.getLogger(__name__)


class TransactionState(str, enum.Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    CLOSED = "closed"


@dataclass
class SessionHandle:
    unit: str
    thread_id: int
    session: Session
    state: TransactionState = TransactionState.NOT_STARTED


_handles: Dict[Tuple[threading.Thread, str], SessionHandle] = {}
_handles_lock = threading.Lock()


def _key(unit: str) -> Tuple[threading.Thread, str]:
    return threading.current_thread(), unit


def _pop(key: Tuple[threading.Thread, str]) -> SessionHandle | None:
    with _handles_lock:
        return _handles.pop(key, None)


def _close_handle(handle: SessionHandle) -> None:
    handle.state = TransactionState.CLOSED
    try:
        handle.session.close()
    except SQLAlchemyError as exc:
        message = f"Failed to close session on {handle.unit}: {exc}"
        logger.error(message)
        raise DaoError(message, operation="close") from exc


def _release_finished_threads() -> None:
    with _handles_lock:
        finished: List[SessionHandle] = [
            _handles.pop(key) for key in list(_handles) if not key[0].is_alive()
        ]
    for handle in finished:
        logger.warning(
            "Closing session for %s left open by finished thread %s", handle.unit, handle.thread_id
        )
        try:
            _close_handle(handle)
        except DaoError:
            # already logged
            pass


def _handle(unit: str) -> SessionHandle:
    key = _key(unit)
    handle = _handles.get(key)
    if handle is None:
        _release_finished_threads()
        factory = database.get_session_factory(unit)
        logger.debug("Creating session for persistence unit %s", unit)
        handle = SessionHandle(unit=unit, thread_id=threading.get_ident(), session=factory.sessionmaker())
        with _handles_lock:
            _handles[key] = handle
    return handle


def get_session(unit: str) -> Session:
    """Return the calling thread's session for ``unit``, creating it if needed."""
    return _handle(unit).session


def begin_transaction(unit: str) -> Session:
    """Begin a transaction unless one is already active; return the session."""
    handle = _handle(unit)
    session = handle.session
    if not session.in_transaction():
        logger.info("Beginning transaction on %s", unit)
        try:
            session.begin()
        except SQLAlchemyError as exc:
            message = f"Failed to begin transaction on {unit}: {exc}"
            logger.error(message)
            raise DaoError(message, operation="begin_transaction") from exc
    handle.state = TransactionState.ACTIVE
    return session


def commit(unit: str) -> None:
    """Commit if a transaction is active; a failed commit is rolled back."""
    handle = _handle(unit)
    session = handle.session
    if not session.in_transaction():
        return
    logger.info("Committing transaction on %s", unit)
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        handle.state = TransactionState.ROLLED_BACK
        message = f"Failed to commit on {unit}: {exc}"
        logger.error(message)
        raise DaoError(message, operation="commit") from exc
    handle.state = TransactionState.COMMITTED


def rollback(unit: str) -> None:
    """Roll back if a transaction is active."""
    handle = _handle(unit)
    session = handle.session
    if not session.in_transaction():
        return
    logger.info("Rolling back transaction on %s", unit)
    try:
        session.rollback()
    except SQLAlchemyError as exc:
        message = f"Failed to roll back on {unit}: {exc}"
        logger.error(message)
        raise DaoError(message, operation="rollback") from exc
    handle.state = TransactionState.ROLLED_BACK


def is_transaction_active(unit: str) -> bool:
    handle = _handles.get(_key(unit))
    return handle is not None and handle.session.in_transaction()


def transaction_state(unit: str) -> TransactionState:
    """Lifecycle state of the calling thread's transaction for ``unit``.

    Units without a session report ``CLOSED``. A transaction opened
    implicitly by a read reports ``ACTIVE``.
    """
    handle = _handles.get(_key(unit))
    if handle is None:
        return TransactionState.CLOSED
    if handle.session.in_transaction():
        handle.state = TransactionState.ACTIVE
    return handle.state


def close(unit: str) -> None:
    """Close the calling thread's session for ``unit`` and forget it.

    Uncommitted work is rolled back by the session.
    """
    handle = _pop(_key(unit))
    if handle is None:
        return
    logger.info("Closing session for persistence unit %s", unit)
    _close_handle(handle)


def close_quietly(unit: str) -> None:
    """Teardown variant of :func:`close`; close failures are already logged."""
    try:
        close(unit)
    except DaoError:
        pass


def close_all_for_thread() -> None:
    """Close every session owned by the calling thread."""
    current = threading.current_thread()
    with _handles_lock:
        units = [key[1] for key in _handles if key[0] is current]
    for unit in units:
        close_quietly(unit)
    _release_finished_threads()


def active_sessions() -> int:
    """Number of open sessions held by live threads."""
    _release_finished_threads()
    with _handles_lock:
        return len(_handles)
