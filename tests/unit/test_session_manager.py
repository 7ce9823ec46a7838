import threading

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from spatialdao.db import session_manager
from spatialdao.db.session_manager import TransactionState
from spatialdao.exceptions import DaoError


def test_same_thread_gets_same_session(unit):
    assert session_manager.get_session(unit) is session_manager.get_session(unit)
    assert session_manager.active_sessions() >= 1


def test_threads_get_distinct_sessions(file_unit):
    main_session = session_manager.get_session(file_unit)
    outcomes = []

    def worker():
        session = session_manager.get_session(file_unit)
        outcomes.append(session is not main_session and session is session_manager.get_session(file_unit))
        session_manager.close(file_unit)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes == [True] * 4
    # worker sessions were released; the main thread's one is still open
    assert session_manager.get_session(file_unit) is main_session


def test_transaction_state_lifecycle(unit):
    assert session_manager.transaction_state(unit) is TransactionState.CLOSED

    session_manager.get_session(unit)
    assert session_manager.transaction_state(unit) is TransactionState.NOT_STARTED

    session_manager.begin_transaction(unit)
    assert session_manager.is_transaction_active(unit)
    assert session_manager.transaction_state(unit) is TransactionState.ACTIVE

    session_manager.commit(unit)
    assert not session_manager.is_transaction_active(unit)
    assert session_manager.transaction_state(unit) is TransactionState.COMMITTED

    session_manager.begin_transaction(unit)
    session_manager.rollback(unit)
    assert session_manager.transaction_state(unit) is TransactionState.ROLLED_BACK

    session_manager.close(unit)
    assert session_manager.transaction_state(unit) is TransactionState.CLOSED


def test_begin_is_idempotent(unit):
    first = session_manager.begin_transaction(unit)
    second = session_manager.begin_transaction(unit)
    assert first is second
    assert session_manager.is_transaction_active(unit)


def test_commit_and_rollback_without_transaction_are_noops(unit):
    session_manager.commit(unit)
    session_manager.rollback(unit)
    assert session_manager.transaction_state(unit) is TransactionState.NOT_STARTED


def test_commit_makes_work_visible_and_close_discards_the_rest(unit):
    session = session_manager.begin_transaction(unit)
    session.execute(text("INSERT INTO accounts (login, password) VALUES ('kept', 'x')"))
    session_manager.commit(unit)

    session = session_manager.begin_transaction(unit)
    session.execute(text("INSERT INTO accounts (login, password) VALUES ('dropped', 'x')"))
    session_manager.close(unit)

    logins = session_manager.get_session(unit).execute(text("SELECT login FROM accounts")).scalars().all()
    assert logins == ["kept"]


def test_failed_commit_rolls_back_and_raises(unit, monkeypatch):
    session = session_manager.begin_transaction(unit)
    session.execute(text("INSERT INTO accounts (login, password) VALUES ('lost', 'x')"))

    def failing_commit():
        raise OperationalError("COMMIT", {}, Exception("disk full"))

    monkeypatch.setattr(session, "commit", failing_commit)

    with pytest.raises(DaoError) as exc_info:
        session_manager.commit(unit)
    assert exc_info.value.operation == "commit"
    assert session_manager.transaction_state(unit) is TransactionState.ROLLED_BACK
    assert session.execute(text("SELECT COUNT(*) FROM accounts")).scalar() == 0


def test_close_quietly_swallows_close_failures(unit, monkeypatch):
    session = session_manager.get_session(unit)

    def failing_close():
        raise OperationalError("CLOSE", {}, Exception("connection lost"))

    monkeypatch.setattr(session, "close", failing_close)

    with pytest.raises(DaoError):
        session_manager.close(unit)

    session = session_manager.get_session(unit)
    monkeypatch.setattr(session, "close", failing_close)
    session_manager.close_quietly(unit)
    assert session_manager.transaction_state(unit) is TransactionState.CLOSED


def test_close_all_for_thread(unit, file_unit):
    session_manager.get_session(unit)
    session_manager.get_session(file_unit)

    session_manager.close_all_for_thread()

    assert session_manager.transaction_state(unit) is TransactionState.CLOSED
    assert session_manager.transaction_state(file_unit) is TransactionState.CLOSED


def test_close_without_session_is_noop(unit):
    session_manager.close(unit)
    session_manager.close_quietly(unit)


def test_sessions_of_finished_threads_are_released(file_unit):
    leaked = []

    def worker():
        session = session_manager.begin_transaction(file_unit)
        session.execute(text("INSERT INTO accounts (login, password) VALUES ('orphan', 'x')"))
        leaked.append(session)

    thread = threading.Thread(target=worker)
    thread.start()
    thread.join()

    assert session_manager.active_sessions() == 0
    assert not leaked[0].in_transaction()
    count = session_manager.get_session(file_unit).execute(text("SELECT COUNT(*) FROM accounts")).scalar()
    assert count == 0
