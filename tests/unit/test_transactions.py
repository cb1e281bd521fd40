from concurrent.futures import ThreadPoolExecutor

import psycopg
import pytest
from psycopg import IsolationLevel

from pgmodel.cache import new_cache
from pgmodel.client import Client
from pgmodel.domain.state import State
from pgmodel.errors import NoActiveTransactionError, StatementFailedError
from pgmodel.infrastructure import driver
from pgmodel.transaction import COMMIT_EVENT, Transaction


def in_other_thread(fn):
    with ThreadPoolExecutor(max_workers=1) as executor:
        return executor.submit(fn).result()


@pytest.fixture
def events(client):
    received = []
    client.add_listener(COMMIT_EVENT, received.append)
    return received


class TestLifecycle:
    def test_begin_binds_to_current_thread(self, client):
        transaction = client.begin_transaction()

        assert isinstance(transaction, Transaction)
        assert client.has_transaction()
        assert client.get_transaction() is transaction
        assert client.begin_transaction() is transaction
        assert in_other_thread(client.has_transaction) is False

    def test_commit_and_abort_require_transaction(self, client):
        with pytest.raises(NoActiveTransactionError, match="No open transaction to commit"):
            client.commit_transaction()
        with pytest.raises(NoActiveTransactionError, match="No open transaction to abort"):
            client.abort_transaction()

    def test_connection_is_acquired_lazily_and_released(self, client, Author, fake_pool):
        client.begin_transaction()
        assert fake_pool.borrowed == []

        Author(name="Jane").save()
        Author(name="John").save()

        assert len(fake_pool.borrowed) == 1
        connection = fake_pool.borrowed[0]
        assert connection.autocommit is False
        assert connection.isolation_level == IsolationLevel.READ_COMMITTED
        assert connection.read_only is False

        client.commit_transaction()

        assert fake_pool.returned == [connection]
        assert connection.commits == 1
        assert not client.has_transaction()

    def test_empty_transaction_never_touches_the_pool(self, client, fake_pool):
        client.begin_transaction()
        client.commit_transaction()
        client.begin_transaction()
        client.abort_transaction()

        assert fake_pool.borrowed == []
        assert not client.has_transaction()

    def test_context_manager_commits(self, client, Author, fake_db):
        with client.transaction() as transaction:
            Author(name="Jane").save()
            assert fake_db.tables["t_author"] == {}
            assert client.get_transaction() is transaction

        assert not client.has_transaction()
        assert len(fake_db.tables["t_author"]) == 1

    def test_context_manager_rolls_back_on_error(self, client, Author, fake_db):
        with pytest.raises(RuntimeError):
            with client.transaction():
                Author(name="Jane").save()
                raise RuntimeError("boom")

        assert not client.has_transaction()
        assert fake_db.tables["t_author"] == {}

    def test_nested_context_manager_joins_outer(self, client, Author, fake_db):
        with client.transaction() as outer:
            with client.transaction() as inner:
                assert inner is outer
                Author(name="Jane").save()
            assert client.has_transaction()
            assert fake_db.tables["t_author"] == {}

        assert len(fake_db.tables["t_author"]) == 1

    def test_custom_context_key_shares_transaction_across_threads(self, fake_pool):
        client = Client(fake_pool, context_key=lambda: "request-1")
        transaction = client.begin_transaction()

        assert in_other_thread(client.get_transaction) is transaction

    def test_repr(self, client, Author):
        transaction = client.begin_transaction()
        Author(name="Jane").save()

        assert repr(transaction) == "<Transaction (1 inserted, 0 updated, 0 deleted)>"


class TestIsolation:
    def test_insert_invisible_to_other_threads_until_commit(self, client, Author, fake_db):
        client.begin_transaction()
        author = Author(name="Jane").save()

        assert in_other_thread(lambda: Author.get(author.id)) is None
        assert author.key not in client.cache

        client.commit_transaction()

        assert client.cache.get(author.key)["aut_name"] == "Jane"
        assert in_other_thread(lambda: Author.get(author.id)).name == "Jane"

    def test_read_your_own_writes_without_query(self, client, Author, fake_db):
        client.begin_transaction()
        author = Author(name="Jane").save()
        selects = len(fake_db.selects())

        found = Author.get(author.id)

        assert found.name == "Jane"
        assert found is not author
        assert len(fake_db.selects()) == selects

    def test_update_invisible_to_other_threads(self, client, Author):
        author = Author(name="Jane").save()

        with client.transaction():
            author.name = "Jane Doe"
            author.save()
            assert Author.get(author.id).name == "Jane Doe"
            assert in_other_thread(lambda: Author.get(author.id)).name == "Jane"
            assert client.cache.get(author.key)["aut_name"] == "Jane"

        assert client.cache.get(author.key)["aut_name"] == "Jane Doe"

    def test_delete_in_transaction(self, client, Author, fake_db):
        author = Author(name="Jane").save()
        selects = len(fake_db.selects())

        client.begin_transaction()
        author.delete()

        assert Author.get(author.id) is None
        assert len(fake_db.selects()) == selects
        assert in_other_thread(lambda: Author.get(author.id)).name == "Jane"

        client.commit_transaction()

        assert author.key not in client.cache
        assert Author.get(author.id) is None

    def test_rows_fetched_in_transaction_are_cached_when_untouched(self, client, Author):
        author = Author(name="Jane").save()
        client.cache.clear()

        with client.transaction():
            Author.get(author.id)
            assert author.key in client.cache

    def test_rows_touched_by_transaction_are_not_cached(self, client, Author):
        author = Author(name="Jane").save()
        client.cache.clear()

        client.begin_transaction()
        author.name = "Uncommitted"
        author.save()
        found = Author.get_many([author.id])

        assert found[0].name == "Uncommitted"
        assert author.key not in client.cache

        client.abort_transaction()

        assert author.key not in client.cache
        assert Author.get(author.id).name == "Jane"


class TestCache:
    def test_get_reads_through_cache(self, client, Author, fake_db):
        author = Author(name="Jane").save()
        selects = len(fake_db.selects())

        assert Author.get(author.id).name == "Jane"
        assert len(fake_db.selects()) == selects

    def test_cached_rows_are_isolated_from_models(self, client, Author):
        author = Author(name="Jane").save()

        found = Author.get(author.id)
        found.name = "changed locally"

        assert client.cache.get(author.key)["aut_name"] == "Jane"
        assert Author.get(author.id).name == "Jane"

    def test_nested_values_are_isolated_from_other_threads(self, client, Doc):
        doc = Doc(body={"tags": ["a"]}).save()

        with client.transaction():
            Doc.get(doc.id).body["tags"].append("uncommitted")

            assert in_other_thread(lambda: Doc.get(doc.id).body) == {"tags": ["a"]}

        assert client.cache.get(doc.key)["doc_body"] == {"tags": ["a"]}

    def test_pending_rows_are_copies(self, client, Doc):
        with client.transaction():
            doc = Doc(body={"tags": ["a"]}).save()
            Doc.get(doc.id).body["tags"].append("changed")

            assert Doc.get(doc.id).body == {"tags": ["a"]}
            assert doc.body == {"tags": ["a"]}

    def test_row_read_before_a_committed_delete_is_not_cached(self, client, Author, monkeypatch):
        author = Author(name="x").save()
        client.cache.clear()
        column_types = driver.column_types

        def delete():
            with client.transaction():
                author.delete()

        def delete_while_reading(cursor):
            if author.state is State.CLEAN:
                in_other_thread(delete)
            return column_types(cursor)

        monkeypatch.setattr(driver, "column_types", delete_while_reading)

        assert Author.get(author.id).name == "x"
        assert author.key not in client.cache
        assert Author.get(author.id) is None

    def test_delete_outside_transaction_evicts(self, client, Author):
        author = Author(name="Jane").save()

        author.delete()

        assert author.key not in client.cache


class TestRollback:
    def test_reverts_model_states(self, client, Author, fake_db):
        updated = Author(name="Updated").save()
        deleted = Author(name="Deleted").save()

        client.begin_transaction()
        inserted = Author(name="Inserted").save()
        updated.name = "Updated again"
        updated.save()
        deleted.delete()
        client.abort_transaction()

        assert inserted.state is State.NEW
        assert updated.state is State.DIRTY
        assert deleted.state is State.CLEAN
        assert not client.has_transaction()
        assert len(fake_db.tables["t_author"]) == 2
        assert client.cache.get(updated.key)["aut_name"] == "Updated"
        assert deleted.key in client.cache

    def test_inserted_then_deleted_reverts_to_new(self, client, Author):
        client.begin_transaction()
        author = Author(name="Short lived").save()
        author.delete()
        client.abort_transaction()

        assert author.state is State.NEW

    def test_update_of_inserted_model_stays_inserted(self, client, Author, events):
        transaction = client.begin_transaction()
        author = Author(name="Jane").save()
        author.name = "Jane Doe"
        author.save()

        assert list(transaction.inserted) == [author.key]
        assert transaction.updated == {}

        client.commit_transaction()

        assert list(events[0]["inserted"]) == [author.key]
        assert events[0]["updated"] == {}

    def test_rolled_back_connection_is_released(self, client, Author, fake_pool):
        client.begin_transaction()
        Author(name="Jane").save()
        client.abort_transaction()

        connection = fake_pool.borrowed[0]
        assert connection.rollbacks == 1
        assert fake_pool.returned == [connection]

    def test_failed_rollback_does_not_mask_block_error(
        self, client, Author, fake_pool, monkeypatch, caplog
    ):
        def lost():
            raise psycopg.OperationalError("connection lost")

        with pytest.raises(ValueError, match="application error"):
            with client.transaction() as transaction:
                author = Author(name="Jane").save()
                monkeypatch.setattr(transaction.get_connection(), "rollback", lost)
                raise ValueError("application error")

        assert author.state is State.NEW
        assert not client.has_transaction()
        assert fake_pool.borrowed[0] in fake_pool.returned
        assert "Rollback after a failed transaction block failed" in caplog.text

    def test_failed_statement_keeps_transaction_open(self, client, Author, fake_db):
        client.begin_transaction()
        fake_db.fail_on = "insert"

        with pytest.raises(StatementFailedError):
            Author(name="Jane").save()

        assert client.has_transaction()
        client.abort_transaction()


class TestFailedCommit:
    def test_reverts_releases_and_raises(self, client, Author, fake_db, fake_pool, events):
        existing = Author(name="Existing").save()
        events.clear()

        client.begin_transaction()
        inserted = Author(name="Jane").save()
        existing.name = "Changed"
        existing.save()
        fake_db.fail_commit = True

        with pytest.raises(StatementFailedError) as excinfo:
            client.commit_transaction()

        assert excinfo.value.sql == "COMMIT"
        assert inserted.state is State.NEW
        assert existing.state is State.DIRTY
        assert not client.has_transaction()
        assert fake_pool.borrowed[-1] in fake_pool.returned
        assert inserted.key not in client.cache
        assert client.cache.get(existing.key)["aut_name"] == "Existing"
        assert events == []


class TestCommitEvents:
    def test_commit_emits_one_event_with_all_changes(self, client, Author, events):
        updated = Author(name="Updated").save()
        deleted = Author(name="Deleted").save()
        events.clear()

        with client.transaction():
            inserted = Author(name="Inserted").save()
            updated.name = "Updated again"
            updated.save()
            deleted.delete()

        assert len(events) == 1
        event = events[0]
        assert event["inserted"] == {inserted.key: inserted}
        assert event["updated"] == {updated.key: updated}
        assert event["deleted"] == {deleted.key: deleted}

    def test_saves_outside_transaction_emit_immediately(self, client, Author, events):
        author = Author(name="Jane").save()
        author.name = "Jane Doe"
        author.save()
        author.delete()

        assert [list(event["inserted"]) for event in events] == [[author.key], [], []]
        assert [list(event["updated"]) for event in events] == [[], [author.key], []]
        assert [list(event["deleted"]) for event in events] == [[], [], [author.key]]

    def test_rollback_emits_nothing(self, client, Author, events):
        with pytest.raises(ValueError):
            with client.transaction():
                Author(name="Jane").save()
                raise ValueError("abort")

        assert events == []

    def test_no_emit_without_listeners(self, client, Author, monkeypatch):
        emitted = []
        monkeypatch.setattr(client, "emit", lambda event, payload: emitted.append(event))

        Author(name="Jane").save()

        assert emitted == []


class TestListeners:
    def test_registry(self, client):
        def listener(payload):
            return None

        client.add_listener(COMMIT_EVENT, listener)
        listeners = client.listeners(COMMIT_EVENT)
        listeners.clear()

        assert client.listeners(COMMIT_EVENT) == [listener]

        client.remove_listener(COMMIT_EVENT, listener)
        client.remove_listener(COMMIT_EVENT, listener)
        assert client.listeners(COMMIT_EVENT) == []

    def test_listener_must_be_callable(self, client):
        with pytest.raises(TypeError):
            client.add_listener(COMMIT_EVENT, "nope")

    def test_emit_iterates_a_snapshot(self, client):
        calls = []

        def once(payload):
            calls.append(payload)
            client.remove_listener("ping", once)

        client.add_listener("ping", once)
        client.emit("ping", 1)
        client.emit("ping", 2)

        assert calls == [1]


def test_close_closes_pool(fake_pool):
    client = Client(fake_pool, cache=new_cache(10))
    client.close()
    assert fake_pool.closed
