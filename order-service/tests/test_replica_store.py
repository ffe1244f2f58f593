from threading import Thread

import pytest

from conftest import account_store_factory, make_account, make_item


def test_get_missing_returns_none(item_store):
    assert item_store.get(404) is None
    assert item_store.count() == 0


def test_upsert_is_last_write_wins(item_store):
    item_store.upsert(1, make_item(1, name="old"))
    item_store.upsert(1, make_item(1, name="new"))

    assert item_store.get(1).name == "new"
    assert item_store.count() == 1


def test_delete_missing_is_noop(item_store):
    item_store.upsert(1, make_item(1))

    assert item_store.delete(2) is False
    assert item_store.count() == 1


def test_delete_removes(item_store):
    item_store.upsert(1, make_item(1))

    assert item_store.delete(1) is True
    assert item_store.get(1) is None


def test_get_many_reports_missing_keys(item_store):
    item_store.upsert(1, make_item(1))
    assert item_store.get_many([1, 2]) == {1: make_item(1), 2: None}


class TestEmailIndex:
    def test_find_by_is_case_insensitive(self):
        store = account_store_factory()
        store.upsert(1, make_account(1, "ada@example.com"))

        assert store.find_by("email", "ADA@example.com").id == 1

    def test_email_change_moves_index(self):
        store = account_store_factory()
        store.upsert(1, make_account(1, "ada@example.com"))
        store.upsert(1, make_account(1, "countess@example.com"))

        assert store.find_by("email", "ada@example.com") is None
        assert store.find_by("email", "countess@example.com").id == 1

    def test_delete_drops_index_entry(self):
        store = account_store_factory()
        store.upsert(1, make_account(1))
        store.delete(1)

        assert store.find_by("email", "ada@example.com") is None

    def test_newer_record_takes_email_over(self):
        store = account_store_factory()
        store.upsert(1, make_account(1, "shared@example.com"))
        store.upsert(2, make_account(2, "shared@example.com"))

        assert store.find_by("email", "shared@example.com").id == 2
        # The older record is still there by id.
        assert store.get(1) is not None

    def test_unindexed_field_is_an_error(self, item_store):
        with pytest.raises(KeyError):
            item_store.find_by("name", "Widget")


def test_concurrent_reads_see_whole_records(item_store):
    """Readers racing a writer only ever see complete versions."""
    versions = [make_item(1, name=f"v{i}", price=f"{i}.00") for i in range(1, 200)]
    item_store.upsert(1, versions[0])
    seen = []

    def writer():
        for version in versions:
            item_store.upsert(1, version)

    def reader():
        for _ in range(500):
            seen.append(item_store.get(1))

    threads = [Thread(target=writer)] + [Thread(target=reader) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(item in versions for item in seen)
    assert item_store.get(1) == versions[-1]
