import json
import os
import threading

import pytest

import otp_utils
from otp_utils import OTPStore, StoreConfig, StorageError, generate_otp
from tests.conftest import WINDOW_SECONDS


def _read_file(store):
    with open(store.path, encoding="utf-8") as f:
        return json.load(f)


def test_generate_otp_is_six_digits_in_range():
    for _ in range(10_000):
        code = generate_otp()
        assert len(code) == 6
        assert code.isdigit()
        assert 100000 <= int(code) <= 999999


def test_store_generate_code_uses_same_code_space(store):
    code = store.generate_code()
    assert code.isdigit() and 100000 <= int(code) <= 999999


def test_issue_then_lookup_returns_code(store):
    store.issue("a@x.com", "123456")
    assert store.lookup("a@x.com") == "123456"


def test_lookup_unknown_email_is_none(store):
    assert store.lookup("nobody@x.com") is None


def test_reissue_overwrites_previous_code(store, clock):
    store.issue("a@x.com", "111111")
    clock.advance(10)
    store.issue("a@x.com", "222222")

    assert store.lookup("a@x.com") == "222222"
    assert store.list_all() == {"a@x.com": "222222"}


def test_revoke_removes_record(store):
    store.issue("a@x.com", "123456")

    assert store.revoke("a@x.com") is True
    assert store.lookup("a@x.com") is None
    assert store.revoke("a@x.com") is False


def test_revoke_absent_does_not_create_file(store):
    assert store.revoke("a@x.com") is False
    assert not store.path.exists()


def test_code_valid_up_to_window_boundary(store, clock):
    store.issue("a@x.com", "123456")
    clock.advance(WINDOW_SECONDS)
    assert store.lookup("a@x.com") == "123456"


def test_expired_lookup_returns_none_and_purges(store, clock):
    store.issue("a@x.com", "123456")
    clock.advance(WINDOW_SECONDS + 0.001)

    assert store.lookup("a@x.com") is None
    assert "a@x.com" not in _read_file(store)
    assert store.list_all() == {}


def test_expired_code_needs_fresh_issue(store, clock):
    store.issue("a@x.com", "123456")
    clock.advance(WINDOW_SECONDS + 1)
    assert store.lookup("a@x.com") is None

    clock.advance(-(WINDOW_SECONDS + 1))
    assert store.lookup("a@x.com") is None


def test_issue_sweeps_other_expired_records(store, clock):
    store.issue("old@x.com", "111111")
    clock.advance(WINDOW_SECONDS + 1)
    store.issue("new@x.com", "222222")

    assert set(_read_file(store)) == {"new@x.com"}


def test_cleanup_sweep_counts_removed_records(store, clock):
    store.issue("a@x.com", "111111")
    store.issue("b@x.com", "222222")
    clock.advance(200)
    store.issue("c@x.com", "333333")
    clock.advance(150)

    assert store.cleanup_sweep() == 2
    assert store.list_all() == {"c@x.com": "333333"}
    assert store.cleanup_sweep() == 0


def test_list_all_excludes_expired(store, clock):
    store.issue("a@x.com", "111111")
    clock.advance(WINDOW_SECONDS + 1)
    store.issue("b@x.com", "222222")

    assert store.list_all() == {"b@x.com": "222222"}


def test_emails_are_normalized(store):
    store.issue("  Alice@Example.COM ", "123456")

    assert store.lookup("alice@example.com") == "123456"
    assert store.revoke("ALICE@example.com") is True


def test_issue_requires_email(store):
    with pytest.raises(ValueError):
        store.issue("   ", "123456")


def test_records_survive_new_store_instance(store, store_dir, clock):
    store.issue("a@x.com", "123456")

    reopened = OTPStore(
        StoreConfig(storage_dir=str(store_dir), verification_window=WINDOW_SECONDS),
        clock=clock,
    )
    assert reopened.lookup("a@x.com") == "123456"


def test_on_disk_record_format(store, clock):
    store.issue("a@x.com", "123456")

    record = _read_file(store)["a@x.com"]
    assert record["email"] == "a@x.com"
    assert record["otp"] == "123456"
    assert record["timestamp"] == clock.now
    assert record["createdAt"].startswith("2023-11-14T22:13:20")


def test_corrupt_file_lookup_fails_closed(store):
    store.path.write_text("{not json", encoding="utf-8")
    assert store.lookup("a@x.com") is None


def test_corrupt_file_issue_raises(store):
    store.path.write_text("[1, 2, 3]", encoding="utf-8")

    with pytest.raises(StorageError):
        store.issue("a@x.com", "123456")
    with pytest.raises(StorageError):
        store.list_all()


def test_malformed_record_is_storage_error(store):
    store.path.write_text(json.dumps({"a@x.com": {"otp": "123456"}}), encoding="utf-8")

    with pytest.raises(StorageError):
        store.cleanup_sweep()
    assert store.lookup("a@x.com") is None


def test_write_failure_raises_and_leaves_no_temp_file(store, monkeypatch):
    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(otp_utils.os, "replace", broken_replace)

    with pytest.raises(StorageError):
        store.issue("a@x.com", "123456")

    assert os.listdir(store.storage_dir) == []


def test_failed_write_keeps_previous_state(store, monkeypatch):
    store.issue("a@x.com", "123456")

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(otp_utils.os, "replace", broken_replace)
    with pytest.raises(StorageError):
        store.revoke("a@x.com")

    monkeypatch.undo()
    assert store.lookup("a@x.com") == "123456"


def test_unwritable_storage_dir_raises(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")

    with pytest.raises(StorageError):
        OTPStore(StoreConfig(storage_dir=str(blocker / "sub")))


def test_concurrent_issues_are_all_kept(store):
    emails = [f"user{i}@x.com" for i in range(25)]

    threads = [
        threading.Thread(target=store.issue, args=(email, f"{100000 + i}"))
        for i, email in enumerate(emails)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.list_all() == {email: f"{100000 + i}" for i, email in enumerate(emails)}


def test_consume_deletes_matching_code_once(store):
    store.issue("a@x.com", "123456")

    assert store.consume("A@x.com", " 123456 ") is True
    assert store.consume("a@x.com", "123456") is False
    assert store.lookup("a@x.com") is None


def test_consume_wrong_code_keeps_record(store):
    store.issue("a@x.com", "123456")

    assert store.consume("a@x.com", "654321") is False
    assert store.lookup("a@x.com") == "123456"


def test_consume_expired_code_purges(store, clock):
    store.issue("a@x.com", "123456")
    clock.advance(WINDOW_SECONDS + 1)

    assert store.consume("a@x.com", "123456") is False
    assert "a@x.com" not in _read_file(store)


def test_consume_corrupt_file_fails_closed(store):
    store.path.write_text("{not json", encoding="utf-8")
    assert store.consume("a@x.com", "123456") is False


def test_concurrent_consumes_succeed_once(store):
    store.issue("a@x.com", "123456")
    barrier = threading.Barrier(8)
    results = []

    def consume():
        barrier.wait(timeout=5)
        results.append(store.consume("a@x.com", "123456"))

    threads = [threading.Thread(target=consume) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert results.count(False) == 7
