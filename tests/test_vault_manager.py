# Tests for vault.vault_manager
# Covers: lifecycle (create/unlock/lock/destroy), session guarantees,
#         credential and file operations, edit flow, failure handling,
#         end-to-end scenario

import os
import sys
import threading
import time
from unittest.mock import patch

import pytest

from vaultkeeper.vault import (
    AuthenticationFailure,
    DecryptionFailed,
    DriftDetected,
    DuplicateName,
    EditorFailed,
    InvalidInput,
    RecordNotFound,
    StorageIO,
    VaultAlreadyExists,
    VaultBusy,
    VaultLocked,
    VaultManager,
    VaultNotInitialized,
)
from vaultkeeper.vault.encryption import MIN_ITERATIONS, TAG_LENGTH


# ── Lifecycle ─────────────────────────────────────────────────────────


class TestLifecycle:
    def test_create_layout(self, new_vault, vault_dir):
        assert new_vault.exists
        assert (vault_dir / "vault.json").is_file()
        assert (vault_dir / "vault.db").is_file()
        assert (vault_dir / "blobs").is_dir()
        assert not new_vault.is_unlocked

    def test_create_twice(self, new_vault, master_password):
        with pytest.raises(VaultAlreadyExists):
            new_vault.create(master_password, iterations=MIN_ITERATIONS)

    def test_create_weak_password(self, vault_dir):
        with pytest.raises(InvalidInput):
            VaultManager(vault_dir).create("short", iterations=MIN_ITERATIONS)
        assert not (vault_dir / "vault.json").exists()

    def test_unlock_missing_vault(self, vault_dir, master_password):
        with pytest.raises(VaultNotInitialized):
            VaultManager(vault_dir).unlock(master_password)

    def test_unlock_and_lock(self, new_vault, master_password):
        new_vault.unlock(master_password)
        assert new_vault.is_unlocked
        new_vault.lock()
        assert not new_vault.is_unlocked

    def test_lock_is_idempotent(self, new_vault):
        new_vault.lock()
        new_vault.lock()

    def test_wrong_password(self, new_vault):
        with pytest.raises(AuthenticationFailure):
            new_vault.unlock("wrong-pw")
        assert not new_vault.is_unlocked
        assert not (new_vault.vault_dir / ".lock").exists()

    def test_corrupt_header(self, new_vault, master_password):
        (new_vault.vault_dir / "vault.json").write_text("{}")
        with pytest.raises(AuthenticationFailure):
            new_vault.unlock(master_password)

    def test_key_zeroized_after_lock(self, vault):
        key = vault._key
        assert not key.is_zeroized()
        vault.lock()
        assert key.is_zeroized()
        assert vault._key is None

    def test_context_manager_locks(self, new_vault, master_password):
        with new_vault as v:
            v.unlock(master_password)
            key = v._key
        assert key.is_zeroized()
        assert not new_vault.is_unlocked

    def test_second_session_is_busy(self, vault, vault_dir, master_password):
        with pytest.raises(VaultBusy):
            VaultManager(vault_dir).unlock(master_password)

    def test_same_session_unlock_twice(self, vault, master_password):
        with pytest.raises(VaultBusy):
            vault.unlock(master_password)
        assert vault.is_unlocked

    def test_lock_releases_session(self, vault, vault_dir, master_password):
        vault.lock()
        other = VaultManager(vault_dir)
        other.unlock(master_password)
        other.lock()

    def test_status(self, vault):
        vault.add_credential("bank", "alice", "secret1")
        info = vault.status()
        assert info["credentials"] == 1
        assert info["files"] == 0
        assert info["kdf_iterations"] == MIN_ITERATIONS


class TestUnlockBackoff:
    def test_backoff_after_repeated_failures(self, new_vault, master_password):
        for _ in range(3):
            with pytest.raises(AuthenticationFailure):
                new_vault.unlock("wrong-pw")
        assert new_vault.failed_attempts == 3
        assert new_vault.lockout_until is not None

        # Inside the window even the right password is refused
        with pytest.raises(AuthenticationFailure, match="Too many failed attempts"):
            new_vault.unlock(master_password)

        new_vault.lockout_until = time.monotonic() - 1
        new_vault.unlock(master_password)
        assert new_vault.failed_attempts == 0
        new_vault.lock()

    def test_first_failures_are_free(self, new_vault, master_password):
        for _ in range(2):
            with pytest.raises(AuthenticationFailure):
                new_vault.unlock("wrong-pw")
        assert new_vault.lockout_until is None
        new_vault.unlock(master_password)
        new_vault.lock()


class TestLockedVault:
    @pytest.mark.parametrize("call", [
        lambda v: v.add_credential("bank", "alice", "secret1"),
        lambda v: v.read_credential("bank"),
        lambda v: v.update_credential("bank", password="x"),
        lambda v: v.delete_credential("bank"),
        lambda v: v.add_file("doc", "doc.txt", b"x"),
        lambda v: v.read_file("doc"),
        lambda v: v.delete_file("doc"),
        lambda v: v.list_records(),
        lambda v: v.sync_check(),
        lambda v: v.status(),
    ])
    def test_operations_require_unlock(self, new_vault, call):
        with pytest.raises(VaultLocked):
            call(new_vault)


# ── Credentials ───────────────────────────────────────────────────────


class TestCredentials:
    def test_add_and_read(self, vault):
        record_id = vault.add_credential("bank", "alice", "secret1", notes="pin 1234")
        credential = vault.read_credential(record_id)
        assert (credential.name, credential.username, credential.password, credential.notes) == (
            "bank", "alice", "secret1", "pin 1234"
        )
        assert vault.read_credential("bank").id == record_id

    def test_empty_fields(self, vault):
        vault.add_credential("api", password="token")
        credential = vault.read_credential("api")
        assert credential.username == ""
        assert credential.notes is None

    def test_fields_are_encrypted_at_rest(self, vault):
        vault.add_credential("bank", "alice", "secret1")
        raw = (vault.vault_dir / "vault.db").read_bytes()
        wal = vault.vault_dir / "vault.db-wal"
        if wal.exists():
            raw += wal.read_bytes()
        assert b"secret1" not in raw
        assert b"alice" not in raw

    def test_repr_hides_password(self, vault):
        vault.add_credential("bank", "alice", "secret1")
        assert "secret1" not in repr(vault.read_credential("bank"))

    def test_duplicate_name(self, vault):
        vault.add_credential("bank", "alice", "secret1")
        with pytest.raises(DuplicateName):
            vault.add_credential("bank", "bob", "secret2")

    @pytest.mark.parametrize("name", ["", "a/b", "tab\there", "x" * 129])
    def test_invalid_name(self, vault, name):
        with pytest.raises(InvalidInput):
            vault.add_credential(name, "alice", "secret1")

    def test_read_missing(self, vault):
        with pytest.raises(RecordNotFound):
            vault.read_credential("nope")

    def test_update_gets_fresh_nonce(self, vault):
        record_id = vault.add_credential("bank", "alice", "secret1")
        before = vault.metadata.get_credential(record_id)
        vault.update_credential(record_id, password="secret2")
        after = vault.metadata.get_credential(record_id)
        assert after.nonce("password") != before.nonce("password")
        assert after.nonce("username") == before.nonce("username")
        assert vault.read_credential(record_id).password == "secret2"

    def test_update_rename_and_clear(self, vault):
        record_id = vault.add_credential("bank", "alice", "secret1", notes="old")
        vault.update_credential("bank", name="bank-eu", notes="")
        credential = vault.read_credential(record_id)
        assert credential.name == "bank-eu"
        assert credential.notes is None
        assert credential.modified_at >= credential.created_at

    def test_update_rename_collision(self, vault):
        vault.add_credential("bank", "alice", "secret1")
        vault.add_credential("mail", "alice", "secret2")
        with pytest.raises(DuplicateName):
            vault.update_credential("mail", name="bank")

    def test_update_nothing(self, vault):
        vault.add_credential("bank", "alice", "secret1")
        with pytest.raises(InvalidInput):
            vault.update_credential("bank")

    def test_update_missing(self, vault):
        with pytest.raises(RecordNotFound):
            vault.update_credential("nope", password="x")

    def test_delete_is_idempotent(self, vault):
        record_id = vault.add_credential("bank", "alice", "secret1")
        assert vault.delete_credential(record_id) is True
        assert vault.delete_credential(record_id) is False
        assert vault.delete_credential("never-existed") is False
        with pytest.raises(RecordNotFound):
            vault.read_credential(record_id)

    def test_field_swap_detected(self, vault):
        record_id = vault.add_credential("bank", "alice", "secret1")
        conn = vault.metadata.conn
        conn.execute(
            "UPDATE credentials SET password_ct = username_ct, password_nonce = username_nonce "
            "WHERE id = ?", (record_id,)
        )
        with pytest.raises(DecryptionFailed):
            vault.read_credential(record_id)
        assert vault.is_unlocked

    def test_edit_notes(self, vault, fake_editor_cls):
        vault.add_credential("bank", "alice", "secret1", notes="line one")
        editor = fake_editor_cls(lambda data: data + b"\nline two")
        assert vault.edit_credential_notes("bank", editor=editor) is True
        assert vault.read_credential("bank").notes == "line one\nline two"

    def test_edit_notes_unchanged(self, vault, fake_editor_cls):
        vault.add_credential("bank", "alice", "secret1", notes="same")
        assert vault.edit_credential_notes("bank", editor=fake_editor_cls()) is False


# ── Files ─────────────────────────────────────────────────────────────


class TestFiles:
    def test_add_and_read(self, vault):
        content = os.urandom(5000)
        record_id = vault.add_file("scan", "scan.pdf", content)
        assert vault.read_file(record_id) == content
        assert vault.read_file("scan") == content
        assert len(vault.blobs.read(record_id)) == len(content) + TAG_LENGTH

    def test_empty_file(self, vault):
        record_id = vault.add_file("empty", "empty.txt", b"")
        assert vault.read_file(record_id) == b""

    def test_blob_is_not_plaintext(self, vault):
        record_id = vault.add_file("doc", "doc.txt", b"very secret text")
        assert b"very secret text" not in vault.blobs.read(record_id)

    def test_original_filename_is_basename(self, vault):
        record_id = vault.add_file("doc", "/home/alice/doc.txt", b"x")
        assert vault.get_file_info(record_id).original_filename == "doc.txt"

    def test_add_from_path(self, vault, tmp_path):
        source = tmp_path / "report.csv"
        source.write_bytes(b"a,b\n1,2\n")
        record_id = vault.add_file_from_path(source)
        info = vault.get_file_info(record_id)
        assert (info.name, info.original_filename, info.size) == ("report.csv", "report.csv", 8)

    def test_add_from_missing_path(self, vault, tmp_path):
        with pytest.raises(InvalidInput):
            vault.add_file_from_path(tmp_path / "absent.txt")

    def test_duplicate_names_need_id(self, vault):
        first = vault.add_file("scan", "a.pdf", b"a")
        vault.add_file("scan", "b.pdf", b"b")
        with pytest.raises(InvalidInput):
            vault.read_file("scan")
        assert vault.read_file(first) == b"a"

    def test_tampered_blob(self, vault):
        record_id = vault.add_file("doc", "doc.txt", b"hello world")
        blob = bytearray(vault.blobs.read(record_id))
        blob[0] ^= 0x01
        vault.blobs.write(record_id, bytes(blob))
        with pytest.raises(DecryptionFailed):
            vault.read_file(record_id)

    def test_truncated_blob(self, vault):
        record_id = vault.add_file("doc", "doc.txt", b"hello world")
        vault.blobs.write(record_id, vault.blobs.read(record_id)[:-1])
        with pytest.raises(DecryptionFailed):
            vault.read_file(record_id)

    def test_blob_moved_between_records(self, vault):
        first = vault.add_file("a", "a.txt", b"aaaa")
        second = vault.add_file("b", "b.txt", b"bbbb")
        vault.blobs.write(second, vault.blobs.read(first))
        with pytest.raises(DecryptionFailed):
            vault.read_file(second)

    def test_missing_blob_is_drift(self, vault):
        record_id = vault.add_file("doc", "doc.txt", b"hello")
        vault.blobs.delete(record_id)
        with pytest.raises(DriftDetected):
            vault.read_file(record_id)

    def test_export(self, vault, tmp_path):
        record_id = vault.add_file("doc", "doc.txt", b"hello")
        out = vault.export_file(record_id, tmp_path / "out.txt")
        assert out.read_bytes() == b"hello"
        if sys.platform != "win32":
            assert os.stat(out).st_mode & 0o777 == 0o600

    def test_export_to_directory(self, vault, tmp_path):
        vault.add_file("doc", "doc.txt", b"hello")
        out = vault.export_file("doc", tmp_path)
        assert out == tmp_path / "doc.txt"

    def test_export_refuses_overwrite(self, vault, tmp_path):
        vault.add_file("doc", "doc.txt", b"hello")
        target = tmp_path / "out.txt"
        target.write_bytes(b"existing")
        with pytest.raises(InvalidInput):
            vault.export_file("doc", target)
        vault.export_file("doc", target, overwrite=True)
        assert target.read_bytes() == b"hello"

    def test_export_unwritable_target_is_storage_error(self, vault, tmp_path):
        vault.add_file("doc", "doc.txt", b"hello")
        with pytest.raises(StorageIO):
            vault.export_file("doc", tmp_path / "missing" / "out.txt")
        assert not vault.is_unlocked

    def test_failed_export_leaves_no_partial_file(self, vault, tmp_path):
        vault.add_file("doc", "doc.txt", b"hello")
        target = tmp_path / "out.txt"
        with patch("vaultkeeper.vault.vault_manager.os.fsync", side_effect=OSError("disk full")):
            with pytest.raises(StorageIO):
                vault.export_file("doc", target)
        assert not target.exists()

    def test_delete_removes_row_and_blob(self, vault):
        record_id = vault.add_file("doc", "doc.txt", b"hello")
        assert vault.delete_file(record_id) is True
        assert not vault.blobs.exists(record_id)
        assert vault.metadata.get_file(record_id) is None
        assert vault.delete_file(record_id) is False

    def test_delete_with_missing_blob(self, vault):
        record_id = vault.add_file("doc", "doc.txt", b"hello")
        vault.blobs.delete(record_id)
        assert vault.delete_file(record_id) is True
        assert vault.sync_check().is_clean


class TestInterruptedWrites:
    def test_interrupted_add_file_leaves_orphan(self, vault):
        with patch.object(vault.metadata, "insert_file", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                vault.add_file("doc", "doc.txt", b"hello")

        assert vault.metadata.counts()["files"] == 0
        orphans = vault.blobs.list_ids()
        assert len(orphans) == 1

        report = vault.sync_check()
        assert report.orphan_blobs == sorted(orphans)
        assert report.dangling_records == []

        vault.sync_repair(report, confirm=True)
        assert vault.metadata.counts()["files"] == 0
        assert vault.blobs.list_ids() == set()
        assert vault.sync_check().is_clean

    def test_failed_insert_removes_blob_and_locks(self, vault):
        key = vault._key
        with patch.object(vault.metadata, "insert_file", side_effect=StorageIO("disk I/O error")):
            with pytest.raises(StorageIO):
                vault.add_file("doc", "doc.txt", b"hello")
        assert vault.blobs.list_ids() == set()
        assert not vault.is_unlocked
        assert key.is_zeroized()

    def test_unexpected_error_locks(self, vault):
        with patch.object(vault.metadata, "list_files", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                vault.list_records()
        assert not vault.is_unlocked

    def test_sync_repair_requires_confirm(self, vault):
        with pytest.raises(InvalidInput):
            vault.sync_repair()


# ── Edit flow ─────────────────────────────────────────────────────────


class TestEditFile:
    def test_edit_reencrypts_with_fresh_nonce(self, vault, fake_editor_cls):
        record_id = vault.add_file("doc", "doc.txt", b"draft")
        before = vault.metadata.get_file(record_id)
        editor = fake_editor_cls(lambda data: data + b" v2")

        assert vault.edit_file(record_id, editor=editor) is True

        after = vault.metadata.get_file(record_id)
        assert after.content_nonce != before.content_nonce
        assert after.size == len(b"draft v2")
        assert vault.read_file(record_id) == b"draft v2"
        assert editor.seen == [b"draft"]
        assert editor.launched[0].name == "doc.txt"
        assert not editor.launched[0].parent.exists()
        assert vault.sync_check().is_clean

    def test_default_editor_from_manager(self, new_vault, master_password, fake_editor_cls):
        new_vault.editor = fake_editor_cls(lambda data: b"replaced")
        new_vault.unlock(master_password)
        try:
            record_id = new_vault.add_file("doc", "doc.txt", b"draft")
            new_vault.edit_file(record_id)
            assert new_vault.read_file(record_id) == b"replaced"
        finally:
            new_vault.lock()

    def test_unchanged_content(self, vault, fake_editor_cls):
        record_id = vault.add_file("doc", "doc.txt", b"draft")
        before = vault.metadata.get_file(record_id)
        assert vault.edit_file(record_id, editor=fake_editor_cls()) is False
        assert vault.metadata.get_file(record_id) == before

    def test_editor_failure_leaves_file_untouched(self, vault, fake_editor_cls):
        record_id = vault.add_file("doc", "doc.txt", b"draft")
        before = vault.metadata.get_file(record_id)
        editor = fake_editor_cls(lambda data: b"garbage", exit_code=2)

        with pytest.raises(EditorFailed):
            vault.edit_file(record_id, editor=editor)

        assert vault.metadata.get_file(record_id) == before
        assert vault.read_file(record_id) == b"draft"
        assert not editor.launched[0].parent.exists()
        assert vault.is_unlocked

    def test_interrupt_during_edit_cleans_up(self, vault, fake_editor_cls):
        record_id = vault.add_file("doc", "doc.txt", b"draft")
        editor = fake_editor_cls(raise_exc=KeyboardInterrupt())
        with pytest.raises(KeyboardInterrupt):
            vault.edit_file(record_id, editor=editor)
        assert not editor.launched[0].parent.exists()
        assert vault.read_file(record_id) == b"draft"

    def test_failed_rename_restores_row(self, vault, master_password, fake_editor_cls):
        record_id = vault.add_file("doc", "doc.txt", b"draft")
        before = vault.metadata.get_file(record_id)
        editor = fake_editor_cls(lambda data: b"new content")

        with patch.object(vault.blobs, "commit_temp", side_effect=StorageIO("rename failed")):
            with pytest.raises(StorageIO):
                vault.edit_file(record_id, editor=editor)

        assert not vault.is_unlocked
        vault.unlock(master_password)
        assert vault.metadata.get_file(record_id) == before
        assert vault.read_file(record_id) == b"draft"
        assert vault.sync_check().is_clean


# ── Listing, destroy, concurrency ─────────────────────────────────────


class TestListing:
    def test_insertion_order_credentials_then_files(self, vault):
        vault.add_file("zz-file", "z.txt", b"z")
        vault.add_credential("zeta", "u", "p")
        vault.add_credential("alpha", "u", "p")
        listing = vault.list_records()
        assert [c.name for c in listing.credentials] == ["zeta", "alpha"]
        assert [f.name for f in listing.files] == ["zz-file"]
        assert len(listing) == 3
        assert [e["kind"] for e in listing.entries()] == ["credential", "credential", "file"]

    def test_listing_has_no_secrets(self, vault):
        vault.add_credential("bank", "alice", "secret1")
        entry = vault.list_records().entries()[0]
        assert "secret1" not in str(entry)
        assert "alice" not in str(entry)


class TestDestroy:
    def test_requires_confirm(self, vault):
        with pytest.raises(InvalidInput):
            vault.destroy()
        assert vault.exists

    def test_destroy(self, vault, vault_dir, master_password):
        vault.add_file("doc", "doc.txt", b"hello")
        key = vault._key
        vault.destroy(confirm=True)
        assert key.is_zeroized()
        assert not vault.is_unlocked
        assert not (vault_dir / "vault.json").exists()
        assert not (vault_dir / "vault.db").exists()
        assert not (vault_dir / "blobs").exists()
        with pytest.raises(VaultNotInitialized):
            VaultManager(vault_dir).unlock(master_password)


class TestConcurrency:
    def test_parallel_readers_and_writer(self, vault):
        vault.add_credential("bank", "alice", "secret1")
        errors = []

        def reader():
            try:
                for _ in range(20):
                    assert vault.read_credential("bank").password == "secret1"
            except Exception as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        def writer():
            try:
                for i in range(10):
                    vault.add_credential(f"entry-{i}", "u", "p")
            except Exception as exc:  # pragma: no cover
                errors.append(exc)

        threads = [threading.Thread(target=reader) for _ in range(4)]
        threads.append(threading.Thread(target=writer))
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        assert len(vault.list_records().credentials) == 11


# ── End-to-end scenario ──────────────────────────────────────────────


def test_correct_horse_scenario(vault_dir):
    vault = VaultManager(vault_dir)
    vault.create("correct-horse", iterations=MIN_ITERATIONS)
    vault.unlock("correct-horse")

    record_id = vault.add_credential("bank", username="alice", password="secret1")
    credential = vault.read_credential(record_id)
    assert (credential.name, credential.username, credential.password) == ("bank", "alice", "secret1")

    original_nonce = vault.metadata.get_credential(record_id).nonce("password")
    vault.update_credential(record_id, password="secret2")
    assert vault.read_credential(record_id).password == "secret2"
    assert vault.metadata.get_credential(record_id).nonce("password") != original_nonce

    vault.add_credential("mail", username="alice", password="hunter22")
    listing = vault.list_records()
    assert [c.name for c in listing.credentials] == ["bank", "mail"]
    assert len(listing) == 2

    vault.lock()
    with pytest.raises(AuthenticationFailure):
        vault.unlock("wrong-pw")
