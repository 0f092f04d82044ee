# vaultkeeper - Command Line Interface
#
# One invocation = one session: unlock, run one command, lock.
# Errors map to VaultError.exit_code; SIGTERM unwinds like Ctrl+C so the
# master key is always zeroized by the finally block in main().

import argparse
import getpass
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TextIO

from . import __version__
from .core import AuditLogger, load_settings, set_audit_logger
from .core.config import VaultSettings
from .vault import (
    ExternalEditor,
    InvalidInput,
    VaultError,
    VaultManager,
    require_clean,
)
from .vault.sync import DriftReport

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_INTERRUPTED = 130


class SecretReader:
    """Reads passwords with getpass, or line by line from stdin.

    With ``--password-stdin`` the first line is the master password and any
    later prompts (credential password, confirmation) consume the next lines.
    """

    def __init__(self, from_stdin: bool = False, stream: Optional[TextIO] = None):
        self.from_stdin = from_stdin
        self.stream = stream

    def read(self, prompt: str) -> str:
        if self.from_stdin:
            line = (self.stream or sys.stdin).readline()
            if not line:
                raise InvalidInput(f"Expected a line on stdin for: {prompt.strip(': ')}")
            return line.rstrip("\r\n")
        return getpass.getpass(prompt)

    def new_password(self, prompt: str = "New master password: ") -> str:
        first = self.read(prompt)
        if self.from_stdin:
            return first
        if self.read("Repeat master password: ") != first:
            raise InvalidInput("Passwords do not match", operation="create")
        return first


def _confirm(question: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=False))


def _print_report(report: DriftReport) -> None:
    print(report.summary())
    for blob_id in report.orphan_blobs:
        print(f"  orphan blob      {blob_id}")
    for record_id in report.dangling_records:
        print(f"  dangling record  {record_id}  (content lost)")
    for mismatch in report.size_mismatches:
        print(
            f"  size mismatch    {mismatch.record_id}  "
            f"blob={mismatch.actual_blob_size} expected={mismatch.expected_blob_size}"
        )
    for name in report.pending_commits:
        print(f"  pending commit   {name}  (interrupted edit)")
    for name in report.stale_temp:
        print(f"  stale temp file  {name}")


# ── Commands ────────────────────────────────────────────────────────
#
# Each command receives (vault, args, secrets) with the vault unlocked,
# except init which runs before any vault exists.

def _print_missing(vault: VaultManager, args) -> int:
    if args.json:
        _print_json({"vault_dir": str(vault.vault_dir), "exists": False, "unlocked": False})
    else:
        print(f"No vault at {vault.vault_dir} (run 'vaultkeeper init')")
    return EXIT_OK


def cmd_status(vault: VaultManager, args, secrets: SecretReader) -> int:
    info = vault.status()
    info["exists"] = True
    if args.json:
        _print_json(info)
    else:
        print(f"Vault:        {info['vault_dir']}")
        print(f"Credentials:  {info['credentials']}")
        print(f"Files:        {info['files']}")
        print(f"KDF rounds:   {info['kdf_iterations']}")
        print(f"Created:      {info['created_at']}")
    return EXIT_OK


def cmd_add_credential(vault: VaultManager, args, secrets: SecretReader) -> int:
    password = secrets.read("Credential password: ")
    record_id = vault.add_credential(
        args.name,
        username=args.username or "",
        password=password,
        notes=args.notes,
    )
    print(record_id)
    return EXIT_OK


def cmd_get_credential(vault: VaultManager, args, secrets: SecretReader) -> int:
    credential = vault.read_credential(args.ref)
    if args.json:
        _print_json(credential.to_dict(reveal=args.show))
        return EXIT_OK
    print(f"Name:      {credential.name}")
    print(f"Id:        {credential.id}")
    print(f"Username:  {credential.username}")
    print(f"Password:  {credential.password if args.show else '********'}")
    if credential.notes:
        print("Notes:")
        print(credential.notes)
    return EXIT_OK


def cmd_update_credential(vault: VaultManager, args, secrets: SecretReader) -> int:
    password = secrets.read("New credential password: ") if args.new_password else None
    record_id = vault.update_credential(
        args.ref,
        name=args.name,
        username=args.username,
        password=password,
        notes=args.notes,
    )
    print(f"Updated {record_id}")
    return EXIT_OK


def cmd_delete_credential(vault: VaultManager, args, secrets: SecretReader) -> int:
    if not _confirm(f"Delete credential {args.ref!r}?", args.force):
        print("Aborted")
        return EXIT_OK
    if vault.delete_credential(args.ref):
        print(f"Deleted {args.ref}")
    else:
        print(f"No credential {args.ref!r}; nothing to delete")
    return EXIT_OK


def cmd_add_file(vault: VaultManager, args, secrets: SecretReader) -> int:
    record_id = vault.add_file_from_path(args.path, name=args.name)
    print(record_id)
    return EXIT_OK


def cmd_get_file(vault: VaultManager, args, secrets: SecretReader) -> int:
    if args.output == "-":
        sys.stdout.buffer.write(vault.read_file(args.ref))
        sys.stdout.buffer.flush()
        return EXIT_OK
    info = vault.get_file_info(args.ref)
    output = Path(args.output) if args.output else Path.cwd() / info.original_filename
    written = vault.export_file(info.id, output, overwrite=args.force)
    print(f"Wrote {written}")
    return EXIT_OK


def cmd_edit_file(vault: VaultManager, args, secrets: SecretReader) -> int:
    changed = vault.edit_file(args.ref)
    print("Saved changes" if changed else "No changes")
    return EXIT_OK


def cmd_edit_notes(vault: VaultManager, args, secrets: SecretReader) -> int:
    changed = vault.edit_credential_notes(args.ref)
    print("Saved changes" if changed else "No changes")
    return EXIT_OK


def cmd_delete_file(vault: VaultManager, args, secrets: SecretReader) -> int:
    if not _confirm(f"Delete file {args.ref!r}?", args.force):
        print("Aborted")
        return EXIT_OK
    if vault.delete_file(args.ref):
        print(f"Deleted {args.ref}")
    else:
        print(f"No file {args.ref!r}; nothing to delete")
    return EXIT_OK


def cmd_list(vault: VaultManager, args, secrets: SecretReader) -> int:
    listing = vault.list_records()
    if args.json:
        _print_json(listing.entries())
        return EXIT_OK
    if not len(listing):
        print("Vault is empty")
        return EXIT_OK
    for entry in listing.credentials:
        print(f"credential  {entry.id}  {entry.name}")
    for entry in listing.files:
        print(f"file        {entry.id}  {entry.name}  ({entry.original_filename}, {entry.size} bytes)")
    return EXIT_OK


def cmd_sync_check(vault: VaultManager, args, secrets: SecretReader) -> int:
    report = vault.sync_check()
    if args.json:
        _print_json(report.to_dict())
    else:
        _print_report(report)
    require_clean(report)
    return EXIT_OK


def cmd_sync_repair(vault: VaultManager, args, secrets: SecretReader) -> int:
    report = vault.sync_check()
    _print_report(report)
    if not report.repairable:
        if report.size_mismatches:
            print("Size mismatches need manual inspection; nothing repaired")
        return EXIT_OK
    if not _confirm("Apply repairs? Orphan blobs and dangling records will be deleted.", args.yes):
        print("Aborted")
        return EXIT_OK
    result = vault.sync_repair(report, confirm=True)
    print(
        f"Removed {len(result.removed_blobs)} blob(s), "
        f"{len(result.removed_records)} record(s), "
        f"{len(result.removed_temp)} temp file(s)"
    )
    if result.rolled_forward:
        print(f"Completed interrupted edits: {', '.join(result.rolled_forward)}")
    if result.needs_inspection:
        print(f"Needs manual inspection: {', '.join(result.needs_inspection)}")
    return EXIT_OK


def cmd_destroy(vault: VaultManager, args, secrets: SecretReader) -> int:
    if not _confirm(f"Permanently destroy the vault at {vault.vault_dir}?", args.yes):
        print("Aborted")
        return EXIT_OK
    vault.destroy(confirm=True)
    print("Vault destroyed")
    return EXIT_OK


def cmd_init(vault: VaultManager, args, settings: VaultSettings, secrets: SecretReader) -> int:
    password = secrets.new_password()
    iterations = args.iterations if args.iterations is not None else settings.kdf_iterations
    vault.create(password, iterations=iterations)
    print(f"Vault created at {vault.vault_dir}")
    return EXIT_OK


COMMANDS: Dict[str, Callable[..., int]] = {
    "status": cmd_status,
    "add-credential": cmd_add_credential,
    "get-credential": cmd_get_credential,
    "update-credential": cmd_update_credential,
    "delete-credential": cmd_delete_credential,
    "add-file": cmd_add_file,
    "get-file": cmd_get_file,
    "edit-file": cmd_edit_file,
    "edit-notes": cmd_edit_notes,
    "delete-file": cmd_delete_file,
    "list": cmd_list,
    "sync-check": cmd_sync_check,
    "sync-repair": cmd_sync_repair,
    "destroy": cmd_destroy,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vaultkeeper",
        description="vaultkeeper - encrypted storage for passwords and files",
        epilog="Every command except init prompts for the master password.",
    )
    parser.add_argument("--version", action="version", version=f"vaultkeeper v{__version__}")
    parser.add_argument("--vault-dir", help="Vault directory (default: $VAULTKEEPER_DIR or platform data dir)")
    parser.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the master password (and any other secrets) line by line from stdin",
    )
    parser.add_argument("--json", action="store_true", help="Machine-readable output where supported")
    parser.add_argument("-v", "--verbose", action="store_true", help="Diagnostic logging to stderr")
    sub = parser.add_subparsers(dest="cmd", required=True)

    ap_init = sub.add_parser("init", help="Create a new vault")
    ap_init.add_argument("--iterations", type=int, help="PBKDF2 iterations (default: 600000)")

    sub.add_parser("status", help="Show record counts and vault settings")

    ap_add = sub.add_parser("add-credential", help="Store a credential (password is prompted)")
    ap_add.add_argument("name", help="Unique credential name")
    ap_add.add_argument("--username", "-u", help="Username / login")
    ap_add.add_argument("--notes", help="Free-form notes")

    ap_get = sub.add_parser("get-credential", help="Show a credential")
    ap_get.add_argument("ref", help="Credential id or name")
    ap_get.add_argument("--show", action="store_true", help="Print the password in clear")

    ap_upd = sub.add_parser("update-credential", help="Change credential fields")
    ap_upd.add_argument("ref", help="Credential id or name")
    ap_upd.add_argument("--name", help="New name")
    ap_upd.add_argument("--username", "-u", help="New username (empty string clears it)")
    ap_upd.add_argument("--notes", help="New notes (empty string clears them)")
    ap_upd.add_argument("--new-password", action="store_true", help="Prompt for a new password")

    ap_delc = sub.add_parser("delete-credential", help="Delete a credential")
    ap_delc.add_argument("ref", help="Credential id or name")
    ap_delc.add_argument("--force", "-f", action="store_true", help="Do not ask for confirmation")

    ap_addf = sub.add_parser("add-file", help="Encrypt a file into the vault")
    ap_addf.add_argument("path", help="File to add")
    ap_addf.add_argument("--name", help="Record name (default: the file name)")

    ap_getf = sub.add_parser("get-file", help="Decrypt a file out of the vault")
    ap_getf.add_argument("ref", help="File id or name")
    ap_getf.add_argument(
        "--output", "-o",
        help="Destination path or directory, '-' for stdout (default: original file name in cwd)",
    )
    ap_getf.add_argument("--force", "-f", action="store_true", help="Overwrite an existing file")

    ap_edit = sub.add_parser("edit-file", help="Edit a file in $EDITOR and re-encrypt it")
    ap_edit.add_argument("ref", help="File id or name")

    ap_notes = sub.add_parser("edit-notes", help="Edit a credential's notes in $EDITOR")
    ap_notes.add_argument("ref", help="Credential id or name")

    ap_delf = sub.add_parser("delete-file", help="Delete a file")
    ap_delf.add_argument("ref", help="File id or name")
    ap_delf.add_argument("--force", "-f", action="store_true", help="Do not ask for confirmation")

    sub.add_parser("list", help="List credentials and files (nothing is decrypted)")

    sub.add_parser("sync-check", help="Report drift between records and blobs (exit 31 on drift)")

    ap_repair = sub.add_parser("sync-repair", help="Delete orphan blobs, dangling records and temp files")
    ap_repair.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")

    ap_destroy = sub.add_parser("destroy", help="Permanently delete the vault")
    ap_destroy.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")

    return parser


def _raise_on_signal(signum, frame):
    # Unwind through main()'s finally so the vault gets locked.
    raise SystemExit(128 + signum)


def _install_signal_handlers() -> None:
    signal.signal(signal.SIGINT, signal.default_int_handler)
    signal.signal(signal.SIGTERM, _raise_on_signal)


def run(args: argparse.Namespace, stdin: Optional[TextIO] = None) -> int:
    settings = load_settings(vault_dir=args.vault_dir)
    set_audit_logger(AuditLogger(settings.log_dir))

    vault = VaultManager(settings.vault_dir, editor=ExternalEditor(settings.editor_command))
    secrets = SecretReader(from_stdin=args.password_stdin, stream=stdin)

    if args.cmd == "init":
        return cmd_init(vault, args, settings, secrets)
    if args.cmd == "status" and not vault.exists:
        return _print_missing(vault, args)

    try:
        vault.unlock(secrets.read("Master password: "))
        return COMMANDS[args.cmd](vault, args, secrets)
    finally:
        vault.lock()


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the ``vaultkeeper`` console script."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    _install_signal_handlers()

    try:
        return run(args)
    except VaultError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.debug("Unexpected error", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_UNEXPECTED
