"""Sync reconciler: detects and repairs drift between rows and blobs.

Drift kinds (file records only; credentials have no external blob):

- orphan blob       blob on disk with no file row. Repair deletes the blob;
                    without its row the nonce is gone, so it is unreadable.
- dangling record   file row with no blob. Severe. Repair deletes the row;
                    the content is unrecoverable.
- size mismatch     blob length != recorded size + tag. Reported only:
                    it is ambiguous which side is wrong.
- pending commit    temp file for a record that still has a row: an edit
                    interrupted after its row update. It may be the only
                    copy matching the row. Repair rolls it forward if it
                    authenticates against the row, deletes it if the
                    committed blob does, and otherwise leaves it for
                    inspection. Never deleted without a verifier.
- stale temp        leftover temp file with no row behind it. Repair
                    deletes it.

Nothing here runs automatically. ``check()`` reads, the caller confirms,
``repair()`` acts on what is still true at repair time.
"""

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from .blob_store import BlobStore
from .encryption import TAG_LENGTH
from .exceptions import DriftDetected
from .metadata_store import MetadataStore

logger = logging.getLogger(__name__)

# (record_id, sealed bytes) -> True if the bytes authenticate against the row
ContentVerifier = Callable[[str, bytes], bool]


@dataclass
class SizeMismatch:
    record_id: str
    recorded_size: int
    expected_blob_size: int
    actual_blob_size: int


@dataclass
class DriftReport:
    orphan_blobs: List[str] = field(default_factory=list)
    dangling_records: List[str] = field(default_factory=list)
    size_mismatches: List[SizeMismatch] = field(default_factory=list)
    pending_commits: List[str] = field(default_factory=list)
    stale_temp: List[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not (
            self.orphan_blobs or self.dangling_records or self.size_mismatches
            or self.pending_commits or self.stale_temp
        )

    @property
    def repairable(self) -> bool:
        return bool(
            self.orphan_blobs or self.dangling_records
            or self.pending_commits or self.stale_temp
        )

    def summary(self) -> str:
        if self.is_clean:
            return "No drift detected"
        return (
            f"{len(self.orphan_blobs)} orphan blob(s), "
            f"{len(self.dangling_records)} dangling record(s), "
            f"{len(self.size_mismatches)} size mismatch(es), "
            f"{len(self.pending_commits)} pending commit(s), "
            f"{len(self.stale_temp)} stale temp file(s)"
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RepairResult:
    removed_blobs: List[str] = field(default_factory=list)
    removed_records: List[str] = field(default_factory=list)
    removed_temp: List[str] = field(default_factory=list)
    rolled_forward: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    needs_inspection: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyncReconciler:
    """The only component that compares the metadata store with the blob store.

    Args:
        metadata: The open metadata store.
        blobs: The blob store.
        verify: Optional content check used to settle pending commits. It
            needs the master key, so only an unlocked manager can supply it.
    """

    def __init__(
        self,
        metadata: MetadataStore,
        blobs: BlobStore,
        verify: Optional[ContentVerifier] = None,
    ):
        self.metadata = metadata
        self.blobs = blobs
        self.verify = verify

    def check(self) -> DriftReport:
        """Set-compare file ids against blob names."""
        sizes = self.metadata.file_sizes()
        blob_ids = self.blobs.list_ids()
        record_ids = set(sizes)

        report = DriftReport(
            orphan_blobs=sorted(blob_ids - record_ids),
            dangling_records=sorted(record_ids - blob_ids),
        )
        for tmp_path in self.blobs.list_temp():
            if self.blobs.temp_owner(tmp_path) in record_ids:
                report.pending_commits.append(tmp_path.name)
            else:
                report.stale_temp.append(tmp_path.name)

        for record_id in sorted(record_ids & blob_ids):
            actual = self.blobs.size(record_id)
            expected = sizes[record_id] + TAG_LENGTH
            if actual is not None and actual != expected:
                report.size_mismatches.append(SizeMismatch(
                    record_id=record_id,
                    recorded_size=sizes[record_id],
                    expected_blob_size=expected,
                    actual_blob_size=actual,
                ))

        get_audit_logger().log_event(
            event_type=EventType.SYNC_CHECKED,
            severity=EventSeverity.INFO if report.is_clean else EventSeverity.INVESTIGATE,
            message=f"Sync check: {report.summary()}",
            details={
                "orphan_blobs": len(report.orphan_blobs),
                "dangling_records": len(report.dangling_records),
                "size_mismatches": len(report.size_mismatches),
                "pending_commits": len(report.pending_commits),
                "stale_temp": len(report.stale_temp),
            },
        )
        if report.dangling_records:
            logger.error("Dangling file records (content lost): %s", report.dangling_records)
        return report

    def repair(self, report: DriftReport, confirm: bool = False) -> RepairResult:
        """Apply the destructive repairs for ``report``.

        Each item is re-checked first, so anything fixed or changed since
        ``check()`` is skipped. Pending commits are settled before dangling
        records, so a record whose content only exists in a temp file is
        rolled forward rather than deleted. Size mismatches are never
        touched.

        Raises:
            ValueError: ``confirm`` is not True.
        """
        if not confirm:
            raise ValueError("Sync repair is destructive and requires confirm=True")

        result = RepairResult()
        current_temp = {p.name: p for p in self.blobs.list_temp()}

        for name in report.pending_commits:
            path = current_temp.get(name)
            if path is None:
                result.skipped.append(name)
                continue
            self._settle_pending(path, result)

        for blob_id in report.orphan_blobs:
            if self.metadata.get_file(blob_id) is not None:
                result.skipped.append(blob_id)
                continue
            if self.blobs.delete(blob_id):
                result.removed_blobs.append(blob_id)

        for record_id in report.dangling_records:
            if self.blobs.exists(record_id):
                result.skipped.append(record_id)
                continue
            if self.metadata.delete_file(record_id):
                result.removed_records.append(record_id)

        for name in report.stale_temp:
            path = current_temp.get(name)
            owner = self.blobs.temp_owner(path) if path is not None else None
            if path is None or (owner and self.metadata.get_file(owner) is not None):
                result.skipped.append(name)
                continue
            self.blobs.discard_temp(path)
            result.removed_temp.append(name)

        result.needs_inspection.extend(
            m.record_id for m in report.size_mismatches
            if m.record_id not in result.rolled_forward
        )

        get_audit_logger().log_event(
            event_type=EventType.SYNC_REPAIRED,
            severity=EventSeverity.ALERT if result.removed_records else EventSeverity.INFO,
            message=(
                f"Sync repair: removed {len(result.removed_blobs)} blob(s), "
                f"{len(result.removed_records)} record(s), "
                f"{len(result.removed_temp)} temp file(s); "
                f"rolled forward {len(result.rolled_forward)}"
            ),
            details=result.to_dict(),
        )
        return result

    def _settle_pending(self, path: Path, result: RepairResult) -> None:
        record_id = self.blobs.temp_owner(path)
        if record_id is None or self.metadata.get_file(record_id) is None:
            # Row deleted since check(): nothing can decrypt this temp any more.
            self.blobs.discard_temp(path)
            result.removed_temp.append(path.name)
            return
        if self.verify is None:
            result.needs_inspection.append(path.name)
            return

        try:
            data = path.read_bytes()
        except OSError as exc:
            logger.warning("Cannot read pending blob %s: %s", path.name, exc)
            result.needs_inspection.append(path.name)
            return

        if self.verify(record_id, data):
            self.blobs.commit_temp(path, record_id)
            result.rolled_forward.append(record_id)
        elif self._committed_matches(record_id):
            self.blobs.discard_temp(path)
            result.removed_temp.append(path.name)
        else:
            result.needs_inspection.append(path.name)

    def _committed_matches(self, record_id: str) -> bool:
        try:
            data = self.blobs.read(record_id)
        except FileNotFoundError:
            return False
        return self.verify(record_id, data)


def require_clean(report: DriftReport) -> DriftReport:
    """Raise DriftDetected unless the report is clean."""
    if not report.is_clean:
        raise DriftDetected(report.summary(), operation="sync_check")
    return report
