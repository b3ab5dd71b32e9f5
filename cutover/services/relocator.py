"""Attachment relocator: move legacy files to canonical object keys."""

import hashlib
import logging
import os
from abc import ABC, abstractmethod
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from ..models.migration import MigrationStatus, RunContext, Stage, StageReport, utcnow
from ..models.report import FileOutcome, FileStatus, MatchStatus, UnresolvedReason
from ..models.specs import DEFAULT_FILENAME_PATTERNS, FilenamePattern, ParsedFilename, ReferenceTarget
from ..models.subject import Subject, SubjectLayout
from ..stores.base import DocumentStore, ObjectInfo, ObjectStore
from .keys import canonical_key, content_type_for
from .matcher import Matcher, SubjectIndex

logger = logging.getLogger(__name__)

CANONICAL_PREFIX = "institutions/"


@dataclass
class LegacyFile:
    """A file found in a legacy hierarchy."""
    path: str
    folder: str
    filename: str
    institution_hint: Optional[str]
    read: Callable[[], bytes]


class LegacySource(ABC):
    """Enumerates legacy files."""

    @abstractmethod
    def iter_files(self) -> Iterator[LegacyFile]:
        pass


def _split(parts: List[str]) -> Tuple[str, Optional[str]]:
    folder = parts[-2] if len(parts) >= 2 else ""
    institution = parts[-3] if len(parts) >= 3 else None
    return folder, institution


class LocalDirectorySource(LegacySource):
    """
    Legacy upload directory on disk.

    Layout: {root}/{institution}/{kind-folder}/{file} or {root}/{kind-folder}/{file}.
    """

    def __init__(self, root: str):
        self.root = root

    def iter_files(self) -> Iterator[LegacyFile]:
        if not os.path.isdir(self.root):
            logger.warning(f"Legacy directory not found: {self.root}")
            return

        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames.sort()
            for filename in sorted(filenames):
                if filename.startswith("."):
                    continue
                full_path = os.path.join(dirpath, filename)
                parts = os.path.relpath(full_path, self.root).split(os.sep)
                folder, institution = _split(parts)
                yield LegacyFile(
                    path=full_path,
                    folder=folder,
                    filename=filename,
                    institution_hint=institution,
                    read=lambda p=full_path: _read_file(p),
                )


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


class BucketPrefixSource(LegacySource):
    """Legacy objects under a bucket prefix; canonical keys are never re-relocated."""

    def __init__(self, store: ObjectStore, prefix: str = ""):
        self.store = store
        self.prefix = prefix

    def iter_files(self) -> Iterator[LegacyFile]:
        for info in self.store.list(self.prefix):
            if info.key.endswith("/") or info.key.startswith(CANONICAL_PREFIX):
                continue
            parts = info.key[len(self.prefix):].strip("/").split("/")
            folder, institution = _split(parts)
            yield LegacyFile(
                path=info.key,
                folder=folder,
                filename=parts[-1],
                institution_hint=institution,
                read=lambda k=info.key: self.store.get(k),
            )


@dataclass
class PendingRewrite:
    """A resolved file whose reference field still has to be pointed at its key."""
    outcome: FileOutcome
    reference: ReferenceTarget
    parsed: ParsedFilename


def same_content(info: Optional[ObjectInfo], data: bytes) -> bool:
    """True when the stored object already holds these bytes (size + MD5 etag)."""
    if info is None or info.size != len(data):
        return False
    if not info.etag or "-" in info.etag:
        # multipart etags are not content hashes; size match is the best available check
        return True
    return info.etag == hashlib.md5(data).hexdigest()


class AttachmentRelocator:
    """
    Parses legacy filenames, uploads to canonical keys and rewrites references.

    Supports:
    - Local directory and bucket-prefix legacy sources
    - Roll-number and direct-identifier resolution
    - Content-checked idempotent uploads
    - Bounded parallel uploads
    - Rewriting stored URLs that still carry an old host prefix
    """

    def __init__(
        self,
        source: DocumentStore,
        objects: ObjectStore,
        subject_layout: Optional[SubjectLayout] = None,
        patterns: Optional[List[FilenamePattern]] = None,
        store_urls: bool = False,
    ):
        self.source = source
        self.objects = objects
        self.subject_layout = subject_layout or SubjectLayout(collection="Student")
        self.patterns = {p.folder: p for p in (patterns or DEFAULT_FILENAME_PATTERNS)}
        self.store_urls = store_urls
        self._matcher: Optional[Matcher] = None

    def load_index(self, subjects: Optional[Iterable[Subject]] = None) -> Matcher:
        """(Re)build the subject index; loaded from the source store when not given."""
        if subjects is None:
            subjects = [
                self.subject_layout.to_subject(r, from_source=True)
                for r in self.source.find(self.subject_layout.collection)
            ]
        self._matcher = Matcher(SubjectIndex.build(subjects))
        logger.info(f"Relocation index: {len(self._matcher.index)} subjects")
        return self._matcher

    @property
    def matcher(self) -> Matcher:
        if self._matcher is None:
            self.load_index()
        return self._matcher

    def parse(self, file: LegacyFile) -> Tuple[Optional[FilenamePattern], Optional[ParsedFilename]]:
        pattern = self.patterns.get(file.folder)
        if pattern is None:
            return None, None
        return pattern, pattern.parse(file.filename)

    # --- Reference rewriting -------------------------------------------------

    def reference_value(self, key: str) -> str:
        return self.objects.url_for(key) if self.store_urls else key

    def document_type(self, reference: ReferenceTarget, parsed: ParsedFilename) -> Optional[str]:
        if not reference.name_field:
            return None
        return reference.name_map.get(parsed.name or "", reference.name_default)

    def reference_slot(self, pending: PendingRewrite) -> Tuple[Optional[str], ...]:
        """The single stored field a pending rewrite would write."""
        reference = pending.reference
        return (
            reference.collection,
            reference.field,
            pending.outcome.subject_id,
            self.document_type(reference, pending.parsed),
        )

    def resolve_collisions(self, pending: List[PendingRewrite]) -> List[PendingRewrite]:
        """
        Keep one rewrite per reference slot.

        When several files resolve to the same subject field (e.g.
        42_profile.jpg and 42_profile.webp), the last by path wins and the
        others are marked superseded, so the field settles on one value.
        """
        slots: Dict[Tuple[Optional[str], ...], List[PendingRewrite]] = defaultdict(list)
        for item in pending:
            slots[self.reference_slot(item)].append(item)

        winners = []
        for items in slots.values():
            items.sort(key=lambda p: p.outcome.path)
            winner = items[-1]
            for loser in items[:-1]:
                loser.outcome.superseded_by = winner.outcome.path
            winners.append(winner)
        winners.sort(key=lambda p: p.outcome.path)
        return winners

    def rewrite_reference(
        self,
        reference: ReferenceTarget,
        subject_id: str,
        parsed: ParsedFilename,
        value: str
    ) -> int:
        """Point the reference field(s) of the subject's records at the new value."""
        match_field = "_id" if reference.match == "id" else reference.match
        filter: Dict[str, Any] = {match_field: {"$in": self.source.id_values(subject_id)}}
        filter.update(reference.filter)
        if reference.name_field:
            doc_type = self.document_type(reference, parsed)
            if doc_type is None:
                return 0
            filter[reference.name_field] = doc_type
        filter[reference.field] = {"$ne": value}

        set_fields: Dict[str, Any] = {reference.field: value}
        if reference.timestamp_field:
            set_fields[reference.timestamp_field] = utcnow()
        return self.source.update_many(reference.collection, filter, set_fields)

    # --- Per-file relocation -------------------------------------------------

    def relocate_file(self, file: LegacyFile, dry_run: bool = False) -> FileOutcome:
        """Resolve, upload and rewrite one legacy file."""
        outcome, pending = self.upload_file(file, dry_run=dry_run)
        if pending is None:
            return outcome
        return self.apply_rewrite(pending)

    def upload_file(self, file: LegacyFile, dry_run: bool = False) -> Tuple[FileOutcome, Optional[PendingRewrite]]:
        """Resolve and upload one legacy file; the reference rewrite is returned pending."""
        outcome = FileOutcome(path=file.path, status=FileStatus.UNRESOLVED)

        pattern, parsed = self.parse(file)
        if parsed is None:
            outcome.reason = UnresolvedReason.NO_PATTERN.value
            return outcome, None

        outcome.kind = parsed.kind
        outcome.natural_key = parsed.key

        match = self.matcher.resolve_key(parsed.key, pattern.key_type)
        if match.status == MatchStatus.AMBIGUOUS:
            outcome.reason = UnresolvedReason.AMBIGUOUS_SUBJECT.value
            return outcome, None
        if not match.matched:
            outcome.reason = UnresolvedReason.SUBJECT_NOT_FOUND.value
            return outcome, None

        subject = match.target
        subject_id = subject.source_id or subject.target_id
        outcome.subject_id = subject_id
        outcome.canonical_key = canonical_key(
            subject_id,
            parsed.kind,
            parsed.extension,
            institution_id=subject.institution_id or file.institution_hint,
            name=parsed.name,
        )

        try:
            data = file.read()
            if same_content(self.objects.head(outcome.canonical_key), data):
                outcome.status = FileStatus.UNCHANGED
            elif dry_run:
                outcome.status = FileStatus.PLANNED
                return outcome, None
            else:
                self.objects.put(outcome.canonical_key, data, content_type_for(file.filename))
                outcome.status = FileStatus.UPLOADED
        except Exception as e:
            outcome.status = FileStatus.ERROR
            outcome.error = str(e)
            return outcome, None

        if dry_run or pattern.reference is None:
            return outcome, None
        return outcome, PendingRewrite(outcome, pattern.reference, parsed)

    def apply_rewrite(self, pending: PendingRewrite) -> FileOutcome:
        """Point the stored reference at the uploaded key."""
        outcome = pending.outcome
        try:
            value = self.reference_value(outcome.canonical_key)
            outcome.references_updated = self.rewrite_reference(
                pending.reference, outcome.subject_id, pending.parsed, value
            )
        except Exception as e:
            # the object stays; a re-run finds it unchanged and retries the rewrite
            outcome.status = FileStatus.ORPHANED_UPLOAD
            outcome.error = str(e)

        return outcome

    def run(
        self,
        legacy: LegacySource,
        ctx: RunContext,
        report: Optional[StageReport] = None
    ) -> Tuple[StageReport, List[FileOutcome]]:
        """
        Relocate every file of a legacy source.

        Args:
            legacy: Legacy file source
            ctx: Run context (dry run, cancellation, worker bound)
            report: Stage report to fill

        Returns:
            Tuple of (stage report, per-file outcomes)
        """
        report = report or StageReport(name=Stage.RELOCATE.value, stage=Stage.RELOCATE.value)
        report.dry_run = ctx.dry_run
        if report.started_at is None:
            report.start()

        if not ctx.dry_run and self.objects.ensure_bucket():
            logger.info(f"Created bucket {self.objects.bucket}")

        self.load_index()
        outcomes: List[FileOutcome] = []
        pending: List[PendingRewrite] = []

        def task(file: LegacyFile) -> Optional[Tuple[FileOutcome, Optional[PendingRewrite]]]:
            if ctx.cancelled:
                return None
            return self.upload_file(file, dry_run=ctx.dry_run)

        with ThreadPoolExecutor(max_workers=max(ctx.max_workers, 1)) as executor:
            futures = [executor.submit(task, f) for f in legacy.iter_files()]
            for future in as_completed(futures):
                result = future.result()
                if result is None:
                    continue
                outcome, rewrite = result
                outcomes.append(outcome)
                if rewrite is not None:
                    pending.append(rewrite)

        # rewrites wait for every upload; one per reference slot
        for rewrite in self.resolve_collisions(pending):
            if ctx.cancelled:
                break
            self.apply_rewrite(rewrite)

        outcomes.sort(key=lambda o: o.path)
        for outcome in outcomes:
            self._record(report, outcome)

        report.total = len(outcomes)
        report.finish(MigrationStatus.CANCELLED if ctx.cancelled else MigrationStatus.COMPLETED)
        logger.info(
            f"Relocation: uploaded {report.counters.get('uploaded', 0)}, "
            f"unchanged {report.counters.get('unchanged', 0)}, "
            f"unresolved {report.counters.get('unresolved', 0)}, errors {report.errors}"
        )
        return report, outcomes

    def _record(self, report: StageReport, outcome: FileOutcome) -> None:
        report.bump(outcome.status.value)
        if outcome.status in (FileStatus.UPLOADED, FileStatus.PLANNED):
            report.migrated += 1
        elif outcome.status in (FileStatus.UNCHANGED, FileStatus.UNRESOLVED):
            report.skipped += 1

        if outcome.status == FileStatus.UNRESOLVED:
            logger.warning(f"Unresolved {outcome.path}: {outcome.reason}")
            report.bump(f"unresolved_{outcome.reason}")
            report.add_finding("unresolved_file", outcome.reason, path=outcome.path, natural_key=outcome.natural_key)
        elif outcome.status == FileStatus.ERROR:
            logger.error(f"Failed to relocate {outcome.path}: {outcome.error}")
            report.record_error(outcome.path, outcome.error, canonical_key=outcome.canonical_key)
        elif outcome.superseded_by:
            logger.warning(f"{outcome.path} left unreferenced, {outcome.superseded_by} holds the same field")
            report.bump("reference_superseded")
            report.add_finding(
                "reference_collision",
                f"superseded by {outcome.superseded_by}",
                path=outcome.path,
                canonical_key=outcome.canonical_key,
                subject_id=outcome.subject_id,
            )
        elif outcome.status == FileStatus.ORPHANED_UPLOAD:
            logger.error(f"Uploaded {outcome.canonical_key} but reference rewrite failed: {outcome.error}")
            report.record_error(outcome.path, outcome.error, canonical_key=outcome.canonical_key, orphaned=True)

    # --- Host prefix rewriting -----------------------------------------------

    def rewrite_url_prefix(
        self,
        old_prefix: str,
        new_prefix: str,
        targets: List[Tuple[str, str]],
        ctx: RunContext
    ) -> StageReport:
        """
        Rewrite stored references still carrying an old host prefix.

        Scalar and array fields are both handled. An empty new prefix turns
        URLs back into bare keys.
        """
        report = StageReport(name="rewrite_urls", stage=Stage.RELOCATE.value, dry_run=ctx.dry_run).start()

        def rewrite(value: Any) -> Any:
            if isinstance(value, str) and value.startswith(old_prefix):
                return new_prefix + value[len(old_prefix):]
            return value

        for collection, field in targets:
            child = report.add_child(f"{collection}.{field}")
            child.start()
            for doc in self.source.find(collection, {field: {"$exists": True}}):
                if ctx.cancelled:
                    break
                child.total += 1
                value = doc.get(field)
                new_value = [rewrite(v) for v in value] if isinstance(value, list) else rewrite(value)
                if new_value == value:
                    child.skipped += 1
                    continue
                try:
                    if not ctx.dry_run:
                        self.source.update_one(collection, doc["_id"], {field: new_value})
                    child.migrated += 1
                except Exception as e:
                    logger.error(f"{collection}.{field}: failed to rewrite {doc['_id']}: {e}")
                    child.record_error(doc["_id"], e)
            child.finish()
            logger.info(f"{collection}.{field}: rewrote {child.migrated} of {child.total}")

        report.roll_up()
        report.finish(MigrationStatus.CANCELLED if ctx.cancelled else MigrationStatus.COMPLETED)
        return report
