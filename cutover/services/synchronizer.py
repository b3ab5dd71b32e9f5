"""Entity synchronizer: ensure every source subject has one target counterpart."""

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import bcrypt

from ..models.migration import MigrationStatus, RunContext, Stage, StageReport
from ..models.report import MatchResult, MatchStatus
from ..models.subject import SOURCE_LAYOUT, TARGET_LAYOUT, Subject, SubjectLayout
from ..stores.base import DocumentStore, RelationalStore
from ..errors import StageAbortedError
from .matcher import MatchRule, Matcher, SubjectIndex

logger = logging.getLogger(__name__)


class SyncOutcome(str, Enum):
    CREATED = "created"
    MATCHED = "matched"
    UPDATED = "updated"
    AMBIGUOUS = "ambiguous"
    ERROR = "error"


@dataclass
class SyncResult:
    """Outcome of synchronizing one source subject."""
    source_id: Optional[str]
    outcome: SyncOutcome
    target_id: Optional[str] = None
    match: Optional[MatchResult] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "outcome": self.outcome.value,
            "target_id": self.target_id,
            "match": self.match.to_dict() if self.match else None,
            "error": self.error,
        }


class EntitySynchronizer:
    """
    Creates missing target subjects and links existing ones.

    The target index is rebuilt from the target store on every run; a
    cached source-to-target mapping is never trusted across runs, which is
    what makes repeated calls safe.
    """

    def __init__(
        self,
        source: DocumentStore,
        target: RelationalStore,
        source_layout: SubjectLayout = SOURCE_LAYOUT,
        target_layout: SubjectLayout = TARGET_LAYOUT,
        rules: Optional[List[MatchRule]] = None,
        source_filter: Optional[Dict[str, Any]] = None,
        default_role: str = "STUDENT",
        default_institution_id: Optional[str] = None,
        placeholder_domain: str = "placeholder.local",
        bcrypt_rounds: int = 10,
    ):
        self.source = source
        self.target = target
        self.source_layout = source_layout
        self.target_layout = target_layout
        self.rules = rules
        self.source_filter = source_filter
        self.default_role = default_role
        self.default_institution_id = default_institution_id
        self.placeholder_domain = placeholder_domain
        self.bcrypt_rounds = bcrypt_rounds
        self._password_hashes: Dict[str, str] = {}

    # --- Loading -------------------------------------------------------------

    def load_source_subjects(self) -> List[Subject]:
        records = self.source.find(self.source_layout.collection, self.source_filter)
        return [self.source_layout.to_subject(r, from_source=True) for r in records]

    def load_target_index(self) -> SubjectIndex:
        rows = self.target.list_rows(self.target_layout.collection)
        return SubjectIndex.build(self.target_layout.to_subject(r, from_source=False) for r in rows)

    def prepare(self, source_subjects: List[Subject]) -> Matcher:
        """Build a matcher over a freshly loaded target index."""
        index = self.load_target_index()
        logger.info(f"Target index: {len(index)} subjects; source population: {len(source_subjects)}")
        return Matcher(index, rules=self.rules, source_subjects=source_subjects)

    # --- Target row mapping --------------------------------------------------

    def temporary_password(self, role: str) -> str:
        """Deterministic temporary credential, e.g. Student123!"""
        return f"{role.title()}123!"

    def _hash_password(self, role: str) -> str:
        if role not in self._password_hashes:
            password = self.temporary_password(role).encode("utf-8")
            hashed = bcrypt.hashpw(password, bcrypt.gensalt(rounds=self.bcrypt_rounds))
            self._password_hashes[role] = hashed.decode("utf-8")
        return self._password_hashes[role]

    def placeholder_email(self, subject: Subject, role: str) -> str:
        local = subject.roll_key or subject.source_id
        return f"{role.lower()}_{local}@{self.placeholder_domain}"

    def build_target_subject(self, subject: Subject) -> Subject:
        """Map a source subject onto a new target subject with fallbacks for required fields."""
        role = (subject.role or self.default_role).upper()
        return Subject(
            source_id=subject.source_id,
            target_id=str(uuid.uuid4()),
            email=subject.email_key or self.placeholder_email(subject, role),
            roll_number=subject.roll_key,
            name=subject.name or subject.roll_key or subject.email or "Unknown",
            role=role,
            institution_id=subject.institution_id or self.default_institution_id,
            active=subject.active,
            password_hash=subject.password_hash or self._hash_password(role),
        )

    def build_target_row(self, target_subject: Subject) -> Dict[str, Any]:
        row = self.target_layout.to_record(target_subject)
        row[self.target_layout.id_field] = target_subject.target_id
        return row

    # --- Synchronization -----------------------------------------------------

    def match_linked(self, subject: Subject, matcher: Matcher) -> Optional[MatchResult]:
        """Resolve through an existing legacyId link; natural keys may have changed since it was made."""
        linked = matcher.index.linked(subject.source_id)
        if not linked:
            return None
        if len(linked) > 1:
            return MatchResult(
                status=MatchStatus.AMBIGUOUS,
                rule="legacy_id",
                candidates=linked,
                reason=f"source {subject.source_id} linked to {len(linked)} target subjects",
            )
        return MatchResult(status=MatchStatus.MATCHED, target=linked[0], rule="legacy_id")

    def sync_subject(
        self,
        subject: Subject,
        matcher: Optional[Matcher] = None,
        force: bool = False,
        dry_run: bool = False,
    ) -> SyncResult:
        """
        Ensure one source subject has exactly one target counterpart.

        Args:
            subject: Source subject
            matcher: Matcher over the current target index; built fresh when omitted
            force: Update the mapped fields of an already-matched target
            dry_run: Evaluate without writing

        Returns:
            SyncResult carrying the resolved target identifier
        """
        if matcher is None:
            matcher = self.prepare(self.load_source_subjects())

        match = self.match_linked(subject, matcher) or matcher.match(subject)

        if match.status == MatchStatus.AMBIGUOUS:
            logger.warning(f"Ambiguous match for {subject.display()} ({subject.source_id}): {match.reason}")
            return SyncResult(subject.source_id, SyncOutcome.AMBIGUOUS, match=match)

        if match.matched:
            target = match.target
            if target.source_id and subject.source_id and target.source_id != subject.source_id:
                match = MatchResult(
                    status=MatchStatus.AMBIGUOUS,
                    rule=match.rule,
                    candidates=[target],
                    reason=f"target {target.target_id} already linked to source {target.source_id}",
                )
                logger.warning(f"{subject.display()} ({subject.source_id}): {match.reason}")
                return SyncResult(subject.source_id, SyncOutcome.AMBIGUOUS, match=match)

            subject.link(target.target_id)
            if not force:
                return SyncResult(subject.source_id, SyncOutcome.MATCHED, target.target_id, match)

            fields = self.target_layout.to_record(subject)
            fields.pop(self.target_layout.password_field, None)
            fields = {k: v for k, v in fields.items() if v is not None}
            if not dry_run:
                self.target.update_row(
                    self.target_layout.collection, target.target_id, fields, id_column=self.target_layout.id_field
                )
            logger.debug(f"Updated target {target.target_id} from {subject.source_id}")
            return SyncResult(subject.source_id, SyncOutcome.UPDATED, target.target_id, match)

        new_subject = self.build_target_subject(subject)
        if not dry_run:
            self.target.insert_row(self.target_layout.collection, self.build_target_row(new_subject))
            subject.link(new_subject.target_id)
        matcher.index.add(new_subject)
        logger.debug(f"Created target {new_subject.target_id} for {subject.display()} ({subject.source_id})")
        return SyncResult(
            subject.source_id,
            SyncOutcome.CREATED,
            None if dry_run else new_subject.target_id,
            match,
        )

    def sync_all(
        self,
        ctx: RunContext,
        force: bool = False,
        report: Optional[StageReport] = None
    ) -> Tuple[StageReport, Dict[str, str]]:
        """
        Synchronize the whole source subject population.

        Returns:
            Tuple of (stage report, source_id -> target_id mapping)
        """
        report = report or StageReport(name=Stage.SYNC.value, stage=Stage.SYNC.value)
        report.dry_run = ctx.dry_run
        if report.started_at is None:
            report.start()

        source_subjects = self.load_source_subjects()
        matcher = self.prepare(source_subjects)
        id_map: Dict[str, str] = {}
        report.total = len(source_subjects)

        for subject in source_subjects:
            if ctx.cancelled:
                logger.warning("Sync cancelled, stopping scan")
                report.finish(MigrationStatus.CANCELLED)
                return report, id_map

            try:
                result = self.sync_subject(subject, matcher, force=force, dry_run=ctx.dry_run)
            except Exception as e:
                logger.error(f"Failed to sync {subject.display()} ({subject.source_id}): {e}")
                report.record_error(subject.source_id, e, email=subject.email, roll_number=subject.roll_number)
                report.bump(SyncOutcome.ERROR.value)
                if report.errors >= ctx.max_errors:
                    report.finish(MigrationStatus.FAILED)
                    raise StageAbortedError(Stage.SYNC.value, f"error ceiling reached ({report.errors} errors)")
                continue

            report.bump(result.outcome.value)
            if result.target_id and subject.source_id:
                id_map[subject.source_id] = result.target_id

            if result.outcome in (SyncOutcome.CREATED, SyncOutcome.UPDATED):
                report.migrated += 1
            else:
                report.skipped += 1

            if result.outcome == SyncOutcome.AMBIGUOUS:
                report.add_finding(
                    "ambiguous_match",
                    result.match.reason,
                    source_id=subject.source_id,
                    email=subject.email,
                    roll_number=subject.roll_number,
                    candidates=[c.target_id or c.source_id for c in result.match.candidates],
                )

        report.finish(MigrationStatus.COMPLETED)
        logger.info(
            f"Sync: created {report.counters.get('created', 0)}, matched {report.counters.get('matched', 0)}, "
            f"updated {report.counters.get('updated', 0)}, ambiguous {report.counters.get('ambiguous', 0)}, "
            f"errors {report.errors}"
        )
        return report, id_map
