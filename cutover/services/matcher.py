"""Natural-key matching of source subjects against a pre-loaded target index."""

import logging
from collections import defaultdict
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from ..models.report import MatchResult, MatchStatus
from ..models.specs import KeyType
from ..models.subject import Subject, normalize_roll_number

logger = logging.getLogger(__name__)


class MatchRule(str, Enum):
    """Natural-key rules, tried in configured order."""
    EMAIL = "email"
    ROLL_NUMBER = "roll_number"
    NAME = "name"


DEFAULT_RULES = [MatchRule.EMAIL, MatchRule.ROLL_NUMBER]


def natural_key(subject: Subject, rule: MatchRule) -> Optional[str]:
    if rule == MatchRule.EMAIL:
        return subject.email_key
    if rule == MatchRule.ROLL_NUMBER:
        return subject.roll_key
    return subject.name_key


class SubjectIndex:
    """
    In-memory index of subjects by normalized natural keys and identifiers.

    Duplicates are kept: a key maps to every subject holding it, so the
    matcher can see ties instead of the last writer winning.
    """

    def __init__(self):
        self._by_key: Dict[MatchRule, Dict[str, List[Subject]]] = {rule: defaultdict(list) for rule in MatchRule}
        self._by_id: Dict[str, Subject] = {}
        self._by_source: Dict[str, List[Subject]] = defaultdict(list)
        self._subjects: List[Subject] = []

    @classmethod
    def build(cls, subjects: Iterable[Subject]) -> "SubjectIndex":
        index = cls()
        for subject in subjects:
            index.add(subject)
        return index

    def add(self, subject: Subject) -> None:
        """Add a subject; used for subjects created during the current run."""
        self._subjects.append(subject)
        for rule in MatchRule:
            key = natural_key(subject, rule)
            if key:
                self._by_key[rule][key].append(subject)
        for identifier in (subject.target_id, subject.source_id):
            if identifier:
                self._by_id.setdefault(identifier, subject)
        if subject.source_id:
            self._by_source[subject.source_id].append(subject)

    def lookup(self, rule: MatchRule, key: Optional[str]) -> List[Subject]:
        if not key:
            return []
        return list(self._by_key[rule].get(key, []))

    def get(self, identifier: str) -> Optional[Subject]:
        """Direct lookup by target or source identifier."""
        return self._by_id.get(identifier)

    def linked(self, source_id: Optional[str]) -> List[Subject]:
        """Subjects carrying a link back to the given source identifier."""
        if not source_id:
            return []
        return list(self._by_source.get(source_id, []))

    def duplicates(self, rule: MatchRule) -> Dict[str, List[Subject]]:
        """Keys held by more than one subject."""
        return {key: subs for key, subs in self._by_key[rule].items() if len(subs) > 1}

    def __len__(self) -> int:
        return len(self._subjects)

    def __iter__(self):
        return iter(self._subjects)


class Matcher:
    """
    Resolves a source subject to zero or one target subject.

    Rules are tried in order. A rule whose key is shared by several source
    subjects, or that finds several target candidates, is ambiguous and
    the next rule is tried. If no rule yields a unique candidate and any
    rule was ambiguous, the result is AMBIGUOUS; the matcher never guesses.
    """

    def __init__(
        self,
        index: SubjectIndex,
        rules: Optional[List[MatchRule]] = None,
        source_subjects: Optional[Iterable[Subject]] = None,
        name_same_institution: bool = True,
    ):
        self.index = index
        self.rules = [MatchRule(r) for r in (rules or DEFAULT_RULES)]
        self.name_same_institution = name_same_institution
        self.source_index = SubjectIndex.build(source_subjects) if source_subjects is not None else None

    def _source_duplicates(self, subject: Subject, rule: MatchRule, key: str) -> int:
        if self.source_index is None:
            return 1
        return len(self.source_index.lookup(rule, key))

    def _candidates(self, subject: Subject, rule: MatchRule, key: str) -> List[Subject]:
        candidates = self.index.lookup(rule, key)
        if rule == MatchRule.NAME and self.name_same_institution and subject.institution_id:
            candidates = [c for c in candidates if c.institution_id == subject.institution_id]
        return candidates

    def match(self, subject: Subject) -> MatchResult:
        """Resolve one source subject. Pure: no store access, no mutation."""
        ambiguous: List[Tuple[MatchRule, str]] = []
        tied: List[Subject] = []

        for rule in self.rules:
            key = natural_key(subject, rule)
            if not key:
                continue

            shared = self._source_duplicates(subject, rule, key)
            if shared > 1:
                ambiguous.append((rule, f"{rule.value} {key!r} shared by {shared} source subjects"))
                continue

            candidates = self._candidates(subject, rule, key)
            if len(candidates) == 1:
                return MatchResult(status=MatchStatus.MATCHED, target=candidates[0], rule=rule.value)
            if len(candidates) > 1:
                ambiguous.append((rule, f"{rule.value} {key!r} matches {len(candidates)} target subjects"))
                tied.extend(c for c in candidates if c not in tied)

        if ambiguous:
            return MatchResult(
                status=MatchStatus.AMBIGUOUS,
                rule=ambiguous[0][0].value,
                candidates=tied,
                reason="; ".join(reason for _, reason in ambiguous),
            )
        return MatchResult(status=MatchStatus.NO_MATCH, reason="no natural key matched")

    def resolve_key(self, key: str, key_type: KeyType = KeyType.ROLL_NUMBER) -> MatchResult:
        """Resolve a bare natural key or identifier, e.g. one parsed from a filename."""
        if key_type == KeyType.SUBJECT_ID:
            subject = self.index.get(key.strip())
            if subject:
                return MatchResult(status=MatchStatus.MATCHED, target=subject, rule="id")
            return MatchResult(status=MatchStatus.NO_MATCH, reason=f"no subject with id {key!r}")

        roll = normalize_roll_number(key)
        candidates = self.index.lookup(MatchRule.ROLL_NUMBER, roll)
        if len(candidates) == 1:
            return MatchResult(status=MatchStatus.MATCHED, target=candidates[0], rule=MatchRule.ROLL_NUMBER.value)
        if len(candidates) > 1:
            return MatchResult(
                status=MatchStatus.AMBIGUOUS,
                rule=MatchRule.ROLL_NUMBER.value,
                candidates=candidates,
                reason=f"roll number {roll!r} held by {len(candidates)} subjects",
            )
        return MatchResult(status=MatchStatus.NO_MATCH, reason=f"no subject with roll number {roll!r}")
