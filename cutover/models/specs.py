"""Declarative specifications: field migrations, relationships, file patterns."""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern


class MutationKind(str, Enum):
    """Field-level mutations the schema transformer can apply."""
    ADD_DEFAULT = "add_default"
    RENAME = "rename"
    DERIVE = "derive"


class AppliesIf(str, Enum):
    """Predicates deciding whether a field spec applies to a record."""
    MISSING = "missing"
    PRESENT = "present"
    NULL_OR_MISSING = "null_or_missing"
    EQUALS = "equals"


@dataclass
class FieldSpec:
    """A single field migration rule: {collection, predicate, mutation}.

    The predicate excludes already-migrated records, which is what makes
    reapplying a spec a no-op.
    """
    collection: str
    field: str
    kind: MutationKind = MutationKind.ADD_DEFAULT
    default: Any = None
    source_field: Optional[str] = None  # RENAME: old name
    derive: Optional[str] = None  # DERIVE: registered derivation name
    applies_if: Optional[AppliesIf] = None
    equals: Any = None  # EQUALS: value needing correction
    config: Dict[str, Any] = field(default_factory=dict)
    notes: str = ""

    def __post_init__(self):
        if isinstance(self.kind, str):
            self.kind = MutationKind(self.kind)
        if isinstance(self.applies_if, str):
            self.applies_if = AppliesIf(self.applies_if)
        if self.kind == MutationKind.RENAME and not self.source_field:
            raise ValueError(f"Rename spec for {self.collection}.{self.field} needs source_field")
        if self.kind == MutationKind.DERIVE and not self.derive:
            raise ValueError(f"Derive spec for {self.collection}.{self.field} needs derive")

    @property
    def predicate(self) -> AppliesIf:
        """Effective predicate; renames apply while the old field is present."""
        if self.applies_if:
            return self.applies_if
        if self.kind == MutationKind.RENAME:
            return AppliesIf.PRESENT
        return AppliesIf.MISSING

    @property
    def predicate_field(self) -> str:
        if self.kind == MutationKind.RENAME and self.predicate == AppliesIf.PRESENT:
            return self.source_field
        return self.field

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result = {
            "collection": self.collection,
            "field": self.field,
            "kind": self.kind.value,
            "default": self.default,
        }
        if self.source_field:
            result["source_field"] = self.source_field
        if self.derive:
            result["derive"] = self.derive
        if self.applies_if:
            result["applies_if"] = self.applies_if.value
        if self.equals is not None:
            result["equals"] = self.equals
        if self.config:
            result["config"] = self.config
        if self.notes:
            result["notes"] = self.notes
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldSpec":
        """Create from dictionary representation."""
        return cls(
            collection=data["collection"],
            field=data["field"],
            kind=MutationKind(data.get("kind", "add_default")),
            default=data.get("default"),
            source_field=data.get("source_field"),
            derive=data.get("derive"),
            applies_if=AppliesIf(data["applies_if"]) if data.get("applies_if") else None,
            equals=data.get("equals"),
            config=data.get("config", {}),
            notes=data.get("notes", ""),
        )


@dataclass
class ArchiveSpec:
    """A legacy collection to rename out of the way once fully superseded."""
    collection: str
    prefix: str = "_archived_"

    def archive_name(self, epoch_ms: int) -> str:
        return f"{self.prefix}{self.collection}_{epoch_ms}"

    def to_dict(self) -> Dict[str, Any]:
        return {"collection": self.collection, "prefix": self.prefix}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArchiveSpec":
        if isinstance(data, str):
            return cls(collection=data)
        return cls(collection=data["collection"], prefix=data.get("prefix", "_archived_"))


@dataclass
class IndexSpec:
    """Secondary indexes expected on a source collection."""
    collection: str
    keys: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"collection": self.collection, "keys": self.keys}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexSpec":
        return cls(collection=data["collection"], keys=list(data.get("keys", [])))


@dataclass
class RelationshipKind:
    """A relationship type whose subjects may hold at most one active record."""
    name: str
    source_collection: str
    target_table: str
    subject_field: str = "studentId"
    counterpart_field: str = "mentorId"
    active_field: str = "isActive"
    assigned_at_field: str = "assignmentDate"
    deactivated_at_field: str = "deactivatedAt"
    reason_field: str = "deactivationReason"
    source_id_field: str = "_id"
    target_id_field: str = "id"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "source_collection": self.source_collection,
            "target_table": self.target_table,
            "subject_field": self.subject_field,
            "counterpart_field": self.counterpart_field,
            "active_field": self.active_field,
            "assigned_at_field": self.assigned_at_field,
            "deactivated_at_field": self.deactivated_at_field,
            "reason_field": self.reason_field,
            "source_id_field": self.source_id_field,
            "target_id_field": self.target_id_field,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelationshipKind":
        defaults = cls(name="", source_collection="", target_table="")
        return cls(**{k: data.get(k, getattr(defaults, k)) for k in defaults.to_dict()})


MENTOR_ASSIGNMENT = RelationshipKind(
    name="mentor_assignment",
    source_collection="mentor_assignments",
    target_table="mentor_assignments",
)


class EntityCategory(str, Enum):
    """How the discrepancy analyzer should dig into a nonzero delta."""
    SUBJECT = "subject"
    RELATIONSHIP = "relationship"
    OTHER = "other"


@dataclass
class EntityPair:
    """A source collection and the target table it is migrated into."""
    label: str
    source_collection: str
    target_table: str
    category: EntityCategory = EntityCategory.OTHER
    created_after_cutover: bool = False  # lifecycle allows new records post-cutover
    subject_field: Optional[str] = None  # RELATIONSHIP: field referencing a subject

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "source_collection": self.source_collection,
            "target_table": self.target_table,
            "category": self.category.value,
            "created_after_cutover": self.created_after_cutover,
            "subject_field": self.subject_field,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityPair":
        return cls(
            label=data.get("label", data["source_collection"]),
            source_collection=data["source_collection"],
            target_table=data["target_table"],
            category=EntityCategory(data.get("category", "other")),
            created_after_cutover=data.get("created_after_cutover", False),
            subject_field=data.get("subject_field"),
        )


class KeyType(str, Enum):
    """What the key embedded in a legacy filename identifies."""
    ROLL_NUMBER = "roll_number"
    SUBJECT_ID = "subject_id"


@dataclass
class ReferenceTarget:
    """Where a relocated attachment's canonical key is written back.

    `match` is either "id" (the subject's own source document) or the name
    of a field holding the subject's source id (e.g. "studentId").
    """
    collection: str
    field: str
    match: str = "id"
    filter: Dict[str, Any] = field(default_factory=dict)
    name_field: Optional[str] = None  # filter field fed by the parsed name
    name_map: Dict[str, str] = field(default_factory=dict)
    name_default: Optional[str] = None
    timestamp_field: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "field": self.field,
            "match": self.match,
            "filter": self.filter,
            "name_field": self.name_field,
            "name_map": self.name_map,
            "name_default": self.name_default,
            "timestamp_field": self.timestamp_field,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReferenceTarget":
        return cls(
            collection=data["collection"],
            field=data["field"],
            match=data.get("match", "id"),
            filter=data.get("filter", {}),
            name_field=data.get("name_field"),
            name_map=data.get("name_map", {}),
            name_default=data.get("name_default"),
            timestamp_field=data.get("timestamp_field"),
        )


@dataclass
class ParsedFilename:
    """Natural key and attachment kind recovered from a legacy filename."""
    key: str
    kind: str
    extension: str
    name: Optional[str] = None


@dataclass
class FilenamePattern:
    """Legacy naming convention for files under one parent folder.

    The regex is matched against the file's base name (without extension)
    and must define a `key` group; an optional `name` group carries a
    sub-type such as a document type.
    """
    folder: str
    regex: str
    kind: str
    key_type: KeyType = KeyType.ROLL_NUMBER
    extensions: List[str] = field(default_factory=list)
    reference: Optional[ReferenceTarget] = None
    _compiled: Optional[Pattern] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        if isinstance(self.key_type, str):
            self.key_type = KeyType(self.key_type)
        self._compiled = re.compile(self.regex, re.IGNORECASE)
        if "key" not in self._compiled.groupindex:
            raise ValueError(f"Pattern for folder {self.folder!r} must define a 'key' group")
        self.extensions = [e.lower().lstrip(".") for e in self.extensions]

    def parse(self, filename: str) -> Optional[ParsedFilename]:
        """Parse a filename into (natural key, kind); None when it does not conform."""
        base, ext = os.path.splitext(os.path.basename(filename))
        ext = ext.lower().lstrip(".")
        if not ext or (self.extensions and ext not in self.extensions):
            return None

        match = self._compiled.fullmatch(base)
        if not match:
            return None

        key = match.group("key").strip()
        if not key:
            return None

        name = None
        if "name" in self._compiled.groupindex and match.group("name"):
            name = match.group("name").strip().lower()

        return ParsedFilename(key=key, kind=self.kind, extension=ext, name=name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "folder": self.folder,
            "regex": self.regex,
            "kind": self.kind,
            "key_type": self.key_type.value,
            "extensions": self.extensions,
            "reference": self.reference.to_dict() if self.reference else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FilenamePattern":
        reference = data.get("reference")
        return cls(
            folder=data["folder"],
            regex=data["regex"],
            kind=data["kind"],
            key_type=KeyType(data.get("key_type", "roll_number")),
            extensions=data.get("extensions", []),
            reference=ReferenceTarget.from_dict(reference) if reference else None,
        )


IMAGE_EXTENSIONS = ["webp", "jpg", "jpeg", "png", "gif"]

DEFAULT_FILENAME_PATTERNS = [
    FilenamePattern(
        folder="profile",
        regex=r"(?P<key>.+?)_profile",
        kind="profile",
        extensions=IMAGE_EXTENSIONS,
        reference=ReferenceTarget(collection="Student", field="profileImage"),
    ),
    FilenamePattern(
        folder="joining-letters",
        regex=r"(?P<key>.+?)_joiningletter",
        kind="joining-letter",
        extensions=["pdf"] + IMAGE_EXTENSIONS,
        reference=ReferenceTarget(
            collection="internship_applications",
            field="joiningLetterUrl",
            match="studentId",
            timestamp_field="joiningLetterUploadedAt",
        ),
    ),
    FilenamePattern(
        folder="document",
        regex=r"(?P<key>.+?)_(?P<name>.+?)_document",
        kind="document",
        reference=ReferenceTarget(
            collection="Document",
            field="fileUrl",
            match="studentId",
            name_field="type",
            name_map={
                "marksheet_10th": "MARKSHEET_10TH",
                "marksheet_12th": "MARKSHEET_12TH",
                "caste_certificate": "CASTE_CERTIFICATE",
                "photo": "PHOTO",
            },
            name_default="OTHER",
        ),
    ),
]
