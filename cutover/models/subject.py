"""Subject value type and store-layout adapters."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


def normalize_email(value: Any) -> Optional[str]:
    """Normalize an email for natural-key comparison."""
    if value is None:
        return None
    email = str(value).strip().casefold()
    return email or None


def normalize_roll_number(value: Any) -> Optional[str]:
    """Normalize a roll/ID number for natural-key comparison."""
    if value is None:
        return None
    roll = str(value).strip()
    return roll or None


def normalize_name(value: Any) -> Optional[str]:
    """Collapse whitespace and case in a person name."""
    if value is None:
        return None
    name = " ".join(str(value).split()).casefold()
    return name or None


@dataclass
class Subject:
    """A person entity (student, mentor, staff) as seen by the pipeline.

    Store-specific field layouts are adapted into this type before any
    matching logic runs.
    """
    source_id: Optional[str] = None
    target_id: Optional[str] = None
    email: Optional[str] = None
    roll_number: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None
    institution_id: Optional[str] = None
    active: bool = True
    password_hash: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def email_key(self) -> Optional[str]:
        return normalize_email(self.email)

    @property
    def roll_key(self) -> Optional[str]:
        return normalize_roll_number(self.roll_number)

    @property
    def name_key(self) -> Optional[str]:
        return normalize_name(self.name)

    def link(self, target_id: str) -> None:
        """Link to a target identifier; a subject is never re-linked elsewhere."""
        if self.target_id and self.target_id != target_id:
            raise ValueError(
                f"Subject {self.source_id} already linked to {self.target_id}, refusing {target_id}"
            )
        self.target_id = target_id

    def display(self) -> str:
        return self.name or self.email or self.roll_number or self.source_id or self.target_id or "?"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "email": self.email,
            "roll_number": self.roll_number,
            "name": self.name,
            "role": self.role,
            "institution_id": self.institution_id,
            "active": self.active,
        }


@dataclass
class SubjectLayout:
    """Field names of a subject record in one store.

    The source document store and the target relational store name the
    same concepts differently; a layout adapts either into a Subject.
    """
    collection: str = "User"
    id_field: str = "_id"
    email_field: str = "email"
    roll_number_field: str = "rollNumber"
    name_field: str = "name"
    role_field: str = "role"
    institution_field: str = "institutionId"
    active_field: str = "active"
    password_field: str = "password"
    legacy_id_field: Optional[str] = None  # target column holding the source id

    def to_subject(self, record: Dict[str, Any], from_source: bool = True) -> Subject:
        """Adapt a raw store record into a Subject."""
        record_id = record.get(self.id_field)
        record_id = str(record_id) if record_id is not None else None
        institution = record.get(self.institution_field)

        subject = Subject(
            email=record.get(self.email_field),
            roll_number=normalize_roll_number(record.get(self.roll_number_field)),
            name=record.get(self.name_field),
            role=record.get(self.role_field),
            institution_id=str(institution) if institution is not None else None,
            active=record.get(self.active_field) is not False,
            password_hash=record.get(self.password_field),
            attributes=dict(record),
        )
        if from_source:
            subject.source_id = record_id
        else:
            subject.target_id = record_id
            if self.legacy_id_field and record.get(self.legacy_id_field):
                subject.source_id = str(record[self.legacy_id_field])
        return subject

    def to_record(self, subject: Subject) -> Dict[str, Any]:
        """Map a Subject back onto this layout's field names."""
        record = {
            self.email_field: subject.email,
            self.roll_number_field: subject.roll_number,
            self.name_field: subject.name,
            self.role_field: subject.role,
            self.institution_field: subject.institution_id,
            self.active_field: subject.active,
        }
        if subject.password_hash is not None:
            record[self.password_field] = subject.password_hash
        if self.legacy_id_field and subject.source_id:
            record[self.legacy_id_field] = subject.source_id
        return record

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "id_field": self.id_field,
            "email_field": self.email_field,
            "roll_number_field": self.roll_number_field,
            "name_field": self.name_field,
            "role_field": self.role_field,
            "institution_field": self.institution_field,
            "active_field": self.active_field,
            "password_field": self.password_field,
            "legacy_id_field": self.legacy_id_field,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubjectLayout":
        defaults = cls()
        return cls(**{k: data.get(k, getattr(defaults, k)) for k in defaults.to_dict()})


SOURCE_LAYOUT = SubjectLayout()
TARGET_LAYOUT = SubjectLayout(collection="User", id_field="id", legacy_id_field="legacyId")
