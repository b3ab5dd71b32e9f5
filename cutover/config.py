"""Run configuration: connection settings, stage toggles and static specs."""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from dateutil import parser as date_parser

from .errors import ConfigurationError
from .models.migration import Stage
from .models.specs import (
    DEFAULT_FILENAME_PATTERNS,
    MENTOR_ASSIGNMENT,
    ArchiveSpec,
    EntityPair,
    FieldSpec,
    FilenamePattern,
    IndexSpec,
    RelationshipKind,
)
from .models.subject import SOURCE_LAYOUT, TARGET_LAYOUT, SubjectLayout
from .stores.base import DocumentStore, ObjectStore, RelationalStore
from .stores.retry import RetryPolicy

logger = logging.getLogger(__name__)

ENV_KEYS = {
    "source_mongo_url": "SOURCE_MONGO_URL",
    "source_database": "SOURCE_DATABASE",
    "target_database_url": "TARGET_DATABASE_URL",
    "object_store_endpoint": "OBJECT_STORE_ENDPOINT",
    "object_store_bucket": "OBJECT_STORE_BUCKET",
    "object_store_access_key": "OBJECT_STORE_ACCESS_KEY",
    "object_store_secret_key": "OBJECT_STORE_SECRET_KEY",
    "object_store_region": "OBJECT_STORE_REGION",
}


@dataclass
class ConnectionSettings:
    """Where the three stores live. Environment variables override file values."""
    source_mongo_url: Optional[str] = None
    source_database: Optional[str] = None
    target_database_url: Optional[str] = None
    object_store_endpoint: Optional[str] = None
    object_store_bucket: str = "cms-uploads"
    object_store_access_key: Optional[str] = None
    object_store_secret_key: Optional[str] = None
    object_store_region: str = "us-east-1"

    def apply_env(self, environ: Optional[Mapping[str, str]] = None) -> "ConnectionSettings":
        environ = os.environ if environ is None else environ
        for attr, env_key in ENV_KEYS.items():
            if environ.get(env_key):
                setattr(self, attr, environ[env_key])
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation, secrets masked."""
        result = {attr: getattr(self, attr) for attr in ENV_KEYS}
        if result["object_store_secret_key"]:
            result["object_store_secret_key"] = "***"
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionSettings":
        defaults = cls()
        return cls(**{attr: data.get(attr, getattr(defaults, attr)) for attr in ENV_KEYS})


@dataclass
class StageToggle:
    """Per-stage run switches."""
    dry_run: bool = False
    skip: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"dry_run": self.dry_run, "skip": self.skip}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageToggle":
        return cls(dry_run=data.get("dry_run", False), skip=data.get("skip", False))


@dataclass
class MigrationConfig:
    """Configuration for a cutover run."""
    name: str = "cutover"
    description: str = ""
    connections: ConnectionSettings = field(default_factory=ConnectionSettings)

    # Execution options
    dry_run: bool = False
    stages: Dict[str, StageToggle] = field(default_factory=dict)
    batch_size: int = 500
    max_workers: int = 4
    max_errors: int = 100  # per stage
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    # Schema transformer
    field_specs: List[FieldSpec] = field(default_factory=list)
    archive_specs: List[ArchiveSpec] = field(default_factory=list)
    index_specs: List[IndexSpec] = field(default_factory=list)

    # Synchronizer / matcher
    source_layout: SubjectLayout = field(default_factory=lambda: SubjectLayout.from_dict(SOURCE_LAYOUT.to_dict()))
    target_layout: SubjectLayout = field(default_factory=lambda: SubjectLayout.from_dict(TARGET_LAYOUT.to_dict()))
    match_rules: List[str] = field(default_factory=lambda: ["email", "roll_number"])
    source_filter: Dict[str, Any] = field(default_factory=dict)
    default_role: str = "STUDENT"
    default_institution_id: Optional[str] = None
    force_sync: bool = False

    # Reconciler
    relationship_kinds: List[RelationshipKind] = field(default_factory=lambda: [MENTOR_ASSIGNMENT])

    # Relocator
    legacy_root: Optional[str] = None
    legacy_prefix: Optional[str] = None
    relocation_layout: SubjectLayout = field(default_factory=lambda: SubjectLayout(collection="Student"))
    filename_patterns: List[FilenamePattern] = field(default_factory=lambda: list(DEFAULT_FILENAME_PATTERNS))
    store_urls: bool = False

    # Analyzer
    entity_pairs: List[EntityPair] = field(default_factory=list)
    cutover_at: Optional[datetime] = None

    # Output
    output_dir: str = "./data"
    log_file: Optional[str] = None

    def toggle(self, stage: Stage) -> StageToggle:
        return self.stages.get(stage.value, StageToggle())

    def is_skipped(self, stage: Stage) -> bool:
        return self.toggle(stage).skip

    def stage_dry_run(self, stage: Stage) -> bool:
        return self.dry_run or self.toggle(stage).dry_run

    def skip(self, *stages: str) -> None:
        """Mark stages as skipped (e.g. from --skip)."""
        for name in stages:
            try:
                stage = Stage(name)
            except ValueError:
                raise ConfigurationError(f"Unknown stage: {name}") from None
            self.stages.setdefault(stage.value, StageToggle()).skip = True

    def validate(self) -> None:
        """Raise ConfigurationError when the configuration cannot drive a run."""
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        if self.max_errors < 1:
            raise ConfigurationError("max_errors must be at least 1")
        for rule in self.match_rules:
            if rule not in ("email", "roll_number", "name"):
                raise ConfigurationError(f"Unknown match rule: {rule}")
        for name in self.stages:
            if name not in {s.value for s in Stage}:
                raise ConfigurationError(f"Unknown stage in toggles: {name}")

    def create_stores(self) -> Tuple[DocumentStore, RelationalStore, ObjectStore]:
        """Connect the networked store adapters described by the connection settings."""
        conn = self.connections
        missing = [
            env for attr, env in ENV_KEYS.items()
            if attr in ("source_mongo_url", "source_database", "target_database_url") and not getattr(conn, attr)
        ]
        if missing:
            raise ConfigurationError(f"Missing connection settings: {', '.join(missing)}")

        from .stores.mongo_store import MongoDocumentStore
        from .stores.postgres_store import PostgresRelationalStore
        from .stores.s3_store import S3ObjectStore

        source = MongoDocumentStore(
            conn.source_mongo_url, conn.source_database, batch_size=self.batch_size, retry_policy=self.retry
        )
        target = PostgresRelationalStore(conn.target_database_url, retry_policy=self.retry)
        objects = S3ObjectStore(
            conn.object_store_bucket,
            endpoint_url=conn.object_store_endpoint,
            access_key=conn.object_store_access_key,
            secret_key=conn.object_store_secret_key,
            region=conn.object_store_region,
            retry_policy=self.retry,
        )
        return source, target, objects

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "description": self.description,
            "connections": self.connections.to_dict(),
            "dry_run": self.dry_run,
            "stages": {name: t.to_dict() for name, t in self.stages.items()},
            "batch_size": self.batch_size,
            "max_workers": self.max_workers,
            "max_errors": self.max_errors,
            "retry": self.retry.to_dict(),
            "field_specs": [s.to_dict() for s in self.field_specs],
            "archive_specs": [s.to_dict() for s in self.archive_specs],
            "index_specs": [s.to_dict() for s in self.index_specs],
            "source_layout": self.source_layout.to_dict(),
            "target_layout": self.target_layout.to_dict(),
            "match_rules": self.match_rules,
            "source_filter": self.source_filter,
            "default_role": self.default_role,
            "default_institution_id": self.default_institution_id,
            "force_sync": self.force_sync,
            "relationship_kinds": [k.to_dict() for k in self.relationship_kinds],
            "legacy_root": self.legacy_root,
            "legacy_prefix": self.legacy_prefix,
            "relocation_layout": self.relocation_layout.to_dict(),
            "filename_patterns": [p.to_dict() for p in self.filename_patterns],
            "store_urls": self.store_urls,
            "entity_pairs": [p.to_dict() for p in self.entity_pairs],
            "cutover_at": self.cutover_at.isoformat() if self.cutover_at else None,
            "output_dir": self.output_dir,
            "log_file": self.log_file,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> "MigrationConfig":
        """Create from dictionary representation; environment overrides connection settings."""
        defaults = cls()
        try:
            config = cls(
                name=data.get("name", "cutover"),
                description=data.get("description", ""),
                connections=ConnectionSettings.from_dict(data.get("connections", {})).apply_env(environ),
                dry_run=data.get("dry_run", False),
                stages={name: StageToggle.from_dict(t) for name, t in data.get("stages", {}).items()},
                batch_size=data.get("batch_size", 500),
                max_workers=data.get("max_workers", 4),
                max_errors=data.get("max_errors", 100),
                retry=RetryPolicy.from_dict(data.get("retry", {})),
                field_specs=[FieldSpec.from_dict(s) for s in data.get("field_specs", [])],
                archive_specs=[ArchiveSpec.from_dict(s) for s in data.get("archive_specs", [])],
                index_specs=[IndexSpec.from_dict(s) for s in data.get("index_specs", [])],
                source_layout=SubjectLayout.from_dict(data.get("source_layout", SOURCE_LAYOUT.to_dict())),
                target_layout=SubjectLayout.from_dict(data.get("target_layout", TARGET_LAYOUT.to_dict())),
                match_rules=data.get("match_rules", ["email", "roll_number"]),
                source_filter=data.get("source_filter", {}),
                default_role=data.get("default_role", "STUDENT"),
                default_institution_id=data.get("default_institution_id"),
                force_sync=data.get("force_sync", False),
                relationship_kinds=(
                    [RelationshipKind.from_dict(k) for k in data["relationship_kinds"]]
                    if "relationship_kinds" in data else defaults.relationship_kinds
                ),
                legacy_root=data.get("legacy_root"),
                legacy_prefix=data.get("legacy_prefix"),
                relocation_layout=SubjectLayout.from_dict(
                    data.get("relocation_layout", defaults.relocation_layout.to_dict())
                ),
                filename_patterns=(
                    [FilenamePattern.from_dict(p) for p in data["filename_patterns"]]
                    if "filename_patterns" in data else defaults.filename_patterns
                ),
                store_urls=data.get("store_urls", False),
                entity_pairs=[EntityPair.from_dict(p) for p in data.get("entity_pairs", [])],
                cutover_at=date_parser.parse(data["cutover_at"]) if data.get("cutover_at") else None,
                output_dir=data.get("output_dir", "./data"),
                log_file=data.get("log_file"),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        config.validate()
        return config

    @classmethod
    def from_json_file(cls, file_path: str, environ: Optional[Mapping[str, str]] = None) -> "MigrationConfig":
        """Load configuration from JSON file."""
        try:
            with open(file_path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read configuration {file_path}: {e}") from e
        logger.debug(f"Loaded configuration from {file_path}")
        return cls.from_dict(data, environ)
