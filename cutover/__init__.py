"""
Cutover Migration Pipeline

Moves an evolving operational dataset (people, applications, mentor
relationships, file attachments) from a document store into a relational
store, and keeps both consistent while the cutover is in progress.

Supports:
- Declarative, idempotent schema evolution of the source collections
- Natural-key identity matching between the two stores
- Create-if-absent synchronization of subjects into the target
- Single-active relationship reconciliation across both stores
- Relocation of legacy file attachments into content-addressed object storage
- Read-only discrepancy analysis with classified causes
"""

__version__ = "0.1.0"
