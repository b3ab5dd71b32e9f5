import pytest

from cutover.models.migration import RunContext
from cutover.models.report import FileStatus
from cutover.services.relocator import AttachmentRelocator, BucketPrefixSource, LocalDirectorySource, same_content
from cutover.stores.base import ObjectInfo
from cutover.stores.memory import MemoryDocumentStore, MemoryObjectStore

PROFILE_KEY = "institutions/I9/subjects/S123/profile/S123_profile.webp"


class BrokenUpdateDocumentStore(MemoryDocumentStore):
    def update_many(self, collection, filter, set_fields):
        raise RuntimeError("primary stepped down")


def _students(store_cls=MemoryDocumentStore):
    return store_cls({
        "Student": [
            {"_id": "S123", "rollNumber": "231535182938", "institutionId": "I9"},
            {"_id": "S7", "rollNumber": "77"},
            {"_id": "S8", "rollNumber": "77"},
        ],
        "Document": [
            {"_id": "d1", "studentId": "S123", "type": "MARKSHEET_10TH"},
            {"_id": "d2", "studentId": "S123", "type": "PHOTO"},
        ],
        "internship_applications": [{"_id": "ia1", "studentId": "S123"}],
    })


def _write(root, relative, data=b"bytes"):
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


@pytest.fixture
def legacy(tmp_path):
    _write(tmp_path, "I9/profile/231535182938_profile.webp", b"webp-bytes")
    return tmp_path


def test_relocates_profile_image_and_rewrites_reference(legacy):
    source, objects = _students(), MemoryObjectStore()

    report, outcomes = AttachmentRelocator(source, objects).run(LocalDirectorySource(str(legacy)), RunContext())

    assert [o.status for o in outcomes] == [FileStatus.UPLOADED]
    assert outcomes[0].canonical_key == PROFILE_KEY
    assert objects.get(PROFILE_KEY) == b"webp-bytes"
    assert objects.content_types[PROFILE_KEY] == "image/webp"
    assert objects.bucket_exists
    assert source.find_one("Student", {"_id": "S123"})["profileImage"] == PROFILE_KEY
    assert report.counters["uploaded"] == 1


def test_second_run_is_unchanged(legacy):
    source, objects = _students(), MemoryObjectStore()
    relocator = AttachmentRelocator(source, objects)
    relocator.run(LocalDirectorySource(str(legacy)), RunContext())

    report, outcomes = relocator.run(LocalDirectorySource(str(legacy)), RunContext())

    assert outcomes[0].status == FileStatus.UNCHANGED
    assert outcomes[0].references_updated == 0
    assert objects.put_count == 1
    assert list(o.key for o in objects.list()) == [PROFILE_KEY]


def test_colliding_files_settle_on_one_reference(legacy):
    _write(legacy, "I9/profile/231535182938_profile.jpg", b"jpg-bytes")
    source, objects = _students(), MemoryObjectStore()
    relocator = AttachmentRelocator(source, objects)

    report, outcomes = relocator.run(LocalDirectorySource(str(legacy)), RunContext(max_workers=4))

    jpg, webp = outcomes
    assert webp.references_updated == 1
    assert jpg.references_updated == 0
    assert jpg.superseded_by == webp.path
    assert objects.exists("institutions/I9/subjects/S123/profile/S123_profile.jpg")
    assert source.find_one("Student", {"_id": "S123"})["profileImage"] == PROFILE_KEY
    assert report.counters["reference_superseded"] == 1
    assert [f["kind"] for f in report.findings] == ["reference_collision"]

    _, outcomes = relocator.run(LocalDirectorySource(str(legacy)), RunContext(max_workers=4))

    assert [o.status for o in outcomes] == [FileStatus.UNCHANGED, FileStatus.UNCHANGED]
    assert [o.references_updated for o in outcomes] == [0, 0]
    assert source.find_one("Student", {"_id": "S123"})["profileImage"] == PROFILE_KEY


def test_changed_content_is_uploaded_again(legacy):
    objects = MemoryObjectStore(objects={PROFILE_KEY: b"old"})

    _, outcomes = AttachmentRelocator(_students(), objects).run(LocalDirectorySource(str(legacy)), RunContext())

    assert outcomes[0].status == FileStatus.UPLOADED
    assert objects.get(PROFILE_KEY) == b"webp-bytes"


def test_unresolved_files_are_reported(tmp_path):
    _write(tmp_path, "misc/readme.txt")
    _write(tmp_path, "profile/999_profile.webp")
    _write(tmp_path, "profile/77_profile.png")
    _write(tmp_path, "profile/231535182938_profile.exe")

    report, outcomes = AttachmentRelocator(_students(), MemoryObjectStore()).run(
        LocalDirectorySource(str(tmp_path)), RunContext()
    )

    reasons = {o.path.rsplit("/", 1)[-1]: o.reason for o in outcomes}
    assert reasons == {
        "readme.txt": "no_pattern",
        "999_profile.webp": "subject_not_found",
        "77_profile.png": "ambiguous_subject",
        "231535182938_profile.exe": "no_pattern",
    }
    assert all(o.status == FileStatus.UNRESOLVED for o in outcomes)
    assert report.counters["unresolved"] == 4
    assert report.counters["unresolved_ambiguous_subject"] == 1
    assert len(report.findings) == 4


def test_document_type_selects_reference(tmp_path):
    _write(tmp_path, "I9/document/231535182938_marksheet_10th_document.pdf")
    source = _students()

    _, outcomes = AttachmentRelocator(source, MemoryObjectStore()).run(LocalDirectorySource(str(tmp_path)), RunContext())

    key = "institutions/I9/subjects/S123/document/S123_marksheet_10th.pdf"
    assert outcomes[0].canonical_key == key
    assert outcomes[0].references_updated == 1
    assert source.find_one("Document", {"_id": "d1"})["fileUrl"] == key
    assert "fileUrl" not in source.find_one("Document", {"_id": "d2"})


def test_joining_letter_sets_timestamp(tmp_path):
    _write(tmp_path, "joining-letters/231535182938_joiningletter.pdf")
    source = _students()

    AttachmentRelocator(source, MemoryObjectStore()).run(LocalDirectorySource(str(tmp_path)), RunContext())

    application = source.find_one("internship_applications", {"_id": "ia1"})
    assert application["joiningLetterUrl"] == "institutions/I9/subjects/S123/joining-letter/S123_joining-letter.pdf"
    assert application["joiningLetterUploadedAt"] is not None


def test_store_urls_writes_full_reference(legacy):
    source = _students()

    AttachmentRelocator(source, MemoryObjectStore(), store_urls=True).run(LocalDirectorySource(str(legacy)), RunContext())

    assert source.find_one("Student", {"_id": "S123"})["profileImage"] == f"cms-uploads/{PROFILE_KEY}"


def test_failed_rewrite_keeps_object_and_recovers_on_rerun(legacy):
    objects = MemoryObjectStore()
    broken = _students(BrokenUpdateDocumentStore)

    report, outcomes = AttachmentRelocator(broken, objects).run(LocalDirectorySource(str(legacy)), RunContext())

    assert outcomes[0].status == FileStatus.ORPHANED_UPLOAD
    assert report.errors == 1
    assert objects.exists(PROFILE_KEY)

    source = _students()
    _, outcomes = AttachmentRelocator(source, objects).run(LocalDirectorySource(str(legacy)), RunContext())

    assert outcomes[0].status == FileStatus.UNCHANGED
    assert outcomes[0].references_updated == 1
    assert source.find_one("Student", {"_id": "S123"})["profileImage"] == PROFILE_KEY


def test_dry_run_plans_only(legacy):
    source, objects = _students(), MemoryObjectStore()

    report, outcomes = AttachmentRelocator(source, objects).run(
        LocalDirectorySource(str(legacy)), RunContext(dry_run=True)
    )

    assert outcomes[0].status == FileStatus.PLANNED
    assert outcomes[0].canonical_key == PROFILE_KEY
    assert objects.objects == {}
    assert "profileImage" not in source.find_one("Student", {"_id": "S123"})


def test_bucket_prefix_source_skips_canonical_keys():
    objects = MemoryObjectStore(objects={"legacy/I9/profile/231535182938_profile.webp": b"img"})
    source = _students()
    relocator = AttachmentRelocator(source, objects)

    _, first = relocator.run(BucketPrefixSource(objects, "legacy/"), RunContext())
    _, whole_bucket = relocator.run(BucketPrefixSource(objects, ""), RunContext())

    assert first[0].status == FileStatus.UPLOADED
    assert [o.path for o in whole_bucket] == ["legacy/I9/profile/231535182938_profile.webp"]
    assert whole_bucket[0].status == FileStatus.UNCHANGED


def test_same_content():
    data = b"abc"

    assert same_content(ObjectInfo("k", 3, "900150983cd24fb0d6963f7d28e17f72"), data)
    assert not same_content(ObjectInfo("k", 3, "deadbeef"), data)
    assert same_content(ObjectInfo("k", 3, "abc-2"), data)
    assert not same_content(None, data)


def test_rewrite_url_prefix():
    source = MemoryDocumentStore({"Student": [
        {"_id": "s1", "profileImage": "https://old.example.com/uploads/a.webp"},
        {"_id": "s2", "profileImage": "institutions/I9/subjects/s2/profile/s2_profile.webp"},
        {"_id": "s3", "gallery": ["https://old.example.com/x.png", "y.png"]},
    ]})
    relocator = AttachmentRelocator(source, MemoryObjectStore())

    report = relocator.rewrite_url_prefix(
        "https://old.example.com/", "", [("Student", "profileImage"), ("Student", "gallery")], RunContext()
    )

    assert source.find_one("Student", {"_id": "s1"})["profileImage"] == "uploads/a.webp"
    assert source.find_one("Student", {"_id": "s3"})["gallery"] == ["x.png", "y.png"]
    assert report.migrated == 2
    assert report.skipped == 1
