import pytest

from cutover.services.keys import canonical_key, content_type_for, sanitize_segment


def test_canonical_profile_key():
    key = canonical_key("S123", "profile", "webp", institution_id="I9")

    assert key == "institutions/I9/subjects/S123/profile/S123_profile.webp"


def test_key_is_deterministic():
    args = ("S123", "document", ".PDF")
    kwargs = {"institution_id": "I9", "name": "marksheet_10th"}

    assert canonical_key(*args, **kwargs) == canonical_key(*args, **kwargs)
    assert canonical_key(*args, **kwargs) == "institutions/I9/subjects/S123/document/S123_marksheet_10th.pdf"


def test_missing_institution_goes_under_unassigned():
    assert canonical_key("S1", "profile", "png").startswith("institutions/unassigned/subjects/S1/")


@pytest.mark.parametrize("raw,expected", [
    ("I9", "I9"),
    ("../etc", "etc"),
    ("São Paulo", "Sao-Paulo"),
    ("a/b\\c", "a-b-c"),
    ("", "x"),
    ("..", "x"),
])
def test_sanitize_segment(raw, expected):
    assert sanitize_segment(raw) == expected


def test_content_types():
    assert content_type_for("a.webp") == "image/webp"
    assert content_type_for("a.PDF") == "application/pdf"
    assert content_type_for("a.unknownext") == "application/octet-stream"
