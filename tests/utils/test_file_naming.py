# -*- coding: utf-8 -*-
import hashlib

import pytest

from utils.file_naming import (
    build_public_url,
    build_stored_name,
    dedup_key,
    guess_extension,
    protected_token,
    slugify,
    thumbnail_name,
    with_collision_suffix,
)

HASH = "abcdef0123456789abcdef0123456789abcdef01"


@pytest.mark.parametrize(
    "value, expected",
    [
        ("Účtenka Hotel", "uctenka-hotel"),
        ("  --Weird__Name!!  ", "weird-name"),
        ("日本語", "file"),
        ("", "file"),
    ],
)
def test_slugify(value, expected):
    assert slugify(value) == expected


@pytest.mark.parametrize(
    "name, mime, expected",
    [
        ("scan.PDF", None, "pdf"),
        ("photo", "image/png", "png"),
        ("photo.", "image/jpeg", "jpg"),
        ("archive", None, "bin"),
        ("weird.ext!", None, "bin"),
    ],
)
def test_guess_extension(name, mime, expected):
    assert guess_extension(name, mime) == expected


def test_build_stored_name_is_deterministic():
    name = build_stored_name("Účtenka Hotel.jpg", HASH, "image/jpeg")
    assert name == "uctenka-hotel-abcdef01.jpg"
    assert build_stored_name("Účtenka Hotel.jpg", HASH, "image/jpeg") == name


def test_build_stored_name_strips_directories():
    assert build_stored_name("..\\..\\evil.png", HASH) == "evil-abcdef01.png"


def test_collision_suffix_and_thumbnail_name():
    assert with_collision_suffix("a-abcdef01.png", 2) == "a-abcdef01-2.png"
    assert thumbnail_name("a-abcdef01.png") == "thumb_a-abcdef01.png"


def test_public_url_for_public_file():
    url = build_public_url("/uploads", "gallery/summer", "x.png", is_public=True, content_hash=HASH)
    assert url == "/uploads/gallery/summer/x.png"


def test_public_url_for_protected_file_contains_token():
    token = hashlib.sha1(f"{HASH}reports/2025".encode()).hexdigest()[:16]
    assert protected_token(HASH, "reports/2025") == token
    url = build_public_url("/uploads/", "reports/2025", "x.png", is_public=False, content_hash=HASH)
    assert url == f"/uploads/reports/2025/{token}/x.png"


def test_dedup_key_depends_on_hash_and_name():
    assert dedup_key(HASH, "a.png") == dedup_key(HASH, "a.png")
    assert dedup_key(HASH, "a.png") != dedup_key(HASH, "b.png")
    assert dedup_key(HASH, "a.png") != dedup_key("0" * 40, "a.png")
