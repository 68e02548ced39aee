# -*- coding: utf-8 -*-
from datetime import datetime
from pathlib import Path

import pytest

from utils.datetime_helpers import utcnow
from utils.path_sanitizer import (
    GENERIC_BUCKET,
    MAX_PATH_DEPTH,
    generate_download_path,
    generate_gallery_path,
    generate_generic_path,
    generate_methodology_path,
    generate_report_path,
    generate_temp_path,
    generate_user_path,
    is_path_public,
    sanitize_path_component,
    validate_storage_path,
)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("Reports", "reports"),
        ("a b/c", "abc"),
        ("..", "unknown"),
        ("", "unknown"),
        ("x" * 51, "unknown"),
        ("x" * 50, "x" * 50),
        (None, "unknown"),
        ("Příloha", "ploha"),
    ],
)
def test_sanitize_path_component(value, expected):
    assert sanitize_path_component(value) == expected


def test_sanitize_path_component_custom_fallback():
    assert sanitize_path_component("!!!", "general") == "general"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("reports/2025/abc", "reports/2025/abc"),
        ("../../etc/passwd", "unknown/unknown/etc/passwd"),
        ("reports//2025/", "reports/2025"),
        ("/abs/path", "abs/path"),
        ("a\\b\\c", "a/b/c"),
        ("gallery/sum\x00mer", "gallery/summer"),
        ("single", GENERIC_BUCKET),
        ("", GENERIC_BUCKET),
        ("///", GENERIC_BUCKET),
        ("../..", "unknown/unknown"),
    ],
)
def test_validate_storage_path(raw, expected):
    assert validate_storage_path(raw) == expected


@pytest.mark.parametrize("raw", [None, 42, ["a", "b"], b"reports/2025"])
def test_validate_storage_path_non_string_falls_back(raw):
    assert validate_storage_path(raw) == GENERIC_BUCKET


@pytest.mark.parametrize(
    "raw",
    ["../../../../etc", "..\\..\\windows", "a/\x00/../b", "./.././x", "reports/%2e%2e/x"],
)
def test_sanitized_path_never_escapes_root(tmp_path, raw):
    root = tmp_path.resolve()
    target = (root / validate_storage_path(raw)).resolve()
    assert target.is_relative_to(root)
    assert target != root


def test_is_path_public():
    assert is_path_public("gallery/summer")
    assert is_path_public("downloads/general")
    assert not is_path_public("reports/2025/a/b/1")
    assert not is_path_public("temp/2025/01/x")
    assert is_path_public("custom/a", prefixes=["custom"])


def test_generate_temp_path_format():
    path = generate_temp_path(datetime(2025, 3, 9))
    parts = path.split("/")
    assert parts[:3] == ["temp", "2025", "03"]
    assert len(parts[3]) == 13


def test_generate_temp_path_is_unique():
    assert generate_temp_path() != generate_temp_path()


def test_generate_report_path_clamps_year():
    path = generate_report_path(1999, "KKZ 01", "Praha/1", 7)
    current = utcnow().year
    assert path == f"reports/{current}/kkz01/praha1/7"


def test_generate_report_path_keeps_valid_year_and_fixes_id():
    assert generate_report_path(2021, "a", "b", -3) == "reports/2021/a/b/1"


def test_other_generators():
    assert generate_user_path("12") == "users/12"
    assert generate_user_path("bad") == "users/1"
    assert generate_generic_path("Docs", "Sub Dir") == "docs/subdir"
    assert generate_generic_path("") == "misc"
    assert generate_gallery_path("../x") == "gallery/x"
    assert Path(generate_gallery_path()).as_posix() == "gallery/general"


def test_validate_storage_path_limits_depth():
    raw = "/".join(["x" * 50] * 30)
    path = validate_storage_path(raw)
    assert path.count("/") == MAX_PATH_DEPTH - 1
    assert len(path) <= 500
    assert validate_storage_path("a/b/c/d/e/f/g/h/i/j") == "a/b/c/d/e/f/g/h"


def test_public_category_generators():
    assert generate_methodology_path() == "methodologies/general"
    assert generate_methodology_path("Safety Rules") == "methodologies/safetyrules"
    assert generate_methodology_path("../..") == "methodologies/general"
    assert generate_download_path("Forms 2025") == "downloads/forms2025"
    assert generate_download_path(None) == "downloads/general"
    assert is_path_public(generate_methodology_path("x"))
    assert is_path_public(generate_download_path())
