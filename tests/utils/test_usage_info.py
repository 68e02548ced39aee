# -*- coding: utf-8 -*-
from utils import usage_info as usage
from utils.usage_info import UsageShape


def test_add_field_usage_is_idempotent():
    raw = usage.add_usage({}, "report", 12, "receipt")
    again = usage.add_usage(raw, "report", 12, "receipt")
    assert again == {"report": {"12": ["receipt"]}}


def test_add_without_field_writes_legacy_list():
    raw = usage.add_usage({}, "page", 3)
    raw = usage.add_usage(raw, "page", 4)
    assert raw == {"page": ["3", "4"]}
    assert usage.detect_shape(raw["page"]) is UsageShape.LEGACY


def test_legacy_read_is_normalized_and_upgraded_on_field_add():
    raw = {"report": [12, 13]}
    assert usage.normalize_usage(raw) == {"report": {"12": set(), "13": set()}}

    upgraded = usage.add_usage(raw, "report", 12, "photos")
    assert upgraded == {"report": {"12": ["photos"], "13": []}}
    assert usage.is_used_in(upgraded, "report", 13)
    assert not usage.is_used_in_field(upgraded, "report", 13, "photos")


def test_record_shape_is_read_only_input():
    raw = {"report_5": {"type": "report", "id": 5}}
    assert usage.detect_shape(raw["report_5"]) is UsageShape.RECORD
    assert usage.is_used_in(raw, "report", "5")
    assert usage.serialize_usage(usage.normalize_usage(raw)) == {"report": ["5"]}


def test_remove_field_prunes_empty_containers():
    raw = usage.add_usage({}, "report", 12, "receipt")
    raw = usage.add_usage(raw, "report", 12, "photos")
    raw = usage.remove_usage(raw, "report", 12, "receipt")
    assert raw == {"report": {"12": ["photos"]}}

    raw = usage.remove_usage(raw, "report", 12, "photos")
    assert raw == {}
    assert not usage.has_usage(raw)


def test_remove_without_field_drops_whole_entity():
    raw = usage.add_usage({}, "report", 12, "receipt")
    raw = usage.add_usage(raw, "page", 1)
    raw = usage.remove_usage(raw, "report", 12)
    assert raw == {"page": ["1"]}


def test_remove_unknown_reference_is_noop():
    raw = {"report": {"12": ["receipt"]}}
    assert usage.remove_usage(raw, "report", 99, "receipt") == raw
    assert usage.remove_usage(raw, "page", 1) == raw
    assert usage.remove_usage(raw, "report", 12, "other") == raw


def test_usage_count_counts_entities():
    raw = {"report": {"1": ["a", "b"], "2": ["a"]}, "page": ["9"]}
    assert usage.usage_count(raw) == 3
    assert usage.usage_count(None) == 0
    assert usage.usage_count({"report": []}) == 0


def test_functions_do_not_mutate_input():
    raw = {"report": {"12": ["receipt"]}}
    usage.add_usage(raw, "report", 12, "photos")
    usage.remove_usage(raw, "report", 12, "receipt")
    assert raw == {"report": {"12": ["receipt"]}}


def test_iter_references():
    refs = list(usage.iter_references({"report": {"1": ["b", "a"]}, "page": ["2"]}))
    assert [(r.entity_type, r.entity_id, sorted(r.fields)) for r in refs] == [
        ("page", "2", []),
        ("report", "1", ["a", "b"]),
    ]


def test_mixed_whole_entity_and_field_references():
    raw = usage.add_usage({}, "report", 13)
    raw = usage.add_usage(raw, "report", 12, "photos")
    # 整实体引用在字段级形态里记为空列表，仍然算一条引用
    assert raw == {"report": {"12": ["photos"], "13": []}}
    assert usage.usage_count(raw) == 2
    assert usage.is_used_in(raw, "report", 13)
    assert not usage.is_used_in_field(raw, "report", 13, "photos")

    only_whole = usage.remove_usage(raw, "report", 12, "photos")
    assert only_whole == {"report": ["13"]}
    assert usage.has_usage(only_whole)

    only_field = usage.remove_usage(raw, "report", 13)
    assert only_field == {"report": {"12": ["photos"]}}
