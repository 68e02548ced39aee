# -*- coding: utf-8 -*-
"""
usage_info.py
--------------------------------------------------------------------
附件 ``usage_info`` 字段的纯数据变换。

持久化格式（按实体类型分别存储，两种形态并存）：

- 字段级：``{"report": {"12": ["receipt", "photos"]}}``
- 旧版扁平：``{"report": ["12", "13"]}``，只记录实体 ID，没有字段粒度。

读取时一律归一化成 ``{实体类型: {实体ID: {字段名...}}}``，字段集合为空
表示"整个实体引用了该文件"（旧版形态）。写回时，如果某个实体类型下
全部是整实体引用，则继续写旧版列表，兼容外部读取方。
同一实体类型下既有整实体引用又有字段级引用时，写成字段级形态，整实体引用
记为空列表：``{"report": {"12": ["photos"], "13": []}}``。这里的 ``[]`` 表示
"实体 13 整体引用了该文件"，是一条有效引用，不是待清理的空容器；
``usage_count`` / ``has_usage`` 都会把它计入。

这里的函数都不修改入参，返回新的 dict，便于 SQLAlchemy 识别 JSON 列变更。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, Mapping, Optional, Set

UsageMap = Dict[str, Dict[str, Set[str]]]


class UsageShape(Enum):
    """单个实体类型下的持久化形态。"""

    FIELD_KEYED = "field_keyed"
    LEGACY = "legacy"
    # 更早的 "<type>_<id>": {"type": ..., "id": ...} 记录形态，只读
    RECORD = "record"


@dataclass(frozen=True)
class UsageReference:
    entity_type: str
    entity_id: str
    fields: FrozenSet[str]


def _key(value: Any) -> str:
    return str(value).strip()


def detect_shape(value: Any) -> Optional[UsageShape]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return UsageShape.LEGACY
    if isinstance(value, Mapping):
        if "type" in value and "id" in value and not isinstance(value.get("id"), (list, Mapping)):
            return UsageShape.RECORD
        return UsageShape.FIELD_KEYED
    return None


def normalize_usage(raw: Optional[Mapping[str, Any]]) -> UsageMap:
    usage: UsageMap = {}
    if not isinstance(raw, Mapping):
        return usage

    for type_key, value in raw.items():
        shape = detect_shape(value)
        if shape is UsageShape.LEGACY:
            entities = usage.setdefault(_key(type_key), {})
            for entity_id in value:
                entities.setdefault(_key(entity_id), set())
        elif shape is UsageShape.RECORD:
            entities = usage.setdefault(_key(value["type"]), {})
            entities.setdefault(_key(value["id"]), set())
        elif shape is UsageShape.FIELD_KEYED:
            entities = usage.setdefault(_key(type_key), {})
            for entity_id, fields in value.items():
                field_set = entities.setdefault(_key(entity_id), set())
                if isinstance(fields, (list, tuple, set, frozenset)):
                    field_set.update(_key(f) for f in fields if _key(f))
                elif isinstance(fields, str) and fields.strip():
                    field_set.add(fields.strip())

    return {t: entities for t, entities in usage.items() if entities}


def serialize_usage(usage: UsageMap) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for entity_type in sorted(usage):
        entities = usage[entity_type]
        if not entities:
            continue
        if all(not fields for fields in entities.values()):
            result[entity_type] = sorted(entities)
        else:
            result[entity_type] = {eid: sorted(fields) for eid, fields in sorted(entities.items())}
    return result


def add_usage(raw, entity_type: str, entity_id, field_name: Optional[str] = None) -> Dict[str, Any]:
    """记录一次引用。重复添加同一字段是幂等的。"""

    usage = normalize_usage(raw)
    entities = usage.setdefault(_key(entity_type), {})
    fields = entities.setdefault(_key(entity_id), set())
    if field_name:
        fields.add(_key(field_name))
    return serialize_usage(usage)


def remove_usage(raw, entity_type: str, entity_id, field_name: Optional[str] = None) -> Dict[str, Any]:
    """移除引用，并逐级清理空容器。

    带字段名时只移除该字段；不带字段名时移除整个实体的引用。
    """

    usage = normalize_usage(raw)
    entities = usage.get(_key(entity_type))
    if entities is None:
        return serialize_usage(usage)

    eid = _key(entity_id)
    if field_name:
        fields = entities.get(eid)
        if fields and _key(field_name) in fields:
            fields.discard(_key(field_name))
            if not fields:
                entities.pop(eid, None)
    else:
        entities.pop(eid, None)

    if not entities:
        usage.pop(_key(entity_type), None)
    return serialize_usage(usage)


def is_used_in_field(raw, entity_type: str, entity_id, field_name: str) -> bool:
    fields = normalize_usage(raw).get(_key(entity_type), {}).get(_key(entity_id))
    return bool(fields) and _key(field_name) in fields


def is_used_in(raw, entity_type: str, entity_id) -> bool:
    return _key(entity_id) in normalize_usage(raw).get(_key(entity_type), {})


def usage_count(raw) -> int:
    """引用该文件的实体数量（跨实体类型求和）。"""

    return sum(len(entities) for entities in normalize_usage(raw).values())


def has_usage(raw) -> bool:
    return usage_count(raw) > 0


def iter_references(raw) -> Iterator[UsageReference]:
    for entity_type, entities in sorted(normalize_usage(raw).items()):
        for entity_id, fields in sorted(entities.items()):
            yield UsageReference(entity_type, entity_id, frozenset(fields))
