"""
SQL template generation for mapped models.

Every model gets its insert, update, delete, get-by-id and select templates
generated once from its mapping. `get_many` keeps the order of the requested
ids in SQL through `array_position`, so callers never re-sort.
"""

from __future__ import annotations

import re
from typing import Dict, Optional

from pgmodel.domain.mapping import Mapping
from pgmodel.sqltemplate import TemplateDescriptor, parse

_CLAUSE_KEYWORD = re.compile(r"^\s*(where|order|group|having|limit|offset|for|window)\b", re.IGNORECASE)


def _select_columns(mapping: Mapping) -> str:
    return ", ".join(mapping.columns())


def _clause(clause: Optional[str]) -> str:
    if not isinstance(clause, str) or not clause.strip():
        return ""
    if _CLAUSE_KEYWORD.match(clause):
        return clause.strip()
    return "where " + clause.strip()


def build_insert_template(mapping: Mapping) -> TemplateDescriptor:
    """Insert with an explicit id, or `nextval()` of the id sequence if mapped."""
    id_param = f"nextval('{mapping.id.sequence}')" if mapping.id.sequence else "#{id}"
    params = [id_param] + ["#{" + name + "}" for name in mapping.properties]
    return parse(
        f"insert into {mapping.fqn} ({', '.join(mapping.columns())}) "
        f"values ({', '.join(params)}) returning *"
    )


def build_insert_without_id_template(mapping: Mapping) -> TemplateDescriptor:
    """Insert leaving the id column to its column default."""
    columns = [prop.column for prop in mapping.properties.values()]
    params = ["#{" + name + "}" for name in mapping.properties]
    return parse(
        f"insert into {mapping.fqn} ({', '.join(columns)}) "
        f"values ({', '.join(params)}) returning *"
    )


def build_update_template(mapping: Mapping) -> TemplateDescriptor:
    updates = ", ".join(f"{prop.column} = #{{{name}}}" for name, prop in mapping.properties.items())
    return parse(
        f"update {mapping.fqn} set {updates} where {mapping.id.column} = #{{id}} returning *"
    )


def build_delete_template(mapping: Mapping) -> TemplateDescriptor:
    return parse(f"delete from {mapping.fqn} where {mapping.id.column} = #{{id}}")


def build_get_template(mapping: Mapping) -> TemplateDescriptor:
    return parse(
        f"select {_select_columns(mapping)} from {mapping.fqn} where {mapping.id.column} = #{{id}}"
    )


def build_get_many_template(mapping: Mapping) -> TemplateDescriptor:
    id_column = mapping.id.column
    return parse(
        f"select {_select_columns(mapping)} from {mapping.fqn} "
        f"where {id_column} = any(#{{ids}}) order by array_position(#{{ids}}, {id_column})"
    )


def build_query_template(mapping: Mapping, clause: Optional[str] = None) -> TemplateDescriptor:
    """
    Select all mapped columns, optionally restricted by `clause`.

    A clause that does not start with a keyword such as `where` or `order` is
    treated as a where-condition.
    """
    return parse(f"select {_select_columns(mapping)} from {mapping.fqn} {_clause(clause)}".strip())


def build_count_template(mapping: Mapping, clause: Optional[str] = None) -> TemplateDescriptor:
    return parse(
        f"select count({mapping.id.column}) as count from {mapping.fqn} {_clause(clause)}".strip()
    )


def build_model_templates(mapping: Mapping) -> Dict[str, TemplateDescriptor]:
    return {
        "insert": build_insert_template(mapping),
        "insert_without_id": build_insert_without_id_template(mapping),
        "update": build_update_template(mapping),
        "delete": build_delete_template(mapping),
        "get": build_get_template(mapping),
        "all": build_query_template(mapping),
        "get_many": build_get_many_template(mapping),
    }


__all__ = [
    "build_count_template",
    "build_delete_template",
    "build_get_many_template",
    "build_get_template",
    "build_insert_template",
    "build_insert_without_id_template",
    "build_model_templates",
    "build_query_template",
    "build_update_template",
]
