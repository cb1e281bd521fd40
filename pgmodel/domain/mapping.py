"""
Mapping descriptors for model types.

A mapping tells a model which table it lives in, which column holds the id and
how each named property maps to a column:

    {
        "table": "t_author",
        "id": {"column": "aut_id", "type": "int8", "sequence": "author_id"},
        "properties": {
            "name": {"column": "aut_name", "type": "varchar", "constraint": "not null"}
        },
        "indexes": [{"name": "author_name", "columns": ["aut_name"]}]
    }

Mappings are validated once, when a model is defined, and are immutable
afterwards.
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping as MappingType, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from pgmodel.codecs import DEFAULT_REGISTRY
from pgmodel.errors import MappingError


class IdMapping(BaseModel):
    """The id column of a model."""

    column: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1, description="Declared column type.")
    sequence: Optional[str] = Field(None, description="Sequence assigning ids on insert.")
    constraint: Optional[str] = None

    model_config = {"frozen": True}

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in DEFAULT_REGISTRY:
            raise ValueError(f"Unknown data type '{value}'")
        return value


class PropertyMapping(BaseModel):
    """One mapped property."""

    column: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    constraint: Optional[str] = None

    model_config = {"frozen": True}


class IndexSpec(BaseModel):
    """An index created alongside the model table."""

    name: str = Field(..., min_length=1)
    columns: List[str] = Field(..., min_length=1)
    unique: bool = False
    type: Optional[str] = Field(None, description="Index method, e.g. gin or btree.")
    tablespace: Optional[str] = None
    predicate: Optional[str] = None

    model_config = {"frozen": True}


class Mapping(BaseModel):
    """
    Complete mapping of a model type to its table.
    """

    table: str = Field(..., min_length=1)
    schema_name: Optional[str] = Field(None, alias="schema")
    id: IdMapping
    properties: Dict[str, PropertyMapping]
    indexes: List[IndexSpec] = Field(default_factory=list)

    model_config = {
        "frozen": True,
        "populate_by_name": True,
    }

    @model_validator(mode="after")
    def _check_columns(self) -> "Mapping":
        if not self.properties:
            raise ValueError("Model requires explicit property mapping")
        if "id" in self.properties:
            raise ValueError("'id' is reserved for the id mapping")
        seen = {self.id.column}
        for name, prop in self.properties.items():
            if prop.column in seen:
                raise ValueError(f"Column '{prop.column}' of property '{name}' is mapped twice")
            seen.add(prop.column)
        return self

    @property
    def fqn(self) -> str:
        """`schema.table`, or just the table without a schema."""
        return get_fqn(self.table, self.schema_name)

    def column_of(self, name: str) -> str:
        if name == "id":
            return self.id.column
        return self.properties[name].column

    def columns(self) -> List[str]:
        """The id column followed by the property columns, in mapping order."""
        return [self.id.column] + [prop.column for prop in self.properties.values()]


def get_fqn(name: str, schema: Optional[str] = None) -> str:
    """Return `schema.name` when a schema is given, otherwise `name`."""
    if isinstance(schema, str) and schema:
        return f"{schema}.{name}"
    return name


def load_mapping(mapping: Union[Mapping, MappingType[str, Any]]) -> Mapping:
    """
    Validate a mapping given as a dict (or pass an existing `Mapping` through).

    Raises
    ------
    MappingError
        If the mapping is malformed.
    """
    if isinstance(mapping, Mapping):
        return mapping
    if not mapping:
        raise MappingError("Model requires explicit property mapping")
    try:
        return Mapping.model_validate(mapping)
    except ValidationError as exc:
        raise MappingError(str(exc)) from exc


__all__ = ["IdMapping", "IndexSpec", "Mapping", "PropertyMapping", "get_fqn", "load_mapping"]
