"""
Mapped models.

`define_model()` turns a mapping into a `Model` subclass with one attribute per
mapped property. An instance keeps the last persisted row (`data`, keyed by
column) and an overlay of unsaved property writes; reading a property returns
the overlay value if there is one, else the persisted column value.

Usage:
    Author = client.define_model("Author", {
        "table": "t_author",
        "id": {"column": "aut_id", "type": "int8", "sequence": "author_id"},
        "properties": {"name": {"column": "aut_name", "type": "varchar"}},
    })
    author = Author(name="Jane Foo").save()
    Author.get(author.id).name   # -> "Jane Foo"
"""

from __future__ import annotations

from functools import lru_cache
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    ClassVar,
    Dict,
    Iterable,
    List,
    Mapping as MappingType,
    Optional,
    Sequence,
    Type,
    Union,
)

import psycopg

from pgmodel import mapper, schema
from pgmodel.domain.mapping import Mapping, load_mapping
from pgmodel.domain.state import State
from pgmodel.errors import MappingError, PgModelError, StatementFailedError
from pgmodel.sqltemplate import RowMapper, SqlTemplate
from pgmodel.templates import build_count_template, build_model_templates, build_query_template

if TYPE_CHECKING:  # pragma: no cover - typing only
    from pgmodel.client import Client

# names a mapped property must not shadow
_RESERVED = {
    "all", "client", "count", "create_instance", "create_table", "data", "delete", "drop_table",
    "get", "get_many", "id", "insert_batch", "key", "key_for", "map_to", "mapping", "query",
    "save", "state", "to_dict", "type_name",
}


def get_key(type_name: str, id: Any) -> str:
    """Entity key of the row `id` of `type_name`."""
    return f"{type_name}#{id}"


class Property:
    """Attribute descriptor of a mapped property."""

    def __init__(self, name: str, column: str) -> None:
        self.name = name
        self.column = column

    def __get__(self, instance: Optional["Model"], owner: type) -> Any:
        if instance is None:
            return self
        if self.name in instance._props:
            return instance._props[self.name]
        return instance._data.get(self.column)

    def __set__(self, instance: "Model", value: Any) -> None:
        instance._props[self.name] = value
        if instance._state is State.CLEAN:
            instance._state = State.DIRTY


class Model:
    """
    Base class of all defined models.

    Do not subclass directly; use `Client.define_model()`.
    """

    client: ClassVar["Client"]
    mapping: ClassVar[Mapping]
    type_name: ClassVar[str]
    _templates: ClassVar[Dict[str, SqlTemplate]]
    _query_template: ClassVar[Callable[[Optional[str]], SqlTemplate]]
    _count_template: ClassVar[Callable[[Optional[str]], SqlTemplate]]

    def __init__(self, **props: Any) -> None:
        unknown = sorted(set(props) - set(self.mapping.properties) - {"id"})
        if unknown:
            raise MappingError(f"Unknown properties for {self.type_name}: {', '.join(unknown)}")
        self._state = State.NEW
        self._props: Dict[str, Any] = dict(props)
        self._data: Dict[str, Any] = {}

    @classmethod
    def create_instance(cls, data: Dict[str, Any]) -> "Model":
        """Instantiate a CLEAN model from a persisted row."""
        instance = cls.__new__(cls)
        instance._state = State.CLEAN
        instance._props = {}
        instance._data = data
        return instance

    def __repr__(self) -> str:
        return f"<{self.type_name} {self.key} ({self._state.value})>"

    @property
    def state(self) -> State:
        return self._state

    @property
    def id(self) -> Any:
        """The id of the persisted row, None until the model has been saved."""
        return self._data.get(self.mapping.id.column)

    @property
    def key(self) -> str:
        return get_key(self.type_name, self.id)

    @property
    def data(self) -> Dict[str, Any]:
        """Copy of the last persisted row, keyed by column."""
        return dict(self._data)

    def to_dict(self) -> Dict[str, Any]:
        """Id and property values; mapped columns only."""
        result = {"id": self.id}
        for name in self.mapping.properties:
            result[name] = getattr(self, name)
        return result

    def _params(self) -> Dict[str, Any]:
        params = {
            name: self._props[name] if name in self._props else self._data.get(prop.column)
            for name, prop in self.mapping.properties.items()
        }
        id_column = self.mapping.id.column
        params["id"] = self._data[id_column] if id_column in self._data else self._props.get("id")
        return params

    def save(self) -> "Model":
        """
        Insert (NEW) or update (CLEAN/DIRTY) the row and reload it from the
        statement's `returning *`.

        Raises
        ------
        StatementFailedError
            If the backend rejects the statement or an update matches no row.
        """
        if self._state is State.DELETED:
            raise PgModelError(f"Cannot save deleted model {self.key}")
        is_new = self._state is State.NEW
        params = self._params()
        if not is_new:
            name = "update"
        elif self.mapping.id.sequence or params["id"] is not None:
            name = "insert"
        else:
            name = "insert_without_id"
        template = self._templates[name]
        rows = template.execute(self.client, params)
        if not rows:
            raise StatementFailedError(template.sql, template.param_names, "no row returned")
        self._data = rows[0]
        self._props = {}
        self._state = State.CLEAN
        self.client.transactions.saved(self, inserted=is_new)
        return self

    def delete(self) -> bool:
        """
        Delete the row. Returns True if a row was actually deleted; models that
        are NEW or already DELETED are left alone.
        """
        if self._state not in (State.CLEAN, State.DIRTY):
            return False
        deleted = self._templates["delete"].execute(self.client, {"id": self.id}) == 1
        if deleted:
            self._state = State.DELETED
            self.client.transactions.deleted(self)
        return deleted

    # -- class level operations -----------------------------------------------

    @classmethod
    def key_for(cls, id: Any) -> str:
        return get_key(cls.type_name, id)

    @classmethod
    def _reader(cls, since: Optional[int]) -> RowMapper:
        id_column = cls.mapping.id.column
        manager = cls.client.transactions

        def to_instance(row: Sequence[Any], columns: List[mapper.Column]) -> "Model":
            data = mapper.map_row(row, columns)
            if id_column not in data:
                raise MappingError(f"Result has no id column '{id_column}' for {cls.type_name}")
            key = cls.key_for(data[id_column])
            return cls.create_instance(manager.remember(key, data, since))

        return lambda cursor: mapper.map_result(cursor, to_instance)

    @classmethod
    def map_to(cls, cursor: psycopg.Cursor) -> List["Model"]:
        """Row mapper producing instances, reading through and filling the shared cache."""
        return cls._reader(cls.client.transactions.generation())(cursor)

    @classmethod
    def _fetch(cls, template: SqlTemplate, params: Optional[MappingType[str, Any]] = None) -> Any:
        # taken before the select so rows older than a concurrent commit stay out of the cache
        since = cls.client.transactions.generation()
        return template.execute(cls.client, params, row_mapper=cls._reader(since))

    @classmethod
    def get(cls, id: Any) -> Optional["Model"]:
        """Return the model with the given id, or None."""
        found, row = cls.client.transactions.lookup(cls.key_for(id))
        if found:
            return None if row is None else cls.create_instance(row)
        result = cls._fetch(cls._templates["get"], {"id": id})
        return result[0] if result else None

    @classmethod
    def get_many(cls, ids: Iterable[Any]) -> List["Model"]:
        """Models for `ids`, in the order requested; missing ids are skipped."""
        ids = list(ids)
        if not ids:
            return []
        return cls._fetch(cls._templates["get_many"], {"ids": ids})

    @classmethod
    def all(cls) -> List["Model"]:
        return cls._fetch(cls._templates["all"])

    @classmethod
    def query(
        cls, clause: Optional[str] = None, params: Optional[MappingType[str, Any]] = None
    ) -> List["Model"]:
        """
        Models matching `clause`, e.g. `"where aut_name like #{name}"`.

        A clause without a leading keyword is used as the where-condition.
        """
        return cls._fetch(cls._query_template(clause), params)

    @classmethod
    def count(
        cls, clause: Optional[str] = None, params: Optional[MappingType[str, Any]] = None
    ) -> int:
        rows = cls._count_template(clause).execute(cls.client, params)
        return rows[0]["count"]

    @classmethod
    def insert_batch(
        cls, rows: Iterable[MappingType[str, Any]], batch_size: Optional[int] = None
    ) -> bool:
        """
        Bulk-insert property maps. Bypasses the shared cache and commit events;
        re-fetch inserted rows to get models.

        Without an id sequence, rows carrying an id are inserted with it and
        the others get the column default, in two separate batches.
        """
        properties = cls.mapping.properties
        params = []
        for row in rows:
            unknown = sorted(set(row) - set(properties) - {"id"})
            if unknown:
                raise MappingError(f"Unknown properties for {cls.type_name}: {', '.join(unknown)}")
            values = {name: row.get(name) for name in properties}
            values["id"] = row.get("id")
            params.append(values)
        if cls.mapping.id.sequence:
            return cls._templates["insert"].execute_batch(cls.client, params, batch_size)
        with_id = [values for values in params if values["id"] is not None]
        without_id = [values for values in params if values["id"] is None]
        ok = True
        if with_id:
            ok = cls._templates["insert"].execute_batch(cls.client, with_id, batch_size)
        if without_id:
            ok = cls._templates["insert_without_id"].execute_batch(
                cls.client, without_id, batch_size
            ) and ok
        return ok

    @classmethod
    def create_table(cls) -> None:
        """Create table, sequence and indexes of this model."""
        schema.init_model(cls.client, cls.mapping)

    @classmethod
    def drop_table(cls) -> None:
        schema.drop_model(cls.client, cls.mapping)


def define_model(
    client: "Client", type_name: str, mapping: Union[Mapping, MappingType[str, Any]]
) -> Type[Model]:
    """
    Create the model class `type_name` for `mapping`.

    Raises
    ------
    MappingError
        If the mapping is invalid or a property name is reserved.
    """
    mapping = load_mapping(mapping)
    clashes = sorted(set(mapping.properties) & _RESERVED)
    if clashes:
        raise MappingError(f"Reserved property names: {', '.join(clashes)}")

    namespace: Dict[str, Any] = {
        name: Property(name, prop.column) for name, prop in mapping.properties.items()
    }
    namespace.update(
        {
            "__module__": __name__,
            "__doc__": f"Model of {mapping.fqn}.",
            "client": client,
            "mapping": mapping,
            "type_name": type_name,
        }
    )
    model = type(type_name, (Model,), namespace)

    templates = {name: SqlTemplate(descriptor) for name, descriptor in build_model_templates(mapping).items()}
    for name in ("get", "all", "get_many"):
        templates[name].set_mapper(model.map_to)
    model._templates = templates

    @lru_cache(maxsize=128)
    def query_template(clause: Optional[str]) -> SqlTemplate:
        return SqlTemplate(build_query_template(mapping, clause)).set_mapper(model.map_to)

    @lru_cache(maxsize=128)
    def count_template(clause: Optional[str]) -> SqlTemplate:
        return SqlTemplate(build_count_template(mapping, clause))

    model._query_template = staticmethod(query_template)
    model._count_template = staticmethod(count_template)
    return model


__all__ = ["Model", "Property", "define_model", "get_key"]
