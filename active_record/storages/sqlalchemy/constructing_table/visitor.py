import typing

from sqlalchemy import Column, MetaData, Table

from active_record.errors import InvalidModel
from active_record.schema import FieldNode, ModelNode, Visitor
from active_record.storages.sqlalchemy import native_type_to_column


class TableConstructingVisitor(Visitor):
    def __init__(self, metadata: MetaData, key_name: typing.Optional[str]) -> None:
        self._metadata = metadata
        self._key_name = key_name
        self._columns: typing.List[Column] = []
        self._table: typing.Optional[Table] = None

    @property
    def table(self) -> Table:
        if self._table is None:
            raise Exception("No model visited")
        return self._table

    def visit_model(self, model: ModelNode) -> None:
        self._columns = []

    def visit_field(self, field: FieldNode) -> None:
        is_key = field.is_identity or field.name == self._key_name
        try:
            column_type = native_type_to_column.convert(field.type)
        except TypeError as exc:
            raise InvalidModel(f"Field {field.name!r}: {exc}") from exc
        self._columns.append(Column(field.name, column_type, primary_key=is_key, nullable=field.nullable))

    def leave_model(self, model: ModelNode) -> None:
        existing = self._metadata.tables.get(model.table_name)
        if existing is not None:
            # redefined model, e.g. a class declared again in a reloaded module
            self._metadata.remove(existing)
        self._table = Table(model.table_name, self._metadata, *self._columns)
