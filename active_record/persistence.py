"""Turns an entity's attribute delta into insert, update and delete statements.

Timestamps, soft deletes and optimistic locking are applied here, so every
path that writes a single entity (``save``, ``delete``, ``restore``) goes
through the same policy.
"""
import logging
import typing

import sqlalchemy as sa

from active_record.errors import EntityWithoutIdentity, OptimisticLockConflict, UnsupportedOperation
from active_record.keys import generate_key, is_increment
from active_record.schema import ModelDescriptor
from active_record.storages.sqlalchemy.database import ExecutionContext
from active_record.storages.sqlalchemy.types import to_storage

if typing.TYPE_CHECKING:
    from active_record.entity import Model


logger = logging.getLogger(__name__)


def _describe(entity: "Model") -> typing.Tuple[ModelDescriptor, sa.Table]:
    model = type(entity)
    descriptor = model.__descriptor__
    if not descriptor.persistable:
        raise EntityWithoutIdentity(f"{descriptor.name} has no primary key field {descriptor.key_name!r}")
    return descriptor, model.registry.table_for(model)


def _to_storage(values: typing.Mapping[str, typing.Any]) -> typing.Dict[str, typing.Any]:
    return {name: to_storage(value) for name, value in values.items()}


async def insert(entity: "Model", context: typing.Optional[ExecutionContext] = None) -> None:
    descriptor, table = _describe(entity)
    executor = entity.execution_context(context)
    key_name = descriptor.key_name

    if entity.read_attribute(key_name) is None and not is_increment(descriptor.key_type):
        entity.write_attribute(key_name, generate_key(descriptor.key_type))

    if descriptor.timestamps:
        now = type(entity).fresh_timestamp()
        if entity.read_attribute(descriptor.created_at_column) is None:
            entity.write_attribute(descriptor.created_at_column, now)
        if entity.read_attribute(descriptor.updated_at_column) is None:
            entity.write_attribute(descriptor.updated_at_column, now)

    if descriptor.versioned:
        entity.write_attribute(descriptor.version_column, 1)

    payload = {name: value for name, value in entity.attributes.items() if value is not None}
    statement = sa.insert(table).values(_to_storage(payload))
    if executor.supports_returning:
        statement = statement.returning(*table.c)

    result = await executor.execute(statement)
    if result.rows:
        row = result.rows[0]
    else:
        key = entity.read_attribute(key_name)
        if key is None and result.inserted_primary_key:
            key = result.inserted_primary_key[0]
        reloaded = await executor.execute(sa.select(table).where(table.c[key_name] == key))
        row = reloaded.rows[0]

    entity.fill_from_row(row)
    entity._exists = True
    entity._changes = {}
    logger.debug("Inserted %s(%r)", descriptor.name, entity.read_attribute(key_name))


async def update(entity: "Model", context: typing.Optional[ExecutionContext] = None) -> int:
    descriptor, table = _describe(entity)
    dirty = entity.get_dirty()
    if not dirty:
        return 0

    executor = entity.execution_context(context)
    key_name = descriptor.key_name
    key = entity.get_original(key_name)
    payload = dict(dirty)

    if descriptor.timestamps and descriptor.updated_at_column not in payload:
        payload[descriptor.updated_at_column] = type(entity).fresh_timestamp()

    statement = sa.update(table).where(table.c[key_name] == key)
    version = None
    if descriptor.versioned:
        version = entity.get_original(descriptor.version_column)
        statement = statement.where(table.c[descriptor.version_column] == version)
        payload[descriptor.version_column] = (version or 0) + 1

    result = await executor.execute(statement.values(_to_storage(payload)))

    if result.rowcount == 0:
        if descriptor.versioned:
            logger.warning("Optimistic lock conflict on %s(%r) at version %r", descriptor.name, key, version)
            raise OptimisticLockConflict(descriptor.name, key, version)
        logger.warning("Update of %s(%r) matched no rows", descriptor.name, key)
        return 0

    for name, value in payload.items():
        entity.write_attribute(name, value)
    entity._changes = payload
    entity.sync_original()
    logger.debug("Updated %s(%r): %s", descriptor.name, key, ", ".join(sorted(payload)))
    return result.rowcount


async def _update_or_revert(
    entity: "Model", changes: typing.Mapping[str, typing.Any], context: typing.Optional[ExecutionContext]
) -> int:
    previous = {name: entity.read_attribute(name) for name in changes}
    for name, value in changes.items():
        entity.write_attribute(name, value)
    try:
        updated = await update(entity, context)
    except Exception:
        for name, value in previous.items():
            entity.write_attribute(name, value)
        raise
    if not updated and entity.is_dirty(*changes):
        for name, value in previous.items():
            entity.write_attribute(name, value)
    return updated


async def delete(entity: "Model", context: typing.Optional[ExecutionContext] = None) -> None:
    descriptor, _ = _describe(entity)
    if not entity.exists:
        return

    if not descriptor.soft_deletes:
        await force_delete(entity, context)
        return

    now = type(entity).fresh_timestamp()
    changes = {descriptor.deleted_at_column: now}
    if descriptor.timestamps:
        changes[descriptor.updated_at_column] = now
    if await _update_or_revert(entity, changes, context):
        logger.debug("Soft deleted %s(%r)", descriptor.name, entity.read_attribute(descriptor.key_name))


async def restore(entity: "Model", context: typing.Optional[ExecutionContext] = None) -> None:
    descriptor, _ = _describe(entity)
    if not descriptor.soft_deletes:
        raise UnsupportedOperation(f"{descriptor.name} does not use soft deletes")

    if await _update_or_revert(entity, {descriptor.deleted_at_column: None}, context):
        logger.debug("Restored %s(%r)", descriptor.name, entity.read_attribute(descriptor.key_name))


async def force_delete(entity: "Model", context: typing.Optional[ExecutionContext] = None) -> int:
    descriptor, table = _describe(entity)
    executor = entity.execution_context(context)
    key = entity.get_original(descriptor.key_name)

    result = await executor.execute(sa.delete(table).where(table.c[descriptor.key_name] == key))
    entity._exists = False
    logger.debug("Deleted %s(%r)", descriptor.name, key)
    return result.rowcount
