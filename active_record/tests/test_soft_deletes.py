import typing
from datetime import datetime

import pytest
import sqlalchemy as sa

from active_record import Database, Identity, Model, SaRegistry, UnsupportedOperation


soft_deletes_registry = SaRegistry()


class Base(Model):
    __abstract__ = True
    registry = soft_deletes_registry


class Article(Base):
    timestamps = True
    soft_deletes = True

    id: Identity[int]
    title: str
    created_at: datetime
    updated_at: datetime
    deleted_at: typing.Optional[datetime]


class Comment(Base):
    id: Identity[int]
    body: str


@pytest.fixture(autouse=True)
async def tables(database: Database) -> typing.AsyncGenerator[None, None]:
    soft_deletes_registry.bind(database)
    await soft_deletes_registry.create_all()
    yield
    await soft_deletes_registry.drop_all()


async def raw_count(database: Database) -> int:
    table = soft_deletes_registry.table_for(Article)
    result = await database.execute(sa.select(sa.func.count()).select_from(table))
    return result.scalar()


async def test_delete_marks_tombstone(database):
    article = await Article.create(title="draft")

    await article.delete()

    assert article.trashed
    assert article.exists
    assert article.deleted_at is not None
    assert article.updated_at == article.deleted_at
    assert await raw_count(database) == 1


async def test_trashed_rows_are_hidden_from_default_queries():
    kept = await Article.create(title="kept")
    trashed = await Article.create(title="trashed")
    await trashed.delete()

    assert await Article.count() == 1
    assert await Article.find(trashed.id) is None
    assert [article.id for article in await Article.where("title", "trashed").get()] == []
    assert [article.id for article in await Article.all()] == [kept.id]


async def test_trashed_rows_can_be_requested_explicitly():
    await Article.create(title="kept")
    trashed = await Article.create(title="trashed")
    await trashed.delete()

    assert await Article.with_trashed().count() == 2
    assert [article.id for article in await Article.only_trashed().get()] == [trashed.id]
    assert (await Article.with_trashed().find(trashed.id)).trashed


async def test_filter_survives_clearing_predicates():
    await Article.create(title="kept")
    trashed = await Article.create(title="trashed")
    await trashed.delete()

    query = Article.where("title", "trashed").clear_where()

    assert await query.count() == 1


async def test_restore_makes_row_visible_again():
    article = await Article.create(title="draft")
    await article.delete()

    await article.restore()

    assert not article.trashed
    assert (await Article.find(article.id)).deleted_at is None


async def test_force_delete_removes_row(database):
    article = await Article.create(title="draft")
    await article.delete()

    await article.force_delete()

    assert not article.exists
    assert await raw_count(database) == 0


async def test_deleting_a_trashed_entity_moves_tombstone():
    article = await Article.create(title="draft")
    await article.delete()
    first_deleted_at = article.deleted_at

    await article.delete()

    assert (await Article.with_trashed().find(article.id)).deleted_at >= first_deleted_at


async def test_restore_requires_soft_deletes():
    comment = await Comment.create(body="hi")

    with pytest.raises(UnsupportedOperation):
        await comment.restore()


async def test_bulk_delete_is_soft(database):
    for title in ("a", "b", "c"):
        await Article.create(title=title)

    assert await Article.where("title", "!=", "c").delete() == 2

    assert await Article.count() == 1
    assert await raw_count(database) == 3


async def test_bulk_restore_only_touches_trashed_rows():
    live = await Article.create(title="live")
    for title in ("a", "b"):
        await (await Article.create(title=title)).delete()

    assert await Article.query().restore() == 2

    assert await Article.count() == 3
    assert (await Article.find(live.id)).updated_at == live.updated_at


async def test_bulk_force_delete_respects_visibility(database):
    await Article.create(title="live")
    await (await Article.create(title="trashed")).delete()

    assert await Article.query().force_delete() == 1
    assert await raw_count(database) == 1
    assert await Article.with_trashed().force_delete() == 1
    assert await raw_count(database) == 0


async def test_bulk_restore_requires_soft_deletes():
    with pytest.raises(UnsupportedOperation):
        await Comment.query().restore()


async def test_sliced_bulk_delete_skips_trashed_rows_when_counting(database):
    for title in ("a", "b", "c", "d"):
        await Article.create(title=title)
    await (await Article.where("title", "a").first()).delete()

    assert await Article.query().order_by("title").limit(2).delete() == 2

    assert [article.title for article in await Article.all()] == ["d"]
    assert await raw_count(database) == 4
