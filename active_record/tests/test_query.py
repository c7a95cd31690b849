import enum
import typing
from datetime import datetime, timedelta

import pytest

from active_record import Database, Identity, Model, NotFound, Query, SaRegistry, UnknownAttribute, UnknownScope


query_registry = SaRegistry()


class Base(Model):
    __abstract__ = True
    registry = query_registry


class Product(Base):
    timestamps = True

    id: Identity[int]
    name: str
    price: int
    category: typing.Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def scope_cheap(cls, query: Query, limit: int = 10) -> Query:
        return query.where("price", "<", limit)

    @staticmethod
    def scope_categorized(query: Query) -> None:
        query.where_not_null("category")


class Grade(enum.Enum):
    FRESH = "fresh"
    BRUISED = "bruised"
    ROTTEN = "rotten"


class Crate(Base):
    id: Identity[int]
    grade: Grade


@pytest.fixture(autouse=True)
async def products(database: Database) -> typing.AsyncGenerator[typing.List[Product], None]:
    query_registry.bind(database)
    await query_registry.create_all()
    start = datetime(2024, 1, 1)
    rows = [("apple", 3, "fruit"), ("banana", 2, "fruit"), ("carrot", 5, "vegetable"), ("desk", 120, None)]
    created = []
    for offset, (name, price, category) in enumerate(rows):
        stamp = start + timedelta(days=offset)
        created.append(
            await Product.create(name=name, price=price, category=category, created_at=stamp, updated_at=stamp)
        )
    yield created
    await query_registry.drop_all()


def names(products: typing.Iterable[Product]) -> typing.List[str]:
    return sorted(product.name for product in products)


async def test_where_variants():
    assert names(await Product.where("name", "apple")) == ["apple"]
    assert names(await Product.where("price", ">=", 5)) == ["carrot", "desk"]
    assert names(await Product.where({"category": "fruit", "price": 2})) == ["banana"]
    assert names(await Product.where(category="vegetable")) == ["carrot"]
    assert names(await Product.where("name", "like", "%an%")) == ["banana"]
    assert names(await Product.where("category", None)) == ["desk"]


async def test_or_where_groups_existing_predicates():
    query = Product.where("category", "fruit").where("price", ">", 2).or_where("name", "desk")

    assert names(await query) == ["apple", "desk"]


async def test_set_and_range_predicates():
    assert names(await Product.query().where_in("name", ["apple", "desk"])) == ["apple", "desk"]
    assert names(await Product.query().where_not_in("name", ["apple", "desk"])) == ["banana", "carrot"]
    assert names(await Product.query().where_null("category")) == ["desk"]
    assert names(await Product.query().where_not_null("category")) == ["apple", "banana", "carrot"]
    assert names(await Product.query().where_between("price", [2, 5])) == ["apple", "banana", "carrot"]
    assert names(await Product.query().where_not_between("price", [2, 5])) == ["desk"]


async def test_ordering_and_slicing():
    by_price = await Product.query().order_by("price", "desc").take(2).get()
    page_two = await Product.query().order_by("name").limit(2).offset(2).get()

    assert [product.name for product in by_price] == ["desk", "carrot"]
    assert [product.name for product in page_two] == ["carrot", "desk"]


async def test_latest_and_oldest_use_created_at():
    assert (await Product.query().latest().first()).name == "desk"
    assert (await Product.query().oldest().first()).name == "apple"


async def test_first_and_find(products):
    assert (await Product.query().order_by("name").first()).name == "apple"
    assert await Product.where("name", "nothing").first() is None
    assert (await Product.query().find(products[2].id)).name == "carrot"

    with pytest.raises(NotFound):
        await Product.where("name", "nothing").first_or_fail()


async def test_aggregates():
    assert await Product.count() == 4
    assert await Product.where("category", "fruit").count() == 2
    assert await Product.query().max("price") == 120
    assert await Product.query().min("price") == 2
    assert await Product.query().sum("price") == 130
    assert await Product.where("category", "fruit").avg("price") == 2.5
    assert await Product.where("price", ">", 100).exists()
    assert await Product.where("price", ">", 1000).doesnt_exist()


async def test_count_ignores_slicing():
    assert await Product.query().limit(1).count() == 4


async def test_paginate():
    page = await Product.query().order_by("name").paginate(page=2, per_page=3)

    assert [product.name for product in page] == ["desk"]
    assert page.total == 4
    assert page.last_page == 2
    assert (page.first_item, page.last_item) == (4, 4)
    assert not page.has_more_pages


async def test_chunk_visits_everything_in_key_order():
    seen = []

    def collect(batch: typing.List[Product]) -> None:
        seen.append([product.name for product in batch])

    assert await Product.query().chunk(3, collect)
    assert seen == [["apple", "banana", "carrot"], ["desk"]]


async def test_chunk_stops_when_callback_returns_false():
    seen = []

    async def first_only(batch: typing.List[Product]) -> bool:
        seen.extend(batch)
        return False

    assert not await Product.query().chunk(2, first_only)
    assert len(seen) == 2


async def test_scopes():
    assert names(await Product.query().scope("cheap")) == ["apple", "banana", "carrot"]
    assert names(await Product.query().scope("cheap", 3)) == ["banana"]
    assert names(await Product.query().scope("categorized").scope("cheap", 4)) == ["apple", "banana"]

    with pytest.raises(UnknownScope):
        Product.query().scope("expensive")


async def test_clone_branches_query():
    fruit = Product.where("category", "fruit")
    cheap_fruit = fruit.clone().where("price", "<", 3)

    assert names(await fruit) == ["apple", "banana"]
    assert names(await cheap_fruit) == ["banana"]


async def test_bulk_update_touches_updated_at(products):
    assert await Product.where("category", "fruit").update({"price": 1}) == 2

    apple = await Product.find(products[0].id)
    assert apple.price == 1
    assert apple.updated_at > products[0].updated_at


async def test_bulk_delete_without_soft_deletes():
    assert await Product.where("category", "fruit").delete() == 2
    assert await Product.count() == 2


async def test_unknown_columns_are_rejected():
    with pytest.raises(UnknownAttribute):
        Product.where("colour", "red")

    with pytest.raises(UnknownAttribute):
        Product.query().order_by("colour")


async def test_unknown_operator_is_rejected():
    with pytest.raises(ValueError):
        Product.where("price", "~", 3)


async def test_to_sql_renders_statement():
    sql = Product.where("price", ">", 3).order_by("name").limit(5).to_sql()

    assert sql.startswith("SELECT products.id")
    assert "WHERE products.price >" in sql
    assert "ORDER BY products.name ASC" in sql
    assert "LIMIT" in sql


async def test_enum_members_are_stored_by_value_in_predicates():
    for grade in (Grade.FRESH, Grade.BRUISED, Grade.ROTTEN, Grade.FRESH):
        await Crate.create(grade=grade)

    assert await Crate.where("grade", Grade.FRESH).count() == 2
    assert await Crate.query().where_in("grade", [Grade.FRESH, Grade.ROTTEN]).count() == 3
    assert [crate.grade for crate in await Crate.query().where_not_in("grade", (Grade.FRESH, Grade.ROTTEN))] == [
        Grade.BRUISED
    ]


async def test_sliced_bulk_delete_only_removes_selected_rows():
    assert await Product.query().order_by("id").limit(1).delete() == 1

    assert names(await Product.all()) == ["banana", "carrot", "desk"]


async def test_sliced_bulk_update_follows_order_and_offset():
    assert await Product.query().order_by("price", "desc").limit(2).update({"category": "top"}) == 2
    assert await Product.query().order_by("name").limit(1).offset(1).update({"price": 0}) == 1

    assert names(await Product.where("category", "top")) == ["carrot", "desk"]
    assert names(await Product.where("price", 0)) == ["banana"]
