import pytest
from pydantic import ValidationError

from spatialdao.db import restrictions as r
from spatialdao.db.criteria import CriteriaOptions, CriteriaQuery, OrderBy, asc, build_query, desc, distinct, projection
from spatialdao.exceptions import NonUniqueResultError, QueryError
from spatialdao.geometry import builder
from tests.fixtures.entities import SRID, Account, Place

WORLD = "POLYGON ((-180 -90, 180 -90, 180 90, -180 90, -180 -90))"


@pytest.fixture
def accounts(account_dao):
    rows = [
        Account(login="carol", password="p1"),
        Account(login="alice", password="p2"),
        Account(login="bob", password="p1"),
        Account(login="alice", password="p3"),
    ]
    account_dao.persist(rows)
    return rows


def _query(dao) -> CriteriaQuery:
    return CriteriaQuery(dao.get_session(), dao.entity_class, dao.identity_attribute)


def test_options_defaults_and_validation():
    options = CriteriaOptions()
    assert (options.offset, options.limit, options.orderings) == (0, None, [])

    with pytest.raises(ValidationError):
        CriteriaOptions(offset=-1)
    with pytest.raises(ValidationError):
        CriteriaOptions(limit=0)


def test_options_coerce_orderings():
    options = CriteriaOptions(orderings=["login", ("password", "DESC"), desc("id")])
    assert options.orderings == [
        OrderBy(attribute="login"),
        OrderBy(attribute="password", direction="desc"),
        OrderBy(attribute="id", direction="desc"),
    ]
    assert CriteriaOptions.of(1, 100, asc("login")).orderings == [OrderBy(attribute="login")]


def test_conditions_keep_insertion_order(account_dao):
    statement = _query(account_dao).add(r.eq("password", "x"), r.eq("login", "y")).build()
    sql = str(statement)
    assert sql.index("accounts.password =") < sql.index("accounts.login =")


def test_identity_is_the_final_tie_breaker(account_dao):
    options = CriteriaOptions(orderings=[desc("login")])
    sql = str(_query(account_dao).set_options(options).build())
    assert "ORDER BY accounts.login DESC, accounts.id ASC" in sql


def test_identity_ordering_not_duplicated(account_dao):
    options = CriteriaOptions(orderings=[desc("id")])
    sql = str(_query(account_dao).set_options(options).build())
    assert sql.count("accounts.id DESC") == 1
    assert "accounts.id ASC" not in sql


def test_list_applies_order_and_pagination(account_dao, accounts):
    options = CriteriaOptions(offset=1, limit=2, orderings=[asc("login")])
    rows = _query(account_dao).set_options(options).list()
    # alice(2), alice(4), bob, carol -> skip one, take two
    assert rows == [accounts[3], accounts[2]]


def test_conjunction_of_conditions(account_dao, accounts):
    rows = _query(account_dao).add(r.eq("login", "alice"), r.eq("password", "p3")).list()
    assert rows == [accounts[3]]


def test_junctions_and_negation(account_dao, accounts):
    rows = _query(account_dao).add(r.or_(r.eq("login", "bob"), r.eq("login", "carol"))).list()
    assert rows == [accounts[0], accounts[2]]

    rows = _query(account_dao).add(r.not_(r.eq("login", "alice"))).list()
    assert rows == [accounts[0], accounts[2]]

    rows = _query(account_dao).add(r.in_("password", ["p2", "p3"]), r.like("login", "ali%")).list()
    assert rows == [accounts[1], accounts[3]]


def test_all_eq_and_plain_sqlalchemy_expressions(account_dao, accounts):
    rows = _query(account_dao).add(r.all_eq({"login": "bob", "password": "p1"})).list()
    assert rows == [accounts[2]]

    rows = _query(account_dao).add(Account.login == "carol").list()
    assert rows == [accounts[0]]


def test_unknown_attribute_is_rejected(account_dao):
    with pytest.raises(QueryError) as exc_info:
        _query(account_dao).add(r.eq("nickname", "x")).list()
    assert "Could not resolve property: nickname" in str(exc_info.value)


def test_unsupported_condition_is_rejected(account_dao):
    with pytest.raises(QueryError):
        _query(account_dao).add(object()).list()


def test_unique(account_dao, accounts):
    assert _query(account_dao).add(r.eq("login", "bob")).unique() is accounts[2]
    assert _query(account_dao).add(r.eq("login", "nobody")).unique() is None
    with pytest.raises(NonUniqueResultError):
        _query(account_dao).add(r.eq("login", "alice")).unique()


def test_count_ignores_pagination(account_dao, accounts):
    query = _query(account_dao).add(r.eq("password", "p1")).set_options(CriteriaOptions(limit=1))
    assert query.count() == 2
    assert len(query.list()) == 1


def test_projections(account_dao, accounts):
    logins = _query(account_dao).set_projection(projection("login")).list()
    assert logins == ["carol", "alice", "bob", "alice"]

    pairs = _query(account_dao).set_projection(projection("login", "password")).add(r.eq("login", "bob")).list()
    assert pairs == [("bob", "p1")]

    unique_logins = (
        _query(account_dao)
        .set_projection(distinct("login"))
        .set_options(CriteriaOptions(orderings=["login"]))
        .list()
    )
    assert unique_logins == ["alice", "bob", "carol"]


def test_build_query_helper(account_dao, accounts):
    query = build_query(
        account_dao.get_session(),
        Account,
        "id",
        [r.eq("password", "p1")],
        projection("login"),
        CriteriaOptions(orderings=[desc("login")]),
    )
    assert query.list() == ["carol", "bob"]


def test_spatial_criteria(place_dao):
    inside = Place(name="inside", point=builder.create_point_xy(1, 1, SRID))
    outside = Place(name="outside", point=builder.create_point_xy(50, 50, SRID))
    place_dao.persist(inside, outside)
    area = builder.create_polygon("POLYGON ((0 0, 10 0, 10 10, 0 10, 0 0))", SRID)

    assert _query(place_dao).add(r.within("point", area)).list() == [inside]
    assert _query(place_dao).add(r.intersects("point", area)).list() == [inside]
    assert _query(place_dao).add(r.disjoint("point", area)).list() == [outside]
    assert _query(place_dao).add(r.dwithin("point", inside.point, 1.0)).list() == [inside]
    assert _query(place_dao).add(r.equals("point", outside.point)).list() == [outside]

    world = builder.create_polygon(WORLD, SRID)
    both = _query(place_dao).add(r.within("point", world), r.eq("name", "outside")).list()
    assert both == [outside]
