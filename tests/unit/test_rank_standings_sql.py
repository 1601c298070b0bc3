import importlib
from contextlib import contextmanager


def test_rank_standings_runs_dense_rank_update(monkeypatch):
    import raceseries.datastore_pg as pg
    pg = importlib.reload(pg)

    captured = {"sql": [], "commits": 0}

    class Cursor:
        rowcount = 5

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def execute(self, sql, params=None):
            captured["sql"].append((sql, params))

    class Conn:
        def cursor(self, cursor_factory=None):
            return Cursor()

        def commit(self):
            captured["commits"] += 1

    @contextmanager
    def fake_get_conn():
        yield Conn()

    monkeypatch.setattr(pg, "_get_conn", fake_get_conn)

    assert pg.rank_standings(3, "2025") == 5

    ((sql, params),) = captured["sql"]
    assert params == ("unknown", 3, 2025)
    assert captured["commits"] == 1
    flat = " ".join(sql.split())
    assert "PARTITION BY gender ORDER BY overall_points DESC, races_participated DESC, total_time ASC" in flat
    assert (
        "PARTITION BY gender, age_group ORDER BY age_group_points DESC, races_participated DESC, total_time ASC"
        in flat
    )
    assert flat.count("DENSE_RANK()") == 2
    assert "CASE WHEN age_group = %s THEN NULL ELSE DENSE_RANK()" in flat


def test_list_standings_orders_by_category_rank(monkeypatch):
    import raceseries.datastore_pg as pg
    pg = importlib.reload(pg)

    captured = {}

    class Cursor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def execute(self, sql, params=None):
            captured["sql"] = " ".join(sql.split())
            captured["params"] = params

        def fetchall(self):
            return []

    class Conn:
        def cursor(self, cursor_factory=None):
            return Cursor()

    @contextmanager
    def fake_get_conn():
        yield Conn()

    monkeypatch.setattr(pg, "_get_conn", fake_get_conn)

    assert pg.list_standings(3, 2025, category="age_group", gender="F") == []
    assert captured["params"] == [3, 2025, "F"]
    assert captured["sql"].endswith(
        "ORDER BY s.gender, s.age_group, s.age_group_rank NULLS LAST, s.age_group_points DESC, ru.last_name"
    )
