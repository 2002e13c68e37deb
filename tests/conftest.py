import pytest
from sqlalchemy import create_engine, text

from query_gateway.query.store import SqlStore


@pytest.fixture()
def material_store(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'materials.db'}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE materials (id INTEGER PRIMARY KEY, name TEXT NOT NULL, unit TEXT)"))
        conn.execute(
            text(
                "CREATE TABLE material_prices ("
                "id INTEGER PRIMARY KEY, material_id INTEGER, price REAL, valid_from TEXT)"
            )
        )
        conn.execute(text("CREATE TABLE suppliers (id INTEGER PRIMARY KEY, name TEXT, email TEXT)"))
        conn.execute(
            text(
                "CREATE VIEW v_material_prices AS "
                "SELECT m.name AS material_name, p.price AS price "
                "FROM material_prices p JOIN materials m ON m.id = p.material_id"
            )
        )
        conn.execute(
            text(
                "INSERT INTO materials (id, name, unit) VALUES "
                "(1, 'Zement', 'kg'), (2, 'Sand', 't'), (3, 'Kies', 't')"
            )
        )
        conn.execute(
            text(
                "INSERT INTO material_prices (id, material_id, price, valid_from) VALUES "
                "(1, 1, 9.5, '2024-01-01'), (2, 2, 30.0, '2024-02-01')"
            )
        )
        conn.execute(text("INSERT INTO suppliers (id, name, email) VALUES (1, 'Baustoff GmbH', 'info@baustoff.test')"))
    yield SqlStore(engine)
    engine.dispose()
