import argparse
import sqlite3
from pathlib import Path

SCHEMAS = {
    "DimUser": {
        "user_id": "INTEGER",
        "name": "TEXT",
        "email": "TEXT",
    },
    "DimAccount": {
        "account_id": "INTEGER",
        "user_id": "INTEGER",
        "name": "TEXT",
        "opening_balance": "REAL",
        "opened_on": "TEXT",
    },
    "DimCategory": {
        "category_id": "INTEGER",
        "name": "TEXT",
    },
    "DimSubcategory": {
        "subcategory_id": "INTEGER",
        "category_id": "INTEGER",
        "name": "TEXT",
    },
    "DimCounterparty": {
        "counterparty_id": "INTEGER",
        "name": "TEXT",
    },
    "DimMovementType": {
        "movement_type_id": "INTEGER",
        "code": "TEXT",
        "label": "TEXT",
        "sign": "INTEGER",
    },
    "DimTime": {
        "time_id": "INTEGER",
        "id_date": "TEXT",
        "day": "INTEGER",
        "month": "INTEGER",
        "quarter": "INTEGER",
        "year": "INTEGER",
        "weekday": "TEXT",
    },
    "FactMovement": {
        "movement_id": "INTEGER",
        "time_id": "INTEGER",
        "account_id": "INTEGER",
        "counterparty_id": "INTEGER",
        "category_id": "INTEGER",
        "subcategory_id": "INTEGER",
        "movement_type_id": "INTEGER",
        "movement_type": "TEXT",
        "amount": "REAL",
    },
    "FactBalance": {
        "account_id": "INTEGER NOT NULL",
        "time_id": "INTEGER NOT NULL",
        "balance": "REAL NOT NULL",
    },
    "BalanceWatermark": {
        "account_id": "INTEGER",
        "time_id": "INTEGER NOT NULL",
        "run_id": "TEXT",
        "updatetime": "TEXT",
    },
    "RunLock": {
        "account_id": "INTEGER",
        "run_id": "TEXT NOT NULL",
        "mode": "TEXT NOT NULL",
        "acquired_at": "REAL NOT NULL",
        "expires_at": "REAL NOT NULL",
    },
    "RunHead": {
        "run_id": "TEXT",
        "mode": "TEXT",
        "as_of": "INTEGER",
        "account_count": "INTEGER",
        "success_count": "INTEGER",
        "failed_count": "INTEGER",
        "cancelled_count": "INTEGER",
        "days_written": "INTEGER",
        "duration_secs": "REAL",
        "updatetime": "TEXT",
    },
    "RunLine": {
        "run_id": "TEXT NOT NULL",
        "account_id": "INTEGER NOT NULL",
        "days_written": "INTEGER",
        "new_watermark": "INTEGER",
        "status": "TEXT",
        "error_kind": "TEXT",
        "error_message": "TEXT",
    },
}

PRIMARY_KEYS = {
    "DimUser": "user_id",
    "DimAccount": "account_id",
    "DimCategory": "category_id",
    "DimSubcategory": "subcategory_id",
    "DimCounterparty": "counterparty_id",
    "DimMovementType": "movement_type_id",
    "DimTime": "time_id",
    "FactMovement": "movement_id",
    "BalanceWatermark": "account_id",
    "RunLock": "account_id",
    "RunHead": "run_id",
}

# Composite keys are declared as table constraints.
TABLE_CONSTRAINTS = {
    "DimTime": ["UNIQUE (id_date)"],
    "FactBalance": ["PRIMARY KEY (account_id, time_id)"],
    "RunLine": ["PRIMARY KEY (run_id, account_id)"],
}

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_fm_account_time ON FactMovement (account_id, time_id)",
    "CREATE INDEX IF NOT EXISTS idx_fb_time_id ON FactBalance (time_id)",
]

# Build / load order; dependants come after the tables they reference.
TABLE_ORDER = [
    "DimUser",
    "DimTime",
    "DimCategory",
    "DimSubcategory",
    "DimCounterparty",
    "DimAccount",
    "DimMovementType",
    "FactMovement",
    "FactBalance",
    "BalanceWatermark",
    "RunLock",
    "RunHead",
    "RunLine",
]


def create_table(conn: sqlite3.Connection, table_name: str, schema: dict, verbose: bool = False) -> None:
    col_defs = []
    for col_name, col_type in schema.items():
        if PRIMARY_KEYS.get(table_name) == col_name:
            col_defs.append(f'"{col_name}" {col_type} NOT NULL PRIMARY KEY')
        else:
            col_defs.append(f'"{col_name}" {col_type}')
    col_defs.extend(TABLE_CONSTRAINTS.get(table_name, []))

    create_sql = f"CREATE TABLE IF NOT EXISTS {table_name} (\n    " + ",\n    ".join(col_defs) + "\n);"
    if verbose:
        print(f"Creating table: {table_name}")
        print(create_sql)
        print()
    conn.execute(create_sql)


def create_mart_db(db_path: Path, overwrite: bool = False, verbose: bool = False) -> Path:
    """
    Create the mart database schema.

    Safe to call on an existing database: tables that already exist are left
    as they are unless *overwrite* is set, in which case the file is deleted
    first.

    Returns:
        Path: *db_path*.
    """
    db_path = Path(db_path)
    if overwrite and db_path.exists():
        db_path.unlink()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        for table_name in TABLE_ORDER:
            create_table(conn, table_name, SCHEMAS[table_name], verbose=verbose)
        for index_sql in INDEXES:
            conn.execute(index_sql)
        conn.commit()
    finally:
        conn.close()
    if verbose:
        print(f"Database created: {db_path}")
    return db_path


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the balance mart database schema.")
    parser.add_argument("--db", type=Path, required=True, help="Path to the SQLite mart database")
    parser.add_argument("--overwrite", action="store_true", help="Delete any existing database first")
    args = parser.parse_args()
    create_mart_db(args.db, overwrite=args.overwrite, verbose=True)
