import argparse
import random
import sqlite3
from datetime import date, timedelta
from pathlib import Path

SOURCE_SCHEMAS = {
    "users": {
        "user_id": "INTEGER NOT NULL PRIMARY KEY",
        "name": "TEXT",
        "email": "TEXT",
    },
    "accounts": {
        "account_id": "INTEGER NOT NULL PRIMARY KEY",
        "user_id": "INTEGER REFERENCES users(user_id)",
        "name": "TEXT",
        "opening_balance": "REAL",
        "opened_on": "TEXT",
    },
    "categories": {
        "category_id": "INTEGER NOT NULL PRIMARY KEY",
        "name": "TEXT",
    },
    "subcategories": {
        "subcategory_id": "INTEGER NOT NULL PRIMARY KEY",
        "category_id": "INTEGER REFERENCES categories(category_id)",
        "name": "TEXT",
    },
    "counterparties": {
        "counterparty_id": "INTEGER NOT NULL PRIMARY KEY",
        "name": "TEXT",
    },
    "movements": {
        "movement_id": "INTEGER NOT NULL PRIMARY KEY",
        "account_id": "INTEGER REFERENCES accounts(account_id)",
        "counterparty_id": "INTEGER REFERENCES counterparties(counterparty_id)",
        "category_id": "INTEGER REFERENCES categories(category_id)",
        "subcategory_id": "INTEGER REFERENCES subcategories(subcategory_id)",
        "movement_type": "TEXT",
        "amount": "REAL",
        "moved_on": "TEXT",
    },
}


def create_source_db(db_path: Path) -> None:
    """Create the operational (source) tables if they do not exist."""
    conn = sqlite3.connect(str(db_path))
    try:
        for table_name, schema in SOURCE_SCHEMAS.items():
            cols = ",\n    ".join(f'"{col}" {col_type}' for col, col_type in schema.items())
            conn.execute(f"CREATE TABLE IF NOT EXISTS {table_name} (\n    {cols}\n);")
        conn.commit()
    finally:
        conn.close()


def generate_mock_source(db_path: Path, seed: int = 42, end: date = date(2024, 6, 30)) -> dict[str, int]:
    """
    Create and fill a deterministic source database.

    Five accounts owned by three users, opened between January and
    mid-February 2024, each with a few movements a week up to *end*.  The same
    *seed* always produces the same rows.

    Returns:
        dict: row count per source table.
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    create_source_db(db_path)

    conn = sqlite3.connect(str(db_path))
    conn.execute("PRAGMA foreign_keys = ON;")
    cursor = conn.cursor()

    for table_name in ("movements", "accounts", "subcategories", "categories", "counterparties", "users"):
        cursor.execute(f"DELETE FROM {table_name}")
    conn.commit()

    rng = random.Random(seed)

    users = [
        (1, "Alice Martin", "alice.martin@example.com"),
        (2, "Bruno Lefevre", "bruno.lefevre@example.com"),
        (3, "Chloe Bernard", "chloe.bernard@example.com"),
    ]
    categories = [(1, "Housing"), (2, "Food"), (3, "Income"), (4, "Leisure"), (5, "Transport")]
    subcategories = [
        (1, 1, "Rent"),
        (2, 1, "Utilities"),
        (3, 2, "Groceries"),
        (4, 2, "Restaurants"),
        (5, 3, "Salary"),
        (6, 3, "Refund"),
        (7, 4, "Cinema"),
        (8, 4, "Travel"),
        (9, 5, "Fuel"),
        (10, 5, "Public Transport"),
    ]
    counterparties = [
        (1, "Landlord Ltd"),
        (2, "City Energy"),
        (3, "FreshMart"),
        (4, "Le Bistrot"),
        (5, "Employer SA"),
        (6, "Online Store"),
        (7, "CineMax"),
        (8, "Rail Network"),
        (9, "Fuel Station"),
    ]
    accounts = [
        (1, 1, "Alice Current", 1500.00, "2024-01-01"),
        (2, 1, "Alice Savings", 5000.00, "2024-01-10"),
        (3, 2, "Bruno Current", 250.50, "2024-01-15"),
        (4, 3, "Chloe Current", 0.00, "2024-02-01"),
        (5, 3, "Chloe Joint", 1200.00, "2024-02-15"),
    ]

    cursor.executemany("INSERT INTO users (user_id, name, email) VALUES (?, ?, ?)", users)
    cursor.executemany("INSERT INTO categories (category_id, name) VALUES (?, ?)", categories)
    cursor.executemany("INSERT INTO subcategories (subcategory_id, category_id, name) VALUES (?, ?, ?)", subcategories)
    cursor.executemany("INSERT INTO counterparties (counterparty_id, name) VALUES (?, ?)", counterparties)
    cursor.executemany(
        "INSERT INTO accounts (account_id, user_id, name, opening_balance, opened_on) VALUES (?, ?, ?, ?, ?)", accounts
    )

    movements = []
    movement_id = 0
    for account_id, _, _, _, opened_on in accounts:
        day = date.fromisoformat(opened_on)
        while day <= end:
            for _ in range(rng.randint(0, 2)):
                movement_id += 1
                subcategory_id, category_id, _ = rng.choice(subcategories)
                movement_type = "C" if category_id == 3 else "D"
                amount = round(rng.uniform(100.0, 2500.0) if movement_type == "C" else rng.uniform(2.0, 180.0), 2)
                movements.append(
                    (
                        movement_id,
                        account_id,
                        rng.choice(counterparties)[0],
                        category_id,
                        subcategory_id,
                        movement_type,
                        amount,
                        day.isoformat(),
                    )
                )
            day += timedelta(days=rng.randint(1, 3))

    cursor.executemany(
        "INSERT INTO movements (movement_id, account_id, counterparty_id, category_id, subcategory_id, movement_type, amount, moved_on) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        movements,
    )

    conn.commit()
    conn.close()
    return {
        "users": len(users),
        "accounts": len(accounts),
        "categories": len(categories),
        "subcategories": len(subcategories),
        "counterparties": len(counterparties),
        "movements": len(movements),
    }


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create a deterministic mock source (OLTP) database.")
    parser.add_argument("--db", type=Path, required=True, help="Path to the source SQLite database")
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    args = parser.parse_args()
    counts = generate_mock_source(args.db, seed=args.seed)
    for table_name, count in counts.items():
        print(f"Inserted {count:,} {table_name}")
    print(f"\nMock source data inserted successfully into {args.db}")
