import json
import logging
import os
import sqlite3
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from .models import GymSettings

DB_FILE = os.environ.get("GYMDESK_DB_FILE", "gymdesk/data/gymdesk_data.db")

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS memberships (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        price REAL NOT NULL CHECK(price >= 0),
        duration_days INTEGER NOT NULL CHECK(duration_days > 0),
        features TEXT NOT NULL DEFAULT '[]',
        description TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS members (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT UNIQUE,
        phone TEXT NOT NULL,
        birth_date TEXT NOT NULL,
        join_date TEXT NOT NULL,
        expiry_date TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN ('active', 'inactive', 'expired')),
        membership_id INTEGER NOT NULL,
        qr_code TEXT NOT NULL UNIQUE,
        photo TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        CHECK (expiry_date >= join_date),
        FOREIGN KEY (membership_id) REFERENCES memberships(id) ON DELETE RESTRICT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        member_id TEXT NOT NULL,
        amount REAL NOT NULL CHECK(amount >= 0),
        date TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN ('paid', 'pending', 'overdue')),
        invoice_number TEXT NOT NULL UNIQUE,
        membership_name TEXT NOT NULL,
        FOREIGN KEY (member_id) REFERENCES members(id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS attendances (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        member_id TEXT NOT NULL,
        date TEXT NOT NULL,
        time TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN ('allowed', 'denied')),
        attended BOOLEAN NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        FOREIGN KEY (member_id) REFERENCES members(id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        type TEXT NOT NULL CHECK(type IN ('renewal', 'birthday', 'payment_reminder', 'custom')),
        recipient TEXT NOT NULL,
        content TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN ('sent', 'pending')),
        date TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS gym_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_members_expiry ON members(expiry_date);",
    "CREATE INDEX IF NOT EXISTS idx_payments_member ON payments(member_id);",
    "CREATE INDEX IF NOT EXISTS idx_attendances_member ON attendances(member_id);",
    "CREATE INDEX IF NOT EXISTS idx_attendances_date ON attendances(date);",
]

INITIAL_MEMBERSHIPS = [
    (
        "Monthly Basic",
        200.0,
        30,
        ["General access", "Weights", "Cardio"],
        "Ideal for beginners or regular training.",
    ),
    (
        "Quarterly Premium",
        500.0,
        90,
        ["Full access", "Group classes", "Personal trainer"],
        "Extended plan for committed members.",
    ),
]


def seed_default_settings(conn: sqlite3.Connection) -> None:
    """Inserts any missing setting with its default value; existing values are kept."""
    defaults = asdict(GymSettings())
    conn.executemany(
        "INSERT OR IGNORE INTO gym_settings (key, value) VALUES (?, ?)",
        [(key, str(value)) for key, value in defaults.items()],
    )


def create_database(db_name: str) -> Optional[sqlite3.Connection]:
    """
    Connects to an SQLite database and creates the necessary tables if they don't exist.
    Args:
        db_name (str): The name of the database file (e.g., 'gymdesk_data.db' or ':memory:').
    Returns the open connection, or None if the schema could not be created.
    """
    conn = None
    try:
        conn = sqlite3.connect(db_name, check_same_thread=False)
        conn.execute("PRAGMA foreign_keys = ON;")
        cursor = conn.cursor()
        for statement in SCHEMA:
            cursor.execute(statement)
        seed_default_settings(conn)
        conn.commit()
    except sqlite3.Error as e:
        logging.error(f"Failed to create database schema in '{db_name}': {e}", exc_info=True)
        if conn:
            conn.close()
        return None
    return conn


def seed_initial_memberships(conn: sqlite3.Connection) -> int:
    """Adds the default plans when the catalog is empty. Returns how many were added."""
    cursor = conn.cursor()
    cursor.execute("SELECT COUNT(*) FROM memberships")
    if cursor.fetchone()[0] > 0:
        return 0
    created_at = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    cursor.executemany(
        """
        INSERT INTO memberships (name, price, duration_days, features, description, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        [
            (name, price, duration, json.dumps(features), description, created_at)
            for name, price, duration, features, description in INITIAL_MEMBERSHIPS
        ],
    )
    conn.commit()
    logging.info(f"Seeded {len(INITIAL_MEMBERSHIPS)} default membership plans.")
    return len(INITIAL_MEMBERSHIPS)


def initialize_database(db_file: str = DB_FILE, seed_plans: bool = True) -> None:
    data_dir = os.path.dirname(db_file)
    if data_dir and not os.path.exists(data_dir):
        os.makedirs(data_dir)
        logging.info(f"Created data directory: {data_dir}")
    conn = create_database(db_file)
    if conn is None:
        raise RuntimeError(f"Could not initialize database at {db_file}")
    try:
        if seed_plans:
            seed_initial_memberships(conn)
    finally:
        conn.close()


if __name__ == "__main__":
    initialize_database()
