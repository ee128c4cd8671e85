import sqlite3
import time
from contextlib import contextmanager
from decimal import Decimal
from functools import wraps

from flask import current_app
from flask_bcrypt import Bcrypt

from gymledger.errors import ConcurrentModification
from .membership_plan import MembershipPlan

DEFAULT_DB_PATH = 'gymledger.db'

# Decimal binds as text; DECIMAL(10,2) columns have NUMERIC affinity and store it as REAL.
# Cent values within the column range read back exactly through to_money.
sqlite3.register_adapter(Decimal, str)


def get_db_connection(db_path=DEFAULT_DB_PATH, timeout=5.0):
    """Get database connection with row factory and FK enabled"""
    conn = sqlite3.connect(db_path, timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _db_timeout():
    try:
        return float(current_app.config.get('DATABASE_TIMEOUT', 5.0))
    except RuntimeError:
        return 5.0


def _is_lock_error(error):
    message = str(error).lower()
    return 'locked' in message or 'busy' in message


def execute_query(query, params=(), db_path=DEFAULT_DB_PATH, fetch=False, conn=None):
    """Execute a database query with optional parameters.

    When ``conn`` is given the statement joins that connection's open
    transaction and nothing is committed or closed here.
    """
    if conn is not None:
        cursor = conn.execute(query, params)
        return cursor.fetchall() if fetch else cursor.lastrowid

    conn = get_db_connection(db_path, timeout=_db_timeout())
    try:
        cursor = conn.execute(query, params)
        if fetch:
            return cursor.fetchall()
        conn.commit()
        return cursor.lastrowid
    except sqlite3.OperationalError as e:
        current_app.logger.error("DB Error: %s | Query: %s | Params: %s", e, query, params)
        if _is_lock_error(e):
            raise ConcurrentModification(str(e)) from e
        raise
    except Exception as e:
        current_app.logger.error("DB Error: %s | Query: %s | Params: %s", e, query, params)
        raise
    finally:
        conn.close()


# Callbacks waiting for the COMMIT of each open transaction, keyed by id(conn)
_after_commit = {}


def on_commit(conn, callback):
    """Run ``callback`` once ``conn``'s transaction commits; dropped on rollback.

    Outside a transaction opened by ``transaction`` it runs immediately.
    """
    pending = _after_commit.get(id(conn))
    if pending is None:
        callback()
    else:
        pending.append(callback)


def _rollback(conn):
    if conn.in_transaction:
        conn.execute("ROLLBACK")


@contextmanager
def transaction(db_path=DEFAULT_DB_PATH):
    """Run a block as one unit of work.

    BEGIN IMMEDIATE takes the write lock up front, so every read made inside
    the block (current balance, open session) stays valid until COMMIT.
    """
    conn = get_db_connection(db_path, timeout=_db_timeout())
    conn.isolation_level = None
    _after_commit[id(conn)] = pending = []
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except sqlite3.OperationalError as e:
        _rollback(conn)
        if _is_lock_error(e):
            raise ConcurrentModification(str(e)) from e
        raise
    except BaseException:
        _rollback(conn)
        raise
    finally:
        _after_commit.pop(id(conn), None)
        conn.close()
    for callback in pending:
        callback()


@contextmanager
def joined_transaction(conn=None, db_path=DEFAULT_DB_PATH):
    """Join the caller's open transaction, or open a new one."""
    if conn is not None:
        yield conn
    else:
        with transaction(db_path) as new_conn:
            yield new_conn


def retry_on_conflict(func):
    """Retry a top-level mutation a few times when SQLite reports contention.

    Calls that pass ``conn`` are part of an outer unit of work and are not
    retried here; the outer caller owns the retry.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        if kwargs.get('conn') is not None:
            return func(*args, **kwargs)
        attempts = max(1, int(current_app.config.get('CONFLICT_RETRIES', 3)))
        for attempt in range(1, attempts + 1):
            try:
                return func(*args, **kwargs)
            except ConcurrentModification:
                if attempt == attempts:
                    raise
                current_app.logger.warning(
                    "Conflict in %s, retrying (%d/%d)", func.__name__, attempt, attempts
                )
                time.sleep(0.05 * attempt)
    return wrapper


def _get_bcrypt():
    """Return a Bcrypt instance bound to the current app (call inside app context)."""
    return getattr(current_app, 'bcrypt', None) or Bcrypt(current_app)


def init_db(db_path=DEFAULT_DB_PATH):
    """Initialize database with all required tables and the default admin"""
    conn = get_db_connection(db_path)
    cursor = conn.cursor()

    # Users table (login accounts; balance only changes through balance_logs)
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            is_admin BOOLEAN DEFAULT 0,
            balance DECIMAL(10,2) NOT NULL DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    plans = ", ".join(f"'{value}'" for value in MembershipPlan.values())
    cursor.execute(f'''
        CREATE TABLE IF NOT EXISTS members (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER UNIQUE,
            full_name TEXT NOT NULL,
            email TEXT,
            phone TEXT,
            plan TEXT NOT NULL CHECK (plan IN ({plans})),
            start_date DATE NOT NULL,
            end_date DATE NOT NULL,
            notes TEXT,
            inactive BOOLEAN DEFAULT 0,
            renewals INTEGER DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE SET NULL
        )
    ''')
    cursor.execute('CREATE INDEX IF NOT EXISTS ix_members_end_date_inactive ON members (end_date, inactive)')
    cursor.execute('CREATE INDEX IF NOT EXISTS ix_members_plan ON members (plan)')

    # Append-only ledger
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS balance_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            amount DECIMAL(10,2) NOT NULL,
            balance_after DECIMAL(10,2) NOT NULL,
            type TEXT NOT NULL,
            description TEXT,
            created_at TIMESTAMP NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
    ''')
    cursor.execute('CREATE INDEX IF NOT EXISTS ix_balance_logs_user ON balance_logs (user_id, id)')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS time_sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            time_in TIMESTAMP NOT NULL,
            time_out TIMESTAMP,
            credits_used DECIMAL(8,2) NOT NULL DEFAULT 0,
            hourly_rate DECIMAL(8,2) NOT NULL DEFAULT 0,
            is_active BOOLEAN NOT NULL DEFAULT 1,
            notes TEXT,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
    ''')
    cursor.execute('CREATE INDEX IF NOT EXISTS ix_time_sessions_user_time_in ON time_sessions (user_id, time_in)')
    # At most one open session per user
    cursor.execute('''
        CREATE UNIQUE INDEX IF NOT EXISTS ux_time_sessions_one_active
        ON time_sessions (user_id) WHERE is_active = 1
    ''')

    conn.commit()

    # Create default admin user
    cursor.execute('SELECT COUNT(*) FROM users WHERE is_admin = 1')
    if cursor.fetchone()[0] == 0:
        bcrypt = _get_bcrypt()
        admin_password = bcrypt.generate_password_hash(
            current_app.config.get('ADMIN_PASSWORD', 'admin123')
        )
        if isinstance(admin_password, bytes):
            admin_password = admin_password.decode('utf-8')
        cursor.execute('''
            INSERT INTO users (name, email, password_hash, is_admin, balance)
            VALUES (?, ?, ?, 1, 0)
        ''', ('Gym Administrator', current_app.config.get('ADMIN_EMAIL', 'admin@gym.local'), admin_password))
        conn.commit()

    conn.close()
