from flask import current_app
from flask_bcrypt import Bcrypt

from gymledger.utils.helpers import format_currency, to_money
from .database import execute_query, DEFAULT_DB_PATH

USER_COLUMNS = 'id, name, email, password_hash, is_admin, balance'


class User:
    """Login account. Optionally linked 1:1 to a Member.

    ``balance`` is read-only here: the only writer is
    ``BalanceLog.apply_delta``, which updates the row and appends the
    matching ledger entry in one transaction.
    """

    def __init__(self, id=None, name=None, email=None, password_hash=None,
                 is_admin=False, balance=0):
        self.id = id
        self.name = name
        self.email = email
        self.password_hash = password_hash
        self.is_admin = bool(is_admin)
        self._balance = to_money(balance)
        self._member = None
        self._member_loaded = False

    @property
    def balance(self):
        return self._balance

    def _sync_balance(self, value):
        """Ledger hook: mirror the balance just written by apply_delta."""
        self._balance = to_money(value)

    @classmethod
    def _db_path(cls):
        return current_app.config.get('DATABASE_PATH', DEFAULT_DB_PATH)

    @classmethod
    def _get_bcrypt(cls):
        """Return the app's Bcrypt instance (call inside app context)."""
        return getattr(current_app, 'bcrypt', None) or Bcrypt(current_app)

    @classmethod
    def _from_row(cls, row):
        if not row:
            return None
        return cls(id=row[0], name=row[1], email=row[2], password_hash=row[3],
                   is_admin=row[4], balance=row[5])

    @classmethod
    def hash_password(cls, password):
        hashed = cls._get_bcrypt().generate_password_hash(password)
        if isinstance(hashed, bytes):
            hashed = hashed.decode('utf-8')
        return hashed

    # -------------------- Fetchers --------------------

    @classmethod
    def get_by_id(cls, user_id, conn=None):
        rows = execute_query(f'SELECT {USER_COLUMNS} FROM users WHERE id = ?',
                             (user_id,), cls._db_path(), fetch=True, conn=conn)
        return cls._from_row(rows[0]) if rows else None

    @classmethod
    def get_by_email(cls, email, conn=None):
        rows = execute_query(f'SELECT {USER_COLUMNS} FROM users WHERE email = ?',
                             (email,), cls._db_path(), fetch=True, conn=conn)
        return cls._from_row(rows[0]) if rows else None

    @classmethod
    def get_all_members(cls):
        """Non-admin accounts ordered by name (balance management list)"""
        rows = execute_query(f'SELECT {USER_COLUMNS} FROM users WHERE is_admin = 0 ORDER BY name',
                             (), cls._db_path(), fetch=True)
        return [cls._from_row(r) for r in rows]

    @classmethod
    def authenticate(cls, email, password):
        """Return the user when the bcrypt hash matches, else None."""
        user = cls.get_by_email(email)
        if not user or not user.password_hash:
            return None
        try:
            if cls._get_bcrypt().check_password_hash(user.password_hash, password):
                return user
        except ValueError:
            # Stored hash in an unexpected format
            current_app.logger.warning("Unreadable password hash for user %s", user.id)
        return None

    # -------------------- Writes --------------------

    @classmethod
    def create(cls, name, email, password, is_admin=False, conn=None):
        """Insert a login with zero balance; charges go through the ledger."""
        password_hash = cls.hash_password(password)
        user_id = execute_query(
            '''INSERT INTO users (name, email, password_hash, is_admin, balance)
               VALUES (?, ?, ?, ?, 0)''',
            (name, email, password_hash, int(bool(is_admin))), cls._db_path(), conn=conn
        )
        current_app.logger.info("Created user %s <%s>", user_id, email)
        return cls(id=user_id, name=name, email=email, password_hash=password_hash,
                   is_admin=is_admin, balance=0)

    def update_profile(self, name, email, conn=None):
        execute_query('''UPDATE users SET name = ?, email = ?, updated_at = CURRENT_TIMESTAMP
                         WHERE id = ?''', (name, email, self.id), self._db_path(), conn=conn)
        self.name = name
        self.email = email

    def update_password(self, new_password, conn=None):
        hashed_pw = self.hash_password(new_password)
        execute_query('UPDATE users SET password_hash = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?',
                      (hashed_pw, self.id), self._db_path(), conn=conn)
        self.password_hash = hashed_pw
        return True

    def delete(self, conn=None):
        """Delete the login; its ledger rows and sessions cascade with it."""
        execute_query('DELETE FROM users WHERE id = ?', (self.id,), self._db_path(), conn=conn)
        current_app.logger.info("Deleted user %s", self.id)

    # -------------------- Relations --------------------

    @property
    def member(self):
        if not self._member_loaded:
            from .member import Member
            self._member = Member.get_by_user_id(self.id)
            self._member_loaded = True
        return self._member

    @member.setter
    def member(self, value):
        self._member = value
        self._member_loaded = True

    @property
    def plan(self):
        return self.member.plan if self.member else None

    @property
    def formatted_balance(self):
        return format_currency(self.balance)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'is_admin': self.is_admin,
            'balance': float(self.balance),
            'formatted_balance': self.formatted_balance,
        }

    def __repr__(self):
        return f"<User id={self.id} email={self.email} balance={self.balance}>"
