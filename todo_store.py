import datetime
import logging
import secrets
import sqlite3
from dataclasses import dataclass
from typing import Optional, Dict, Any, List
from uuid import uuid4

from dateutil.parser import parse

logger = logging.getLogger(__name__)

SCHEMA = (
    '''CREATE TABLE IF NOT EXISTS users
       (id TEXT PRIMARY KEY, email TEXT NOT NULL UNIQUE, name TEXT, created_at DATETIME)''',
    '''CREATE TABLE IF NOT EXISTS sessions
       (token TEXT PRIMARY KEY, user_id TEXT NOT NULL, expires_at DATETIME, renewed_at DATETIME,
        FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE)''',
    '''CREATE TABLE IF NOT EXISTS tasks
       (id TEXT PRIMARY KEY, name TEXT NOT NULL, completed BOOLEAN DEFAULT 0, priority INTEGER DEFAULT 0,
        owner_id TEXT NOT NULL, created_at DATETIME, updated_at DATETIME,
        FOREIGN KEY(owner_id) REFERENCES users(id) ON DELETE CASCADE)''',
    'CREATE INDEX IF NOT EXISTS tasks_owner_created ON tasks (owner_id, created_at)',
)

# Patchable task columns; anything else in a patch is ignored.
TASK_FIELDS = ('name', 'completed', 'priority')


@dataclass(frozen=True)
class Identity:
    id: str
    email: str
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'email': self.email, 'name': self.name}


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def coerce_datetime(value: Any) -> Optional[datetime.datetime]:
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        return value
    try:
        return parse(str(value))
    except (ValueError, TypeError):
        return None


def serialize_task_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = {
        'id': row['id'],
        'name': row['name'],
        'completed': bool(row['completed']),
        'priority': row['priority'],
        'ownerId': row['owner_id'],
        'createdAt': row['created_at'],
        'updatedAt': row['updated_at'],
    }
    if 'owner_email' in row.keys():
        data['owner'] = {
            'id': row['owner_id'],
            'name': row['owner_name'],
            'email': row['owner_email'],
        }
    return data


class TodoStore:
    """SQLite persistence for users and their tasks.

    Every call opens its own connection, so one store instance can be shared by
    all request threads.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = str(db_path)
        self.upgrade_schema()

    def get_db(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self.db_path)
        connection.row_factory = sqlite3.Row
        connection.execute('PRAGMA foreign_keys = ON')
        return connection

    def upgrade_schema(self) -> None:
        conn = self.get_db()
        try:
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()
        finally:
            conn.close()

    # Users

    def upsert_user(self, email: str, name: Optional[str] = None) -> Identity:
        email = email.strip().lower()
        conn = self.get_db()
        try:
            row = conn.execute('SELECT * FROM users WHERE email = ?', (email,)).fetchone()
            if row is None:
                user_id = str(uuid4())
                conn.execute(
                    'INSERT INTO users (id, email, name, created_at) VALUES (?, ?, ?, ?)',
                    (user_id, email, name, utcnow().isoformat()),
                )
                logger.info('Registered new user %s', user_id)
            else:
                user_id = row['id']
                if name and name != row['name']:
                    conn.execute('UPDATE users SET name = ? WHERE id = ?', (name, user_id))
                else:
                    name = row['name']
            conn.commit()
        finally:
            conn.close()
        return Identity(id=user_id, email=email, name=name)

    # Tasks

    def create_task(self, owner_id: str, name: str, priority: int = 0) -> Dict[str, Any]:
        task_id = str(uuid4())
        now = utcnow().isoformat()
        conn = self.get_db()
        try:
            conn.execute(
                """
                INSERT INTO tasks (id, name, completed, priority, owner_id, created_at, updated_at)
                VALUES (?, ?, 0, ?, ?, ?, ?)
                """,
                (task_id, name, priority, owner_id, now, now),
            )
            conn.commit()
            row = conn.execute('SELECT * FROM tasks WHERE id = ?', (task_id,)).fetchone()
        finally:
            conn.close()
        return serialize_task_row(row)

    def list_tasks(self, owner_id: Optional[str] = None, with_owner: bool = False) -> List[Dict[str, Any]]:
        """Tasks ordered by creation time, oldest first.

        ``owner_id=None`` returns every user's tasks. ``with_owner`` joins the
        owning user's id, name and email onto each row.
        """
        if with_owner:
            query = """
                SELECT tasks.*, users.name AS owner_name, users.email AS owner_email
                FROM tasks JOIN users ON users.id = tasks.owner_id
            """
        else:
            query = 'SELECT tasks.* FROM tasks'
        params: list = []
        if owner_id is not None:
            query += ' WHERE tasks.owner_id = ?'
            params.append(owner_id)
        query += ' ORDER BY tasks.created_at ASC, tasks.rowid ASC'

        conn = self.get_db()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [serialize_task_row(row) for row in rows]

    def update_task(self, task_id: str, owner_id: str, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply ``patch`` to the task only if ``owner_id`` owns it.

        Returns the updated task, or None when no row matched.
        """
        updates = []
        params: list = []
        for field in TASK_FIELDS:
            if field in patch:
                updates.append(f"{field} = ?")
                params.append(patch[field])

        # MAX keeps updated_at from moving backwards if the clock does.
        updates.append('updated_at = MAX(COALESCE(updated_at, ?), ?)')
        now = utcnow().isoformat()
        params.extend([now, now, task_id, owner_id])

        conn = self.get_db()
        try:
            cursor = conn.execute(
                f"UPDATE tasks SET {', '.join(updates)} WHERE id = ? AND owner_id = ?",
                params,
            )
            if cursor.rowcount == 0:
                conn.rollback()
                return None
            row = conn.execute('SELECT * FROM tasks WHERE id = ?', (task_id,)).fetchone()
            conn.commit()
        finally:
            conn.close()
        return serialize_task_row(row)

    def delete_task(self, task_id: str, owner_id: str) -> bool:
        conn = self.get_db()
        try:
            cursor = conn.execute(
                'DELETE FROM tasks WHERE id = ? AND owner_id = ?',
                (task_id, owner_id),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()


class SessionStore:
    """Server-side sessions with an absolute expiry and a sliding renewal window."""

    def __init__(self, store: TodoStore, max_age: int = 30 * 24 * 60 * 60,
                 update_age: int = 24 * 60 * 60) -> None:
        self.store = store
        self.max_age = datetime.timedelta(seconds=max_age)
        self.update_age = datetime.timedelta(seconds=update_age)

    def create(self, user_id: str) -> str:
        token = secrets.token_urlsafe(32)
        now = utcnow()
        conn = self.store.get_db()
        try:
            conn.execute(
                'INSERT INTO sessions (token, user_id, expires_at, renewed_at) VALUES (?, ?, ?, ?)',
                (token, user_id, (now + self.max_age).isoformat(), now.isoformat()),
            )
            conn.commit()
        finally:
            conn.close()
        return token

    def resolve(self, token: Optional[str]) -> Optional[Identity]:
        if not token:
            return None
        now = utcnow()
        conn = self.store.get_db()
        try:
            row = conn.execute(
                """
                SELECT sessions.expires_at, sessions.renewed_at, users.id, users.email, users.name
                FROM sessions JOIN users ON users.id = sessions.user_id
                WHERE sessions.token = ?
                """,
                (token,),
            ).fetchone()
            if row is None:
                return None

            expires_at = coerce_datetime(row['expires_at'])
            if expires_at is None or expires_at <= now:
                conn.execute('DELETE FROM sessions WHERE token = ?', (token,))
                conn.commit()
                logger.info('Session for user %s expired', row['id'])
                return None

            renewed_at = coerce_datetime(row['renewed_at'])
            if renewed_at is None or now - renewed_at >= self.update_age:
                conn.execute(
                    'UPDATE sessions SET expires_at = ?, renewed_at = ? WHERE token = ?',
                    ((now + self.max_age).isoformat(), now.isoformat(), token),
                )
                conn.commit()
        finally:
            conn.close()
        return Identity(id=row['id'], email=row['email'], name=row['name'])

    def expire(self, token: Optional[str]) -> None:
        if not token:
            return
        conn = self.store.get_db()
        try:
            conn.execute('DELETE FROM sessions WHERE token = ?', (token,))
            conn.commit()
        finally:
            conn.close()

    def purge_expired(self) -> int:
        conn = self.store.get_db()
        try:
            cursor = conn.execute('DELETE FROM sessions WHERE expires_at <= ?', (utcnow().isoformat(),))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()
