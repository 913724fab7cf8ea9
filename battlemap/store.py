# battlemap/store.py
# Adventure store: SQLite persistence of sessions and their map records

import json
import time
import logging
import sqlite3


def _now():
    return time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime())


class AdventureStore:
    """Durable map records keyed by (session id, map id), with a per-session active map."""

    def __init__(self, db_path):
        self.db_path = db_path
        self._init_db()

    def _init_db(self):
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute('''CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                active_map_id TEXT,
                created_at TEXT NOT NULL,
                modified_at TEXT NOT NULL
            )''')
            conn.execute('''CREATE TABLE IF NOT EXISTS maps (
                id TEXT NOT NULL,
                session_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                record TEXT NOT NULL,
                modified_at TEXT NOT NULL,
                PRIMARY KEY (session_id, id)
            )''')
            conn.commit()
        finally:
            conn.close()

    def _get_db(self):
        """Return a short-lived SQLite connection."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def load_session(self, session_id):
        """Return {'id', 'active_map_id', 'maps': [record, ...]} or None if unknown."""
        conn = self._get_db()
        try:
            row = conn.execute('SELECT * FROM sessions WHERE id = ?', (session_id,)).fetchone()
            if not row: return None
            rows = conn.execute('SELECT record FROM maps WHERE session_id = ? ORDER BY position', (session_id,)).fetchall()
            return {'id': row['id'], 'active_map_id': row['active_map_id'], 'maps': [json.loads(r['record']) for r in rows]}
        except Exception as e:
            logging.error(f"Error reading session {session_id}: {e}", exc_info=True)
            return None
        finally:
            conn.close()

    def ensure_session(self, session_id):
        conn = self._get_db()
        try:
            now = _now()
            conn.execute('INSERT OR IGNORE INTO sessions (id, active_map_id, created_at, modified_at) VALUES (?, NULL, ?, ?)', (session_id, now, now))
            conn.commit()
            return True
        except Exception as e:
            logging.error(f"Error creating session {session_id}: {e}")
            return False
        finally:
            conn.close()

    def load_map(self, session_id, map_id):
        conn = self._get_db()
        try:
            row = conn.execute('SELECT record FROM maps WHERE session_id = ? AND id = ?', (session_id, map_id)).fetchone()
            return json.loads(row['record']) if row else None
        except Exception as e:
            logging.error(f"Error reading map {map_id}: {e}")
            return None
        finally:
            conn.close()

    def save_map(self, session_id, record):
        """Insert or replace a map record, keeping its position. Returns True on success."""
        conn = self._get_db()
        try:
            row = conn.execute('SELECT position FROM maps WHERE session_id = ? AND id = ?', (session_id, record['id'])).fetchone()
            if row: position = row['position']
            else: position = conn.execute('SELECT COALESCE(MAX(position), -1) + 1 FROM maps WHERE session_id = ?', (session_id,)).fetchone()[0]
            conn.execute(
                'INSERT OR REPLACE INTO maps (id, session_id, position, record, modified_at) VALUES (?, ?, ?, ?, ?)',
                (record['id'], session_id, position, json.dumps(record, ensure_ascii=False), _now())
            )
            conn.commit()
            return True
        except Exception as e:
            logging.error(f"Error writing map {record.get('id')} in session {session_id}: {e}")
            return False
        finally:
            conn.close()

    def delete_map(self, session_id, map_id):
        """Delete a map record. Returns True if a row was deleted."""
        conn = self._get_db()
        try:
            cursor = conn.execute('DELETE FROM maps WHERE session_id = ? AND id = ?', (session_id, map_id))
            conn.commit()
            return cursor.rowcount > 0
        except Exception as e:
            logging.error(f"Error deleting map {map_id}: {e}")
            return False
        finally:
            conn.close()

    def set_active_map(self, session_id, map_id):
        conn = self._get_db()
        try:
            conn.execute('UPDATE sessions SET active_map_id = ?, modified_at = ? WHERE id = ?', (map_id, _now(), session_id))
            conn.commit()
            return True
        except Exception as e:
            logging.error(f"Error setting active map for {session_id}: {e}")
            return False
        finally:
            conn.close()
