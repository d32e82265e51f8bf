import logging
from collections import namedtuple

import pyodbc

from .config import build_connection_string
from .models import is_url

logger = logging.getLogger(__name__)

SqlCredential = namedtuple('SqlCredential', ['username', 'password'])


def quote_name(name):
    """Bracket-quote a SQL Server identifier."""
    return f"[{str(name).replace(']', ']]')}]"


def escape_literal(s):
    """Escape single quotes for SQL string literals and ensure it's a str."""
    if s is None:
        return ''
    return str(s).replace("'", "''")


class SqlSession:
    """An autocommit connection to one SQL Server instance.

    A session is owned by one restore invocation. Open it with ``connect()``
    or a ``with`` block; ``close()`` is safe to call more than once.
    """

    def __init__(self, config, credential=None, database='master'):
        self.config = config
        self.credential = credential
        self.database = database
        self.conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    @property
    def server(self):
        return self.config['server']

    def connect(self):
        if self.conn is not None:
            return self
        logger.info(f"Connecting to SQL Server: {self.server}")
        # timeout=0 on the connection leaves long restores unbounded
        self.conn = pyodbc.connect(
            build_connection_string(self.config, self.database, self.credential),
            autocommit=True,
            timeout=self.config.get('login_timeout', 15),
        )
        self.conn.timeout = 0
        logger.info("Connection established successfully")
        return self

    def close(self):
        if self.conn is None:
            return
        try:
            self.conn.close()
            logger.debug("Database connection closed")
        except pyodbc.Error as e:
            logger.warning(f"Error closing connection: {str(e)}")
        finally:
            self.conn = None

    def clone(self):
        """Return an unopened session with the same settings."""
        return SqlSession(self.config, self.credential, self.database)

    def _cursor(self):
        if self.conn is None:
            self.connect()
        return self.conn.cursor()

    def query(self, sql, *params):
        """Run a query and return its first result set as a list of dicts."""
        cursor = self._cursor()
        try:
            cursor.execute(sql, *params)
            if cursor.description is None:
                return []
            columns = [column[0] for column in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def execute(self, sql, *params):
        cursor = self._cursor()
        try:
            cursor.execute(sql, *params)
            while cursor.nextset():
                pass
        finally:
            cursor.close()

    def execute_restore(self, sql):
        """Run a RESTORE statement to completion and return the server messages."""
        cursor = self._cursor()
        messages = []
        try:
            logger.debug(f"Command: {sql}")
            cursor.execute(sql)
            # RESTORE streams STATS output as informational result sets
            while True:
                for msg in getattr(cursor, 'messages', None) or []:
                    text = msg[1] if len(msg) > 1 and isinstance(msg[1], str) else str(msg[0])
                    logger.debug(f"[SQL] {text}")
                    messages.append(text)
                if not cursor.nextset():
                    break
            return messages
        finally:
            cursor.close()

    def database_state(self, name):
        """Return state details for a database, or None if it does not exist."""
        rows = self.query(
            "SELECT name, state_desc, recovery_model_desc, is_in_standby, user_access_desc "
            "FROM sys.databases WHERE name = ?",
            name,
        )
        if not rows:
            logger.info(f"Database '{name}' does not exist")
            return None
        row = rows[0]
        logger.info(f"Database exists - Name: {row['name']}, State: {row['state_desc']}, "
                    f"Recovery: {row['recovery_model_desc']}")
        return row

    def path_exists(self, path, directory=False):
        """Check a file or directory from the server's point of view."""
        if is_url(path):
            # Blob existence needs the storage credential; the restore itself reports it
            return True
        rows = self.query("EXEC master.dbo.xp_fileexist ?", str(path))
        if not rows:
            return False
        values = list(rows[0].values())
        file_exists, is_directory = bool(values[0]), bool(values[1])
        if directory:
            return is_directory
        return file_exists

    def credential_exists(self, name):
        rows = self.query("SELECT 1 AS found FROM sys.credentials WHERE name = ?", name)
        return bool(rows)

    def default_directories(self):
        """Return the instance default (data, log) directories."""
        rows = self.query(
            "SELECT CAST(SERVERPROPERTY('InstanceDefaultDataPath') AS nvarchar(4000)) AS data_path, "
            "CAST(SERVERPROPERTY('InstanceDefaultLogPath') AS nvarchar(4000)) AS log_path"
        )
        if not rows:
            return None, None
        return rows[0]['data_path'], rows[0]['log_path']

    def redo_start_lsn(self, database):
        """Return the LSN a continued restore must roll forward from, or None."""
        rows = self.query(
            "SELECT MAX(redo_start_lsn) AS redo_start_lsn FROM sys.master_files "
            "WHERE database_id = DB_ID(?)",
            database,
        )
        if not rows or rows[0]['redo_start_lsn'] is None:
            return None
        return int(rows[0]['redo_start_lsn'])

    def restore_progress(self, database):
        """Return (percent_complete, estimated_completion_time) of a running restore."""
        rows = self.query(
            "SELECT r.percent_complete, r.estimated_completion_time "
            "FROM sys.dm_exec_requests r "
            "WHERE r.command LIKE 'RESTORE%' AND r.database_id = DB_ID(?)",
            database,
        )
        if not rows:
            return None
        return rows[0]['percent_complete'], rows[0]['estimated_completion_time']
