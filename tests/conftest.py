"""
Shared fixtures for sqlrestore tests.

FakeSession stands in for a SqlSession: it records every restore statement
and answers state and path checks from plain dicts.
"""
import os
import sys
from datetime import datetime, timedelta

import pyodbc
import pytest

# Allow running the suite from a checkout without installing
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlrestore.models import BackupFile, BackupFileDescriptor, BackupType


BASE_TIME = datetime(2025, 1, 1, 0, 0, 0)

SALES_FILES = (
    BackupFile('Sales', r'D:\Data\Sales.mdf', 'D'),
    BackupFile('Sales_log', r'L:\Logs\Sales_log.ldf', 'L'),
)


class FakeSession:
    def __init__(self, databases=None, missing_paths=(), fail_on=None, credentials=(),
                 redo_lsns=None, default_dirs=(None, None)):
        self.databases = dict(databases or {})
        self.missing_paths = set(missing_paths)
        self.fail_on = fail_on
        self.credentials = set(credentials)
        self.redo_lsns = dict(redo_lsns or {})
        self.default_dirs = default_dirs
        self.restore_calls = []
        self.executed = []
        self.connected = False
        self.closed = False

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def connect(self):
        self.connected = True
        return self

    def close(self):
        self.closed = True

    def clone(self):
        return FakeSession(self.databases)

    def restore_progress(self, database):
        return None

    def database_state(self, name):
        return self.databases.get(name)

    def path_exists(self, path, directory=False):
        return path not in self.missing_paths

    def credential_exists(self, name):
        return name in self.credentials

    def redo_start_lsn(self, database):
        return self.redo_lsns.get(database)

    def default_directories(self):
        return self.default_dirs

    def execute(self, sql, *params):
        self.executed.append(sql)

    def execute_restore(self, sql):
        self.restore_calls.append(sql)
        if self.fail_on == len(self.restore_calls):
            raise pyodbc.Error('42000', '[42000] RESTORE LOG is terminating abnormally. (3013)')
        return []


def db_state(state='ONLINE', standby=False, user_access='MULTI_USER'):
    return {
        'name': 'Sales',
        'state_desc': state,
        'recovery_model_desc': 'FULL',
        'is_in_standby': standby,
        'user_access_desc': user_access,
    }


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def make_descriptor():
    """Factory for descriptors of the Sales database."""
    def _make(backup_type, first_lsn, last_lsn=None, start=None, backup_set_id=None,
              path=None, **kwargs):
        if isinstance(backup_type, str):
            backup_type = {'full': BackupType.FULL, 'diff': BackupType.DIFFERENTIAL,
                           'log': BackupType.LOG}[backup_type]
        if start is None:
            start = BASE_TIME + timedelta(minutes=first_lsn)
        ext = '.trn' if backup_type == BackupType.LOG else '.bak'
        kwargs.setdefault('files', SALES_FILES)
        kwargs.setdefault('database_name', 'Sales')
        kwargs.setdefault('backup_size', 1024)
        return BackupFileDescriptor(
            path=path or rf'D:\BACKUP\Sales_{backup_type.name}_{first_lsn}{ext}',
            backup_type=backup_type,
            first_lsn=first_lsn,
            last_lsn=last_lsn if last_lsn is not None else first_lsn + 10,
            start=start,
            backup_set_id=backup_set_id or f'set-{backup_type.name}-{first_lsn}',
            **kwargs
        )
    return _make


@pytest.fixture
def basic_chain(make_descriptor):
    """One full at LSN 100 followed by two log backups at T1 < T2."""
    full = make_descriptor('full', 100, 105, start=BASE_TIME, checkpoint_lsn=100)
    log1 = make_descriptor('log', 105, 110, start=BASE_TIME + timedelta(hours=1))
    log2 = make_descriptor('log', 110, 120, start=BASE_TIME + timedelta(hours=2))
    return full, log1, log2
