"""
Tests for reading backup descriptors from headers, folders and msdb history.
"""
from datetime import datetime
from decimal import Decimal

import pyodbc
import pytest

from sqlrestore.errors import RestorePreconditionError
from sqlrestore.history import get_backup_history, read_backup_header, scan_backup_folder
from sqlrestore.models import BackupType


def header_row(path, backup_type=1, position=1, first_lsn=100, last_lsn=110):
    return {
        'BackupName': None,
        'BackupType': backup_type,
        'BackupTypeDescription': {1: 'Database', 2: 'Transaction Log', 5: 'Database Differential',
                                  4: 'File'}.get(backup_type),
        'Position': position,
        'DatabaseName': 'Sales',
        'FirstLSN': Decimal(first_lsn),
        'LastLSN': Decimal(last_lsn),
        'CheckpointLSN': Decimal(first_lsn),
        'DatabaseBackupLSN': Decimal(0),
        'BackupStartDate': datetime(2025, 1, 1, position),
        'BackupFinishDate': datetime(2025, 1, 1, position, 5),
        'BackupSize': Decimal(4096),
        'CompressedBackupSize': Decimal(2048),
        'RecoveryModel': 'FULL',
        'ServerName': 'SQL01',
        'BackupSetGUID': f'guid-{path}-{position}',
    }


FILE_LIST = [
    {'LogicalName': 'Sales', 'PhysicalName': r'D:\Data\Sales.mdf', 'Type': 'D'},
    {'LogicalName': 'Sales_log', 'PhysicalName': r'L:\Logs\Sales_log.ldf', 'Type': 'L'},
]


class HeaderSession:
    """Answers RESTORE HEADERONLY / FILELISTONLY from a dict of path -> header rows."""

    def __init__(self, headers, broken=()):
        self.headers = headers
        self.broken = set(broken)
        self.queries = []

    def query(self, sql, *params):
        self.queries.append(sql)
        for path, rows in self.headers.items():
            if path in sql:
                if path in self.broken:
                    raise pyodbc.Error('42000', 'The media family on device is incorrectly formed.')
                if sql.startswith('RESTORE HEADERONLY'):
                    return rows
                return FILE_LIST
        return []


def test_read_header_builds_descriptors():
    path = r'D:\BACKUP\Sales.bak'
    session = HeaderSession({path: [header_row(path), header_row(path, 2, position=2,
                                                                 first_lsn=110, last_lsn=120)]})

    descriptors = read_backup_header(session, path)

    assert [d.backup_type for d in descriptors] == [BackupType.FULL, BackupType.LOG]
    full = descriptors[0]
    assert full.first_lsn == 100 and isinstance(full.first_lsn, int)
    assert full.backup_size == 4096
    assert full.compressed_backup_size == 2048
    assert full.files[1].file_type == 'L'
    assert descriptors[1].position == 2
    assert "RESTORE FILELISTONLY FROM DISK = N'D:\\BACKUP\\Sales.bak' WITH FILE = 2" in session.queries


def test_file_backups_skipped():
    path = r'D:\BACKUP\Sales_file.bak'
    session = HeaderSession({path: [header_row(path, backup_type=4)]})

    assert read_backup_header(session, path) == []


def test_url_device():
    url = 'https://acct.blob.core.windows.net/c/Sales.bak'
    session = HeaderSession({url: [header_row(url)]})

    read_backup_header(session, url)

    assert session.queries[0] == f"RESTORE HEADERONLY FROM URL = N'{url}'"


def test_scan_folder_skips_unreadable_files(tmp_path):
    good = tmp_path / 'Sales_full.bak'
    bad = tmp_path / 'Sales_broken.trn'
    other = tmp_path / 'notes.txt'
    for p in (good, bad, other):
        p.write_bytes(b'x')
    session = HeaderSession({str(good): [header_row(str(good))], str(bad): []},
                            broken={str(bad)})

    descriptors = scan_backup_folder(session, str(tmp_path))

    assert [d.path for d in descriptors] == [str(good)]
    assert not any('notes.txt' in q for q in session.queries)


def test_scan_folder_recurse(tmp_path):
    nested = tmp_path / 'LOG'
    nested.mkdir()
    log = nested / 'Sales_1.trn'
    log.write_bytes(b'x')
    session = HeaderSession({str(log): [header_row(str(log), backup_type=2)]})

    with pytest.raises(RestorePreconditionError):
        scan_backup_folder(session, str(tmp_path))

    assert len(scan_backup_folder(session, str(tmp_path), recurse=True)) == 1


def test_scan_missing_folder(tmp_path):
    with pytest.raises(RestorePreconditionError, match="not found"):
        scan_backup_folder(HeaderSession({}), str(tmp_path / 'absent'))


def test_scan_folder_nothing_readable(tmp_path):
    bad = tmp_path / 'Sales.bak'
    bad.write_bytes(b'x')

    with pytest.raises(RestorePreconditionError, match="No valid backup files"):
        scan_backup_folder(HeaderSession({str(bad): []}, broken={str(bad)}), str(tmp_path))


class HistorySession:
    def __init__(self, sets, files):
        self.sets = sets
        self.files = files
        self.params = []

    def query(self, sql, *params):
        self.params.append(params)
        if 'msdb.dbo.backupfile bf' in sql:
            return self.files
        return self.sets


def history_row(set_id, device, family, backup_type='D'):
    return {
        'backup_set_id': set_id,
        'backup_set_uuid': f'uuid-{set_id}',
        'database_name': 'Sales',
        'type': backup_type,
        'first_lsn': Decimal(100 * set_id),
        'last_lsn': Decimal(100 * set_id + 50),
        'checkpoint_lsn': Decimal(100 * set_id),
        'database_backup_lsn': None,
        'backup_start_date': datetime(2025, 1, set_id),
        'backup_finish_date': datetime(2025, 1, set_id, 1),
        'backup_size': Decimal(8000),
        'compressed_backup_size': Decimal(3000),
        'recovery_model': 'FULL',
        'server_name': 'SQL01',
        'position': 1,
        'physical_device_name': device,
        'family_sequence_number': family,
    }


def test_history_stripes_share_backup_set():
    sets = [
        history_row(1, r'D:\BACKUP\Sales_1.bak', 1),
        history_row(1, r'E:\BACKUP\Sales_2.bak', 2),
        history_row(2, r'D:\BACKUP\Sales.trn', 1, backup_type='L'),
    ]
    files = [
        {'backup_set_id': 1, 'logical_name': 'Sales', 'physical_name': r'D:\Data\Sales.mdf',
         'file_type': 'D'},
        {'backup_set_id': 1, 'logical_name': 'Sales_log', 'physical_name': r'L:\Sales_log.ldf',
         'file_type': 'L'},
    ]

    descriptors = get_backup_history(HistorySession(sets, files), 'Sales')

    assert len(descriptors) == 3
    assert descriptors[0].backup_set_id == descriptors[1].backup_set_id == 'uuid-1'
    assert [d.backup_size for d in descriptors[:2]] == [8000, 0]
    assert len(descriptors[0].files) == 2
    assert descriptors[2].backup_type == BackupType.LOG
    assert descriptors[2].files == ()


def test_history_since_parameter():
    session = HistorySession([], [])
    since = datetime(2025, 1, 1)

    get_backup_history(session, 'Sales', since=since)

    assert session.params == [('Sales', since), ('Sales', since)]
