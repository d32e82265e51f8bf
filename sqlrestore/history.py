import os
import logging
import traceback
from pathlib import Path

import pyodbc

from .connection import escape_literal
from .errors import RestorePreconditionError
from .models import BackupFile, BackupFileDescriptor, BackupType, is_url

logger = logging.getLogger(__name__)

BACKUP_EXTENSIONS = ('.bak', '.trn', '.dif')


def _int_or_none(value):
    return None if value is None else int(value)


def _device_clause(path):
    kind = 'URL' if is_url(path) else 'DISK'
    return f"{kind} = N'{escape_literal(path)}'"


def _read_file_list(session, path, position):
    rows = session.query(
        f"RESTORE FILELISTONLY FROM {_device_clause(path)} WITH FILE = {int(position)}"
    )
    return tuple(
        BackupFile(row['LogicalName'], row['PhysicalName'], (row.get('Type') or 'D').upper())
        for row in rows
    )


def read_backup_header(session, path):
    """Read every backup set on a device into descriptors."""
    logger.debug(f"Reading header from: {path}")
    rows = session.query(f"RESTORE HEADERONLY FROM {_device_clause(path)}")
    descriptors = []
    for row in rows:
        backup_type = BackupType.from_header(row.get('BackupType'))
        if backup_type is None:
            logger.warning(f"Skipping unsupported backup type in {path}: "
                           f"{row.get('BackupTypeDescription', row.get('BackupType'))}")
            continue
        position = int(row.get('Position') or 1)
        descriptors.append(BackupFileDescriptor(
            path=str(path),
            backup_type=backup_type,
            first_lsn=int(row['FirstLSN']),
            last_lsn=int(row['LastLSN']),
            checkpoint_lsn=_int_or_none(row.get('CheckpointLSN')),
            database_backup_lsn=_int_or_none(row.get('DatabaseBackupLSN')),
            start=row['BackupStartDate'],
            finish=row.get('BackupFinishDate'),
            backup_set_id=str(row.get('BackupSetGUID') or f"{path}:{position}"),
            database_name=row['DatabaseName'],
            files=_read_file_list(session, path, position),
            position=position,
            backup_size=int(row.get('BackupSize') or 0),
            compressed_backup_size=_int_or_none(row.get('CompressedBackupSize')),
            recovery_model=(row.get('RecoveryModel') or 'FULL').upper(),
            server_name=row.get('ServerName'),
        ))
    return descriptors


def scan_backup_folder(session, source_backup_folder, recurse=False):
    """Scan folder for backup files and read their headers."""
    logger.info(f"Scanning backup folder: {source_backup_folder}")

    if not os.path.isdir(source_backup_folder):
        raise RestorePreconditionError(f"Backup folder not found: {source_backup_folder}")

    pattern = '**/*' if recurse else '*'
    backup_files = sorted(
        p for p in Path(source_backup_folder).glob(pattern)
        if p.is_file() and p.suffix.lower() in BACKUP_EXTENSIONS
    )
    logger.info(f"Found {len(backup_files)} backup file(s) in folder")
    if not backup_files:
        raise RestorePreconditionError(f"No backup files found in folder: {source_backup_folder}")

    descriptors = []
    for backup_path in backup_files:
        try:
            found = read_backup_header(session, str(backup_path))
        except pyodbc.Error as e:
            logger.warning(f"Error reading {backup_path.name}: {str(e)}")
            logger.debug(traceback.format_exc())
            continue
        if not found:
            logger.warning(f"Empty header info from {backup_path}")
            continue
        for descriptor in found:
            logger.info(f"✓ Valid backup: {backup_path.name} (Type: {descriptor.backup_type.value})")
        descriptors.extend(found)

    if not descriptors:
        raise RestorePreconditionError("No valid backup files could be read")
    return descriptors


HISTORY_SQL = """
SELECT bs.backup_set_id, bs.backup_set_uuid, bs.database_name, bs.type,
       bs.first_lsn, bs.last_lsn, bs.checkpoint_lsn, bs.database_backup_lsn,
       bs.backup_start_date, bs.backup_finish_date, bs.backup_size,
       bs.compressed_backup_size, bs.recovery_model, bs.server_name, bs.position,
       mf.physical_device_name, mf.family_sequence_number
FROM msdb.dbo.backupset bs
JOIN msdb.dbo.backupmediafamily mf ON mf.media_set_id = bs.media_set_id
WHERE bs.database_name = ? AND bs.is_copy_only = 0{since}
ORDER BY bs.backup_start_date, mf.family_sequence_number
"""

HISTORY_FILES_SQL = """
SELECT bf.backup_set_id, bf.logical_name, bf.physical_name, bf.file_type
FROM msdb.dbo.backupfile bf
JOIN msdb.dbo.backupset bs ON bs.backup_set_id = bf.backup_set_id
WHERE bs.database_name = ? AND bs.is_copy_only = 0{since}
ORDER BY bf.backup_set_id, bf.file_number
"""


def get_backup_history(session, database, since=None):
    """Read backup history for a database from msdb.

    One descriptor is returned per media family, so a striped backup yields
    one descriptor per stripe sharing a backup set identifier. The set's size
    is attributed to the first stripe. History is trusted: the files it
    names are not checked here.
    """
    logger.info(f"Reading backup history for database: {database}")
    since_clause = " AND bs.backup_start_date >= ?" if since else ""
    params = [database] + ([since] if since else [])

    file_rows = session.query(HISTORY_FILES_SQL.format(since=since_clause), *params)
    files_by_set = {}
    for row in file_rows:
        files_by_set.setdefault(row['backup_set_id'], []).append(
            BackupFile(row['logical_name'], row['physical_name'], (row['file_type'] or 'D').upper())
        )

    descriptors = []
    for row in session.query(HISTORY_SQL.format(since=since_clause), *params):
        backup_type = BackupType.from_history(row['type'])
        if backup_type is None:
            continue
        first_family = int(row['family_sequence_number'] or 1) == 1
        descriptors.append(BackupFileDescriptor(
            path=row['physical_device_name'],
            backup_type=backup_type,
            first_lsn=int(row['first_lsn']),
            last_lsn=int(row['last_lsn']),
            checkpoint_lsn=_int_or_none(row['checkpoint_lsn']),
            database_backup_lsn=_int_or_none(row['database_backup_lsn']),
            start=row['backup_start_date'],
            finish=row['backup_finish_date'],
            backup_set_id=str(row['backup_set_uuid']),
            database_name=row['database_name'],
            files=tuple(files_by_set.get(row['backup_set_id'], ())),
            position=int(row['position'] or 1),
            backup_size=int(row['backup_size'] or 0) if first_family else 0,
            compressed_backup_size=(_int_or_none(row['compressed_backup_size']) if first_family else 0),
            recovery_model=(row['recovery_model'] or 'FULL').upper(),
            server_name=row['server_name'],
        ))

    logger.info(f"Found {len(descriptors)} backup device(s) in history")
    return descriptors
