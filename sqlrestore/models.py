from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple


class BackupType(Enum):
    FULL = 'Database'
    DIFFERENTIAL = 'Database Differential'
    LOG = 'Transaction Log'

    @classmethod
    def from_header(cls, code):
        """Map the BackupType column of RESTORE HEADERONLY. Returns None for file backups."""
        return {1: cls.FULL, 5: cls.DIFFERENTIAL, 2: cls.LOG}.get(int(code or 0))

    @classmethod
    def from_history(cls, code):
        """Map msdb.dbo.backupset.type."""
        return {'D': cls.FULL, 'I': cls.DIFFERENTIAL, 'L': cls.LOG}.get((code or '').upper())

    @property
    def phase(self):
        return {BackupType.FULL: 1, BackupType.DIFFERENTIAL: 2, BackupType.LOG: 3}[self]


@dataclass(frozen=True)
class BackupFile:
    logical_name: str
    physical_name: str
    file_type: str = 'D'


@dataclass(frozen=True)
class BackupFileDescriptor:
    """One backup set on one device, as read from a header or msdb history."""

    path: str
    backup_type: BackupType
    first_lsn: int
    last_lsn: int
    start: datetime
    backup_set_id: str
    database_name: str
    files: Tuple[BackupFile, ...] = ()
    checkpoint_lsn: Optional[int] = None
    database_backup_lsn: Optional[int] = None
    finish: Optional[datetime] = None
    position: int = 1
    backup_size: int = 0
    compressed_backup_size: Optional[int] = None
    recovery_model: str = 'FULL'
    server_name: Optional[str] = None

    @property
    def is_url(self):
        return is_url(self.path)


def is_url(path):
    return str(path).lower().startswith(('http://', 'https://', 's3://'))


@dataclass
class RestorePoint:
    """Backups applied together in one native restore call."""

    backup_type: BackupType
    descriptors: Tuple[BackupFileDescriptor, ...]
    order: tuple

    @property
    def first_lsn(self):
        return min(d.first_lsn for d in self.descriptors)

    @property
    def last_lsn(self):
        return max(d.last_lsn for d in self.descriptors)

    @property
    def start(self):
        return min(d.start for d in self.descriptors)

    @property
    def devices(self):
        return [d.path for d in self.descriptors]

    @property
    def files(self):
        # Every stripe of a backup set carries the same file list
        return self.descriptors[0].files

    @property
    def backup_size(self):
        return sum(d.backup_size or 0 for d in self.descriptors)

    @property
    def compressed_backup_size(self):
        sizes = [d.compressed_backup_size for d in self.descriptors]
        if any(s is None for s in sizes):
            return None
        return sum(sizes)


@dataclass
class RestoreOptions:
    """Knobs accepted by the planner and the runner."""

    destination_data_directory: Optional[str] = None
    destination_log_directory: Optional[str] = None
    destination_filestream_directory: Optional[str] = None
    use_default_directories: bool = False
    file_mapping: Dict[str, str] = field(default_factory=dict)
    file_prefix: str = ''
    file_suffix: str = ''
    replace_db_name_in_file: bool = False
    restore_time: Optional[datetime] = None
    continue_restore: bool = False
    standby_directory: Optional[str] = None
    no_recovery: bool = False
    replace: bool = False
    ignore_diff_backups: bool = False
    ignore_log_backups: bool = False
    trusted_history: bool = False
    script_only: bool = False
    verify_only: bool = False
    azure_credential: Optional[str] = None
    max_transfer_size: Optional[int] = None
    block_size: Optional[int] = None
    buffer_count: Optional[int] = None
    stats_interval: int = 10

    @property
    def destination_directories(self):
        return [d for d in (self.destination_data_directory,
                            self.destination_log_directory,
                            self.destination_filestream_directory) if d]


@dataclass
class RestoreStep:
    point: RestorePoint
    action: str
    recovery: str
    relocations: Tuple[Tuple[str, str], ...] = ()
    standby_file: Optional[str] = None
    stop_at: Optional[datetime] = None
    replace: bool = False
    script: str = ''


@dataclass
class RestorePlan:
    database: str
    steps: list

    def __len__(self):
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)


@dataclass
class RestorePointResult:
    database: str
    backup_files: list
    backup_size: int
    compressed_backup_size: Optional[int]
    restored_files: list
    action: str
    recovery: str
    with_replace: bool
    script: str
    duration: float = 0.0
    restore_complete: bool = False
    error: Optional[str] = None

    @property
    def backup_files_count(self):
        return len(self.backup_files)

    @property
    def restored_files_count(self):
        return len(self.restored_files)

    @classmethod
    def for_step(cls, database, step):
        return cls(
            database=database,
            backup_files=step.point.devices,
            backup_size=step.point.backup_size,
            compressed_backup_size=step.point.compressed_backup_size,
            restored_files=[physical for _, physical in step.relocations],
            action=step.action,
            recovery=step.recovery,
            with_replace=step.replace,
            script=step.script,
        )
