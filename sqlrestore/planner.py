"""Turn a set of backup descriptors into an ordered list of restore steps.

Planning never touches the server: every check here is made on the
descriptors and the options alone, so a bad request is rejected before a
connection is opened.
"""

import ntpath
import logging
import posixpath
from datetime import datetime

from .connection import escape_literal, quote_name
from .errors import RestoreConfigurationError, RestorePreconditionError
from .models import BackupType, RestoreOptions, RestorePlan, RestorePoint, RestoreStep, is_url

logger = logging.getLogger(__name__)

VALID_BLOCK_SIZES = (512, 1024, 2048, 4096, 8192, 16384, 32768, 65536)
MAX_TRANSFER_SIZE_STEP = 64 * 1024
MAX_TRANSFER_SIZE_LIMIT = 4 * 1024 * 1024

RECOVERY = 'RECOVERY'
NORECOVERY = 'NORECOVERY'
STANDBY = 'STANDBY'


def validate_options(options):
    """Reject conflicting or out-of-range options."""
    if options.file_mapping and options.destination_directories:
        raise RestoreConfigurationError(
            "A file mapping cannot be combined with destination directory overrides"
        )
    if options.use_default_directories and (options.file_mapping or options.destination_directories):
        raise RestoreConfigurationError(
            "Instance default directories cannot be combined with a file mapping or directory overrides"
        )
    if options.standby_directory and options.no_recovery:
        raise RestoreConfigurationError("Standby and NORECOVERY are mutually exclusive")
    if options.script_only and options.verify_only:
        raise RestoreConfigurationError("Script-only and verify-only are mutually exclusive")

    if options.max_transfer_size is not None:
        size = options.max_transfer_size
        if (size % MAX_TRANSFER_SIZE_STEP != 0
                or not MAX_TRANSFER_SIZE_STEP <= size <= MAX_TRANSFER_SIZE_LIMIT):
            raise RestoreConfigurationError(
                f"MaxTransferSize must be a multiple of 64KB between 64KB and 4MB, got {size}"
            )
    if options.block_size is not None and options.block_size not in VALID_BLOCK_SIZES:
        raise RestoreConfigurationError(
            f"BlockSize must be one of {', '.join(str(b) for b in VALID_BLOCK_SIZES)}, "
            f"got {options.block_size}"
        )
    if options.buffer_count is not None and options.buffer_count < 1:
        raise RestoreConfigurationError(f"BufferCount must be positive, got {options.buffer_count}")
    if not 1 <= int(options.stats_interval) <= 100:
        raise RestoreConfigurationError(
            f"Stats interval must be between 1 and 100, got {options.stats_interval}"
        )


def partition_descriptors(descriptors):
    """Split descriptors into (full, differential, log) lists, keeping input order."""
    fulls, diffs, logs = [], [], []
    buckets = {BackupType.FULL: fulls, BackupType.DIFFERENTIAL: diffs, BackupType.LOG: logs}
    for descriptor in descriptors:
        buckets[descriptor.backup_type].append(descriptor)
    return fulls, diffs, logs


def _group(descriptors, key):
    groups = {}
    for descriptor in descriptors:
        groups.setdefault(key(descriptor), []).append(descriptor)
    return groups


def build_restore_points(descriptors):
    """Group descriptors into restore points, sorted into the only safe replay order.

    Full backups sort first and differentials second, each keyed by first
    LSN. Log backups follow, one point per backup set, keyed by the time the
    log backup started.
    """
    fulls, diffs, logs = partition_descriptors(descriptors)
    points = []

    for lsn, group in _group(fulls, lambda d: d.first_lsn).items():
        points.append(RestorePoint(BackupType.FULL, tuple(group), (BackupType.FULL.phase, lsn)))
    for lsn, group in _group(diffs, lambda d: d.first_lsn).items():
        points.append(RestorePoint(BackupType.DIFFERENTIAL, tuple(group),
                                   (BackupType.DIFFERENTIAL.phase, lsn)))
    for group in _group(logs, lambda d: d.backup_set_id).values():
        start = min(d.start for d in group)
        points.append(RestorePoint(BackupType.LOG, tuple(group), (BackupType.LOG.phase, start)))

    points.sort(key=lambda p: p.order)
    logger.debug(f"Built {len(points)} restore point(s) from {len(descriptors)} descriptor(s)")
    return points


def _naive(value):
    if value is not None and value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def apply_restore_time(points, restore_time, now=None, earliest=None):
    """Truncate the plan at a point-in-time cutoff.

    Returns ``(points, stop_at)``. ``stop_at`` is the cutoff when one of the
    kept log points reaches it, otherwise None and the plan restores to the
    latest point available. ``earliest`` is the start of the oldest backup
    supplied, when ``points`` no longer holds it (continued restores).
    """
    restore_time = _naive(restore_time)
    if restore_time is None or not points:
        return points, None

    now = _naive(now) or datetime.now()
    if restore_time > now:
        logger.info(f"Restore time {restore_time} is in the future, restoring to latest point")
        return points, None

    if earliest is None:
        earliest = min(p.start for p in points)
    if restore_time < earliest:
        raise RestoreConfigurationError(
            f"Restore time {restore_time} is earlier than the earliest available backup ({earliest})"
        )

    if any(d.recovery_model == 'SIMPLE' for p in points for d in p.descriptors):
        logger.warning("Database uses the SIMPLE recovery model, ignoring restore time")
        return points, None

    kept = []
    stop_at = None
    for point in points:
        if point.backup_type != BackupType.LOG:
            if point.start <= restore_time:
                kept.append(point)
            else:
                logger.info(f"Skipping {point.backup_type.value} backup taken after the restore time")
            continue
        kept.append(point)
        if point.start >= restore_time:
            # This log backup holds the records up to the cutoff
            stop_at = restore_time
            break

    return kept, stop_at


def _continuation_base(diffs, logs):
    """Chain start for a continued restore whose full backup is not supplied."""
    if diffs:
        diff = max(diffs, key=lambda d: (d.start, d.last_lsn))
        chain = [d for d in diffs if d.backup_set_id == diff.backup_set_id]
        return chain, diff.last_lsn
    return [], min(d.first_lsn for d in logs)


def select_backup_chain(descriptors, restore_time=None, database=None, continue_restore=False):
    """Pick the newest usable full/differential/log chain from a mixed set.

    The newest full backup started at or before ``restore_time`` is chosen,
    then the newest differential based on it, then every log backup after
    the base. The log chain is cut at the first LSN gap. Only backups of the
    chosen full's database are chained.

    With ``continue_restore`` a full backup is not required: without one the
    chain starts at the newest differential, or at the oldest log backup.
    """
    restore_time = _naive(restore_time)
    if database:
        descriptors = [d for d in descriptors if d.database_name == database]
    fulls, diffs, logs = partition_descriptors(descriptors)

    if restore_time is not None:
        fulls = [d for d in fulls if d.start <= restore_time]
        diffs = [d for d in diffs if d.start <= restore_time]

    if fulls:
        full = max(fulls, key=lambda d: (d.start, d.checkpoint_lsn or d.first_lsn))
        source_database = full.database_name
        diffs = [d for d in diffs if d.database_name == source_database]
        logs = [d for d in logs if d.database_name == source_database]

        chain = [d for d in fulls if d.backup_set_id == full.backup_set_id]
        base_lsn = full.last_lsn

        full_checkpoint = full.checkpoint_lsn if full.checkpoint_lsn is not None else full.first_lsn
        based = [d for d in diffs if d.database_backup_lsn == full_checkpoint]
        if based:
            diff = max(based, key=lambda d: (d.start, d.last_lsn))
            chain.extend(d for d in diffs if d.backup_set_id == diff.backup_set_id)
            base_lsn = diff.last_lsn
    elif continue_restore:
        remaining = diffs + logs
        if not remaining:
            raise RestorePreconditionError("No differential or log backup found to continue from")
        source_database = min(remaining, key=lambda d: d.start).database_name
        diffs = [d for d in diffs if d.database_name == source_database]
        logs = [d for d in logs if d.database_name == source_database]
        chain, base_lsn = _continuation_base(diffs, logs)
        logger.info("No full backup supplied, continuing from the remaining backups")
    else:
        raise RestorePreconditionError("No full backup found")

    log_sets = _group([d for d in logs if d.last_lsn > base_lsn], lambda d: d.backup_set_id)
    expected = base_lsn
    for group in sorted(log_sets.values(), key=lambda g: (g[0].first_lsn, g[0].start)):
        first = group[0]
        if first.first_lsn > expected:
            logger.warning(f"Log chain broken before {first.path} "
                           f"(expected LSN {expected}, found {first.first_lsn})")
            break
        chain.extend(group)
        expected = first.last_lsn

    logger.info(f"Selected backup chain: {len(chain)} file(s)")
    return chain


def _path_module(path):
    if '\\' in path or (len(path) > 1 and path[1] == ':'):
        return ntpath
    return posixpath


def relocate_files(files, options, source_database=None, target_database=None):
    """Work out where each database file lands, as (logical_name, physical_path) pairs."""
    relocations = []
    for f in files:
        if f.logical_name in options.file_mapping:
            relocations.append((f.logical_name, options.file_mapping[f.logical_name]))
            continue

        source_path = _path_module(f.physical_name)
        directory, name = source_path.split(f.physical_name)
        stem, ext = source_path.splitext(name)

        if f.file_type == 'L':
            target_dir = options.destination_log_directory or options.destination_data_directory
        elif f.file_type == 'S':
            target_dir = options.destination_filestream_directory or options.destination_data_directory
        else:
            target_dir = options.destination_data_directory

        if (options.replace_db_name_in_file and source_database and target_database
                and source_database != target_database):
            stem = stem.replace(source_database, target_database)
        stem = f"{options.file_prefix}{stem}{options.file_suffix}"

        if target_dir:
            physical = _path_module(target_dir).join(target_dir, stem + ext)
        else:
            physical = source_path.join(directory, stem + ext)
        relocations.append((f.logical_name, physical))
    return tuple(relocations)


def _format_stop_at(value):
    return value.strftime('%Y-%m-%dT%H:%M:%S.') + f"{value.microsecond // 1000:03d}"


def _device_list(point):
    devices = []
    for path in point.devices:
        kind = 'URL' if is_url(path) else 'DISK'
        devices.append(f"{kind} = N'{escape_literal(path)}'")
    return ", ".join(devices)


def _common_with_options(point, options):
    opts = [f"FILE = {int(point.descriptors[0].position)}"]
    if options.azure_credential and any(is_url(p) for p in point.devices):
        opts.append(f"CREDENTIAL = N'{escape_literal(options.azure_credential)}'")
    return opts


def render_restore_script(step, database, options):
    """Render the T-SQL for one restore step."""
    point = step.point
    with_opts = _common_with_options(point, options)

    original = {f.logical_name: f.physical_name for f in point.files}
    for logical, physical in step.relocations:
        if original.get(logical) != physical:
            with_opts.append(f"MOVE N'{escape_literal(logical)}' TO N'{escape_literal(physical)}'")

    if step.replace:
        with_opts.append("REPLACE")
    if step.recovery == STANDBY:
        with_opts.append(f"STANDBY = N'{escape_literal(step.standby_file)}'")
    else:
        with_opts.append(step.recovery)
    if step.stop_at is not None:
        with_opts.append(f"STOPAT = N'{_format_stop_at(step.stop_at)}'")
    if options.max_transfer_size:
        with_opts.append(f"MAXTRANSFERSIZE = {int(options.max_transfer_size)}")
    if options.block_size:
        with_opts.append(f"BLOCKSIZE = {int(options.block_size)}")
    if options.buffer_count:
        with_opts.append(f"BUFFERCOUNT = {int(options.buffer_count)}")
    with_opts.append(f"STATS = {int(options.stats_interval)}")

    return (f"RESTORE {step.action} {quote_name(database)} FROM {_device_list(point)} "
            f"WITH {', '.join(with_opts)}")


def render_verify_script(step, options):
    """Render a RESTORE VERIFYONLY for the devices of one step."""
    with_opts = _common_with_options(step.point, options)
    return f"RESTORE VERIFYONLY FROM {_device_list(step.point)} WITH {', '.join(with_opts)}"


def _standby_file(options, database, now):
    directory = options.standby_directory
    return _path_module(directory).join(directory, f"{database}_{now:%Y%m%d%H%M%S}.bak")


def plan_restore(descriptors, database=None, options=None, now=None, applied_lsn=None):
    """Build a RestorePlan for one target database.

    ``applied_lsn`` is the redo start LSN of a database being continued:
    points ending at or before it are already applied and are left out.
    """
    options = options or RestoreOptions()
    descriptors = list(descriptors or [])
    if not descriptors:
        raise RestoreConfigurationError("No backup files supplied")
    validate_options(options)

    source_database = descriptors[0].database_name
    database = database or source_database
    if not database:
        raise RestoreConfigurationError("Target database name could not be determined")

    if options.ignore_diff_backups:
        descriptors = [d for d in descriptors if d.backup_type != BackupType.DIFFERENTIAL]
    if options.ignore_log_backups:
        descriptors = [d for d in descriptors if d.backup_type != BackupType.LOG]

    points = build_restore_points(descriptors)
    earliest = min((p.start for p in points), default=None)
    if options.continue_restore:
        skipped = [p for p in points if p.backup_type == BackupType.FULL]
        points = [p for p in points if p.backup_type != BackupType.FULL]
        if skipped:
            logger.info(f"Continuing restore, skipping {len(skipped)} full backup point(s)")
        else:
            # The base already restored predates every supplied backup
            earliest = datetime.min
        if applied_lsn is not None:
            applied = [p for p in points if p.last_lsn <= applied_lsn]
            points = [p for p in points if p.last_lsn > applied_lsn]
            if applied:
                logger.info(f"Continuing restore from LSN {applied_lsn}, "
                            f"skipping {len(applied)} applied backup point(s)")

    points, stop_at = apply_restore_time(points, options.restore_time, now=now, earliest=earliest)
    if not points:
        raise RestoreConfigurationError(f"Nothing left to restore for database '{database}'")

    now = now or datetime.now()
    steps = []
    replace_pending = options.replace and not options.continue_restore
    for idx, point in enumerate(points):
        last = idx == len(points) - 1
        action = 'LOG' if point.backup_type == BackupType.LOG else 'DATABASE'

        if not last:
            recovery = NORECOVERY
        elif options.standby_directory:
            recovery = STANDBY
        elif options.no_recovery:
            recovery = NORECOVERY
        else:
            recovery = RECOVERY

        step = RestoreStep(
            point=point,
            action=action,
            recovery=recovery,
            relocations=relocate_files(point.files, options, source_database, database),
            standby_file=_standby_file(options, database, now) if recovery == STANDBY else None,
            stop_at=stop_at if last and action == 'LOG' else None,
            replace=replace_pending and action == 'DATABASE',
        )
        if step.replace:
            replace_pending = False
        step.script = render_restore_script(step, database, options)
        steps.append(step)

    logger.info(f"Restore plan for [{database}]: {len(steps)} step(s)")
    for idx, step in enumerate(steps, 1):
        logger.debug(f"  {idx}. {step.point.backup_type.value} {step.recovery} {', '.join(step.point.devices)}")
    return RestorePlan(database, steps)
