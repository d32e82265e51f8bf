import time
import dataclasses
import logging
import threading
import traceback

import pyodbc

from .connection import SqlSession, quote_name
from .errors import (RestoreConfigurationError, RestoreError, RestoreExecutionError,
                     RestorePreconditionError)
from .models import RestoreOptions, RestorePointResult, is_url
from .planner import plan_restore, render_verify_script, RECOVERY

logger = logging.getLogger(__name__)

RESTORING_STATES = ('RESTORING',)


class RestoreProgressMonitor(threading.Thread):
    """Poll percent_complete of a running restore on its own connection."""

    def __init__(self, session, database, stats_interval=10, poll_seconds=2, callback=None):
        super().__init__(daemon=True)
        self.session = session
        self.database = database
        self.stats_interval = stats_interval
        self.poll_seconds = poll_seconds
        self.callback = callback
        self._stop_event = threading.Event()

    def stop(self):
        self._stop_event.set()

    def run(self):
        last_percent = 0
        try:
            self.session.connect()
            while not self._stop_event.is_set():
                try:
                    progress = self.session.restore_progress(self.database)
                    if progress:
                        percent_complete, estimated = progress
                        if percent_complete >= last_percent + self.stats_interval:
                            if self.callback:
                                self.callback({
                                    'percent_complete': percent_complete,
                                    'estimated_completion': estimated,
                                    'status': 'Restoring...'
                                })
                            logger.info(f"Restore progress: {percent_complete:.1f}%")
                            last_percent = percent_complete
                except pyodbc.Error as e:
                    logger.debug(f"Progress monitor query error: {str(e)}")
                self._stop_event.wait(self.poll_seconds)
        except pyodbc.Error as e:
            logger.error(f"Progress monitor error: {str(e)}")
            if self.callback:
                self.callback({'error': str(e), 'status': 'Progress monitor error'})
        finally:
            self.session.close()


def validate_restore(session, plan, options):
    """Check the server side before any restore runs. Changes nothing."""
    database = plan.database
    state = session.database_state(database)

    if options.verify_only:
        logger.debug("Verify only, target database state not checked")
    elif options.continue_restore:
        if state is None:
            raise RestorePreconditionError(
                f"Cannot continue restore: database '{database}' does not exist"
            )
        if state['state_desc'] not in RESTORING_STATES and not state.get('is_in_standby'):
            raise RestorePreconditionError(
                f"Cannot continue restore: database '{database}' is {state['state_desc']}, "
                f"not restoring or in standby"
            )
    elif state is not None and not options.replace:
        raise RestoreConfigurationError(
            f"Database '{database}' already exists. Use replace to overwrite it"
        )

    if options.trusted_history:
        missing = [path for step in plan for path in step.point.devices
                   if not session.path_exists(path)]
        if missing:
            for path in missing:
                logger.error(f"Backup file not found: {path}")
            raise RestorePreconditionError(
                f"{len(missing)} backup file(s) not found, first: {missing[0]}"
            )

    directories = list(options.destination_directories)
    if options.standby_directory:
        directories.append(options.standby_directory)
    for directory in directories:
        if not is_url(directory) and not session.path_exists(directory, directory=True):
            raise RestorePreconditionError(f"Directory not reachable from server: {directory}")

    if options.azure_credential and any(is_url(p) for step in plan for p in step.point.devices):
        if not session.credential_exists(options.azure_credential):
            raise RestorePreconditionError(f"Credential not found: {options.azure_credential}")

    logger.info("Restore validation passed")
    return state


def _set_single_user(session, database):
    try:
        logger.info("Setting database to SINGLE_USER")
        session.execute(f"ALTER DATABASE {quote_name(database)} SET SINGLE_USER WITH ROLLBACK IMMEDIATE")
    except pyodbc.Error as e:
        logger.warning(f"Could not set SINGLE_USER: {e}")


def _set_multi_user(session, database):
    try:
        state = session.database_state(database)
        if state and state['state_desc'] == 'ONLINE' and state.get('user_access_desc') != 'MULTI_USER':
            logger.info("Restoring database to MULTI_USER")
            session.execute(f"ALTER DATABASE {quote_name(database)} SET MULTI_USER")
    except pyodbc.Error as e:
        logger.warning(f"Could not set MULTI_USER: {e}")


def execute_plan(session, plan, options, callback=None, existing_state=None,
                 monitor_factory=None, poll_seconds=2):
    """Apply each step of a plan in order, one native restore per step.

    Stops at the first failure and raises RestoreExecutionError carrying the
    engine's message and every result so far. Nothing is rolled back.
    """
    results = []
    database = plan.database
    single_user = (options.replace and not options.continue_restore and not options.verify_only
                   and existing_state is not None and existing_state['state_desc'] == 'ONLINE')
    if single_user:
        _set_single_user(session, database)

    for idx, step in enumerate(plan, 1):
        result = RestorePointResult.for_step(database, step)
        results.append(result)
        label = step.point.backup_type.value

        logger.info("-" * 60)
        logger.info(f"Processing restore point {idx}/{len(plan)}")
        logger.info(f"Type: {label}, recovery: {step.recovery}")
        for device in step.point.devices:
            logger.info(f"File: {device}")

        if options.verify_only:
            sql = render_verify_script(step, options)
            result.script = sql
        else:
            sql = step.script

        if callback:
            callback({
                'status': f'Restoring {label} ({idx}/{len(plan)})',
                'command': sql,
            })

        monitor = None
        if monitor_factory is not None and not options.verify_only:
            monitor = monitor_factory(database)
            monitor.start()

        start_time = time.time()
        try:
            session.execute_restore(sql)
        except pyodbc.Error as e:
            result.duration = time.time() - start_time
            result.error = str(e)
            logger.error(f"SQL Server error during restore: {str(e)}")
            logger.debug(traceback.format_exc())
            raise RestoreExecutionError(
                f"Restore of {label} failed at step {idx}/{len(plan)}: {str(e)}", results
            ) from e
        finally:
            if monitor is not None:
                monitor.stop()
                monitor.join(timeout=poll_seconds + 5)

        result.duration = time.time() - start_time
        result.restore_complete = True
        logger.info(f"✓ {label} restore completed in {result.duration:.2f} seconds")
        if callback:
            callback({'status': f'{label} restore completed', 'elapsed_time': result.duration})

    if single_user and plan.steps[-1].recovery == RECOVERY:
        _set_multi_user(session, database)
    return results


def _resolve_server_side(session, descriptors, database, plan, options):
    """Re-plan with what only the server knows: default directories and the redo LSN."""
    replan = False
    applied_lsn = None

    if options.use_default_directories:
        data_dir, log_dir = session.default_directories()
        logger.info(f"Instance default directories - Data: {data_dir}, Log: {log_dir}")
        options = dataclasses.replace(options, destination_data_directory=data_dir,
                                      destination_log_directory=log_dir)
        replan = True

    if options.continue_restore and not options.verify_only:
        applied_lsn = session.redo_start_lsn(plan.database)
        if applied_lsn is not None:
            logger.info(f"Database '{plan.database}' redo starts at LSN {applied_lsn}")
            replan = True

    if replan:
        plan = plan_restore(descriptors, database=database, options=options,
                            applied_lsn=applied_lsn)
    return plan, options


def restore_database(descriptors, database=None, options=None, config=None, credential=None,
                     session=None, callback=None, monitor_progress=None):
    """Plan and run a restore. Returns (True, results) or (False, error_msg).

    The session is opened here unless one is passed in, and an opened one is
    always closed. Progress is polled on a cloned session when
    ``monitor_progress`` is set, which defaults to on for owned sessions
    with a callback.
    """
    logger.info("=" * 80)
    logger.info("Starting database restore operation")
    logger.info("=" * 80)

    options = options or RestoreOptions()
    config = config or {}
    descriptors = list(descriptors or [])
    own_session = session is None

    try:
        plan = plan_restore(descriptors, database=database, options=options)

        if options.script_only:
            results = [RestorePointResult.for_step(plan.database, step) for step in plan]
            for result in results:
                logger.info(result.script)
            return True, results

        if own_session:
            session = SqlSession(config, credential)
        session.connect()

        plan, options = _resolve_server_side(session, descriptors, database, plan, options)
        state = validate_restore(session, plan, options)

        monitor_factory = None
        poll_seconds = config.get('progress_poll_seconds', 2)
        if monitor_progress is None:
            monitor_progress = own_session and callback is not None
        if monitor_progress:
            def monitor_factory(db):
                return RestoreProgressMonitor(session.clone(), db, options.stats_interval,
                                              poll_seconds, callback)

        results = execute_plan(session, plan, options, callback=callback, existing_state=state,
                               monitor_factory=monitor_factory, poll_seconds=poll_seconds)

        if not options.verify_only:
            final_state = session.database_state(plan.database)
            db_state = final_state['state_desc'] if final_state else 'Unknown'
            logger.info(f"✓ Database state: {db_state}")
            if callback:
                callback({'status': 'COMPLETED', 'database_state': db_state})

        logger.info("=" * 80)
        logger.info("✓ RESTORE COMPLETED SUCCESSFULLY")
        logger.info("=" * 80)
        return True, results

    except RestoreExecutionError as e:
        logger.error(str(e))
        logger.error("Database left in its last restored state; resume with continue")
        return False, str(e)
    except RestoreError as e:
        logger.error(f"Restore aborted before execution: {str(e)}")
        return False, str(e)
    except pyodbc.Error as e:
        error_msg = f"SQL Server error: {str(e)}"
        logger.error(error_msg)
        logger.debug(traceback.format_exc())
        return False, error_msg
    finally:
        if own_session and session is not None:
            session.close()
