"""
Tests for file relocation rules.
"""
import pytest

from sqlrestore.models import BackupFile, RestoreOptions
from sqlrestore.planner import plan_restore, relocate_files

from conftest import SALES_FILES


def test_no_options_keeps_original_paths():
    relocations = relocate_files(SALES_FILES, RestoreOptions())

    assert relocations == (
        ('Sales', r'D:\Data\Sales.mdf'),
        ('Sales_log', r'L:\Logs\Sales_log.ldf'),
    )


def test_data_directory_used_for_logs_when_no_log_directory():
    options = RestoreOptions(destination_data_directory=r'E:\SQLData')

    relocations = dict(relocate_files(SALES_FILES, options))

    assert relocations['Sales'] == r'E:\SQLData\Sales.mdf'
    assert relocations['Sales_log'] == r'E:\SQLData\Sales_log.ldf'


def test_separate_log_directory():
    options = RestoreOptions(destination_data_directory=r'E:\SQLData',
                             destination_log_directory=r'F:\Logs')

    relocations = dict(relocate_files(SALES_FILES, options))

    assert relocations['Sales'] == r'E:\SQLData\Sales.mdf'
    assert relocations['Sales_log'] == r'F:\Logs\Sales_log.ldf'


def test_filestream_directory():
    files = SALES_FILES + (BackupFile('Sales_fs', r'D:\Data\Sales_fs', 'S'),)
    options = RestoreOptions(destination_data_directory=r'E:\SQLData',
                             destination_filestream_directory=r'G:\Stream')

    relocations = dict(relocate_files(files, options))

    assert relocations['Sales_fs'] == r'G:\Stream\Sales_fs'


def test_prefix_and_suffix():
    options = RestoreOptions(destination_data_directory=r'E:\SQLData',
                             file_prefix='dev_', file_suffix='_2')

    relocations = dict(relocate_files(SALES_FILES, options))

    assert relocations['Sales'] == r'E:\SQLData\dev_Sales_2.mdf'
    assert relocations['Sales_log'] == r'E:\SQLData\dev_Sales_log_2.ldf'


def test_prefix_without_directory_keeps_folder():
    relocations = dict(relocate_files(SALES_FILES, RestoreOptions(file_prefix='old_')))

    assert relocations['Sales'] == r'D:\Data\old_Sales.mdf'


def test_replace_database_name_in_file():
    options = RestoreOptions(replace_db_name_in_file=True)

    relocations = dict(relocate_files(SALES_FILES, options, 'Sales', 'Sales_Copy'))

    assert relocations['Sales'] == r'D:\Data\Sales_Copy.mdf'
    assert relocations['Sales_log'] == r'L:\Logs\Sales_Copy_log.ldf'


def test_explicit_file_mapping():
    options = RestoreOptions(file_mapping={'Sales': r'X:\Restore\Sales_new.mdf'})

    relocations = dict(relocate_files(SALES_FILES, options))

    assert relocations['Sales'] == r'X:\Restore\Sales_new.mdf'
    assert relocations['Sales_log'] == r'L:\Logs\Sales_log.ldf'


def test_linux_paths():
    files = (BackupFile('db', '/var/opt/mssql/data/db.mdf', 'D'),
             BackupFile('db_log', '/var/opt/mssql/data/db_log.ldf', 'L'))
    options = RestoreOptions(destination_data_directory='/restore/data',
                             destination_log_directory='/restore/log')

    relocations = dict(relocate_files(files, options))

    assert relocations == {'db': '/restore/data/db.mdf', 'db_log': '/restore/log/db_log.ldf'}


def test_moves_rendered_in_every_step(basic_chain):
    options = RestoreOptions(destination_data_directory=r'E:\SQLData')

    plan = plan_restore(basic_chain, options=options)

    for step in plan:
        assert r"MOVE N'Sales' TO N'E:\SQLData\Sales.mdf'" in step.script
        assert r"MOVE N'Sales_log' TO N'E:\SQLData\Sales_log.ldf'" in step.script


@pytest.mark.parametrize('options', [
    RestoreOptions(file_mapping={'Sales': r'X:\a.mdf'}),
    RestoreOptions(destination_data_directory=r'E:\SQLData'),
])
def test_restored_files_reported(basic_chain, options):
    plan = plan_restore(basic_chain, options=options)

    assert len(plan.steps[0].relocations) == 2
    assert [logical for logical, _ in plan.steps[0].relocations] == ['Sales', 'Sales_log']
