import asyncio
import hashlib
import json
import shlex
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner

from lfsxfer import cli as cli_module
from lfsxfer.cli import cli, format_size
from lfsxfer.file import LocalObjectStore

FAKE_AGENT = Path(__file__).parent / 'fake_agent.py'


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    # Keep long error lines from wrapping
    monkeypatch.setattr(cli_module.console, 'width', 200)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def storage_dir(tmp_path):
    return tmp_path / 'store'


def agent_options(*flags):
    """-c options declaring the fake agent as adapter 'fake'."""
    args = ' '.join(shlex.quote(a) for a in [str(FAKE_AGENT), *flags])
    return [
        '-c', f"lfs.customtransfer.fake.path={sys.executable}",
        '-c', f"lfs.customtransfer.fake.args={args}",
    ]


def write_batch(path, objects):
    path.write_text(json.dumps({'transfer': 'fake', 'objects': objects}))
    return path


def batch_entry(oid, size, operation):
    return {
        'oid': oid,
        'size': size,
        'actions': {operation: {'href': f"https://lfs.example.com/{oid}",
                                'header': {'Authorization': 'Bearer token'}}},
    }


def test_adapters_lists_configured(runner):
    result = runner.invoke(cli, [
        '-c', 'lfs.customtransfer.alpha.path=/bin/alpha',
        '-c', 'lfs.customtransfer.alpha.concurrent=false',
        '-c', 'lfs.customtransfer.beta.path=/bin/beta',
        '-c', 'lfs.customtransfer.beta.direction=upload',
        'adapters',
    ])

    assert result.exit_code == 0, result.output
    assert 'alpha' in result.output
    assert '/bin/beta' in result.output
    assert 'upload' in result.output


def test_adapters_reports_errors(runner):
    result = runner.invoke(cli, [
        '-c', 'lfs.customtransfer.broken.path=/bin/x',
        '-c', 'lfs.customtransfer.broken.direction=sideways',
        'adapters',
    ])

    assert result.exit_code == 0
    assert 'No custom transfer adapters configured' in result.output
    assert 'sideways' in result.output


def test_git_config_file(runner, tmp_path):
    git_config = tmp_path / 'gitconfig.txt'
    git_config.write_text('lfs.customtransfer.fromfile.path=/bin/fromfile\n')

    result = runner.invoke(cli, ['--git-config', str(git_config), 'adapters'])

    assert result.exit_code == 0
    assert 'fromfile' in result.output


def test_override_needs_equals(runner):
    result = runner.invoke(cli, ['-c', 'lfs.nothing', 'adapters'])

    assert result.exit_code == 2


def test_upload(runner, tmp_path, storage_dir):
    source = tmp_path / 'big.bin'
    source.write_bytes(b'payload' * 1000)
    oid, size = asyncio.run(LocalObjectStore(storage_dir).store_file(source))
    batch = write_batch(tmp_path / 'batch.json', [batch_entry(oid, size, 'upload')])
    record = tmp_path / 'record.jsonl'

    result = runner.invoke(cli, [
        '--storage-dir', str(storage_dir),
        *agent_options('--check-path', '--record', str(record)),
        'upload', str(batch), '--adapter', 'fake',
    ])

    assert result.exit_code == 0, result.output
    assert 'Succeeded: 1' in result.output
    messages = [json.loads(line)['msg'] for line in record.read_text().splitlines()]
    request = next(m for m in messages if 'oid' in m)
    assert request['path'] == str(LocalObjectStore(storage_dir).object_path(oid))


def test_upload_missing_local_object(runner, tmp_path, storage_dir):
    oid = hashlib.sha256(b'never stored').hexdigest()
    batch = write_batch(tmp_path / 'batch.json', [batch_entry(oid, 12, 'upload')])

    result = runner.invoke(cli, [
        '--storage-dir', str(storage_dir), *agent_options(),
        'upload', str(batch), '--adapter', 'fake',
    ])

    assert result.exit_code == 1
    assert 'not in the local store' in result.output


def test_upload_agent_failure(runner, tmp_path, storage_dir):
    source = tmp_path / 'file.bin'
    source.write_bytes(b'data')
    oid, size = asyncio.run(LocalObjectStore(storage_dir).store_file(source))
    batch = write_batch(tmp_path / 'batch.json', [batch_entry(oid, size, 'upload')])

    result = runner.invoke(cli, [
        '--storage-dir', str(storage_dir), *agent_options('--fail', 'quota exceeded'),
        'upload', str(batch), '--adapter', 'fake',
    ])

    assert result.exit_code == 1
    assert 'Failed: 1' in result.output


def test_download(runner, tmp_path, storage_dir):
    size = 5000
    oid = hashlib.sha256(b'a' * size).hexdigest()
    batch = write_batch(tmp_path / 'batch.json', [batch_entry(oid, size, 'download')])

    result = runner.invoke(cli, [
        '--storage-dir', str(storage_dir), *agent_options(),
        'download', str(batch), '--adapter', 'fake', '--concurrency', '2',
    ])

    assert result.exit_code == 0, result.output
    store = LocalObjectStore(storage_dir)
    assert store.has_object(oid)
    assert store.object_path(oid).read_bytes() == b'a' * size


def test_download_corrupt_object(runner, tmp_path, storage_dir):
    oid = hashlib.sha256(b'something else').hexdigest()
    batch = write_batch(tmp_path / 'batch.json', [batch_entry(oid, 10, 'download')])

    result = runner.invoke(cli, [
        '--storage-dir', str(storage_dir), *agent_options(),
        'download', str(batch), '--adapter', 'fake',
    ])

    assert result.exit_code == 1
    assert not LocalObjectStore(storage_dir).has_object(oid)


def test_batch_errors_are_skipped(runner, tmp_path, storage_dir):
    oid = hashlib.sha256(b'missing').hexdigest()
    batch = write_batch(tmp_path / 'batch.json', [
        {'oid': oid, 'size': 7, 'error': {'code': 404, 'message': 'Object does not exist'}},
    ])

    result = runner.invoke(cli, [
        '--storage-dir', str(storage_dir), *agent_options(),
        'download', str(batch), '--adapter', 'fake',
    ])

    assert result.exit_code == 0
    assert 'Object does not exist' in result.output


def test_duplicate_batch_entries_transfer_once(runner, tmp_path, storage_dir):
    size = 300
    oid = hashlib.sha256(b'a' * size).hexdigest()
    entry = batch_entry(oid, size, 'download')
    batch = write_batch(tmp_path / 'batch.json', [entry, entry])

    result = runner.invoke(cli, [
        '--storage-dir', str(storage_dir), *agent_options(),
        'download', str(batch), '--adapter', 'fake', '--concurrency', '2',
    ])

    assert result.exit_code == 0, result.output
    assert 'duplicate entry in batch' in result.output
    assert 'Succeeded: 1' in result.output
    assert LocalObjectStore(storage_dir).has_object(oid)


def test_unknown_adapter(runner, tmp_path, storage_dir):
    batch = write_batch(tmp_path / 'batch.json', [])

    result = runner.invoke(cli, [
        '--storage-dir', str(storage_dir), 'download', str(batch), '--adapter', 'nope',
    ])

    assert result.exit_code == 1
    assert 'nope' in result.output


def test_agent_that_cannot_start(runner, tmp_path, storage_dir):
    size = 10
    oid = hashlib.sha256(b'a' * size).hexdigest()
    batch = write_batch(tmp_path / 'batch.json', [batch_entry(oid, size, 'download')])

    result = runner.invoke(cli, [
        '--storage-dir', str(storage_dir),
        *agent_options('--init-error', 'unsupported operation'),
        'download', str(batch), '--adapter', 'fake',
    ])

    assert result.exit_code == 1
    assert 'unsupported operation' in result.output


def test_store_command(runner, tmp_path, storage_dir):
    source = tmp_path / 'file.txt'
    source.write_bytes(b'stored via cli')

    result = runner.invoke(cli, ['--storage-dir', str(storage_dir), 'store', str(source)])

    assert result.exit_code == 0, result.output
    oid = hashlib.sha256(b'stored via cli').hexdigest()
    assert LocalObjectStore(storage_dir).has_object(oid)


def test_init_config(runner, tmp_path):
    path = tmp_path / 'lfsxfer.json'

    result = runner.invoke(cli, ['init-config', str(path)])

    assert result.exit_code == 0
    assert json.loads(path.read_text())['namespace'] == 'lfs'
    assert runner.invoke(cli, ['init-config', str(path)]).exit_code == 1


@pytest.mark.parametrize('count, expected', [
    (512, '512.0 B'),
    (2048, '2.0 KB'),
    (5 * 1024 * 1024, '5.0 MB'),
])
def test_format_size(count, expected):
    assert format_size(count) == expected
