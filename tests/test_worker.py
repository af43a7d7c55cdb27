import asyncio

import pytest

from lfsxfer.transfer import (
    Action, InitRequest, ProgressResponse, ProtocolError, TransferResponse,
    UploadRequest, WorkerExitError, WorkerIOError, WorkerProcess, WorkerStartError,
    WorkerTimeoutError,
)
from lfsxfer.transfer.protocol import TRANSFER_RESPONSES

INIT = InitRequest(operation='upload', concurrent=True, concurrent_transfers=3)


def upload_request(oid='a' * 64, size=10):
    return UploadRequest(oid=oid, size=size, local_path='/tmp/object',
                         action=Action(href='https://example.com/upload'))


def test_start_and_shutdown(agent_argv, record_file, read_record):
    async def run():
        worker = WorkerProcess('fake', agent_argv('--record', str(record_file)))
        await worker.start(INIT)
        assert worker.is_running
        assert worker.pid is not None

        await worker.shutdown()
        assert not worker.is_running
        return worker

    worker = asyncio.run(run())

    assert worker.returncode == 0
    messages = [msg for _, msg in read_record()]
    assert messages == [
        {'operation': 'upload', 'concurrent': True, 'concurrenttransfers': 3},
        {'complete': True},
    ]


def test_exchange_reads_progress_then_completion(agent_argv):
    async def run():
        async with WorkerProcess('fake', agent_argv('--progress', '4,10')) as worker:
            await worker.start(INIT)
            await worker.send(upload_request())
            replies = [await worker.read_response(TRANSFER_RESPONSES) for _ in range(3)]
        return replies

    replies = asyncio.run(run())

    assert [index for index, _ in replies] == [0, 0, 1]
    assert isinstance(replies[0][1], ProgressResponse)
    assert replies[1][1].bytes_since_last == 6
    assert isinstance(replies[2][1], TransferResponse)


def test_missing_executable():
    worker = WorkerProcess('ghost', ['/nonexistent/agent-binary'])

    with pytest.raises(WorkerStartError, match='Failed to start custom transfer command'):
        asyncio.run(worker.start(INIT))
    assert not worker.is_running


def test_init_error_kills_process(agent_argv):
    worker = WorkerProcess('fake', agent_argv('--init-error', 'unsupported operation'))

    with pytest.raises(WorkerStartError, match='unsupported operation'):
        asyncio.run(worker.start(INIT))

    assert not worker.is_running
    assert worker.returncode is not None


def test_init_garbage_fails_handshake(agent_argv):
    worker = WorkerProcess('fake', agent_argv('--init-garbage'))

    with pytest.raises(WorkerStartError, match='failed init handshake'):
        asyncio.run(worker.start(INIT))
    assert worker.returncode is not None


def test_read_timeout(agent_argv):
    async def run():
        worker = WorkerProcess('fake', agent_argv('--stall'), read_timeout=0.5)
        await worker.start(INIT)
        try:
            await worker.send(upload_request())
            with pytest.raises(WorkerTimeoutError):
                await worker.read_response(TRANSFER_RESPONSES)
        finally:
            await worker.abort()
        return worker

    worker = asyncio.run(run())
    assert worker.returncode is not None


def test_agent_exit_mid_transfer(agent_argv):
    async def run():
        async with WorkerProcess('fake', agent_argv('--crash')) as worker:
            await worker.start(INIT)
            await worker.send(upload_request())
            with pytest.raises(WorkerIOError, match='closed its output'):
                await worker.read_response(TRANSFER_RESPONSES)

    asyncio.run(run())


def test_garbage_reply_is_protocol_error(agent_argv):
    async def run():
        async with WorkerProcess('fake', agent_argv('--garbage')) as worker:
            await worker.start(INIT)
            await worker.send(upload_request())
            with pytest.raises(ProtocolError):
                await worker.read_response(TRANSFER_RESPONSES)

    asyncio.run(run())


def test_send_after_abort(agent_argv):
    async def run():
        worker = WorkerProcess('fake', agent_argv())
        await worker.start(INIT)
        await worker.abort()
        await worker.abort()
        with pytest.raises(WorkerIOError, match='not running'):
            await worker.send(upload_request())

    asyncio.run(run())


def test_nonzero_exit_on_shutdown(agent_argv):
    async def run():
        worker = WorkerProcess('fake', agent_argv('--exit-code', '3'))
        await worker.start(INIT)
        with pytest.raises(WorkerExitError) as excinfo:
            await worker.shutdown()
        return excinfo.value

    error = asyncio.run(run())
    assert error.returncode == 3


def test_close_falls_back_to_abort(agent_argv, caplog):
    async def run():
        worker = WorkerProcess('fake', agent_argv('--ignore-terminate'), shutdown_timeout=0.5)
        await worker.start(INIT)
        await worker.close()
        return worker

    worker = asyncio.run(run())

    assert worker.returncode is not None
    assert 'aborting' in caplog.text


def test_context_manager_aborts_on_error(agent_argv):
    async def run():
        worker = WorkerProcess('fake', agent_argv())
        with pytest.raises(RuntimeError):
            async with worker:
                await worker.start(INIT)
                raise RuntimeError('boom')
        return worker

    worker = asyncio.run(run())
    assert not worker.is_running
    assert worker.returncode is not None


def test_cannot_restart(agent_argv):
    async def run():
        async with WorkerProcess('fake', agent_argv()) as worker:
            await worker.start(INIT)
            with pytest.raises(RuntimeError):
                await worker.start(INIT)

    asyncio.run(run())
