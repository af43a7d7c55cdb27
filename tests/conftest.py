import hashlib
import json
import sys
from pathlib import Path

import pytest

from lfsxfer.transfer import Action, TransferObject

FAKE_AGENT = Path(__file__).parent / 'fake_agent.py'


def make_oid(seed) -> str:
    return hashlib.sha256(str(seed).encode()).hexdigest()


@pytest.fixture
def agent_argv():
    """Build argv for the fake agent with the given flags."""
    def build(*flags):
        return [sys.executable, str(FAKE_AGENT), *flags]
    return build


@pytest.fixture
def record_file(tmp_path):
    return tmp_path / 'record.jsonl'


@pytest.fixture
def read_record(record_file):
    """Messages the fake agent received, as (pid, message) pairs."""
    def read():
        if not record_file.exists():
            return []
        entries = [json.loads(line) for line in record_file.read_text().splitlines()]
        return [(entry['pid'], entry['msg']) for entry in entries]
    return read


@pytest.fixture
def make_object():
    """Build a TransferObject with actions for the given operations."""
    def build(seed, size=1024, actions=('upload', 'download')):
        return TransferObject(
            oid=make_oid(seed),
            size=size,
            actions={
                name: Action(href=f"https://lfs.example.com/{name}/{seed}",
                             header={'Authorization': 'Bearer token'})
                for name in actions
            },
        )
    return build
