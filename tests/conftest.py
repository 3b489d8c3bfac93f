"""
Pytest fixtures for cl-treasury-ops tests.

Provides a real SQLite-backed store, mock plugin/RPC objects and a stub
node gateway so components can be exercised without lightningd.
"""

import pytest
import tempfile
import os
import sys
from unittest.mock import MagicMock

# Add the repository root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from treasury_ops.config import Config
from treasury_ops.database import Database
from treasury_ops.ledger import ExecutionLedger
from treasury_ops.node import ChannelSnapshot
from treasury_ops.policies import PolicyStore
from treasury_ops.loss_cap import DailyLossCapGuard


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = MagicMock()
    return plugin


@pytest.fixture
def mock_rpc():
    """Create a mock RPC interface."""
    rpc = MagicMock()

    # Default return values
    rpc.getinfo.return_value = {
        "id": "02" + "a" * 64,
        "alias": "test-node",
        "network": "regtest"
    }

    rpc.listpeerchannels.return_value = {"channels": []}
    rpc.listchannels.return_value = {"channels": []}
    rpc.listfunds.return_value = {"channels": [], "outputs": []}
    rpc.listforwards.return_value = {"forwards": []}

    return rpc


@pytest.fixture
def database(temp_db_path, mock_plugin):
    """A real, initialized database on a temporary file."""
    db = Database(temp_db_path, mock_plugin)
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def config(temp_db_path):
    """Default configuration with scheduler executing (not dry-run)."""
    return Config(db_path=temp_db_path, scheduler_enabled=True, scheduler_dry_run=False)


@pytest.fixture
def ledger(database):
    return ExecutionLedger(database)


@pytest.fixture
def policies(database):
    return PolicyStore(database)


@pytest.fixture
def loss_cap(mock_plugin, database, policies):
    return DailyLossCapGuard(mock_plugin, database, policies)


@pytest.fixture
def stub_node():
    """NodeGateway stand-in with an empty, healthy node."""
    node = MagicMock()
    node.list_channels.return_value = []
    node.list_pending_opens.return_value = []
    node.confirmed_onchain_sats.return_value = 0
    node.channel_states_by_txid.return_value = {}
    node.channel_states_by_id.return_value = {}
    return node


@pytest.fixture
def sample_peer_ids():
    """Sample peer IDs for testing."""
    return [
        "02" + "a" * 64,
        "02" + "b" * 64,
        "02" + "c" * 64,
        "02" + "d" * 64,
    ]


@pytest.fixture
def make_channel():
    """Factory for ChannelSnapshot; remote defaults to capacity - local."""
    def _make(channel_id, peer_id, capacity=1_000_000, local=500_000, remote=None,
              local_reserve=10_000, remote_reserve=10_000, is_active=True, funding_txid=None):
        return ChannelSnapshot(
            channel_id=channel_id,
            peer_id=peer_id,
            capacity=capacity,
            local_balance=local,
            remote_balance=capacity - local if remote is None else remote,
            local_reserve=local_reserve,
            remote_reserve=remote_reserve,
            is_active=is_active,
            funding_txid=funding_txid,
        )
    return _make
