import sys, pytest
from pathlib import Path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path: sys.path.insert(0, str(ROOT))
from wirekernel.dispatcher import Dispatcher
from .kernel_utils import FakeChannels, FakeHandler, make_connection


@pytest.fixture
def connection(): return make_connection()


@pytest.fixture
def channels(): return FakeChannels()


@pytest.fixture
def handler(): return FakeHandler()


@pytest.fixture
def dispatcher(connection, channels, handler): return Dispatcher(connection, channels, handler, session_id="kernel-session")
