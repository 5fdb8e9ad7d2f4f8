"""
Global test fixtures for QR Share tests
"""
import pytest
import socket
import tempfile
import shutil
from pathlib import Path
from typing import Generator

from qrshare.common.network import NetworkDiscovery


LOOPBACK = "127.0.0.1"


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((LOOPBACK, 0))
        return sock.getsockname()[1]


@pytest.fixture
def unused_port() -> int:
    """A port nobody is listening on"""
    return _free_port()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files"""
    path = Path(tempfile.mkdtemp(prefix="qrshare_test_"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def sample_file(temp_dir: Path) -> Path:
    """Create a sample text file for testing"""
    file_path = temp_dir / "sample.txt"
    file_path.write_text("Hello, World! This is a test file.")
    return file_path


@pytest.fixture
def large_sample_file(temp_dir: Path) -> Path:
    """Create a 1 MiB file for streaming tests"""
    file_path = temp_dir / "large_sample.bin"
    data = bytes(range(256)) * (4 * 1024)
    file_path.write_bytes(data)
    return file_path


@pytest.fixture
def download_dir(temp_dir: Path) -> Path:
    """Separate directory for received files"""
    path = temp_dir / "downloads"
    path.mkdir()
    return path


@pytest.fixture
def loopback_discovery() -> NetworkDiscovery:
    """Discovery pinned to 127.0.0.1 and a single free port"""
    port = _free_port()
    return NetworkDiscovery(ip_address=LOOPBACK, port_range=(port, port))
