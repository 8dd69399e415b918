import pytest

from asyup.config import ServerConfig


@pytest.fixture
def served_dir(tmp_path):
	root = tmp_path / 'root'
	root.mkdir()
	(root / 'hello.txt').write_bytes(b'hello world')
	(root / 'sub').mkdir()
	(root / 'sub' / 'inner.bin').write_bytes(b'\x00\x01\x02')
	return root

@pytest.fixture
def config(served_dir):
	return ServerConfig(root=str(served_dir))

@pytest.fixture
def readonly_config(served_dir):
	return ServerConfig(root=str(served_dir), upload=False)
