import os

import pytest

from asyup.sender import FileSender, parse_range, parse_http_date, format_http_date, make_etag, etag_matches
from asyup.test.utils import RecordingWrapper, run_request, set_mtime

MTIME = 1600000000


@pytest.fixture
def data_file(tmp_path):
	path = tmp_path / 'data.bin'
	path.write_bytes(b'0123456789')
	set_mtime(path, MTIME)
	return path

async def send_file(path, headers = None):
	wrapper = RecordingWrapper()
	request_headers = [(name.lower().encode(), value.encode()) for name, value in (headers or [])]
	await FileSender(wrapper, chunk_size=3).send(str(path), os.stat(str(path)), request_headers)
	return wrapper


class TestParseRange:
	@pytest.mark.parametrize('value,expected', [
		('bytes=0-4', (0, 4)),
		('bytes=2-', (2, 9)),
		('bytes=-3', (7, 9)),
		('bytes=-20', (0, 9)),
		('bytes=5-100', (5, 9)),
		('bytes = 1-1', (1, 1)),
		('bytes=10-', False),
		('bytes=10-12', False),
		('bytes=-0', False),
		('bytes=0-1,3-4', None),
		('bytes=4-2', False),
		('items=0-1', None),
		('bytes=a-b', None),
		('bytes=-', None),
		('bytes', None),
	])
	def test_parse(self, value, expected):
		assert parse_range(value, 10) == expected

	def test_empty_file(self):
		assert parse_range('bytes=0-', 0) is False
		assert parse_range('bytes=-5', 0) is False


class TestValidators:
	def test_http_date_round_trip(self):
		assert format_http_date(MTIME) == 'Sun, 13 Sep 2020 12:26:40 GMT'
		assert parse_http_date('Sun, 13 Sep 2020 12:26:40 GMT') == MTIME

	@pytest.mark.parametrize('value', ['', 'yesterday', 'Sun, 99 Foo 2020'])
	def test_bad_http_date(self, value):
		assert parse_http_date(value) is None

	def test_etag_changes_with_content(self, data_file):
		first = make_etag(os.stat(str(data_file)))
		data_file.write_bytes(b'01234567890')
		set_mtime(data_file, MTIME)
		assert make_etag(os.stat(str(data_file))) != first

	def test_etag_matching(self):
		assert etag_matches('"a", "b"', '"b"', weak=False)
		assert etag_matches('*', '"b"', weak=False)
		assert not etag_matches('W/"b"', '"b"', weak=False)
		assert etag_matches('W/"b"', '"b"', weak=True)
		assert not etag_matches('"c"', '"b"', weak=True)


class TestFileSender:
	@pytest.mark.asyncio
	async def test_full_body(self, data_file):
		w = await send_file(data_file)
		assert w.status_code == 200
		assert w.body == b'0123456789'
		assert w.finished
		assert w.get_header('Content-Length') == '10'
		assert w.get_header('Content-Type') == 'application/octet-stream'
		assert w.get_header('Accept-Ranges') == 'bytes'
		assert w.get_header('Last-Modified') == format_http_date(MTIME)

	@pytest.mark.asyncio
	async def test_if_none_match(self, data_file):
		etag = make_etag(os.stat(str(data_file)))
		w = await send_file(data_file, [('If-None-Match', etag)])
		assert w.status_code == 304
		assert w.body == b''
		assert w.get_header('ETag') == etag

	@pytest.mark.asyncio
	async def test_if_none_match_other_tag(self, data_file):
		w = await send_file(data_file, [('If-None-Match', '"other"')])
		assert w.status_code == 200

	@pytest.mark.asyncio
	async def test_if_modified_since(self, data_file):
		w = await send_file(data_file, [('If-Modified-Since', format_http_date(MTIME))])
		assert w.status_code == 304
		w = await send_file(data_file, [('If-Modified-Since', format_http_date(MTIME - 60))])
		assert w.status_code == 200

	@pytest.mark.asyncio
	async def test_if_none_match_wins_over_date(self, data_file):
		w = await send_file(data_file, [
			('If-None-Match', '"other"'),
			('If-Modified-Since', format_http_date(MTIME)),
		])
		assert w.status_code == 200

	@pytest.mark.asyncio
	async def test_if_match_fails(self, data_file):
		w = await send_file(data_file, [('If-Match', '"other"')])
		assert w.status_code == 412

	@pytest.mark.asyncio
	async def test_if_unmodified_since(self, data_file):
		w = await send_file(data_file, [('If-Unmodified-Since', format_http_date(MTIME - 60))])
		assert w.status_code == 412
		w = await send_file(data_file, [('If-Unmodified-Since', format_http_date(MTIME))])
		assert w.status_code == 200

	@pytest.mark.asyncio
	async def test_range(self, data_file):
		w = await send_file(data_file, [('Range', 'bytes=2-4')])
		assert w.status_code == 206
		assert w.body == b'234'
		assert w.get_header('Content-Range') == 'bytes 2-4/10'
		assert w.get_header('Content-Length') == '3'

	@pytest.mark.asyncio
	async def test_suffix_range(self, data_file):
		w = await send_file(data_file, [('Range', 'bytes=-4')])
		assert w.status_code == 206
		assert w.body == b'6789'

	@pytest.mark.asyncio
	async def test_unsatisfiable_range(self, data_file):
		w = await send_file(data_file, [('Range', 'bytes=50-')])
		assert w.status_code == 416
		assert w.get_header('Content-Range') == 'bytes */10'
		assert w.body == b''

	@pytest.mark.asyncio
	async def test_inverted_range(self, data_file):
		w = await send_file(data_file, [('Range', 'bytes=5-2')])
		assert w.status_code == 416
		assert w.get_header('Content-Range') == 'bytes */10'

	@pytest.mark.asyncio
	async def test_multiple_ranges_send_everything(self, data_file):
		w = await send_file(data_file, [('Range', 'bytes=0-1,4-5')])
		assert w.status_code == 200
		assert w.body == b'0123456789'

	@pytest.mark.asyncio
	async def test_if_range(self, data_file):
		etag = make_etag(os.stat(str(data_file)))
		w = await send_file(data_file, [('Range', 'bytes=0-0'), ('If-Range', etag)])
		assert w.status_code == 206
		w = await send_file(data_file, [('Range', 'bytes=0-0'), ('If-Range', '"stale"')])
		assert w.status_code == 200
		w = await send_file(data_file, [('Range', 'bytes=0-0'), ('If-Range', format_http_date(MTIME))])
		assert w.status_code == 206
		w = await send_file(data_file, [('Range', 'bytes=0-0'), ('If-Range', format_http_date(MTIME - 1))])
		assert w.status_code == 200

	@pytest.mark.asyncio
	async def test_empty_file(self, tmp_path):
		path = tmp_path / 'empty.txt'
		path.write_bytes(b'')
		w = await send_file(path)
		assert w.status_code == 200
		assert w.body == b''
		assert w.get_header('Content-Length') == '0'
		assert w.finished


class TestThroughHandler:
	@pytest.mark.asyncio
	async def test_conditional_get(self, config):
		first = await run_request(config, 'GET', '/hello.txt')
		etag = first.get_header('ETag')
		second = await run_request(config, 'GET', '/hello.txt', [('If-None-Match', etag)])
		assert second.status_code == 304
		third = await run_request(config, 'GET', '/hello.txt', [('If-Modified-Since', first.get_header('Last-Modified'))])
		assert third.status_code == 304

	@pytest.mark.asyncio
	async def test_range_request(self, config):
		w = await run_request(config, 'GET', '/hello.txt', [('Range', 'bytes=6-')])
		assert w.status_code == 206
		assert w.body == b'world'
